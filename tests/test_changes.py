"""
Tests for ``spine_orm.changes`` — revisions, polling subscriptions and the
row-level change feed.

Subscriptions run on daemon threads; assertions poll with ``wait_for``
instead of sleeping fixed amounts.
"""

from __future__ import annotations

import threading

import pytest

from models import POLL, SCHEMAS
from spine_orm import Database
from spine_orm.changes import RevisionTracker, SubscriptionState, run_callback
from spine_orm.errors import ConfigurationError


class Recorder:
    """Thread-safe callback collecting every value it is called with."""

    def __init__(self, fail_times: int = 0):
        self.calls: list = []
        self.attempts = 0
        self._fail_times = fail_times
        self._lock = threading.Lock()

    def __call__(self, value):
        with self._lock:
            self.attempts += 1
            if self._fail_times:
                self._fail_times -= 1
                raise RuntimeError("callback failed")
            self.calls.append(value)

    def __len__(self) -> int:
        with self._lock:
            return len(self.calls)


def _names(rows) -> list[str]:
    return sorted(r.name for r in rows)


# =============================================================================
# Revisions
# =============================================================================


class TestRevisionTracker:
    def test_initial_revision(self, db):
        assert db.revision("users") == "0:0"

    def test_write_moves_revision(self, db):
        before = db.revision("users")
        db.users.insert({"name": "A"})
        assert db.revision("users") != before
        assert db.revision("authors") == "0:0"

    def test_out_of_band_write_seen_through_triggers(self, db):
        db.adapter.execute("INSERT INTO users (name) VALUES ('raw')")
        assert db.revision("users") == "0:1"

    def test_no_op_write_does_not_bump(self, db):
        db.users.update_where({"name": "nobody"}, {"score": 1})
        assert db.tracker.memory_counter("users") == 0

    def test_fingerprint_without_triggers(self):
        database = Database(":memory:", SCHEMAS, change_tracking=False, poll_interval=POLL)
        try:
            assert database.revision("users") == "0:0.0"
            database.adapter.execute("INSERT INTO users (name) VALUES ('raw')")
            assert database.revision("users") == "0:1.1"
        finally:
            database.close()

    def test_unknown_table(self, db):
        with pytest.raises(ConfigurationError, match="Unknown table 'ghosts'"):
            db.revision("ghosts")

    def test_bump(self, db):
        tracker = RevisionTracker(db.adapter)
        tracker.bump("users")
        tracker.bump("users")
        assert tracker.memory_counter("users") == 2


# =============================================================================
# Snapshot subscriptions
# =============================================================================


class TestSubscribe:
    def test_immediate_snapshot_then_changes(self, seeded_db, wait_for):
        received = Recorder()
        sub = seeded_db.users.where({"active": True}).subscribe(received)
        try:
            assert _names(received.calls[0]) == ["Alice", "Bob"]
            seeded_db.users.update(3, active=True)
            assert wait_for(lambda: len(received) >= 2)
            assert _names(received.calls[-1]) == ["Alice", "Bob", "Carol"]
        finally:
            sub()

    def test_unchanged_table_does_not_fire(self, seeded_db):
        received = Recorder()
        with seeded_db.users.subscribe(received):
            threading.Event().wait(POLL * 5)
            assert len(received) == 1

    def test_unrelated_table_does_not_fire(self, seeded_db):
        received = Recorder()
        with seeded_db.users.subscribe(received):
            seeded_db.authors.insert({"name": "Zed"})
            threading.Event().wait(POLL * 5)
            assert len(received) == 1

    def test_unsubscribe_is_idempotent(self, seeded_db):
        received = Recorder()
        sub = seeded_db.users.subscribe(received)
        assert len(seeded_db.subscriptions) == 1
        sub()
        sub()
        assert sub.state is SubscriptionState.STOPPED
        assert len(seeded_db.subscriptions) == 0
        sub.join(timeout=1)
        seeded_db.users.insert({"name": "Late"})
        threading.Event().wait(POLL * 5)
        assert len(received) == 1

    def test_failed_callback_waits_for_next_change(self, seeded_db, wait_for):
        received = Recorder(fail_times=1)
        with seeded_db.users.subscribe(received):
            threading.Event().wait(POLL * 5)
            assert (received.attempts, len(received)) == (1, 0)
            seeded_db.users.insert({"name": "Dana"})
            assert wait_for(lambda: len(received) == 1)
            assert _names(received.calls[0]) == ["Alice", "Bob", "Carol", "Dana"]

    def test_always_failing_callback_not_repeated_while_unchanged(self, seeded_db):
        received = Recorder(fail_times=1000)
        with seeded_db.users.subscribe(received):
            threading.Event().wait(POLL * 10)
            assert received.attempts == 1

    def test_failed_row_redelivered(self, db, wait_for):
        received = Recorder(fail_times=1)
        with db.users.each(received) as sub:
            db.users.insert({"name": "A"})
            assert wait_for(lambda: len(received) == 1)
            assert received.attempts == 2
            assert sub.watermark == 1

    def test_async_callback(self, seeded_db):
        received: list = []

        async def callback(rows):
            received.append(len(rows))

        with seeded_db.users.subscribe(callback):
            assert received == [3]

    def test_close_stops_subscriptions(self, seeded_db):
        sub = seeded_db.users.subscribe(Recorder())
        seeded_db.close()
        assert sub.stopped


# =============================================================================
# Row streams
# =============================================================================


class TestEach:
    def test_only_rows_after_subscribe(self, db, wait_for):
        db.users.insert_many([{"name": "One"}, {"name": "Two"}])
        received = Recorder()
        with db.users.each(received) as sub:
            assert sub.watermark == 2
            db.users.insert({"name": "Three"})
            db.users.insert({"name": "Four"})
            assert wait_for(lambda: len(received) == 2)
            assert [r.id for r in received.calls] == [3, 4]
            assert sub.watermark == 4

    def test_filtered_stream(self, db, wait_for):
        received = Recorder()
        with db.users.where({"active": True}).each(received):
            db.users.insert({"name": "Hidden", "active": False})
            db.users.insert({"name": "Shown"})
            assert wait_for(lambda: len(received) == 1)
            threading.Event().wait(POLL * 3)
            assert [r.name for r in received.calls] == ["Shown"]

    def test_updates_not_redelivered(self, db, wait_for):
        received = Recorder()
        with db.users.each(received):
            user = db.users.insert({"name": "A"})
            assert wait_for(lambda: len(received) == 1)
            db.users.update(user.id, score=3)
            threading.Event().wait(POLL * 5)
            assert len(received) == 1


# =============================================================================
# Row-level change feed
# =============================================================================


class TestChangeFeed:
    @pytest.fixture
    def feed_db(self):
        database = Database(":memory:", SCHEMAS, track_row_changes=True, poll_interval=POLL)
        yield database
        database.close()

    def test_insert_update_delete(self, feed_db, wait_for):
        inserted, updated, deleted = Recorder(), Recorder(), Recorder()
        feed_db.users.on("insert", inserted)
        feed_db.users.on("update", updated)
        feed_db.users.on("delete", deleted)

        user = feed_db.users.insert({"name": "A"})
        assert wait_for(lambda: len(inserted) == 1)
        assert inserted.calls[0].name == "A"

        feed_db.users.update(user.id, score=5)
        assert wait_for(lambda: len(updated) == 1)
        assert updated.calls[0].score == 5

        feed_db.users.delete(user.id)
        assert wait_for(lambda: len(deleted) == 1)
        assert deleted.calls[0] == {"id": user.id}

    def test_listener_removed(self, feed_db, wait_for):
        received = Recorder()
        unsubscribe = feed_db.users.on("insert", received)
        feed_db.users.insert({"name": "A"})
        assert wait_for(lambda: len(received) == 1)
        unsubscribe()
        unsubscribe()
        feed_db.users.insert({"name": "B"})
        threading.Event().wait(POLL * 5)
        assert len(received) == 1

    def test_failing_listener_does_not_stop_feed(self, feed_db, wait_for):
        received = Recorder(fail_times=1)
        feed_db.users.on("insert", received)
        feed_db.users.insert({"name": "A"})
        feed_db.users.insert({"name": "B"})
        assert wait_for(lambda: len(received) == 1)
        assert received.calls[0].name == "B"

    def test_unknown_event(self, feed_db):
        with pytest.raises(ConfigurationError, match="Unknown change event 'upsert'"):
            feed_db.users.on("upsert", print)

    def test_disabled_by_default(self, db):
        with pytest.raises(ConfigurationError, match="track_row_changes=True"):
            db.users.on("insert", print)

    def test_requires_change_tracking(self):
        with pytest.raises(ConfigurationError):
            Database(":memory:", SCHEMAS, track_row_changes=True, change_tracking=False)


class TestRunCallback:
    def test_sync(self):
        received: list = []
        run_callback(received.append, 1)
        assert received == [1]

    def test_coroutine_awaited(self):
        received: list = []

        async def callback(value):
            received.append(value)

        run_callback(callback, 2)
        assert received == [2]
