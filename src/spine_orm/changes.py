"""
Change detection and polling subscriptions.

SQLite offers no cross-connection change notification, so reactivity is
built on polling a cheap per-table revision:

- **Store sequence**: ``AFTER INSERT/UPDATE/DELETE`` triggers bump
  ``_spine_orm_seq.seq`` for the table. Any committed write, from any
  process, advances it.
- **In-memory counter**: every write issued through this process bumps
  a counter without a round trip.

``RevisionTracker.revision(table)`` combines both into ``"<mem>:<seq>"``.
Subscriptions compare it every tick and only do real work when it moved.

Manifesto:
    - **Cheap ticks:** an unchanged table costs one indexed lookup per tick
    - **Strict ordering:** a tick finishes (async callbacks included) before
      the next one starts
    - **Best effort callbacks:** a failing callback is logged and the
      subscription keeps running; snapshots fire again on the next change,
      row streams retry the undelivered row
    - **Idempotent stop:** unsubscribing twice is the same as once

Architecture:
    ::

        ┌──────────── Subscription state machine ────────────┐
        │                                                     │
        │   ARMED ──tick, revision unchanged──► ARMED         │
        │     │                                               │
        │     └─tick, revision changed──► FIRING ──► ARMED    │
        │                                                     │
        │   any state ──stop()──► STOPPED (terminal)          │
        └─────────────────────────────────────────────────────┘

        SnapshotSubscription   FIRING = re-run the query, callback(rows)
        RowStreamSubscription  FIRING = rows with id > watermark, ascending,
                                        callback(row), watermark = row.id

Polling threads follow the scheduler backend pattern: a daemon thread
waiting on a ``threading.Event`` that doubles as the stop signal.

Tags:
    change-detection, polling, subscriptions, triggers, reactivity, spine-orm

Doc-Types:
    - API Reference
    - Architecture Documentation
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections import defaultdict
from collections.abc import Callable, Iterable
from enum import Enum
from typing import Any

from spine_orm.adapters.sqlite import SQLiteAdapter
from spine_orm.dialect import SQLITE
from spine_orm.errors import ConfigurationError, SubscriptionTickError
from spine_orm.logging import get_logger

logger = get_logger(__name__)

SEQ_TABLE = "_spine_orm_seq"
CHANGES_TABLE = "_spine_orm_changes"
CHANGE_EVENTS = ("insert", "update", "delete")


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def run_callback(callback: Callable[[Any], Any], value: Any) -> None:
    """Call ``callback`` and, when it returns an awaitable, run it to completion."""
    result = callback(value)
    if inspect.isawaitable(result):

        async def _await() -> Any:
            return await result

        asyncio.run(_await())


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


# =============================================================================
# REVISIONS
# =============================================================================


class RevisionTracker:
    """Per-table revision counters: in-memory plus trigger-maintained sequence."""

    def __init__(self, adapter: SQLiteAdapter, *, change_tracking: bool = True):
        self._adapter = adapter
        self._change_tracking = change_tracking
        self._memory: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    @property
    def change_tracking(self) -> bool:
        return self._change_tracking

    def install(self, tables: Iterable[str], *, row_changes: bool = False) -> None:
        """Create bookkeeping tables and (re)create the triggers of ``tables``."""
        if not self._change_tracking:
            return
        q = SQLITE.quote
        self._adapter.execute(
            f"CREATE TABLE IF NOT EXISTS {SEQ_TABLE} (tbl TEXT PRIMARY KEY, seq INTEGER NOT NULL DEFAULT 0)"
        )
        if row_changes:
            self._adapter.execute(
                f"CREATE TABLE IF NOT EXISTS {CHANGES_TABLE} ("
                "id INTEGER PRIMARY KEY AUTOINCREMENT, tbl TEXT NOT NULL, "
                "op TEXT NOT NULL, row_id INTEGER NOT NULL)"
            )
        for table in tables:
            self._adapter.execute(SQLITE.insert_or_ignore(SEQ_TABLE, ["tbl", "seq"]), [table, 0])
            literal = _sql_literal(table)
            for event in CHANGE_EVENTS:
                trigger = q(f"_spine_orm_{table}_{event}")
                row_ref = "OLD.id" if event == "delete" else "NEW.id"
                body = f"UPDATE {SEQ_TABLE} SET seq = seq + 1 WHERE tbl = {literal};"
                if row_changes:
                    body += (
                        f" INSERT INTO {CHANGES_TABLE} (tbl, op, row_id)"
                        f" VALUES ({literal}, '{event}', {row_ref});"
                    )
                self._adapter.execute(f"DROP TRIGGER IF EXISTS {trigger}")
                self._adapter.execute(
                    f"CREATE TRIGGER {trigger} AFTER {event.upper()} ON {q(table)} BEGIN {body} END"
                )

    def bump(self, table: str) -> None:
        """Record a same-process write to ``table``."""
        with self._lock:
            self._memory[table] += 1

    def memory_counter(self, table: str) -> int:
        with self._lock:
            return self._memory[table]

    def store_sequence(self, table: str) -> str:
        if self._change_tracking:
            seq = self._adapter.scalar(f"SELECT seq FROM {SEQ_TABLE} WHERE tbl = ?", [table])
            return str(seq or 0)
        row = self._adapter.query_one(
            f"SELECT COUNT(*) AS n, MAX(id) AS m FROM {SQLITE.quote(table)}"
        )
        return f"{row['n']}.{row['m'] or 0}" if row else "0.0"

    def revision(self, table: str) -> str:
        return f"{self.memory_counter(table)}:{self.store_sequence(table)}"


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================


class SubscriptionState(str, Enum):
    ARMED = "armed"
    FIRING = "firing"
    STOPPED = "stopped"


class Subscription:
    """
    Base polling subscription.

    Subclasses implement :meth:`_fire`; this class owns the thread, the
    stop flag, revision comparison and error containment. Calling the
    subscription (or :meth:`stop`) unsubscribes.
    """

    def __init__(
        self,
        table: str,
        revision: Callable[[], str],
        callback: Callable[[Any], Any],
        *,
        interval: float,
        on_stop: Callable[[Subscription], None] | None = None,
    ):
        self.table = table
        self.interval = interval
        self._revision = revision
        self._callback = callback
        self._on_stop = on_stop
        self._stop_event = threading.Event()
        self._tick_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._last_revision: str | None = None
        self.state = SubscriptionState.ARMED

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self, *, immediate: bool = False) -> Subscription:
        defer_first = immediate and _loop_running() and inspect.iscoroutinefunction(self._callback)
        if immediate and not defer_first:
            self.tick()
        self._thread = threading.Thread(
            target=self._run,
            args=(defer_first,),
            daemon=True,
            name=f"spine-orm-{self.table}",
        )
        self._thread.start()
        logger.debug("subscription_started", table=self.table, kind=type(self).__name__, interval=self.interval)
        return self

    def _run(self, fire_now: bool) -> None:
        if fire_now:
            self.tick()
        while not self._stop_event.wait(self.interval):
            self.tick()

    def tick(self) -> None:
        """One poll: compare revisions and fire when the table changed."""
        if self._stop_event.is_set():
            return
        with self._tick_lock:
            if self._stop_event.is_set():
                return
            try:
                revision = self._revision()
                if revision == self._last_revision:
                    return
                self.state = SubscriptionState.FIRING
                self._fire(revision)
            except Exception as e:
                error = SubscriptionTickError(f"Subscription tick failed: {e}", cause=e).with_context(
                    table=self.table
                )
                logger.warning("subscription_tick_failed", **error.to_dict())
            finally:
                if not self._stop_event.is_set():
                    self.state = SubscriptionState.ARMED

    def _fire(self, revision: str) -> None:
        """Do the work for a changed revision and record it as seen."""
        raise NotImplementedError

    def stop(self) -> None:
        """Unsubscribe. Idempotent; an in-flight tick is allowed to finish."""
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        self.state = SubscriptionState.STOPPED
        if self._on_stop is not None:
            self._on_stop(self)
        logger.debug("subscription_stopped", table=self.table)

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def __call__(self) -> None:
        self.stop()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()


class SnapshotSubscription(Subscription):
    """Re-runs the query on every change and passes the full result."""

    def __init__(self, table: str, revision: Callable[[], str], fetch: Callable[[], list[Any]],
                 callback: Callable[[Any], Any], **kwargs: Any):
        super().__init__(table, revision, callback, **kwargs)
        self._fetch = fetch

    def _fire(self, revision: str) -> None:
        # a failing callback is not retried until the table changes again
        self._last_revision = revision
        rows = self._fetch()
        if not self.stopped:
            run_callback(self._callback, rows)


class RowStreamSubscription(Subscription):
    """
    Emits each new row once, in ascending id order.

    ``watermark`` starts at the highest matching id when subscribing, so
    rows that already existed are never emitted.
    """

    def __init__(self, table: str, revision: Callable[[], str], fetch_after: Callable[[int], list[Any]],
                 callback: Callable[[Any], Any], *, watermark: Callable[[], int], **kwargs: Any):
        super().__init__(table, revision, callback, **kwargs)
        self._fetch_after = fetch_after
        # revision first: a write landing in between is seen by the next tick
        self._last_revision = revision()
        self.watermark = watermark()

    def _fire(self, revision: str) -> None:
        for row in self._fetch_after(self.watermark):
            if self.stopped:
                return
            run_callback(self._callback, row)
            self.watermark = row["id"]
        self._last_revision = revision


class SubscriptionRegistry:
    """Tracks live subscriptions so the database can stop them on close."""

    def __init__(self) -> None:
        self._items: set[Subscription] = set()
        self._lock = threading.Lock()

    def add(self, subscription: Subscription) -> None:
        with self._lock:
            self._items.add(subscription)

    def discard(self, subscription: Subscription) -> None:
        with self._lock:
            self._items.discard(subscription)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def stop_all(self) -> None:
        with self._lock:
            items = list(self._items)
        for subscription in items:
            subscription.stop()


# =============================================================================
# ROW-LEVEL CHANGE FEED
# =============================================================================


class ChangeFeed:
    """
    ``table.on("insert" | "update" | "delete", callback)`` listeners.

    One polling thread serves every listener. It reads the change log past
    its watermark, dispatches hydrated rows (``{"id": row_id}`` for
    deletes), then prunes the consumed log entries. The thread runs only
    while at least one listener is registered.
    """

    def __init__(
        self,
        adapter: SQLiteAdapter,
        load_row: Callable[[str, int], Any],
        *,
        enabled: bool,
        interval: float,
    ):
        self._adapter = adapter
        self._load_row = load_row
        self._enabled = enabled
        self._interval = interval
        self._listeners: list[tuple[str, str, Callable[[Any], Any]]] = []
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._watermark = 0
        if enabled:
            self._watermark = self._adapter.scalar(f"SELECT MAX(id) FROM {CHANGES_TABLE}") or 0

    def on(self, table: str, event: str, callback: Callable[[Any], Any]) -> Callable[[], None]:
        if not self._enabled:
            raise ConfigurationError(
                "Change listeners are disabled; open the database with track_row_changes=True"
            ).with_context(table=table)
        if event not in CHANGE_EVENTS:
            raise ConfigurationError(f"Unknown change event '{event}'").with_context(table=table)
        listener = (table, event, callback)
        with self._lock:
            self._listeners.append(listener)
            if self._thread is None or not self._thread.is_alive():
                self._stop_event = threading.Event()
                self._thread = threading.Thread(target=self._run, args=(self._stop_event,),
                                                daemon=True, name="spine-orm-changes")
                self._thread.start()

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
                if not self._listeners:
                    self._stop_event.set()

        return unsubscribe

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self._interval):
            try:
                self.poll()
            except Exception as e:
                error = SubscriptionTickError(f"Change feed poll failed: {e}", cause=e)
                logger.warning("subscription_tick_failed", **error.to_dict())

    def poll(self) -> int:
        """Dispatch pending changes; returns how many log entries were consumed."""
        changes = self._adapter.query(
            f"SELECT id, tbl, op, row_id FROM {CHANGES_TABLE} WHERE id > ? ORDER BY id",
            [self._watermark],
        )
        for change in changes:
            with self._lock:
                listeners = [cb for t, ev, cb in self._listeners if t == change["tbl"] and ev == change["op"]]
            if listeners:
                if change["op"] == "delete":
                    payload = {"id": change["row_id"]}
                else:
                    payload = self._load_row(change["tbl"], change["row_id"])
                if payload is not None:
                    for callback in listeners:
                        try:
                            run_callback(callback, payload)
                        except Exception as e:
                            error = SubscriptionTickError(f"Change listener failed: {e}", cause=e)
                            logger.warning("subscription_tick_failed", **error.with_context(table=change["tbl"]).to_dict())
            self._watermark = change["id"]
        if changes:
            self._adapter.execute(f"DELETE FROM {CHANGES_TABLE} WHERE id <= ?", [self._watermark])
        return len(changes)

    def stop(self) -> None:
        with self._lock:
            self._listeners.clear()
            self._stop_event.set()


__all__ = [
    "CHANGES_TABLE",
    "SEQ_TABLE",
    "ChangeFeed",
    "RevisionTracker",
    "RowStreamSubscription",
    "SnapshotSubscription",
    "Subscription",
    "SubscriptionRegistry",
    "SubscriptionState",
    "run_callback",
]
