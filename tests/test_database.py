"""
Tests for ``spine_orm.database`` — opening, schema sync, relation config,
transactions, proxy queries and lifecycle.
"""

from __future__ import annotations

from datetime import date, datetime

import pytest
from pydantic import BaseModel
from structlog.testing import capture_logs

from models import SCHEMAS, Author, Book
from spine_orm import Database, ProxyQuery
from spine_orm.errors import (
    ConfigurationError,
    OrmError,
    TransactionError,
    ValidationError,
)
from spine_orm.relations import RelationKind
from spine_orm.settings import OrmSettings


class Post(BaseModel):
    title: str


class Comment(BaseModel):
    body: str


class UserV1(BaseModel):
    name: str


class UserV2(BaseModel):
    name: str
    nickname: str | None = None


class Event(BaseModel):
    on: date
    order: int = 0
    group: str | None = None
    at: datetime | None = None
    payload: bytes | None = None


def _sqlite_objects(db: Database, kind: str) -> set[str]:
    rows = db.rows("SELECT name FROM sqlite_master WHERE type = ?", [kind])
    return {r["name"] for r in rows}


# =============================================================================
# Opening
# =============================================================================


class TestOpen:
    def test_tables_created(self, db):
        assert {"authors", "books", "users"} <= _sqlite_objects(db, "table")
        assert db.tables == ["authors", "books", "users"]

    def test_change_triggers_installed(self, db):
        assert "_spine_orm_users_insert" in _sqlite_objects(db, "trigger")

    def test_requires_schemas(self):
        with pytest.raises(ConfigurationError, match="at least one schema"):
            Database(":memory:", {})

    def test_invalid_table_name(self):
        with pytest.raises(OrmError):
            Database(":memory:", {"bad name": Author})

    def test_repr(self, db):
        assert repr(db) == "<Database ':memory:' tables=['authors', 'books', 'users']>"

    def test_unknown_attribute(self, db):
        with pytest.raises(AttributeError, match="no table or attribute 'ghosts'"):
            db.ghosts

    def test_unknown_repository(self, db):
        with pytest.raises(ConfigurationError, match="Unknown table 'ghosts'"):
            db["ghosts"]


class TestSettings:
    def test_keyword_overrides(self):
        with Database(":memory:", SCHEMAS, timestamps=True) as db:
            assert db.settings.timestamps is True
            assert "created_at" in db.users.insert({"name": "A"})

    def test_explicit_settings(self):
        with Database(":memory:", SCHEMAS, settings=OrmSettings(soft_deletes=True)) as db:
            assert db.descriptors["users"].has_column("deleted_at")

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("SPINE_ORM_TIMESTAMPS", "true")
        with Database(":memory:", SCHEMAS) as db:
            assert db.settings.timestamps is True

    def test_unknown_override(self):
        with pytest.raises(ConfigurationError, match="Unknown setting\\(s\\): colour"):
            Database(":memory:", SCHEMAS, colour="red")

    def test_invalid_override(self):
        with pytest.raises(ConfigurationError, match="Invalid settings"):
            Database(":memory:", SCHEMAS, poll_interval=0)


# =============================================================================
# Schema sync
# =============================================================================


class TestSchemaSync:
    def test_missing_column_added(self, tmp_path):
        path = str(tmp_path / "app.db")
        with Database(path, {"users": UserV1}) as db:
            db.users.insert({"name": "Alice"})

        with capture_logs() as logs:
            with Database(path, {"users": UserV2}) as db:
                assert db.users.get(1).nickname is None
                assert db.users.insert({"name": "Bob", "nickname": "B"}).nickname == "B"

        added = [e for e in logs if e["event"] == "column_added"]
        assert [(e["table"], e["column"]) for e in added] == [("users", "nickname")]

    def test_reopen_keeps_rows(self, tmp_path):
        path = str(tmp_path / "app.db")
        with Database(path, SCHEMAS) as db:
            db.authors.insert({"name": "Alice"})
        with Database(path, SCHEMAS) as db:
            assert db.authors.count() == 1
            assert db.revision("authors").endswith(":1")

    def test_indexes(self):
        with Database(":memory:", SCHEMAS, indexes={"users": ["name", ["active", "score"]]}) as db:
            indexes = _sqlite_objects(db, "index")
            assert {"idx_users_name", "idx_users_active_score"} <= indexes

    def test_index_on_unknown_column(self):
        with pytest.raises(ConfigurationError, match="Index on unknown column 'nope'"):
            Database(":memory:", SCHEMAS, indexes={"users": ["nope"]})


# =============================================================================
# Relation config
# =============================================================================


class TestRelationConfig:
    def test_config_adds_foreign_key(self):
        with Database(":memory:", {"posts": Post, "comments": Comment}, relations={"comments": {"post": "posts"}}) as db:
            assert db.descriptors["comments"].has_column("post_id")
            post = db.posts.insert({"title": "Hello"})
            db.comments.insert({"body": "First", "post_id": post.id})
            assert [c.body for c in post.comments()] == ["First"]
            assert db.comments.get(1).post().title == "Hello"

    def test_edges(self):
        with Database(":memory:", {"posts": Post, "comments": Comment}, relations={"comments": {"post_id": "posts"}}) as db:
            kinds = {(e.from_table, e.field_name): e.kind for e in db.relationships}
            assert kinds == {
                ("comments", "post"): RelationKind.BELONGS_TO,
                ("posts", "comments"): RelationKind.ONE_TO_MANY,
            }

    def test_unknown_target(self):
        with pytest.raises(ConfigurationError, match="unknown table 'ghosts'"):
            Database(":memory:", SCHEMAS, relations={"books": {"ghost_id": "ghosts"}})

    def test_default_inverse_clash(self):
        with pytest.raises(ConfigurationError, match="ambiguous"):
            Database(":memory:", SCHEMAS, relations={"books": {"editor_id": "authors"}})

    def test_named_inverse(self):
        relations = {"books": {"editor_id": {"to": "authors", "inverse": "edited_books"}}}
        with Database(":memory:", SCHEMAS, relations=relations) as db:
            alice = db.authors.insert({"name": "Alice"})
            db.books.insert({"title": "Edited", "editor_id": alice.id})
            assert [b.title for b in alice.edited_books()] == ["Edited"]
            assert alice.books() == []

    def test_suppressed_inverse(self):
        relations = {"books": {"reviewer_id": {"to": "authors", "inverse": False}}}
        with Database(":memory:", SCHEMAS, relations=relations) as db:
            assert db.relationships.find("books", "reviewer") is not None
            assert [e.field_name for e in db.relationships.for_table("authors")] == ["books"]


# =============================================================================
# Transactions
# =============================================================================


class TestTransaction:
    def test_commit(self, db):
        user = db.transaction(lambda tx: tx.users.insert({"name": "A"}))
        assert user.name == "A"
        assert db.users.count() == 1

    def test_rollback_wraps_error(self, db):
        def work(tx):
            tx.users.insert({"name": "A"})
            raise ValueError("boom")

        with pytest.raises(TransactionError) as exc_info:
            db.transaction(work)
        assert isinstance(exc_info.value.cause, ValueError)
        assert db.users.count() == 0

    def test_orm_error_context_kept(self, db):
        with pytest.raises(TransactionError) as exc_info:
            db.transaction(lambda tx: tx.users.insert({"score": 1}))
        assert isinstance(exc_info.value.cause, ValidationError)
        assert exc_info.value.context.table == "users"

    def test_nested_rejected(self, db):
        with pytest.raises(ConfigurationError, match="Nested transactions"):
            db.transaction(lambda tx: tx.transaction(lambda inner: None))

    def test_rollback_logged(self, db):
        with capture_logs() as logs:
            with pytest.raises(TransactionError):
                db.transaction(lambda tx: 1 / 0)
        assert any(e["event"] == "transaction_rolled_back" and e["log_level"] == "warning" for e in logs)


# =============================================================================
# Proxy queries
# =============================================================================


class TestQuery:
    def test_join(self, seeded_db):
        def titles_by_author(c):
            b, a = c.books, c.authors
            return ProxyQuery(
                select={"title": b.title, "author": a.name},
                join=(b.author, a.id),
                where={a.country: "UK"},
                order_by={b.title: "asc"},
            )

        assert seeded_db.query(titles_by_author) == [
            {"title": "A1", "author": "Alice"},
            {"title": "A2", "author": "Alice"},
        ]

    def test_plain_rows(self, seeded_db):
        rows = seeded_db.query(lambda c: ProxyQuery(select=[c.users.name], where={"active": False}))
        assert rows == [{"name": "Carol"}]


# =============================================================================
# Lifecycle and logging
# =============================================================================


class TestLifecycle:
    def test_close_idempotent(self):
        db = Database(":memory:", SCHEMAS)
        db.close()
        db.close()

    def test_open_and_close_logged(self):
        with capture_logs() as logs:
            with Database(":memory:", {"authors": Author, "books": Book}):
                pass
        events = [e["event"] for e in logs]
        assert events.count("database_opened") == 1
        assert events[-1] == "database_closed"



# =============================================================================
# End-to-end queries
# =============================================================================


class TestQueriesAgainstStore:
    @pytest.fixture
    def two_users(self, db):
        db.users.insert_many([{"name": "Alice", "score": 10}, {"name": "Bob", "score": 5}])
        return db

    def test_greater_than(self, two_users):
        assert [u.name for u in two_users.users.where({"score": {"$gt": 6}}).all()] == ["Alice"]

    def test_or_matches_both(self, two_users):
        rows = two_users.users.where({"$or": [{"name": "Alice"}, {"score": {"$lt": 6}}]}).order_by("name").all()
        assert [u.name for u in rows] == ["Alice", "Bob"]

    def test_callback_where(self, two_users):
        rows = two_users.users.where(lambda c, f, op: op.eq(f.lower(c.name), "bob")).all()
        assert [(u.name, u.score) for u in rows] == [("Bob", 5)]

    def test_empty_snapshot_then_one_row(self, db, wait_for):
        received: list = []
        with db.users.where({"name": "Zed"}).subscribe(received.append):
            assert received == [[]]
            db.users.insert({"name": "Zed"})
            assert wait_for(lambda: len(received) == 2)
            assert [u.name for u in received[1]] == ["Zed"]


class TestKeywordColumns:
    @pytest.fixture
    def events_db(self):
        database = Database(":memory:", {"events": Event})
        database.events.insert_many(
            [
                {"on": date(2024, 3, 1), "order": 2, "group": "a"},
                {"on": date(2024, 5, 1), "order": 1, "group": "b"},
                {"on": date(2024, 6, 1), "order": 3, "group": "b"},
            ]
        )
        yield database
        database.close()

    def test_where_and_order_by(self, events_db):
        rows = events_db.events.where({"on": {"$gte": date(2024, 4, 1)}}).order_by("order").all()
        assert [e["order"] for e in rows] == [1, 3]

    def test_callback_where(self, events_db):
        rows = events_db.events.where(lambda c, f, op: op.lt(c.order, 3)).order_by("on").all()
        assert [e["on"] for e in rows] == [date(2024, 3, 1), date(2024, 5, 1)]

    def test_select_and_aggregates(self, events_db):
        assert events_db.events.select("order").raw().order_by("order").all() == [
            {"order": 1},
            {"order": 2},
            {"order": 3},
        ]
        assert events_db.events.sum("order") == 6

    def test_group_by_and_having(self, events_db):
        counts = events_db.events.group_by("group").count_grouped()
        assert sorted((r["group"], r["count"]) for r in counts) == [("a", 1), ("b", 2)]
        busy = events_db.events.select("group").group_by("group").having({"COUNT(*)": {"$gt": 1}}).raw().all()
        assert busy == [{"group": "b"}]

    def test_bulk_writes(self, events_db):
        assert events_db.events.update_where({"group": "a"}, {"order": 9}) == 1
        assert events_db.events.delete_where({"order": {"$gte": 3}}) == 2
        assert events_db.events.count() == 1


class TestRoundTrip:
    def test_date_datetime_bytes(self):
        with Database(":memory:", {"events": Event}) as db:
            stored = db.events.insert(
                {"on": date(2024, 4, 1), "at": datetime(2024, 4, 1, 12, 30, 15), "payload": b"\x00\xffdata"}
            )
            loaded = db.events.get(stored.id)
            assert loaded.to_dict() == {
                "id": stored.id,
                "on": date(2024, 4, 1),
                "order": 0,
                "group": None,
                "at": datetime(2024, 4, 1, 12, 30, 15),
                "payload": b"\x00\xffdata",
            }
