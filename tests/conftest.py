"""
Shared pytest fixtures for spine-orm tests.

This module provides:
- ``db`` / ``seeded_db`` fixtures backed by in-memory SQLite
- ``wait_for`` polling helper for subscription timing
- Settings cache isolation

Usage:
    Fixtures are auto-discovered by pytest. Request them as arguments:

    def test_insert(db):
        db.users.insert({"name": "Alice"})
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator

import pytest

from models import POLL, SCHEMAS
from spine_orm import Database
from spine_orm.settings import OrmSettings, clear_settings_cache


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep ``SPINE_ORM_*`` env vars and the settings cache out of tests."""
    for name in OrmSettings.model_fields:
        monkeypatch.delenv(f"SPINE_ORM_{name.upper()}", raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def db() -> Iterator[Database]:
    """Empty in-memory database with authors, books and users."""
    database = Database(":memory:", SCHEMAS, poll_interval=POLL)
    yield database
    database.close()


@pytest.fixture
def seeded_db(db: Database) -> Database:
    """Two authors with books plus three users."""
    alice = db.authors.insert({"name": "Alice", "country": "UK"})
    bob = db.authors.insert({"name": "Bob", "country": "US"})
    db.books.insert({"title": "A1", "year": 2001, "author_id": alice.id})
    db.books.insert({"title": "A2", "year": 2003, "author_id": alice.id})
    db.books.insert({"title": "B1", "year": 2010, "author_id": bob.id})
    db.books.insert({"title": "Orphan"})
    db.users.insert({"name": "Alice", "score": 9})
    db.users.insert({"name": "Bob", "score": 5})
    db.users.insert({"name": "Carol", "score": 7, "active": False})
    return db


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    """Poll ``predicate`` until it is true or ``timeout`` seconds pass."""

    def _wait(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait
