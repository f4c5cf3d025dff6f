"""SQLite database adapter.

Owns the single ``sqlite3`` connection of a :class:`~spine_orm.database.Database`.
The connection runs in autocommit mode (``isolation_level=None``) and
transactions are explicit ``BEGIN``/``COMMIT``/``ROLLBACK`` so the adapter
always knows whether one is open. Every statement goes through one
re-entrant lock: subscription threads and the caller never interleave on
the connection, and a thread holding a transaction blocks the others until
it commits.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from spine_orm.errors import ConfigurationError, IntegrityError, StoreError
from spine_orm.logging import get_logger

logger = get_logger(__name__)


class SQLiteAdapter:
    """
    SQLite database adapter.

    Uses the built-in sqlite3 module with ``check_same_thread=False`` so
    polling threads can share the connection under the adapter lock.
    """

    def __init__(
        self,
        path: str = ":memory:",
        *,
        readonly: bool = False,
        timeout: float = 5.0,
        journal_mode: str = "WAL",
        foreign_keys: bool = True,
        debug: bool = False,
    ):
        self.path = path
        self._readonly = readonly
        self._timeout = timeout
        self._journal_mode = journal_mode
        self._foreign_keys = foreign_keys
        self._debug = debug
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._tx_owner: int | None = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    @property
    def in_transaction(self) -> bool:
        return self._tx_owner is not None

    def connect(self) -> None:
        """Connect to the SQLite database."""
        uri = self.path.startswith("file:") or "?" in self.path
        try:
            self._conn = sqlite3.connect(
                self.path,
                timeout=self._timeout,
                check_same_thread=False,
                isolation_level=None,
                uri=uri,
            )
            self._conn.row_factory = sqlite3.Row
            if self._foreign_keys:
                self._conn.execute("PRAGMA foreign_keys = ON")
            if self.path != ":memory:" and not self._readonly:
                self._conn.execute(f"PRAGMA journal_mode = {self._journal_mode}")
            if self._readonly:
                self._conn.execute("PRAGMA query_only = ON")
        except sqlite3.Error as e:
            raise StoreError(f"Failed to connect to SQLite: {e}", cause=e) from e

    def disconnect(self) -> None:
        """Close the SQLite connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        assert self._conn is not None
        return self._conn

    # -- Statements ----------------------------------------------------------

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Run one statement; the returned cursor carries ``rowcount``/``lastrowid``."""
        if self._debug:
            logger.debug("sql", sql=sql, params=list(params))
        with self._lock:
            try:
                return self.get_connection().execute(sql, tuple(params))
            except sqlite3.IntegrityError as e:
                raise IntegrityError(str(e), cause=e).with_context(sql=sql) from e
            except sqlite3.Error as e:
                raise StoreError(str(e), cause=e).with_context(sql=sql) from e

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Execute query and return results as dicts."""
        with self._lock:
            cursor = self.execute(sql, params)
            try:
                return [dict(row) for row in cursor.fetchall()]
            except sqlite3.Error as e:
                raise StoreError(str(e), cause=e).with_context(sql=sql) from e

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        """First column of the first row, or ``None``."""
        with self._lock:
            row = self.execute(sql, params).fetchone()
        return row[0] if row is not None else None

    # -- Transactions --------------------------------------------------------

    @contextmanager
    def transaction(self, *, join: bool = False) -> Iterator[sqlite3.Connection]:
        """
        ``BEGIN`` / ``COMMIT``, rolling back and re-raising on any exception.

        A second ``transaction()`` on the thread that already holds one raises
        :class:`ConfigurationError` unless ``join=True``, in which case the
        block simply runs inside the outer transaction.
        """
        me = threading.get_ident()
        with self._lock:
            if self._tx_owner == me:
                if not join:
                    raise ConfigurationError("Nested transactions are not supported")
                yield self.get_connection()
                return

            self.execute("BEGIN")
            self._tx_owner = me
            try:
                yield self.get_connection()
            except BaseException:
                self._tx_owner = None
                if self.get_connection().in_transaction:
                    self.execute("ROLLBACK")
                raise
            self._tx_owner = None
            try:
                self.execute("COMMIT")
            except StoreError:
                if self.get_connection().in_transaction:
                    self.execute("ROLLBACK")
                raise

    def __enter__(self) -> SQLiteAdapter:
        self.connect()
        return self

    def __exit__(self, *args: Any) -> None:
        self.disconnect()


__all__ = ["SQLiteAdapter"]
