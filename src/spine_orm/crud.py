"""Per-table CRUD repository.

:class:`TableRepository` is what ``db.<table>`` returns. It pairs the
table's descriptor with the owning database so that every write goes
through validation, lifecycle hooks, managed timestamps, soft deletes
and revision bookkeeping, and every read comes back as hydrated
:class:`~spine_orm.entity.Entity` records.

Architecture::

    ┌────────────────────────────────────────────────────────────────────┐
    │                       TableRepository                              │
    │                                                                    │
    │   descriptor: TableDescriptor   ← schema.describe_model            │
    │   db: Database                  ← rows / one / write / hydrate     │
    │   hooks: TableHooks                                                │
    │                                                                    │
    │   get(id)                 → Entity | None                          │
    │   get_one(conditions)     → Entity | None                          │
    │   find_many(conditions)   → list[Entity]                           │
    │   insert(data)            → Entity                                 │
    │   insert_many(rows)       → list[Entity]   (one transaction)       │
    │   update(id, changes)     → Entity | None                          │
    │   update_where(cond, chg) → int                                    │
    │   upsert(data, cond)      → Entity                                 │
    │   delete(id)              → bool                                   │
    │   delete_where(cond)      → int                                    │
    │   select()/where()/…      → QueryBuilder                           │
    └────────────────────────────────────────────────────────────────────┘

Usage:
    >>> alice = db.authors.insert({"name": "Alice"})
    >>> db.books.insert({"title": "Dune", "author_id": alice.id})
    >>> db.books.update_where({"author_id": alice.id}, {"year": 1965})
    1

Tags:
    repository, crud, hooks, timestamps, soft-deletes, spine-orm
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, fields
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from spine_orm.builder import QueryBuilder
from spine_orm.dialect import SQLITE
from spine_orm.entity import Entity
from spine_orm.errors import ConfigurationError, QueryCompilationError
from spine_orm.iqo import IQO, compile_where, parse_conditions
from spine_orm.schema import CREATED_AT, DELETED_AT, IDENTITY, UPDATED_AT, TableDescriptor

if TYPE_CHECKING:
    from spine_orm.database import Database


@dataclass
class TableHooks:
    """
    Lifecycle hooks of one table.

    ``before_insert(data)`` and ``before_update(data, id)`` may return a
    replacement payload; ``before_delete(id)`` returning ``False`` cancels
    the delete.
    """

    before_insert: Callable[[dict[str, Any]], dict[str, Any] | None] | None = None
    after_insert: Callable[[Entity], Any] | None = None
    before_update: Callable[[dict[str, Any], int], dict[str, Any] | None] | None = None
    after_update: Callable[[Entity], Any] | None = None
    before_delete: Callable[[int], bool | None] | None = None
    after_delete: Callable[[int], Any] | None = None

    @classmethod
    def from_mapping(cls, table: str, hooks: TableHooks | Mapping[str, Callable[..., Any]] | None) -> TableHooks:
        if hooks is None:
            return cls()
        if isinstance(hooks, TableHooks):
            return hooks
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(hooks) - known)
        if unknown:
            raise ConfigurationError(f"Unknown hook(s) for '{table}': {', '.join(unknown)}").with_context(
                table=table
            )
        return cls(**dict(hooks))


def _now() -> datetime:
    return datetime.now(UTC)


class TableRepository:
    """CRUD and query entry point for one table."""

    def __init__(self, descriptor: TableDescriptor, db: Database, hooks: TableHooks | None = None):
        self.descriptor = descriptor
        self.table = descriptor.name
        self.db = db
        self.hooks = hooks or TableHooks()

    @property
    def _soft_deletes(self) -> bool:
        return self.db.settings.soft_deletes and self.descriptor.has_column(DELETED_AT)

    @property
    def _timestamps(self) -> bool:
        return self.db.settings.timestamps and self.descriptor.has_column(UPDATED_AT)

    def _where(self, conditions: Mapping[str, Any], *, live_only: bool) -> tuple[str, list[Any]]:
        resolved = self.query()._resolve_relations(dict(conditions))
        wheres, ors = parse_conditions(resolved, table=self.table)
        iqo = IQO(wheres=wheres, where_ors=ors)
        params: list[Any] = []
        clause = compile_where(self.table, iqo, params)
        if live_only and self._soft_deletes:
            live = f"{SQLITE.quote(DELETED_AT)} IS NULL"
            clause = f"{clause} AND {live}" if clause else live
        return clause, params

    # -- Queries -------------------------------------------------------------

    def query(self) -> QueryBuilder:
        """A fresh builder over this table."""
        return self.db.query_builder(self.table)

    def select(self, *columns: str) -> QueryBuilder:
        return self.query().select(*columns)

    def where(self, conditions: Any = None, /, **kwargs: Any) -> QueryBuilder:
        return self.query().where(conditions, **kwargs)

    def order_by(self, field: str, direction: str = "asc") -> QueryBuilder:
        return self.query().order_by(field, direction)

    def join(self, target: str, columns: Sequence[str] | None = None) -> QueryBuilder:
        return self.query().join(target, columns)

    def include(self, *relations: str) -> QueryBuilder:
        return self.query().include(*relations)

    with_ = include

    def with_trashed(self) -> QueryBuilder:
        return self.query().with_trashed()

    def only_trashed(self) -> QueryBuilder:
        return self.query().only_trashed()

    def all(self) -> list[Entity]:
        return self.query().all()

    def count(self) -> int:
        return self.query().count()

    def subscribe(self, callback: Callable[[list[Any]], Any], **kwargs: Any):
        return self.query().subscribe(callback, **kwargs)

    def each(self, callback: Callable[[Any], Any], **kwargs: Any):
        return self.query().each(callback, **kwargs)

    def on(self, event: str, callback: Callable[[Any], Any]) -> Callable[[], None]:
        """Listen for row-level ``insert``/``update``/``delete`` on this table."""
        return self.db.changes.on(self.table, event, callback)

    # -- Reads ---------------------------------------------------------------

    def get(self, id: int) -> Entity | None:
        row = self.db.one(f"SELECT * FROM {SQLITE.quote(self.table)} WHERE id = ?", [id])
        return self.db.hydrate(self.table, row) if row else None

    def get_one(self, conditions: Mapping[str, Any]) -> Entity | None:
        clause, params = self._where(conditions, live_only=True)
        sql = f"SELECT * FROM {SQLITE.quote(self.table)}"
        if clause:
            sql += f" WHERE {clause}"
        row = self.db.one(sql + " LIMIT 1", params)
        return self.db.hydrate(self.table, row) if row else None

    def find_many(self, conditions: Mapping[str, Any] | None = None) -> list[Entity]:
        clause, params = self._where(conditions or {}, live_only=True)
        sql = f"SELECT * FROM {SQLITE.quote(self.table)}"
        if clause:
            sql += f" WHERE {clause}"
        return [self.db.hydrate(self.table, row) for row in self.db.rows(sql, params)]

    # -- Inserts -------------------------------------------------------------

    def _insert_row(self, data: Mapping[str, Any]) -> int:
        payload = dict(data)
        if self.hooks.before_insert is not None:
            replaced = self.hooks.before_insert(payload)
            if replaced is not None:
                payload = dict(replaced)
        payload.pop(IDENTITY, None)
        values = self.descriptor.validate_insert(payload)
        if self._timestamps:
            now = _now()
            if self.descriptor.has_column(CREATED_AT):
                values[CREATED_AT] = now
            values[UPDATED_AT] = now
        stored = self.descriptor.to_storage(values)
        q = SQLITE.quote
        if stored:
            columns = ", ".join(q(c) for c in stored)
            sql = (
                f"INSERT INTO {q(self.table)} ({columns}) "
                f"VALUES ({SQLITE.placeholders(len(stored))})"
            )
        else:
            sql = f"INSERT INTO {q(self.table)} DEFAULT VALUES"
        return self.db.insert_row(self.table, sql, list(stored.values()))

    def _after_insert(self, entity: Entity) -> Entity:
        if self.hooks.after_insert is not None:
            self.hooks.after_insert(entity)
        return entity

    def insert(self, data: Mapping[str, Any] | None = None, /, **kwargs: Any) -> Entity:
        """Validate and insert one row; returns the stored entity."""
        row_id = self._insert_row({**(data or {}), **kwargs})
        entity = self.get(row_id)
        assert entity is not None
        return self._after_insert(entity)

    def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> list[Entity]:
        """Insert ``rows`` inside one transaction; any failure inserts none."""
        if not rows:
            return []
        with self.db.adapter.transaction(join=True):
            ids = [self._insert_row(row) for row in rows]
        entities = [e for e in (self.get(i) for i in ids) if e is not None]
        return [self._after_insert(e) for e in entities]

    # -- Updates -------------------------------------------------------------

    def _changes(self, changes: Mapping[str, Any]) -> dict[str, Any]:
        values = self.descriptor.validate_partial(dict(changes))
        values.pop(IDENTITY, None)
        if values and self._timestamps:
            values[UPDATED_AT] = _now()
        return self.descriptor.to_storage(values)

    def update(self, id: int, changes: Mapping[str, Any] | None = None, /, **kwargs: Any) -> Entity | None:
        """Apply a partial update to row ``id``; returns the refreshed entity."""
        payload = {**(changes or {}), **kwargs}
        if self.hooks.before_update is not None:
            replaced = self.hooks.before_update(payload, id)
            if replaced is not None:
                payload = dict(replaced)
        stored = self._changes(payload)
        if not stored:
            return self.get(id)
        assignments = ", ".join(f"{SQLITE.quote(k)} = ?" for k in stored)
        self.db.write(
            self.table,
            f"UPDATE {SQLITE.quote(self.table)} SET {assignments} WHERE id = ?",
            [*stored.values(), id],
        )
        updated = self.get(id)
        if updated is not None and self.hooks.after_update is not None:
            self.hooks.after_update(updated)
        return updated

    def update_where(self, conditions: Mapping[str, Any], changes: Mapping[str, Any]) -> int:
        """Update every row matching ``conditions``; returns the affected count."""
        stored = self._changes(changes)
        if not stored:
            return 0
        clause, params = self._where(conditions, live_only=False)
        if not clause:
            raise QueryCompilationError("update_where() requires at least one condition").with_context(
                table=self.table
            )
        assignments = ", ".join(f"{SQLITE.quote(k)} = ?" for k in stored)
        return self.db.write(
            self.table,
            f"UPDATE {SQLITE.quote(self.table)} SET {assignments} WHERE {clause}",
            [*stored.values(), *params],
        )

    def upsert(self, data: Mapping[str, Any], conditions: Mapping[str, Any] | None = None) -> Entity:
        """
        Update the row identified by ``data["id"]`` or matching ``conditions``,
        else insert ``conditions`` merged with ``data``.
        """
        payload = dict(data)
        row_id = payload.pop(IDENTITY, None)
        if isinstance(row_id, int) and not isinstance(row_id, bool):
            existing = self.get(row_id)
        elif conditions:
            existing = self.get_one(conditions)
        else:
            existing = None
        if existing is not None:
            updated = self.update(existing[IDENTITY], payload)
            assert updated is not None
            return updated
        return self.insert({**(conditions or {}), **payload})

    def upsert_many(
        self, rows: Sequence[Mapping[str, Any]], conditions: Mapping[str, Any] | None = None
    ) -> list[Entity]:
        if not rows:
            return []
        with self.db.adapter.transaction(join=True):
            return [self.upsert(row, conditions) for row in rows]

    # -- Deletes -------------------------------------------------------------

    def delete(self, id: int) -> bool:
        """Delete row ``id`` (mark it, with soft deletes). ``False`` when cancelled or missing."""
        if self.hooks.before_delete is not None and self.hooks.before_delete(id) is False:
            return False
        q = SQLITE.quote
        if self._soft_deletes:
            affected = self.db.write(
                self.table,
                f"UPDATE {q(self.table)} SET {q(DELETED_AT)} = ? WHERE id = ? AND {q(DELETED_AT)} IS NULL",
                [_now().isoformat(), id],
            )
        else:
            affected = self.db.write(self.table, f"DELETE FROM {q(self.table)} WHERE id = ?", [id])
        if affected and self.hooks.after_delete is not None:
            self.hooks.after_delete(id)
        return affected > 0

    def delete_where(self, conditions: Mapping[str, Any]) -> int:
        """Delete every row matching ``conditions``; returns the affected count."""
        clause, params = self._where(conditions, live_only=False)
        if not clause:
            raise QueryCompilationError("delete_where() requires at least one condition").with_context(
                table=self.table
            )
        q = SQLITE.quote
        if self._soft_deletes:
            return self.db.write(
                self.table,
                f"UPDATE {q(self.table)} SET {q(DELETED_AT)} = ? WHERE {clause} AND {q(DELETED_AT)} IS NULL",
                [_now().isoformat(), *params],
            )
        return self.db.write(self.table, f"DELETE FROM {q(self.table)} WHERE {clause}", params)

    def restore(self, id: int) -> Entity | None:
        """Clear ``deleted_at`` on a soft-deleted row."""
        if not self._soft_deletes:
            raise ConfigurationError(f"'{self.table}' does not use soft deletes").with_context(table=self.table)
        q = SQLITE.quote
        self.db.write(self.table, f"UPDATE {q(self.table)} SET {q(DELETED_AT)} = NULL WHERE id = ?", [id])
        return self.get(id)

    def __repr__(self) -> str:
        return f"<TableRepository {self.table}>"


__all__ = ["TableHooks", "TableRepository"]
