"""
Relationship navigation: lazy accessors and batched eager loading.

Lazy navigation runs one query per accessor call. Eager loading
(``include("books")``) runs exactly one query per requested relation for
the whole result set and attaches the grouped rows to each parent, so N
parents cost one query instead of N.

Both paths hydrate rows through the same function and filter soft-deleted
rows the same way, which keeps ``author.books()`` and
``authors.include("books")`` interchangeable.

Architecture:
    ::

        authors (ids 1, 2, 3) ──include("books")──►
            SELECT * FROM "books" WHERE "author_id" IN (?, ?, ?) ORDER BY id ASC
                 │ group by author_id
                 ▼
            author1["books"] = [...], author2["books"] = [], author3["books"] = [...]

Tags:
    relationships, eager-loading, n-plus-one, navigation, spine-orm
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from spine_orm.dialect import SQLITE
from spine_orm.entity import Entity
from spine_orm.errors import QueryCompilationError
from spine_orm.protocols import ExecutionContext
from spine_orm.relations import Relationship, RelationKind
from spine_orm.schema import DELETED_AT, TableDescriptor

Hydrator = Callable[[str, dict[str, Any]], Entity]


class Navigator:
    """Loads related entities for lazy accessors and ``include()``."""

    def __init__(
        self,
        context: ExecutionContext,
        descriptors: Mapping[str, TableDescriptor],
        hydrate: Hydrator,
    ):
        self._context = context
        self._descriptors = descriptors
        self._hydrate = hydrate

    def _select(self, table: str, column: str, values: Sequence[Any]) -> list[dict[str, Any]]:
        q = SQLITE.quote
        where = f"{q(column)} IN ({SQLITE.placeholders(len(values))})"
        if self._descriptors[table].has_column(DELETED_AT):
            where += f" AND {q(DELETED_AT)} IS NULL"
        sql = f"SELECT * FROM {q(table)} WHERE {where} ORDER BY id ASC"
        return self._context.rows(sql, list(values))

    # -- Lazy ----------------------------------------------------------------

    def load_parent(self, edge: Relationship, entity: Entity) -> Entity | None:
        fk = entity.get(edge.foreign_key)
        if fk is None:
            return None
        rows = self._select(edge.to_table, "id", [fk])
        return self._hydrate(edge.to_table, rows[0]) if rows else None

    def load_children(self, edge: Relationship, entity: Entity) -> list[Entity]:
        rows = self._select(edge.to_table, edge.mapped_by, [entity["id"]])
        return [self._hydrate(edge.to_table, row) for row in rows]

    # -- Eager ---------------------------------------------------------------

    def resolve(self, table: str, relation: str) -> Relationship:
        edge = self._context.relationships.find(table, relation)
        if edge is None:
            raise QueryCompilationError(
                f"No relationship '{relation}' on '{table}'"
            ).with_context(table=table, relation=relation)
        return edge

    def eager_load(self, table: str, entities: list[Entity], relations: Sequence[str]) -> None:
        """Attach every relation in ``relations`` to every entity, one query each."""
        edges = [self.resolve(table, name) for name in relations]
        for edge in edges:
            if edge.kind is RelationKind.ONE_TO_MANY:
                self._load_many(edge, entities)
            else:
                self._load_one(edge, entities)

    def _load_many(self, edge: Relationship, parents: list[Entity]) -> None:
        ids = list(dict.fromkeys(p["id"] for p in parents))
        groups: dict[Any, list[Entity]] = defaultdict(list)
        if ids:
            for row in self._select(edge.to_table, edge.mapped_by, ids):
                groups[row[edge.mapped_by]].append(self._hydrate(edge.to_table, row))
        for parent in parents:
            parent.attach(edge.field_name, list(groups.get(parent["id"], [])))

    def _load_one(self, edge: Relationship, children: list[Entity]) -> None:
        fks = list(dict.fromkeys(c.get(edge.foreign_key) for c in children if c.get(edge.foreign_key) is not None))
        by_id: dict[Any, Entity] = {}
        if fks:
            for row in self._select(edge.to_table, "id", fks):
                by_id[row["id"]] = self._hydrate(edge.to_table, row)
        for child in children:
            child.attach(edge.field_name, by_id.get(child.get(edge.foreign_key)))


__all__ = ["Hydrator", "Navigator"]
