"""
Proxy-driven multi-table queries.

``Database.query(callback)`` hands the callback a :class:`QueryContext`.
Every attribute access by table name allocates a fresh alias (``t1``,
``t2``, …) and returns that table's column proxy, so one table accessed
twice yields two independent aliases and self-joins need no extra syntax::

    def books_by(c):
        b, a = c.books, c.authors
        return ProxyQuery(
            select={"title": b.title, "author": a.name},
            join=[(b.author, a.id)],
            where={a.name: "Tolstoy"},
            order_by={b.title: "asc"},
        )

    rows = db.query(books_by)

Column proxies return :class:`ColumnRef` values. ``str(ref)`` is the
canonical ``"alias"."column"`` form from :func:`~spine_orm.dialect.qualify`;
both the ref and that string work as ``where``/``order_by`` keys. Accessing
a belongs-to relationship field (``b.author``) resolves to its foreign key
column.

Compilation rules:
    - the first table accessed is the primary ``FROM "table" "t1"``
    - each join pair introduces the side that is not yet joined
    - an alias that is referenced but never joined fails with
      "unknown table alias"
    - plain field names in ``where``/``order_by``/``group_by`` are
      qualified against the primary alias

Allocation state lives in one :class:`AliasAllocator` per compilation and
is discarded afterwards.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from spine_orm.dialect import SQLITE, check_identifier, qualify
from spine_orm.errors import QueryCompilationError
from spine_orm.iqo import parse_field_conditions, render_condition
from spine_orm.relations import RelationKind, RelationshipGraph
from spine_orm.schema import TableDescriptor, storage_value

_CANONICAL = re.compile(r'^"((?:[^"]|"")+)"\."((?:[^"]|"")+)"$')


@dataclass(frozen=True)
class ColumnRef:
    """A column of one aliased table occurrence."""

    table: str
    column: str
    alias: str

    @property
    def qualified(self) -> str:
        return qualify(self.alias, self.column)

    def __str__(self) -> str:
        return self.qualified


class AliasAllocator:
    """Hands out ``t1``, ``t2``, … and remembers which table each belongs to."""

    def __init__(self, prefix: str = "t"):
        self._prefix = prefix
        self._count = 0
        self.tables: dict[str, str] = {}

    def allocate(self, table: str) -> str:
        self._count += 1
        alias = f"{self._prefix}{self._count}"
        self.tables[alias] = table
        return alias

    @property
    def primary(self) -> str | None:
        return next(iter(self.tables), None)


class TableColumns:
    """Column proxy for one alias."""

    def __init__(self, descriptor: TableDescriptor, alias: str, graph: RelationshipGraph):
        self._descriptor = descriptor
        self._alias = alias
        self._graph = graph

    def __getattr__(self, name: str) -> ColumnRef:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name: str) -> ColumnRef:
        table = self._descriptor.name
        edge = self._graph.find(table, name)
        if edge is not None and edge.kind is RelationKind.BELONGS_TO:
            name = edge.foreign_key
        return ColumnRef(table, check_identifier(name, table=table), self._alias)

    def __repr__(self) -> str:
        return f"TableColumns({self._descriptor.name!r}, alias={self._alias!r})"


class QueryContext:
    """Root proxy passed to ``Database.query`` callbacks."""

    def __init__(
        self,
        descriptors: Mapping[str, TableDescriptor],
        graph: RelationshipGraph,
        allocator: AliasAllocator,
    ):
        self._descriptors = descriptors
        self._graph = graph
        self._allocator = allocator

    def __getattr__(self, table: str) -> TableColumns:
        if table.startswith("_"):
            raise AttributeError(table)
        return self[table]

    def __getitem__(self, table: str) -> TableColumns:
        descriptor = self._descriptors.get(table)
        if descriptor is None:
            raise QueryCompilationError(f"Unknown table '{table}'").with_context(table=table)
        return TableColumns(descriptor, self._allocator.allocate(table), self._graph)


@dataclass
class ProxyQuery:
    """Structured multi-table query returned by a ``Database.query`` callback."""

    select: Mapping[str, Any] | Sequence[ColumnRef] = field(default_factory=dict)
    join: Sequence[Any] = ()
    where: Mapping[Any, Any] = field(default_factory=dict)
    order_by: Mapping[Any, str] = field(default_factory=dict)
    group_by: Sequence[Any] = ()
    limit: int | None = None
    offset: int | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ProxyQuery:
        return cls(
            select=data.get("select", {}),
            join=data.get("join", ()),
            where=data.get("where", {}),
            order_by=data.get("order_by", data.get("orderBy", {})),
            group_by=data.get("group_by", data.get("groupBy", ())),
            limit=data.get("limit"),
            offset=data.get("offset"),
        )

    def join_pairs(self) -> list[tuple[Any, Any]]:
        if not self.join:
            return []
        if len(self.join) == 2 and isinstance(self.join[0], ColumnRef):
            return [(self.join[0], self.join[1])]
        pairs = []
        for pair in self.join:
            if len(pair) != 2:
                raise QueryCompilationError("Each join must be a [left, right] pair")
            pairs.append((pair[0], pair[1]))
        return pairs


class _Compiler:
    def __init__(self, allocator: AliasAllocator, graph: RelationshipGraph):
        self.aliases = allocator.tables
        self.primary = allocator.primary
        self.graph = graph
        self.params: list[Any] = []

    def column(self, key: Any) -> str:
        """Resolve a where/order/group key to a qualified column."""
        if isinstance(key, ColumnRef):
            self._check_alias(key.alias)
            return key.qualified
        if not isinstance(key, str):
            raise QueryCompilationError(f"Invalid column key {key!r}")
        match = _CANONICAL.match(key)
        if match:
            alias = match.group(1).replace('""', '"')
            self._check_alias(alias)
            return key
        table = self.aliases[self.primary]
        edge = self.graph.find(table, key)
        if edge is not None and edge.kind is RelationKind.BELONGS_TO:
            key = edge.foreign_key
        return qualify(self.primary, check_identifier(key, table=table))

    def _check_alias(self, alias: str) -> None:
        if alias not in self.aliases:
            raise QueryCompilationError(f"Query references unknown table alias '{alias}'")

    def select_list(self, select: Any) -> str:
        if not select:
            return f"{SQLITE.quote(self.primary)}.*"
        if isinstance(select, Mapping):
            entries = list(select.items())
        else:
            entries = [(ref.column, ref) for ref in select]
        parts = []
        for name, value in entries:
            if isinstance(value, ColumnRef):
                self._check_alias(value.alias)
                rendered = value.qualified
                if name != value.column:
                    rendered += f" AS {SQLITE.quote(name)}"
            else:
                self.params.append(storage_value(value))
                rendered = f"? AS {SQLITE.quote(name)}"
            parts.append(rendered)
        return ", ".join(parts)

    def joins(self, pairs: list[tuple[Any, Any]]) -> str:
        joined = {self.primary}
        clauses = []
        for left, right in pairs:
            for side in (left, right):
                if not isinstance(side, ColumnRef) or side.alias not in self.aliases:
                    raise QueryCompilationError("Join references unknown table alias")
            if right.alias not in joined and left.alias in joined:
                new = right
            elif left.alias not in joined and right.alias in joined:
                new = left
            elif left.alias in joined and right.alias in joined:
                raise QueryCompilationError(
                    f"Join {left} = {right} does not introduce a new table"
                )
            else:
                raise QueryCompilationError(
                    f"Join {left} = {right} must reference an already joined table"
                )
            joined.add(new.alias)
            clauses.append(
                f" JOIN {SQLITE.quote(new.table)} {SQLITE.quote(new.alias)} ON {left} = {right}"
            )
        for alias, table in self.aliases.items():
            if alias not in joined:
                raise QueryCompilationError(
                    f"Table '{table}' as '{alias}' is not joined: unknown table alias"
                ).with_context(table=table)
        return "".join(clauses)

    def where(self, conditions: Mapping[Any, Any]) -> str:
        clauses = []
        for key, value in conditions.items():
            column = self.column(key)
            if isinstance(value, ColumnRef):
                self._check_alias(value.alias)
                clauses.append(f"{column} = {value.qualified}")
                continue
            for cond in parse_field_conditions(str(key), value):
                rendered = render_condition(column, cond, self.params)
                if rendered is not None:
                    clauses.append(rendered)
        return " AND ".join(clauses)

    def order_by(self, order: Mapping[Any, str]) -> str:
        parts = []
        for key, direction in order.items():
            direction = str(direction).upper()
            if direction not in ("ASC", "DESC"):
                raise QueryCompilationError(f"Invalid order direction '{direction}'")
            parts.append(f"{self.column(key)} {direction}")
        return ", ".join(parts)


def compile_proxy_query(
    callback: Callable[[QueryContext], Any],
    descriptors: Mapping[str, TableDescriptor],
    graph: RelationshipGraph,
) -> tuple[str, list[Any]]:
    """Run ``callback`` against a fresh context and compile what it returns."""
    allocator = AliasAllocator()
    result = callback(QueryContext(descriptors, graph, allocator))
    if isinstance(result, Mapping):
        result = ProxyQuery.from_mapping(result)
    if not isinstance(result, ProxyQuery):
        raise QueryCompilationError(
            f"query() callback must return a ProxyQuery or mapping, got {type(result).__name__}"
        )
    if allocator.primary is None:
        raise QueryCompilationError("No tables referenced in query.")

    compiler = _Compiler(allocator, graph)
    primary_table = allocator.tables[compiler.primary]

    select_list = compiler.select_list(result.select)
    sql = (
        f"SELECT {select_list} FROM {SQLITE.quote(primary_table)} {SQLITE.quote(compiler.primary)}"
    )
    sql += compiler.joins(result.join_pairs())

    where = compiler.where(result.where)
    if where:
        sql += f" WHERE {where}"
    if result.group_by:
        sql += " GROUP BY " + ", ".join(compiler.column(key) for key in result.group_by)
    if result.order_by:
        sql += f" ORDER BY {compiler.order_by(result.order_by)}"
    if result.limit is not None:
        sql += f" LIMIT {int(result.limit)}"
    if result.offset is not None:
        if result.limit is None:
            sql += " LIMIT -1"
        sql += f" OFFSET {int(result.offset)}"
    return sql, compiler.params


__all__ = [
    "AliasAllocator",
    "ColumnRef",
    "ProxyQuery",
    "QueryContext",
    "TableColumns",
    "compile_proxy_query",
]
