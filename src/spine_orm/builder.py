"""
Fluent single-table query builder.

``db.users.select("name").where({"score": {"$gt": 6}}).order_by("name").all()``

Each chained call mutates the builder's private :class:`~spine_orm.iqo.IQO`;
terminal calls compile a copy, so a builder may be executed repeatedly
(and is how ``subscribe``/``each`` re-run their query every tick).

Manifesto:
    - **Compile before execute:** every error in the query shape is a
      ``QueryCompilationError`` raised before SQL reaches the store
    - **Two where styles:** object conditions and predicate callbacks; once
      a callback is involved all conditions are AND-ed into one tree
    - **Entities by default:** rows come back hydrated unless ``raw()`` or a
      join is involved
    - **Reactive:** ``subscribe`` (snapshots) and ``each`` (new rows) poll
      the table revision

Architecture:
    ::

        QueryBuilder ──(select/where/join/order_by/…)──► IQO
             │
             ├── all()/get()/count()/paginate()  ─► compile_iqo ─► ExecutionContext.rows
             │                                                        │
             │                               hydrate + Navigator.eager_load
             │
             └── subscribe()/each() ─► Snapshot/RowStream Subscription
                                       (ExecutionContext.revision per tick)

Examples:
    >>> users.where({"$or": [{"name": "Alice"}, {"score": {"$lt": 6}}]}).all()
    >>> users.where(lambda c, f, op: op.eq(f.lower(c.name), "alice")).get()
    >>> authors.include("books").order_by("name").all()
    >>> unsubscribe = users.where({"active": True}).subscribe(print, interval=0.25)

Tags:
    query-builder, fluent-api, iqo, subscriptions, spine-orm

Doc-Types:
    - API Reference
    - Usage Guide
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from spine_orm.changes import RowStreamSubscription, SnapshotSubscription, Subscription, SubscriptionRegistry
from spine_orm.dialect import SQLITE, check_identifier
from spine_orm.entity import Entity
from spine_orm.errors import QueryCompilationError
from spine_orm.expressions import (
    ColumnNode,
    LiteralNode,
    Node,
    OperatorNode,
    Subquery,
    build_predicate,
)
from spine_orm.iqo import (
    IQO,
    Condition,
    Join,
    compile_iqo,
    compile_where,
    having_column,
    parse_conditions,
    parse_field_conditions,
    qualified_column,
    render_condition,
)
from spine_orm.navigation import Hydrator, Navigator
from spine_orm.protocols import ExecutionContext
from spine_orm.relations import RelationKind
from spine_orm.schema import DELETED_AT, IDENTITY, UPDATED_AT, TableDescriptor

_TRASHED_MODES = ("exclude", "include", "only")


@dataclass
class Page:
    """One page of results from :meth:`QueryBuilder.paginate`."""

    data: list[Any]
    total: int
    page: int
    per_page: int
    pages: int


def condition_to_node(cond: Condition) -> Node:
    """Express an object-style triple as an expression node."""
    column = ColumnNode(cond.field)
    if cond.operator in ("IN", "NOT IN"):
        values = cond.value if isinstance(cond.value, Subquery) else tuple(cond.value or ())
        return OperatorNode(cond.operator, (column, LiteralNode(values)))
    if cond.operator == "BETWEEN":
        low, high = cond.value
        return OperatorNode("BETWEEN", (column, LiteralNode(low), LiteralNode(high)))
    if cond.operator in ("IS NULL", "IS NOT NULL"):
        return OperatorNode(cond.operator, (column,))
    return OperatorNode(cond.operator, (column, LiteralNode(cond.value)))


def _and(*nodes: Node) -> Node:
    return nodes[0] if len(nodes) == 1 else OperatorNode("AND", nodes)


class QueryBuilder:
    """Chainable query over one table."""

    def __init__(
        self,
        descriptor: TableDescriptor,
        context: ExecutionContext,
        *,
        hydrate: Hydrator | None = None,
        navigator: Navigator | None = None,
        subscriptions: SubscriptionRegistry | None = None,
        poll_interval: float = 0.5,
        soft_deletes: bool = False,
    ):
        self._desc = descriptor
        self._table = descriptor.name
        self._ctx = context
        self._hydrate = hydrate
        self._navigator = navigator
        self._subscriptions = subscriptions
        self._poll_interval = poll_interval
        self._soft_deletes = soft_deletes and descriptor.has_column(DELETED_AT)
        self._trashed = "exclude" if self._soft_deletes else "include"
        self._iqo = IQO()

    @property
    def table(self) -> str:
        return self._table

    @property
    def iqo(self) -> IQO:
        return self._iqo

    def _clone(self) -> QueryBuilder:
        clone = QueryBuilder(
            self._desc,
            self._ctx,
            hydrate=self._hydrate,
            navigator=self._navigator,
            subscriptions=self._subscriptions,
            poll_interval=self._poll_interval,
            soft_deletes=self._soft_deletes,
        )
        clone._iqo = self._iqo.copy()
        clone._trashed = self._trashed
        return clone

    # -- Shape ---------------------------------------------------------------

    def select(self, *columns: str) -> QueryBuilder:
        self._iqo.selects.extend(check_identifier(c, table=self._table) for c in columns)
        return self

    def where(self, conditions: Mapping[str, Any] | Callable[..., Any] | None = None, /, **kwargs: Any) -> QueryBuilder:
        """
        Add conditions.

        ``conditions`` is either a mapping (``{"score": {"$gt": 6}}``,
        ``{"$or": [...]}``) or a predicate callback ``(c, f, op) -> node``.
        Keyword arguments are shorthand for equality conditions.
        """
        if callable(conditions):
            node = build_predicate(conditions)
            existing = self._object_nodes()
            if self._iqo.where_ast is not None:
                existing.insert(0, self._iqo.where_ast)
            self._iqo.where_ast = _and(*existing, node)
            self._iqo.wheres.clear()
            self._iqo.where_ors.clear()
            if kwargs:
                self.where(kwargs)
            return self

        merged = dict(conditions or {})
        merged.update(kwargs)
        wheres, ors = parse_conditions(self._resolve_relations(merged), table=self._table)
        if self._iqo.where_ast is not None:
            nodes = [condition_to_node(c) for c in wheres]
            nodes += [OperatorNode("OR", tuple(condition_to_node(c) for c in group)) for group in ors]
            if nodes:
                self._iqo.where_ast = _and(self._iqo.where_ast, *nodes)
        else:
            self._iqo.wheres.extend(wheres)
            self._iqo.where_ors.extend(ors)
        return self

    def _object_nodes(self) -> list[Node]:
        nodes: list[Node] = [condition_to_node(c) for c in self._iqo.wheres]
        nodes += [
            OperatorNode("OR", tuple(condition_to_node(c) for c in group))
            for group in self._iqo.where_ors
            if group
        ]
        return nodes

    def _resolve_relations(self, conditions: dict[str, Any]) -> dict[str, Any]:
        """``{"author": <Entity>}`` / ``{"author_id": <Entity>}`` → ``{"author_id": id}``."""
        resolved: dict[str, Any] = {}
        for key, value in conditions.items():
            edge = self._ctx.relationships.find(self._table, key)
            if edge is not None and edge.kind is RelationKind.BELONGS_TO:
                key = edge.foreign_key
            if isinstance(value, Entity):
                value = value[IDENTITY]
            resolved[key] = value
        return resolved

    def where_raw(self, sql: str, params: Sequence[Any] = ()) -> QueryBuilder:
        self._iqo.raw_wheres.append((sql, list(params)))
        return self

    def where_in(self, field: str, values: Sequence[Any] | QueryBuilder) -> QueryBuilder:
        return self._where_list(field, "$in", values)

    def where_not_in(self, field: str, values: Sequence[Any] | QueryBuilder) -> QueryBuilder:
        return self._where_list(field, "$notIn", values)

    def _where_list(self, field: str, op: str, values: Sequence[Any] | QueryBuilder) -> QueryBuilder:
        if isinstance(values, QueryBuilder):
            values = values.to_subquery()
        return self.where({field: {op: values}})

    def to_subquery(self) -> Subquery:
        """This query as ``IN`` right-hand side; selects ``id`` unless columns were chosen."""
        iqo = self._compiled_iqo()
        if not iqo.selects:
            iqo.selects = [IDENTITY]
        sql, params = compile_iqo(self._table, iqo)
        return Subquery(sql, tuple(params))

    def order_by(self, field: str, direction: str = "asc") -> QueryBuilder:
        direction = direction.upper()
        if direction not in ("ASC", "DESC"):
            raise QueryCompilationError(
                f"Invalid order direction '{direction}' for field '{field}'"
            ).with_context(table=self._table, field=field)
        self._iqo.order_by.append((check_identifier(field, table=self._table), direction))
        return self

    def limit(self, n: int) -> QueryBuilder:
        self._iqo.limit = self._non_negative("limit", n)
        return self

    def offset(self, n: int) -> QueryBuilder:
        self._iqo.offset = self._non_negative("offset", n)
        return self

    def _non_negative(self, name: str, n: int) -> int:
        if not isinstance(n, int) or isinstance(n, bool) or n < 0:
            raise QueryCompilationError(f"{name} must be a non-negative integer, got {n!r}").with_context(
                table=self._table
            )
        return n

    def join(self, target: str, columns: Sequence[str] | None = None) -> QueryBuilder:
        """Join ``target`` over the relationship between the two tables (either direction)."""
        resolved = self._ctx.relationships.join_columns(self._table, target)
        if resolved is None:
            raise QueryCompilationError(
                f"No relationship found between '{self._table}' and '{target}'"
            ).with_context(table=self._table, relation=target)
        from_col, to_col = resolved
        return self._add_join(target, from_col, to_col, columns)

    def join_on(
        self,
        target: str,
        foreign_key: str,
        columns: Sequence[str] | None = None,
        primary_key: str = IDENTITY,
    ) -> QueryBuilder:
        """Join ``target`` ON ``this.foreign_key = target.primary_key``."""
        return self._add_join(target, foreign_key, primary_key, columns)

    def _add_join(self, target: str, from_col: str, to_col: str, columns: Sequence[str] | None) -> QueryBuilder:
        for name in (target, from_col, to_col, *(columns or ())):
            check_identifier(name, table=self._table)
        self._iqo.joins.append(Join(target, from_col, to_col, list(columns or [])))
        self._iqo.raw = True
        return self

    def include(self, *relations: str) -> QueryBuilder:
        """Eager-load ``relations`` with one batched query each."""
        self._iqo.includes.extend(relations)
        return self

    with_ = include

    def group_by(self, *fields: str) -> QueryBuilder:
        self._iqo.group_by.extend(check_identifier(f, table=self._table) for f in fields)
        return self

    def having(self, conditions: Mapping[str, Any] | str, params: Sequence[Any] = ()) -> QueryBuilder:
        """
        Filter groups with the where operators, e.g.
        ``having({"COUNT(*)": {"$gt": 5}})``. A string is appended as raw
        SQL with ``params``.
        """
        if isinstance(conditions, str):
            self._iqo.having.append((conditions, list(params)))
            return self
        for key, value in conditions.items():
            target = having_column(self._table, key)
            for cond in parse_field_conditions(key, value, self._table):
                bound: list[Any] = []
                rendered = render_condition(target, cond, bound)
                if rendered is not None:
                    self._iqo.having.append((rendered, bound))
        return self

    def distinct(self) -> QueryBuilder:
        self._iqo.distinct = True
        return self

    def raw(self) -> QueryBuilder:
        """Return plain dict rows instead of entities."""
        self._iqo.raw = True
        return self

    def with_trashed(self) -> QueryBuilder:
        self._trashed = "include"
        return self

    def only_trashed(self) -> QueryBuilder:
        if not self._soft_deletes:
            raise QueryCompilationError(
                f"'{self._table}' does not use soft deletes"
            ).with_context(table=self._table)
        self._trashed = "only"
        return self

    # -- Compilation ---------------------------------------------------------

    def _compiled_iqo(self) -> IQO:
        iqo = self._iqo.copy()
        if self._soft_deletes and self._trashed != "include":
            op = "IS NULL" if self._trashed == "exclude" else "IS NOT NULL"
            self._append_condition(iqo, Condition(DELETED_AT, op))
        return iqo

    @staticmethod
    def _append_condition(iqo: IQO, cond: Condition) -> None:
        if iqo.where_ast is not None:
            iqo.where_ast = _and(iqo.where_ast, condition_to_node(cond))
        else:
            iqo.wheres.append(cond)

    def to_sql(self) -> tuple[str, list[Any]]:
        """The ``(sql, params)`` that :meth:`all` would run."""
        return compile_iqo(self._table, self._compiled_iqo())

    # -- Terminals -----------------------------------------------------------

    def _run(self, iqo: IQO) -> list[Any]:
        sql, params = compile_iqo(self._table, iqo)
        rows = self._ctx.rows(sql, params)
        if iqo.raw or self._hydrate is None:
            if iqo.includes:
                raise QueryCompilationError(
                    "include() cannot be combined with raw rows or joins"
                ).with_context(table=self._table)
            return rows
        entities = [self._hydrate(self._table, row) for row in rows]
        if iqo.includes:
            if self._navigator is None:
                raise QueryCompilationError("include() requires a navigator").with_context(table=self._table)
            self._navigator.eager_load(self._table, entities, iqo.includes)
        return entities

    def all(self) -> list[Any]:
        return self._run(self._compiled_iqo())

    def get(self) -> Any | None:
        """First matching record or ``None``."""
        iqo = self._compiled_iqo()
        iqo.limit = 1
        rows = self._run(iqo)
        return rows[0] if rows else None

    first = get

    def __iter__(self) -> Iterator[Any]:
        return iter(self.all())

    def _scalar_iqo(self) -> IQO:
        iqo = self._compiled_iqo()
        iqo.order_by = []
        iqo.limit = None
        iqo.offset = None
        iqo.includes = []
        return iqo

    def count(self) -> int:
        iqo = self._scalar_iqo()
        if iqo.group_by or iqo.distinct:
            inner, params = compile_iqo(self._table, iqo)
            row = self._ctx.one(f"SELECT COUNT(*) AS count FROM ({inner})", params)
        else:
            sql, params = compile_iqo(self._table, iqo, projection="COUNT(*) AS count")
            row = self._ctx.one(sql, params)
        return int(row["count"]) if row else 0

    def exists(self) -> bool:
        iqo = self._scalar_iqo()
        iqo.limit = 1
        sql, params = compile_iqo(self._table, iqo, projection="1 AS present")
        return self._ctx.one(sql, params) is not None

    def _aggregate(self, fn: str, field: str) -> Any:
        check_identifier(field, table=self._table)
        iqo = self._scalar_iqo()
        column = qualified_column(self._table, field)
        sql, params = compile_iqo(self._table, iqo, projection=f"{fn}({column}) AS value")
        row = self._ctx.one(sql, params)
        return row["value"] if row else None

    def sum(self, field: str) -> Any:
        return self._aggregate("SUM", field) or 0

    def avg(self, field: str) -> float | None:
        return self._aggregate("AVG", field)

    def min(self, field: str) -> Any:
        return self._aggregate("MIN", field)

    def max(self, field: str) -> Any:
        return self._aggregate("MAX", field)

    def paginate(self, page: int = 1, per_page: int = 20) -> Page:
        if page < 1 or per_page < 1:
            raise QueryCompilationError("page and per_page must be >= 1").with_context(table=self._table)
        total = self.count()
        iqo = self._compiled_iqo()
        iqo.limit = per_page
        iqo.offset = (page - 1) * per_page
        return Page(
            data=self._run(iqo),
            total=total,
            page=page,
            per_page=per_page,
            pages=math.ceil(total / per_page) if total else 0,
        )

    def count_grouped(self) -> list[dict[str, Any]]:
        """Row count per ``group_by`` bucket."""
        iqo = self._scalar_iqo()
        if not iqo.group_by:
            raise QueryCompilationError("count_grouped() requires group_by()").with_context(table=self._table)
        columns = ", ".join(qualified_column(self._table, g) for g in iqo.group_by)
        sql, params = compile_iqo(self._table, iqo, projection=f"{columns}, COUNT(*) AS count")
        return self._ctx.rows(sql, params)

    # -- Bulk writes ---------------------------------------------------------

    def _write_where(self) -> tuple[str, list[Any]]:
        iqo = self._compiled_iqo()
        if iqo.joins:
            raise QueryCompilationError("Bulk writes cannot use joins").with_context(table=self._table)
        params: list[Any] = []
        where = compile_where(self._table, iqo, params)
        return (f" WHERE {where}" if where else ""), params

    def update_all(self, data: Mapping[str, Any]) -> int:
        """Apply ``data`` to every matching row; returns the affected count."""
        values = self._desc.validate_partial(dict(data))
        values.pop(IDENTITY, None)
        if self._desc.has_column(UPDATED_AT):
            values[UPDATED_AT] = datetime.now(UTC)
        if not values:
            return 0
        stored = self._desc.to_storage(values)
        assignments = ", ".join(f"{SQLITE.quote(k)} = ?" for k in stored)
        where, params = self._write_where()
        sql = f"UPDATE {SQLITE.quote(self._table)} SET {assignments}{where}"
        return self._ctx.write(self._table, sql, list(stored.values()) + params)

    def delete_all(self) -> int:
        """Delete every matching row (mark it, with soft deletes); returns the count."""
        where, params = self._write_where()
        if self._soft_deletes:
            sql = f"UPDATE {SQLITE.quote(self._table)} SET {SQLITE.quote(DELETED_AT)} = ?{where}"
            return self._ctx.write(self._table, sql, [datetime.now(UTC).isoformat()] + params)
        return self._ctx.write(self._table, f"DELETE FROM {SQLITE.quote(self._table)}{where}", params)

    # -- Reactivity ----------------------------------------------------------

    def _register(self, subscription: Subscription) -> None:
        if self._subscriptions is not None:
            self._subscriptions.add(subscription)

    def _on_stop(self, subscription: Subscription) -> None:
        if self._subscriptions is not None:
            self._subscriptions.discard(subscription)

    def subscribe(
        self,
        callback: Callable[[list[Any]], Any],
        *,
        interval: float | None = None,
        immediate: bool = True,
    ) -> SnapshotSubscription:
        """
        Call ``callback(rows)`` now (unless ``immediate=False``) and whenever
        the table changes. Call the returned subscription to unsubscribe.
        """
        query = self._clone()
        subscription = SnapshotSubscription(
            self._table,
            lambda: self._ctx.revision(self._table),
            query.all,
            callback,
            interval=self._poll_interval if interval is None else interval,
            on_stop=self._on_stop,
        )
        self._register(subscription)
        return subscription.start(immediate=immediate)  # type: ignore[return-value]

    def each(self, callback: Callable[[Any], Any], *, interval: float | None = None) -> RowStreamSubscription:
        """
        Call ``callback(row)`` once for every matching row inserted after now,
        in ascending id order.
        """
        base = self._clone()
        base._iqo.order_by = []
        base._iqo.limit = None
        base._iqo.offset = None

        def initial_watermark() -> int:
            iqo = base._scalar_iqo()
            projection = f"MAX({qualified_column(self._table, IDENTITY)}) AS value"
            sql, params = compile_iqo(self._table, iqo, projection=projection)
            row = self._ctx.one(sql, params)
            return int(row["value"]) if row and row["value"] is not None else 0

        def fetch_after(watermark: int) -> list[Any]:
            iqo = base._compiled_iqo()
            self._append_condition(iqo, Condition(IDENTITY, ">", watermark))
            iqo.order_by = [(IDENTITY, "ASC")]
            return base._run(iqo)

        subscription = RowStreamSubscription(
            self._table,
            lambda: self._ctx.revision(self._table),
            fetch_after,
            callback,
            watermark=initial_watermark,
            interval=self._poll_interval if interval is None else interval,
            on_stop=self._on_stop,
        )
        self._register(subscription)
        return subscription.start(immediate=False)  # type: ignore[return-value]

    def __repr__(self) -> str:
        sql, params = self.to_sql()
        return f"<QueryBuilder {sql!r} {params!r}>"


__all__ = ["Page", "QueryBuilder", "condition_to_node"]
