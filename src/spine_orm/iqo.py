"""
Internal Query Object and its SQL compiler.

An :class:`IQO` is the mutable accumulator behind one fluent query:
``select``/``where``/``join``/``order_by`` calls append to it, and a
terminal call compiles it exactly once with :func:`compile_iqo`. The
compiler is a pure function: the same IQO always yields the same
``(sql, params)`` pair, byte for byte.

Manifesto:
    - **One shape:** ``SELECT … FROM … JOIN … WHERE … GROUP BY … HAVING …
      ORDER BY … LIMIT … OFFSET``, nothing else
    - **Bound values only:** every user value becomes a ``?`` parameter,
      storage-transformed first (booleans → 0/1, dates → ISO text)
    - **Callback wins:** when ``where_ast`` is set, object-style wheres are ignored
    - **Never invalid SQL:** an empty ``IN`` compiles to ``1 = 0``

Architecture:
    ::

        {"score": {"$gt": 6}}  ──parse_conditions()──►  Condition("score", ">", 6)
                                                              │
        IQO(selects, wheres, where_ors, where_ast, joins, …) ◄┘
              │
              ▼ compile_iqo("users", iqo)
        ('SELECT "users".* FROM "users" WHERE "score" > ?', [6])

Examples:
    >>> iqo = IQO()
    >>> iqo.wheres.append(Condition("name", "=", "Alice"))
    >>> compile_iqo("users", iqo)
    ('SELECT "users".* FROM "users" WHERE "name" = ?', ['Alice'])

    >>> iqo = IQO(order_by=[("name", "ASC")], limit=10, offset=20)
    >>> compile_iqo("users", iqo)[0]
    'SELECT "users".* FROM "users" ORDER BY "name" ASC LIMIT 10 OFFSET 20'

Tags:
    iqo, sql-compiler, query-builder, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from spine_orm.dialect import SQLITE, check_identifier
from spine_orm.errors import QueryCompilationError
from spine_orm.expressions import Node, Subquery, compile_expression
from spine_orm.schema import storage_value

OPERATORS: dict[str, str] = {
    "$eq": "=",
    "$gt": ">",
    "$gte": ">=",
    "$lt": "<",
    "$lte": "<=",
    "$ne": "!=",
    "$in": "IN",
    "$notIn": "NOT IN",
    "$like": "LIKE",
    "$between": "BETWEEN",
    "$isNull": "IS NULL",
    "$isNotNull": "IS NOT NULL",
}

SQL_OPERATORS = frozenset(OPERATORS.values())
_LIST_OPERATORS = frozenset({"IN", "NOT IN"})
_NULL_OPERATORS = frozenset({"IS NULL", "IS NOT NULL"})
_DIRECTIONS = frozenset({"ASC", "DESC"})
_AGGREGATE = re.compile(
    r"^(COUNT|SUM|AVG|MIN|MAX|TOTAL)\(\s*(\*|[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)?)\s*\)$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Condition:
    """A ``field operator value`` triple; ``operator`` is the SQL spelling."""

    field: str
    operator: str
    value: Any = None


@dataclass
class Join:
    table: str
    from_col: str
    to_col: str
    columns: list[str] = field(default_factory=list)


@dataclass
class IQO:
    selects: list[str] = field(default_factory=list)
    wheres: list[Condition] = field(default_factory=list)
    where_ors: list[list[Condition]] = field(default_factory=list)
    where_ast: Node | None = None
    raw_wheres: list[tuple[str, list[Any]]] = field(default_factory=list)
    joins: list[Join] = field(default_factory=list)
    order_by: list[tuple[str, str]] = field(default_factory=list)
    limit: int | None = None
    offset: int | None = None
    group_by: list[str] = field(default_factory=list)
    having: list[tuple[str, list[Any]]] = field(default_factory=list)
    includes: list[str] = field(default_factory=list)
    raw: bool = False
    distinct: bool = False

    def copy(self) -> IQO:
        """Independent copy: list containers are duplicated, conditions shared."""
        return IQO(
            selects=list(self.selects),
            wheres=list(self.wheres),
            where_ors=[list(group) for group in self.where_ors],
            where_ast=self.where_ast,
            raw_wheres=list(self.raw_wheres),
            joins=[Join(j.table, j.from_col, j.to_col, list(j.columns)) for j in self.joins],
            order_by=list(self.order_by),
            limit=self.limit,
            offset=self.offset,
            group_by=list(self.group_by),
            having=list(self.having),
            includes=list(self.includes),
            raw=self.raw,
            distinct=self.distinct,
        )


# -- Object-style conditions ----------------------------------------------------


def parse_conditions(
    conditions: Mapping[str, Any], *, table: str | None = None
) -> tuple[list[Condition], list[list[Condition]]]:
    """
    Parse ``{field: value}`` conditions into AND-ed triples and OR groups.

    Raises:
        QueryCompilationError: unsupported operator, a nested mapping without
            operators, a malformed ``$between``/``$in`` value, or an ``$or``
            entry with more than one condition.
    """
    wheres: list[Condition] = []
    ors: list[list[Condition]] = []
    for key, value in conditions.items():
        if key == "$or":
            ors.append(_parse_or_group(value, table))
            continue
        check_identifier(key, table=table)
        wheres.extend(parse_field_conditions(key, value, table))
    return wheres, ors


def _parse_or_group(entries: Any, table: str | None) -> list[Condition]:
    if not isinstance(entries, (list, tuple)):
        raise QueryCompilationError("$or expects a list of conditions").with_context(table=table, operator="$or")
    group: list[Condition] = []
    for entry in entries:
        wheres, nested = parse_conditions(entry, table=table)
        if nested or len(wheres) != 1:
            raise QueryCompilationError(
                "Each $or entry must hold exactly one condition; use a callback where() for nested logic"
            ).with_context(table=table, operator="$or")
        group.extend(wheres)
    return group


def parse_field_conditions(key: str, value: Any, table: str | None = None) -> list[Condition]:
    """Conditions for one ``field: value`` entry (scalar, list, None or operator mapping)."""
    if isinstance(value, Mapping):
        if not value or not all(isinstance(k, str) and k.startswith("$") for k in value):
            raise QueryCompilationError(
                f"Nested object for field '{key}' requires an operator"
            ).with_context(table=table, field=key)
        return [_operator_condition(key, op, operand, table) for op, operand in value.items()]
    if isinstance(value, (list, tuple, set, frozenset)):
        return [Condition(key, "IN", list(value))]
    if value is None:
        return [Condition(key, "IS NULL")]
    return [Condition(key, "=", value)]


def _operator_condition(key: str, op: str, operand: Any, table: str | None) -> Condition:
    sql_op = OPERATORS.get(op)
    if sql_op is None:
        raise QueryCompilationError(
            f"Unsupported query operator: '{op}' on field '{key}'"
        ).with_context(table=table, field=key, operator=op)
    if sql_op in _LIST_OPERATORS:
        if isinstance(operand, Subquery):
            return Condition(key, sql_op, operand)
        if not isinstance(operand, (list, tuple, set, frozenset)):
            raise QueryCompilationError(
                f"Operator '{op}' on field '{key}' expects a list"
            ).with_context(table=table, field=key, operator=op)
        return Condition(key, sql_op, list(operand))
    if sql_op == "BETWEEN":
        if not isinstance(operand, (list, tuple)) or len(operand) != 2:
            raise QueryCompilationError(
                f"$between on field '{key}' requires [min, max]"
            ).with_context(table=table, field=key, operator=op)
        return Condition(key, sql_op, tuple(operand))
    if sql_op in _NULL_OPERATORS:
        if operand is False:
            sql_op = "IS NOT NULL" if sql_op == "IS NULL" else "IS NULL"
        return Condition(key, sql_op)
    return Condition(key, sql_op, operand)


# -- Compilation ---------------------------------------------------------------


def render_condition(column: str, cond: Condition, params: list[Any]) -> str | None:
    """
    Render one triple against an already-qualified column.

    Returns ``None`` for conditions that are vacuously true (empty ``NOT IN``).
    """
    op = cond.operator
    if op not in SQL_OPERATORS:
        raise QueryCompilationError(
            f"Unsupported query operator: '{op}' on field '{cond.field}'"
        ).with_context(field=cond.field, operator=op)
    if op in _NULL_OPERATORS:
        return f"{column} {op}"
    if op in _LIST_OPERATORS:
        if isinstance(cond.value, Subquery):
            params.extend(cond.value.params)
            return f"{column} {op} ({cond.value.sql})"
        values = list(cond.value or [])
        if not values:
            return "1 = 0" if op == "IN" else None
        params.extend(storage_value(v) for v in values)
        return f"{column} {op} ({', '.join('?' for _ in values)})"
    if op == "BETWEEN":
        low, high = cond.value
        params.extend([storage_value(low), storage_value(high)])
        return f"{column} BETWEEN ? AND ?"
    params.append(storage_value(cond.value))
    return f"{column} {op} ?"


def qualified_column(table: str, name: str) -> str:
    """``"table"."name"``; a dotted ``alias.column`` keeps its own alias."""
    if "." in name:
        alias, column = name.split(".", 1)
        return SQLITE.qualify(alias, column)
    return SQLITE.qualify(table, name)


def having_column(table: str, key: str) -> str:
    """
    SQL for a ``having()`` key: a column, ``FN(column)`` or ``COUNT(*)``.

    Raises:
        QueryCompilationError: anything else, including ``FN(*)`` for
            functions other than ``COUNT``.
    """
    match = _AGGREGATE.match(key.strip())
    if match is None:
        check_identifier(key, table=table)
        return qualified_column(table, key)
    fn, arg = match.group(1).upper(), match.group(2)
    if arg == "*":
        if fn != "COUNT":
            raise QueryCompilationError(f"{fn}(*) is not a valid aggregate").with_context(table=table, field=key)
        return "COUNT(*)"
    return f"{fn}({qualified_column(table, arg)})"


def _column(table: str, name: str, qualified: bool) -> str:
    if qualified or "." in name:
        return qualified_column(table, name)
    return SQLITE.quote(name)


def compile_where(table: str, iqo: IQO, params: list[Any]) -> str:
    """The boolean expression after ``WHERE`` (empty string when unconstrained)."""
    qualified = bool(iqo.joins)
    clauses: list[str] = []
    if iqo.where_ast is not None:
        clauses.append(compile_expression(iqo.where_ast, params, qualifier=table if qualified else None))
    else:
        for cond in iqo.wheres:
            rendered = render_condition(_column(table, cond.field, qualified), cond, params)
            if rendered is not None:
                clauses.append(rendered)
        for group in iqo.where_ors:
            group_params: list[Any] = []
            parts: list[str] = []
            vacuous = False
            for cond in group:
                rendered = render_condition(_column(table, cond.field, qualified), cond, group_params)
                if rendered is None:
                    vacuous = True
                    break
                parts.append(rendered)
            if vacuous or not parts:
                continue
            params.extend(group_params)
            clauses.append(f"({' OR '.join(parts)})")
    for sql, raw_params in iqo.raw_wheres:
        clauses.append(f"({sql})")
        params.extend(raw_params)
    return " AND ".join(clauses)


def compile_iqo(table: str, iqo: IQO, *, projection: str | None = None) -> tuple[str, list[Any]]:
    """
    Compile ``iqo`` against ``table``.

    ``projection`` replaces the whole SELECT list (``COUNT(*) AS count``,
    aggregates) while every other clause compiles as usual.
    """
    params: list[Any] = []
    qualified = bool(iqo.joins)
    q = SQLITE.quote

    if projection is not None:
        select_list = projection
    else:
        columns = [qualified_column(table, c) for c in iqo.selects] or [f"{q(table)}.*"]
        for join in iqo.joins:
            if join.columns:
                columns.extend(
                    f"{SQLITE.qualify(join.table, c)} AS {q(f'{join.table}_{c}')}" for c in join.columns
                )
            else:
                columns.append(f"{q(join.table)}.*")
        select_list = ", ".join(columns)

    sql = "SELECT " + ("DISTINCT " if iqo.distinct else "") + f"{select_list} FROM {q(table)}"

    for join in iqo.joins:
        sql += (
            f" JOIN {q(join.table)}"
            f" ON {SQLITE.qualify(table, join.from_col)} = {SQLITE.qualify(join.table, join.to_col)}"
        )

    where = compile_where(table, iqo, params)
    if where:
        sql += f" WHERE {where}"

    if iqo.group_by:
        sql += " GROUP BY " + ", ".join(_column(table, g, qualified) for g in iqo.group_by)
    if iqo.having:
        sql += " HAVING " + " AND ".join(clause for clause, _ in iqo.having)
        for _, having_params in iqo.having:
            params.extend(having_params)

    if iqo.order_by:
        rendered = []
        for name, direction in iqo.order_by:
            if direction not in _DIRECTIONS:
                raise QueryCompilationError(
                    f"Invalid order direction '{direction}' for field '{name}'"
                ).with_context(table=table, field=name)
            rendered.append(f"{_column(table, name, qualified)} {direction}")
        sql += " ORDER BY " + ", ".join(rendered)

    if iqo.limit is not None:
        sql += f" LIMIT {int(iqo.limit)}"
    if iqo.offset is not None:
        if iqo.limit is None:
            sql += " LIMIT -1"
        sql += f" OFFSET {int(iqo.offset)}"

    return sql, params


__all__ = [
    "IQO",
    "OPERATORS",
    "Condition",
    "Join",
    "Subquery",
    "compile_iqo",
    "compile_where",
    "having_column",
    "parse_conditions",
    "parse_field_conditions",
    "qualified_column",
    "render_condition",
]
