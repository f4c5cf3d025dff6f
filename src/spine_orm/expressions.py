"""
Boolean expression trees for callback-style ``where()``.

A predicate callback receives three proxies and returns a tree; nothing
touches the database while the callback runs::

    users.where(lambda c, f, op: op.and_(
        op.eq(f.lower(c.name), "alice"),
        op.gte(c.score, 6),
    ))

- ``c`` (:class:`ColumnProxy`): ``c.score`` → ``ColumnNode("score")``
- ``f`` (:class:`FunctionProxy`): ``f.lower(c.name)`` → ``FunctionNode("LOWER", …)``
- ``op`` (:class:`Operators`): comparisons and boolean connectives

:func:`compile_expression` renders the tree: comparisons become
``("lhs" op ?)`` with the literal bound; column-to-column comparisons bind
nothing; ``and_``/``or_`` parenthesize their operands.

Examples:
    >>> c, f, op = ColumnProxy(), FunctionProxy(), Operators()
    >>> params = []
    >>> compile_expression(op.eq(c.name, "Alice"), params)
    '("name" = ?)'
    >>> params
    ['Alice']
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from spine_orm.dialect import SQLITE, check_identifier
from spine_orm.errors import QueryCompilationError
from spine_orm.schema import storage_value


@dataclass(frozen=True)
class ColumnNode:
    name: str


@dataclass(frozen=True)
class FunctionNode:
    name: str
    args: tuple[Any, ...] = ()


@dataclass(frozen=True)
class LiteralNode:
    value: Any


@dataclass(frozen=True)
class OperatorNode:
    op: str
    operands: tuple[Any, ...]


Node = Union[ColumnNode, FunctionNode, LiteralNode, OperatorNode]
NODE_TYPES = (ColumnNode, FunctionNode, LiteralNode, OperatorNode)


@dataclass(frozen=True)
class Subquery:
    """Compiled SQL usable as the right-hand side of ``IN``."""

    sql: str
    params: tuple[Any, ...] = ()


def _node(value: Any) -> Node:
    return value if isinstance(value, NODE_TYPES) else LiteralNode(value)


# -- Proxies -------------------------------------------------------------------


class ColumnProxy:
    """Attribute or item access yields a column reference."""

    def __getattr__(self, name: str) -> ColumnNode:
        if name.startswith("__"):
            raise AttributeError(name)
        return ColumnNode(check_identifier(name))

    def __getitem__(self, name: str) -> ColumnNode:
        return ColumnNode(check_identifier(name))


class FunctionProxy:
    """``f.lower(x)`` → ``FunctionNode("LOWER", (x,))``."""

    def __getattr__(self, name: str):
        if name.startswith("__"):
            raise AttributeError(name)
        fn = check_identifier(name).upper()

        def call(*args: Any) -> FunctionNode:
            return FunctionNode(fn, tuple(_node(a) for a in args))

        return call


class Operators:
    """Combinators that build :class:`OperatorNode` trees."""

    def eq(self, left: Any, right: Any) -> OperatorNode:
        return OperatorNode("=", (_node(left), _node(right)))

    def ne(self, left: Any, right: Any) -> OperatorNode:
        return OperatorNode("!=", (_node(left), _node(right)))

    def gt(self, left: Any, right: Any) -> OperatorNode:
        return OperatorNode(">", (_node(left), _node(right)))

    def gte(self, left: Any, right: Any) -> OperatorNode:
        return OperatorNode(">=", (_node(left), _node(right)))

    def lt(self, left: Any, right: Any) -> OperatorNode:
        return OperatorNode("<", (_node(left), _node(right)))

    def lte(self, left: Any, right: Any) -> OperatorNode:
        return OperatorNode("<=", (_node(left), _node(right)))

    def like(self, left: Any, pattern: Any) -> OperatorNode:
        return OperatorNode("LIKE", (_node(left), _node(pattern)))

    def in_(self, left: Any, values: Any) -> OperatorNode:
        if not isinstance(values, Subquery):
            values = tuple(values)
        return OperatorNode("IN", (_node(left), LiteralNode(values)))

    def not_in(self, left: Any, values: Any) -> OperatorNode:
        if not isinstance(values, Subquery):
            values = tuple(values)
        return OperatorNode("NOT IN", (_node(left), LiteralNode(values)))

    def between(self, left: Any, low: Any, high: Any) -> OperatorNode:
        return OperatorNode("BETWEEN", (_node(left), _node(low), _node(high)))

    def is_null(self, left: Any) -> OperatorNode:
        return OperatorNode("IS NULL", (_node(left),))

    def is_not_null(self, left: Any) -> OperatorNode:
        return OperatorNode("IS NOT NULL", (_node(left),))

    def and_(self, *operands: Any) -> OperatorNode:
        return OperatorNode("AND", tuple(_node(o) for o in operands))

    def or_(self, *operands: Any) -> OperatorNode:
        return OperatorNode("OR", tuple(_node(o) for o in operands))

    def not_(self, operand: Any) -> OperatorNode:
        return OperatorNode("NOT", (_node(operand),))


COMPARISONS = frozenset({"=", "!=", ">", ">=", "<", "<=", "LIKE"})


def build_predicate(callback: Any) -> Node:
    """Evaluate a predicate callback against fresh proxies."""
    root = callback(ColumnProxy(), FunctionProxy(), Operators())
    if not isinstance(root, (OperatorNode, FunctionNode)):
        raise QueryCompilationError(
            f"where() callback must return an expression, got {type(root).__name__}"
        )
    return root


# -- Compilation ---------------------------------------------------------------


def _operand(node: Any, params: list[Any], qualifier: str | None) -> str:
    if isinstance(node, LiteralNode):
        params.append(storage_value(node.value))
        return "?"
    return compile_expression(node, params, qualifier=qualifier)


def compile_expression(node: Any, params: list[Any], *, qualifier: str | None = None) -> str:
    """Render ``node`` to SQL, appending bound values to ``params``."""
    if isinstance(node, ColumnNode):
        if "." in node.name:
            return SQLITE.qualify(*node.name.split(".", 1))
        if qualifier:
            return SQLITE.qualify(qualifier, node.name)
        return SQLITE.quote(node.name)

    if isinstance(node, LiteralNode):
        params.append(storage_value(node.value))
        return "?"

    if isinstance(node, FunctionNode):
        args = ", ".join(_operand(a, params, qualifier) for a in node.args)
        return f"{node.name}({args})"

    if not isinstance(node, OperatorNode):
        raise QueryCompilationError(f"Cannot compile expression node {node!r}")

    op = node.op
    if op in ("AND", "OR"):
        if not node.operands:
            raise QueryCompilationError(f"{op} requires at least one operand").with_context(operator=op)
        parts = [compile_expression(o, params, qualifier=qualifier) for o in node.operands]
        if len(parts) == 1:
            return parts[0]
        return "(" + f" {op} ".join(parts) + ")"
    if op == "NOT":
        return f"(NOT {compile_expression(node.operands[0], params, qualifier=qualifier)})"

    left = compile_expression(node.operands[0], params, qualifier=qualifier)
    if op in COMPARISONS:
        right = _operand(node.operands[1], params, qualifier)
        return f"({left} {op} {right})"
    if op in ("IS NULL", "IS NOT NULL"):
        return f"({left} {op})"
    if op == "BETWEEN":
        low = _operand(node.operands[1], params, qualifier)
        high = _operand(node.operands[2], params, qualifier)
        return f"({left} BETWEEN {low} AND {high})"
    if op in ("IN", "NOT IN"):
        values = node.operands[1].value
        if isinstance(values, Subquery):
            params.extend(values.params)
            return f"({left} {op} ({values.sql}))"
        if not values:
            return "(1 = 0)" if op == "IN" else "(1 = 1)"
        params.extend(storage_value(v) for v in values)
        return f"({left} {op} ({', '.join('?' for _ in values)}))"

    raise QueryCompilationError(f"Unsupported expression operator '{op}'").with_context(operator=op)


__all__ = [
    "ColumnNode",
    "ColumnProxy",
    "FunctionNode",
    "FunctionProxy",
    "LiteralNode",
    "Node",
    "OperatorNode",
    "Operators",
    "Subquery",
    "build_predicate",
    "compile_expression",
]
