"""
Protocol definitions shared by the compilers, navigator and subscriptions.

Manifesto:
    Components depend on the shape of the execution context, not on
    :class:`~spine_orm.database.Database`. The query builder, the navigator
    and the subscription engine all work against any object that can run
    SQL, report the relationship graph and read a table revision, which is
    what lets the builder be tested against a recording fake.

Architecture:
    ::

        protocols.py
        └── ExecutionContext   rows / one / write / relationships / revision
            implemented by: Database
            consumed by:    QueryBuilder, Navigator, Subscription

Guardrails:
    ❌ DON'T: Import Database from the builder or navigator
    ✅ DO: Type against ExecutionContext

Tags:
    protocol, execution-context, spine-orm, contracts

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from spine_orm.relations import RelationshipGraph


@runtime_checkable
class ExecutionContext(Protocol):
    """What every query component needs from the database."""

    @property
    def relationships(self) -> RelationshipGraph:
        """The immutable edge list built at open time."""
        ...

    def rows(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Run a statement and return every row as a dict."""
        ...

    def one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        """Run a statement and return the first row or ``None``."""
        ...

    def write(self, table: str, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a write against ``table``; returns the affected row count."""
        ...

    def revision(self, table: str) -> str:
        """Opaque, monotonically advancing change fingerprint of ``table``."""
        ...


__all__ = ["ExecutionContext"]
