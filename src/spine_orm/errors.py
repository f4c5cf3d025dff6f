"""
Structured error types for spine-orm.

Every failure the query layer can produce is raised as a typed subclass of
:class:`OrmError`. Errors carry a category, an explicit retry flag, a
structured :class:`ErrorContext` (table, field, operator, SQL) and the
chained underlying exception, so callers and logs see the same metadata.

Manifesto:
    - **Typed Error Hierarchy:** Configuration, validation, compilation and
      store failures are distinct types, never a bare ``Exception``
    - **Fail Before SQL:** Compilation errors are raised before any text
      reaches the store
    - **Rich Context:** Errors carry the table/field/operator that failed
    - **Error Chaining:** ``sqlite3`` errors are preserved as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                         OrmError                                 │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ConfigurationError   ValidationError   QueryCompilationError   │
        │  (CONFIG)             (VALIDATION)      (QUERY)                 │
        │                                                                  │
        │  StoreError           SubscriptionTickError                     │
        │  (DATABASE)           (SUBSCRIPTION, logged never raised)       │
        │       │                                                          │
        │  IntegrityError                                                  │
        │  TransactionError                                                │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = QueryCompilationError("Unsupported query operator")
    >>> error.with_context(table="users", field="age", operator="$foo")
    QueryCompilationError('Unsupported query operator', category=QUERY)
    >>> error.context.operator
    '$foo'

Guardrails:
    ❌ DON'T: Swallow a ``sqlite3.Error`` and return an empty result
    ✅ DO: Wrap it as ``StoreError(..., cause=e)`` and re-raise

    ❌ DON'T: Raise ``SubscriptionTickError`` to the subscriber
    ✅ DO: Log it and let the next tick retry

Tags:
    error-handling, exception-hierarchy, error-context, spine-orm

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Attributes:
        CONFIG: Bad relation config, nested transactions, disabled features
        VALIDATION: Payload rejected by the model
        QUERY: Query could not be compiled to SQL
        DATABASE: Failure reported by the embedded engine
        SUBSCRIPTION: Failure inside a polling tick
        INTERNAL: Bugs, unexpected state
    """

    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"
    QUERY = "QUERY"
    DATABASE = "DATABASE"
    SUBSCRIPTION = "SUBSCRIPTION"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata context for errors.

    Typed fields cover what the query layer knows when something fails;
    anything else goes into ``metadata``. ``to_dict()`` serializes only the
    fields that are set.

    Examples:
        >>> ctx = ErrorContext(table="books", field="author_id")
        >>> ctx.to_dict()
        {'table': 'books', 'field': 'author_id'}
    """

    table: str | None = None
    field: str | None = None
    operator: str | None = None
    relation: str | None = None
    sql: str | None = None
    metadata: dict[str, Any] = dataclasses.field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize non-empty fields, flattening ``metadata``."""
        result: dict[str, Any] = {}
        for name in ("table", "field", "operator", "relation", "sql"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        result.update(self.metadata)
        return result


class OrmError(Exception):
    """
    Base exception for all spine-orm errors.

    Subclasses set ``default_category`` and ``default_retryable``; instances
    may override both. ``cause`` is also set as ``__cause__`` so tracebacks
    show the chain.

    Examples:
        >>> error = OrmError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.to_dict()["retryable"]
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> OrmError:
        """
        Add context to this error (fluent API).

        Usage:
            raise QueryCompilationError("Unknown alias").with_context(table="books")
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS (never retryable)
# =============================================================================


class ConfigurationError(OrmError):
    """
    The database was declared or used in a way that can never succeed.

    Raised at open time (unknown relationship target, ambiguous inverse
    field) or at transaction entry (nested ``transaction()``).
    """

    default_category = ErrorCategory.CONFIG


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(OrmError):
    """
    A payload failed model validation.

    ``issues`` is a list of ``{"field", "message", "type"}`` dicts, one per
    failing field, built from the pydantic error list.

    Examples:
        >>> err = ValidationError("Invalid users payload",
        ...                       issues=[{"field": "age", "message": "bad", "type": "int_parsing"}])
        >>> err.fields
        ['age']
    """

    default_category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        issues: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.issues = issues or []

    @property
    def fields(self) -> list[str]:
        return [issue["field"] for issue in self.issues]

    @classmethod
    def from_pydantic(cls, table: str, exc: Any) -> ValidationError:
        """Build from a ``pydantic.ValidationError``."""
        issues = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ())) or "__root__",
                "message": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        error = cls(f"Invalid {table} payload", issues=issues, cause=exc)
        error.context.table = table
        return error

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["issues"] = self.issues
        return result


# =============================================================================
# QUERY COMPILATION ERRORS
# =============================================================================


class QueryCompilationError(OrmError):
    """
    A query could not be turned into SQL.

    Unsupported operators, unknown table aliases, relations that do not
    exist and terminal calls missing a required clause all land here. Always
    raised before any SQL is sent to the store.
    """

    default_category = ErrorCategory.QUERY


# =============================================================================
# STORE ERRORS
# =============================================================================


class StoreError(OrmError):
    """The embedded engine rejected a statement or failed on I/O."""

    default_category = ErrorCategory.DATABASE


class IntegrityError(StoreError):
    """Constraint violation (foreign key, unique, not null)."""


class TransactionError(StoreError):
    """
    A ``transaction()`` callback failed and the transaction was rolled back.

    The original exception is available as ``cause``.
    """


# =============================================================================
# SUBSCRIPTION ERRORS
# =============================================================================


class SubscriptionTickError(OrmError):
    """
    A subscription tick failed.

    Never raised to callers: the subscription logs it and the next tick
    proceeds. ``retryable`` is true because a later tick delivers the
    pending change again.
    """

    default_category = ErrorCategory.SUBSCRIPTION
    default_retryable = True


def is_retryable(error: BaseException) -> bool:
    """Return the ``retryable`` flag for spine-orm errors, ``False`` otherwise."""
    if isinstance(error, OrmError):
        return error.retryable
    return False


__all__ = [
    "ConfigurationError",
    "ErrorCategory",
    "ErrorContext",
    "IntegrityError",
    "OrmError",
    "QueryCompilationError",
    "StoreError",
    "SubscriptionTickError",
    "TransactionError",
    "ValidationError",
    "is_retryable",
]
