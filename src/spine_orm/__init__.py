"""spine-orm -- typed query construction and relationship resolution over SQLite.

Manifesto:
    Application code declares record shapes as pydantic models and a few
    relationships; spine-orm turns filtered selects, joins, relationship
    navigation and change notification into parameterized SQL against an
    embedded SQLite store. Every query shape compiles deterministically,
    and every mistake in one surfaces as a typed error before SQL runs.

    - **Compile, then execute:** IQO and expression trees are plain data
    - **Relationships declared once:** an immutable edge list built at open
    - **No auto-persist:** entities are read-only, writes are explicit
    - **Reactive by polling:** cheap per-table revisions drive subscriptions

Architecture::

    Layer 1 -- Ambient
        errors.py          OrmError hierarchy (category, context, cause)
        logging.py         structlog configuration + get_logger
        settings.py        OrmSettings (pydantic-settings, SPINE_ORM_*)

    Layer 2 -- Store
        dialect.py         SQLite quoting, placeholders, identifier checks
        adapters/sqlite.py SQLiteAdapter (lock, transactions, error wrapping)
        schema.py          pydantic model -> TableDescriptor, DDL, transforms

    Layer 3 -- Query core
        relations.py       Relationship graph (belongs-to / one-to-many)
        iqo.py             Internal Query Object + compile_iqo
        expressions.py     Predicate AST + compile_expression
        proxy_query.py     Aliased multi-table DSL + compile_proxy_query

    Layer 4 -- Runtime
        entity.py          Read-only entities with relation accessors
        navigation.py      Lazy and batched eager relationship loading
        builder.py         Fluent QueryBuilder, subscribe/each
        changes.py         Revisions, subscriptions, row-level change feed
        crud.py            TableRepository (db.<table>) with hooks
        database.py        Database: bootstrap, context, session

Usage:
    >>> from typing import Annotated
    >>> from pydantic import BaseModel
    >>> from spine_orm import Database, References
    >>> class Author(BaseModel):
    ...     name: str
    >>> class Book(BaseModel):
    ...     title: str
    ...     author_id: Annotated[int | None, References("authors")] = None
    >>> db = Database(":memory:", {"authors": Author, "books": Book})
    >>> alice = db.authors.insert({"name": "Alice"})
    >>> db.books.insert({"title": "Dune", "author_id": alice.id}).author().name
    'Alice'
"""

from spine_orm.builder import Page, QueryBuilder
from spine_orm.changes import RowStreamSubscription, SnapshotSubscription, Subscription, SubscriptionState
from spine_orm.crud import TableHooks, TableRepository
from spine_orm.database import Database
from spine_orm.entity import Entity
from spine_orm.errors import (
    ConfigurationError,
    ErrorCategory,
    ErrorContext,
    IntegrityError,
    OrmError,
    QueryCompilationError,
    StoreError,
    SubscriptionTickError,
    TransactionError,
    ValidationError,
    is_retryable,
)
from spine_orm.expressions import ColumnNode, FunctionNode, LiteralNode, OperatorNode, compile_expression
from spine_orm.iqo import IQO, compile_iqo
from spine_orm.proxy_query import ColumnRef, ProxyQuery, compile_proxy_query
from spine_orm.relations import Relationship, RelationKind, RelationshipGraph
from spine_orm.schema import References
from spine_orm.settings import OrmSettings, get_settings

__version__ = "0.1.0"

__all__ = [
    "IQO",
    "ColumnNode",
    "ColumnRef",
    "ConfigurationError",
    "Database",
    "Entity",
    "ErrorCategory",
    "ErrorContext",
    "FunctionNode",
    "IntegrityError",
    "LiteralNode",
    "OperatorNode",
    "OrmError",
    "OrmSettings",
    "Page",
    "ProxyQuery",
    "QueryBuilder",
    "QueryCompilationError",
    "References",
    "RelationKind",
    "Relationship",
    "RelationshipGraph",
    "RowStreamSubscription",
    "SnapshotSubscription",
    "StoreError",
    "Subscription",
    "SubscriptionState",
    "SubscriptionTickError",
    "TableHooks",
    "TableRepository",
    "TransactionError",
    "ValidationError",
    "compile_expression",
    "compile_iqo",
    "compile_proxy_query",
    "get_settings",
    "is_retryable",
]
