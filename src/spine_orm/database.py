"""
Database: schema bootstrap, execution context and entity session.

``Database`` is the one object applications hold. Opening it

1. merges :class:`~spine_orm.settings.OrmSettings` with keyword overrides,
2. connects the SQLite adapter (foreign keys on, WAL for file databases),
3. describes every pydantic model, adds config-declared FK columns and the
   managed ``created_at``/``updated_at``/``deleted_at`` columns,
4. builds the immutable relationship graph,
5. creates tables, adds missing columns, creates indexes,
6. installs the change tracking triggers.

Afterwards it is the :class:`~spine_orm.protocols.ExecutionContext` every
builder, navigator and subscription runs against, and the session every
:class:`~spine_orm.entity.Entity` navigates through.

Manifesto:
    - **Declarative schema:** models plus an optional relation config are
      the whole setup; tables and columns follow them
    - **Additive migrations:** new model fields become ``ALTER TABLE ADD
      COLUMN``; nothing is ever dropped
    - **One writer path:** every write goes through :meth:`Database.write`
      so revisions never miss a same-process change

Architecture:
    ::

        Database(path, schemas, relations, indexes, hooks, computed, settings)
            │
            ├── adapter: SQLiteAdapter          (connection, lock, transactions)
            ├── descriptors: {table: TableDescriptor}
            ├── relationships: RelationshipGraph
            ├── tracker: RevisionTracker         (revision(table))
            ├── navigator: Navigator             (lazy + eager relations)
            ├── subscriptions: SubscriptionRegistry
            ├── changes: ChangeFeed              (db.<table>.on(event, cb))
            └── db.<table> → TableRepository ──► QueryBuilder

Examples:
    >>> db = Database(":memory:", {"authors": Author, "books": Book})
    >>> alice = db.authors.insert({"name": "Alice"})
    >>> db.books.insert({"title": "Dune", "author_id": alice.id})
    >>> [b.title for b in alice.books()]
    ['Dune']
    >>> db.query(lambda c: {"select": {"title": c.books.title}, "join": (c.books.author_id, c.authors.id)})

Tags:
    database, schema, migrations, execution-context, session, spine-orm

Doc-Types:
    - API Reference
    - Usage Guide
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from spine_orm.adapters.sqlite import SQLiteAdapter
from spine_orm.builder import QueryBuilder
from spine_orm.changes import ChangeFeed, RevisionTracker, SubscriptionRegistry
from spine_orm.crud import TableHooks, TableRepository
from spine_orm.dialect import SQLITE, check_identifier
from spine_orm.entity import Entity
from spine_orm.errors import ConfigurationError, OrmError, TransactionError
from spine_orm.logging import get_logger
from spine_orm.navigation import Navigator
from spine_orm.proxy_query import QueryContext, compile_proxy_query
from spine_orm.relations import (
    RelationshipGraph,
    build_relationships,
    declared_foreign_keys,
    parse_relations_config,
)
from spine_orm.schema import (
    CREATED_AT,
    DELETED_AT,
    UPDATED_AT,
    TableDescriptor,
    create_index_sql,
    describe_model,
    foreign_key_field,
    managed_field,
)
from spine_orm.settings import OrmSettings, get_settings

logger = get_logger(__name__)

T = TypeVar("T")

ComputedFields = Mapping[str, Callable[[Entity], Any]]


def _resolve_settings(settings: OrmSettings | None, overrides: Mapping[str, Any]) -> OrmSettings:
    base = settings or get_settings()
    unknown = sorted(set(overrides) - set(OrmSettings.model_fields))
    if unknown:
        raise ConfigurationError(f"Unknown setting(s): {', '.join(unknown)}")
    if not overrides:
        return base
    try:
        return OrmSettings(**{**base.model_dump(), **overrides})
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}", cause=e) from e


def _check_tables(kind: str, config: Mapping[str, Any] | None, tables: Mapping[str, Any]) -> None:
    for table in config or {}:
        if table not in tables:
            raise ConfigurationError(f"{kind} configured for unknown table '{table}'").with_context(table=table)


class Database:
    """An open spine-orm database."""

    def __init__(
        self,
        path: str = ":memory:",
        schemas: Mapping[str, type[BaseModel]] | None = None,
        relations: Mapping[str, Mapping[str, Any]] | None = None,
        indexes: Mapping[str, Sequence[str | Sequence[str]]] | None = None,
        hooks: Mapping[str, TableHooks | Mapping[str, Callable[..., Any]]] | None = None,
        computed: Mapping[str, ComputedFields] | None = None,
        settings: OrmSettings | None = None,
        **overrides: Any,
    ):
        self.path = path
        self.settings = _resolve_settings(settings, overrides)
        schemas = dict(schemas or {})
        if not schemas:
            raise ConfigurationError("Database requires at least one schema")
        for table in schemas:
            check_identifier(table, table=table)
        _check_tables("Hooks", hooks, schemas)
        _check_tables("Computed fields", computed, schemas)
        _check_tables("Indexes", indexes, schemas)

        self.adapter = SQLiteAdapter(
            path,
            timeout=self.settings.busy_timeout,
            journal_mode=self.settings.journal_mode,
            foreign_keys=self.settings.foreign_keys,
            debug=self.settings.debug,
        )
        self.adapter.connect()
        self._closed = False

        try:
            self.descriptors = self._describe(schemas, relations)
            self._relationships = build_relationships(
                self.descriptors,
                declared_foreign_keys(self.descriptors) + parse_relations_config(relations),
            )
            self._create_schema(indexes or {})
            self.tracker = RevisionTracker(self.adapter, change_tracking=self.settings.change_tracking)
            self.tracker.install(self.descriptors, row_changes=self.settings.track_row_changes)
        except BaseException:
            self.adapter.disconnect()
            raise

        self._computed = {table: dict(fields) for table, fields in (computed or {}).items()}
        self.navigator = Navigator(self, self.descriptors, self.hydrate)
        self.subscriptions = SubscriptionRegistry()
        self.changes = ChangeFeed(
            self.adapter,
            lambda table, row_id: self._repositories[table].get(row_id),
            enabled=self.settings.track_row_changes,
            interval=self.settings.poll_interval,
        )
        self._repositories = {
            table: TableRepository(desc, self, TableHooks.from_mapping(table, (hooks or {}).get(table)))
            for table, desc in self.descriptors.items()
        }
        logger.info(
            "database_opened",
            path=path,
            tables=list(self.descriptors),
            relationships=len(self._relationships),
        )

    # -- Bootstrap -----------------------------------------------------------

    def _describe(
        self,
        schemas: Mapping[str, type[BaseModel]],
        relations: Mapping[str, Mapping[str, Any]] | None,
    ) -> dict[str, TableDescriptor]:
        descriptors = {table: describe_model(table, model) for table, model in schemas.items()}
        for decl in parse_relations_config(relations):
            if decl.child in descriptors:
                descriptors[decl.child] = descriptors[decl.child].with_field(
                    foreign_key_field(decl.foreign_key, decl.parent)
                )
        managed: list[str] = []
        if self.settings.timestamps:
            managed += [CREATED_AT, UPDATED_AT]
        if self.settings.soft_deletes:
            managed.append(DELETED_AT)
        for table, desc in descriptors.items():
            for name in managed:
                desc = desc.with_field(managed_field(name))
            descriptors[table] = desc
        return descriptors

    def _create_schema(self, indexes: Mapping[str, Sequence[str | Sequence[str]]]) -> None:
        for table, desc in self.descriptors.items():
            self.adapter.execute(desc.create_table_sql())
            existing = {row["name"] for row in self.adapter.query(SQLITE.table_info(table))}
            for field_desc in desc.fields:
                if field_desc.name not in existing:
                    self.adapter.execute(desc.add_column_sql(field_desc))
                    logger.info("column_added", table=table, column=field_desc.name, sql_type=field_desc.sql_type)
        for table, entries in indexes.items():
            for entry in entries:
                columns = [entry] if isinstance(entry, str) else list(entry)
                for column in columns:
                    if not self.descriptors[table].has_column(column):
                        raise ConfigurationError(
                            f"Index on unknown column '{column}'"
                        ).with_context(table=table, field=column)
                self.adapter.execute(create_index_sql(table, columns))
                logger.debug("index_created", table=table, columns=columns)

    # -- ExecutionContext ----------------------------------------------------

    @property
    def relationships(self) -> RelationshipGraph:
        return self._relationships

    def rows(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return self.adapter.query(sql, params)

    def one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        return self.adapter.query_one(sql, params)

    def write(self, table: str, sql: str, params: Sequence[Any] = ()) -> int:
        cursor = self.adapter.execute(sql, params)
        if cursor.rowcount:
            self.tracker.bump(table)
        return max(cursor.rowcount, 0)

    def insert_row(self, table: str, sql: str, params: Sequence[Any] = ()) -> int:
        """Run an INSERT against ``table``; returns the new row id."""
        cursor = self.adapter.execute(sql, params)
        self.tracker.bump(table)
        return int(cursor.lastrowid)

    def revision(self, table: str) -> str:
        if table not in self.descriptors:
            raise ConfigurationError(f"Unknown table '{table}'").with_context(table=table)
        return self.tracker.revision(table)

    # -- Entity session ------------------------------------------------------

    def hydrate(self, table: str, row: Mapping[str, Any]) -> Entity:
        return Entity(table, self.descriptors[table].from_storage(dict(row)), self)

    def computed_fields(self, table: str) -> dict[str, Callable[[Entity], Any]]:
        return self._computed.get(table, {})

    def repository(self, table: str) -> TableRepository:
        try:
            return self._repositories[table]
        except KeyError:
            raise ConfigurationError(f"Unknown table '{table}'").with_context(table=table) from None

    def query_builder(self, table: str) -> QueryBuilder:
        return QueryBuilder(
            self.descriptors[table],
            self,
            hydrate=self.hydrate,
            navigator=self.navigator,
            subscriptions=self.subscriptions,
            poll_interval=self.settings.poll_interval,
            soft_deletes=self.settings.soft_deletes,
        )

    @property
    def tables(self) -> list[str]:
        return list(self.descriptors)

    def __getattr__(self, name: str) -> TableRepository:
        if name.startswith("_"):
            raise AttributeError(name)
        repositories = self.__dict__.get("_repositories", {})
        if name in repositories:
            return repositories[name]
        raise AttributeError(f"Database has no table or attribute '{name}'")

    def __getitem__(self, table: str) -> TableRepository:
        return self.repository(table)

    # -- Operations ----------------------------------------------------------

    def transaction(self, callback: Callable[[Database], T]) -> T:
        """
        Run ``callback(db)`` inside ``BEGIN``/``COMMIT``.

        On failure the transaction is rolled back and the error re-raised
        as :class:`TransactionError` (``cause`` holds the original).
        Calling ``transaction`` from inside the callback raises
        :class:`ConfigurationError`.
        """
        try:
            with self.adapter.transaction():
                return callback(self)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.warning("transaction_rolled_back", error=str(e), error_type=type(e).__name__)
            if isinstance(e, TransactionError):
                raise
            error = TransactionError(f"Transaction rolled back: {e}", cause=e)
            if isinstance(e, OrmError):
                error.context = e.context
            raise error from e

    def query(self, callback: Callable[[QueryContext], Any]) -> list[dict[str, Any]]:
        """Run a proxy query across aliased tables; returns plain rows."""
        sql, params = compile_proxy_query(callback, self.descriptors, self._relationships)
        return self.rows(sql, params)

    def close(self) -> None:
        """Stop subscriptions and listeners and close the connection. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.subscriptions.stop_all()
        self.changes.stop()
        self.adapter.disconnect()
        logger.info("database_closed", path=self.path)

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<Database {self.path!r} tables={self.tables}>"


__all__ = ["Database"]
