"""
Table descriptors derived from pydantic models.

The query layer never looks at pydantic internals after startup. Each model
is described once into a :class:`TableDescriptor`: an ordered tuple of
:class:`FieldDescriptor` entries carrying the logical type, optionality,
default presence and whether the field is a foreign key. The descriptor
then owns everything that depends on those facts: storage transforms in
both directions, payload validation, and the DDL for the table.

Manifesto:
    - **Describe once:** models are introspected at ``Database`` open, never per query
    - **Implicit identity:** every table has ``id INTEGER PRIMARY KEY AUTOINCREMENT``,
      never part of the descriptor
    - **Explicit relationships:** a foreign key is declared with
      ``Annotated[int | None, References("authors")]`` or in the relation
      config, not guessed from names
    - **Lossless storage:** booleans ↔ 0/1, dates ↔ ISO text, JSON ↔ TEXT

Architecture:
    ::

        pydantic model ──describe_model()──► TableDescriptor
                                                 │
                 ┌───────────────────────────────┼──────────────────────┐
                 ▼                               ▼                      ▼
        validate_insert/partial       to_storage/from_storage      create_table_sql
        (pydantic → ValidationError)  (bind values / hydrate rows) add_column_sql

Examples:
    >>> class Book(BaseModel):
    ...     title: str
    ...     published: bool = False
    ...     author_id: Annotated[int | None, References("authors")] = None
    >>> desc = describe_model("books", Book)
    >>> [(f.name, f.logical_type.value) for f in desc.fields]
    [('title', 'string'), ('published', 'boolean'), ('author_id', 'number')]
    >>> desc.to_storage({"published": True})
    {'published': 1}

Tags:
    schema, pydantic, ddl, storage-transform, validation, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import json
import types
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union, get_args, get_origin

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from spine_orm.dialect import SQLITE
from spine_orm.errors import ConfigurationError, ValidationError

IDENTITY = "id"
CREATED_AT = "created_at"
UPDATED_AT = "updated_at"
DELETED_AT = "deleted_at"


class LogicalType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    BINARY = "binary"
    JSON = "json"


@dataclass(frozen=True)
class References:
    """
    Marks a field as a foreign key to ``table``.

    ``inverse`` names the one-to-many field synthesized on the parent
    (defaults to the child table name); ``inverse=False`` suppresses it.
    """

    table: str
    inverse: str | bool | None = None


@dataclass(frozen=True)
class FieldDescriptor:
    name: str
    logical_type: LogicalType
    sql_type: str = "TEXT"
    optional: bool = False
    has_default: bool = False
    is_relationship: bool = False
    references: References | None = None
    managed: bool = False
    in_model: bool = True


@dataclass(frozen=True)
class TableDescriptor:
    """Ordered field list plus the model that validates payloads."""

    name: str
    model: type[BaseModel] | None
    fields: tuple[FieldDescriptor, ...]
    _adapters: dict[str, TypeAdapter] = field(default_factory=dict, compare=False, repr=False)

    def get_field(self, name: str) -> FieldDescriptor | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def columns(self) -> list[str]:
        return [IDENTITY] + [f.name for f in self.fields]

    def has_column(self, name: str) -> bool:
        return name == IDENTITY or self.get_field(name) is not None

    def with_field(self, descriptor: FieldDescriptor) -> TableDescriptor:
        if self.has_column(descriptor.name):
            return self
        return replace(self, fields=self.fields + (descriptor,), _adapters={})

    # -- Storage transforms ------------------------------------------------

    def to_storage(self, data: dict[str, Any]) -> dict[str, Any]:
        """Convert python values to what sqlite3 can bind."""
        out: dict[str, Any] = {}
        for key, value in data.items():
            desc = self.get_field(key)
            if desc is not None and desc.logical_type is LogicalType.JSON and value is not None:
                out[key] = json.dumps(_jsonable(value))
            else:
                out[key] = storage_value(value)
        return out

    def from_storage(self, row: dict[str, Any]) -> dict[str, Any]:
        """Invert :meth:`to_storage` for a row read back from the store."""
        out = dict(row)
        for desc in self.fields:
            value = out.get(desc.name)
            if value is None:
                continue
            if desc.logical_type is LogicalType.BOOLEAN:
                out[desc.name] = bool(value)
            elif desc.logical_type is LogicalType.DATETIME and isinstance(value, str):
                out[desc.name] = datetime.fromisoformat(value)
            elif desc.logical_type is LogicalType.DATE and isinstance(value, str):
                out[desc.name] = date.fromisoformat(value[:10])
            elif desc.logical_type is LogicalType.JSON and isinstance(value, str):
                out[desc.name] = json.loads(value)
        return out

    # -- Validation --------------------------------------------------------

    def validate_insert(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Validate a full payload through the model.

        Foreign-key columns that only exist in the relation config are
        validated as ``int | None`` and passed through next to the model's
        output. Unknown keys follow the model's own ``extra`` policy.
        """
        model_part = {k: v for k, v in data.items() if self._in_model(k)}
        extra_part = {k: v for k, v in data.items() if not self._in_model(k) and self.has_column(k)}
        result: dict[str, Any] = {}
        if self.model is not None:
            try:
                instance = self.model.model_validate(model_part)
            except PydanticValidationError as e:
                raise ValidationError.from_pydantic(self.name, e) from e
            result.update(instance.model_dump(exclude={IDENTITY}))
        else:
            result.update(model_part)
        result.update(self.validate_partial(extra_part))
        return result

    def validate_partial(self, changes: dict[str, Any]) -> dict[str, Any]:
        """Validate only the provided fields; unknown columns are rejected."""
        result: dict[str, Any] = {}
        issues: list[dict[str, Any]] = []
        for key, value in changes.items():
            if key == IDENTITY:
                result[key] = value
                continue
            adapter = self._adapter(key)
            if adapter is None:
                issues.append({"field": key, "message": f"Unknown column on {self.name}", "type": "extra_forbidden"})
                continue
            try:
                result[key] = adapter.validate_python(value)
            except PydanticValidationError as e:
                for err in e.errors():
                    issues.append({"field": key, "message": err.get("msg", ""), "type": err.get("type", "")})
        if issues:
            error = ValidationError(f"Invalid {self.name} payload", issues=issues)
            error.context.table = self.name
            raise error
        return result

    def _in_model(self, name: str) -> bool:
        return self.model is not None and name in self.model.model_fields

    def _adapter(self, name: str) -> TypeAdapter | None:
        if name in self._adapters:
            return self._adapters[name]
        desc = self.get_field(name)
        if desc is None:
            return None
        if self._in_model(name):
            info = self.model.model_fields[name]  # type: ignore[union-attr]
            if info.metadata:
                adapter = TypeAdapter(Annotated[(info.annotation, *info.metadata)])
            else:
                adapter = TypeAdapter(info.annotation)
        elif desc.logical_type is LogicalType.DATETIME:
            adapter = TypeAdapter(datetime | None)
        else:
            adapter = TypeAdapter(int | None)
        self._adapters[name] = adapter
        return adapter

    # -- DDL ---------------------------------------------------------------

    def create_table_sql(self) -> str:
        q = SQLITE.quote
        columns = [f"{IDENTITY} {SQLITE.auto_increment()}"]
        columns += [f"{q(f.name)} {f.sql_type}" for f in self.fields]
        columns += [
            f"FOREIGN KEY ({q(f.name)}) REFERENCES {q(f.references.table)}({IDENTITY}) ON DELETE SET NULL"
            for f in self.fields
            if f.references is not None
        ]
        return f"CREATE TABLE IF NOT EXISTS {q(self.name)} ({', '.join(columns)})"

    def add_column_sql(self, desc: FieldDescriptor) -> str:
        q = SQLITE.quote
        return f"ALTER TABLE {q(self.name)} ADD COLUMN {q(desc.name)} {desc.sql_type}"


def create_index_sql(table: str, columns: list[str]) -> str:
    q = SQLITE.quote
    name = f"idx_{table}_{'_'.join(columns)}"
    cols = ", ".join(q(c) for c in columns)
    return f"CREATE INDEX IF NOT EXISTS {q(name)} ON {q(table)} ({cols})"


def storage_value(value: Any) -> Any:
    """Transform a single bound value: booleans → 0/1, dates → ISO text, enums → value."""
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return float(value)
    return value


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


# -- Model introspection ---------------------------------------------------------


def _unwrap(annotation: Any) -> tuple[Any, bool, list[Any]]:
    """Strip ``Optional``/``Annotated``; return (inner type, allows None, extra metadata)."""
    optional = False
    metadata: list[Any] = []
    while True:
        origin = get_origin(annotation)
        if origin is Annotated:
            annotation, *extra = get_args(annotation)
            metadata.extend(extra)
        elif origin in (Union, types.UnionType):
            args = [a for a in get_args(annotation) if a is not type(None)]
            if len(args) < len(get_args(annotation)):
                optional = True
            if len(args) != 1:
                return annotation, optional, metadata
            annotation = args[0]
        else:
            return annotation, optional, metadata


def _logical_type(annotation: Any) -> tuple[LogicalType, str]:
    if get_origin(annotation) is Literal:
        values = get_args(annotation)
        annotation = type(values[0]) if values else str
    if not isinstance(annotation, type):
        return LogicalType.JSON, "TEXT"
    if issubclass(annotation, bool):
        return LogicalType.BOOLEAN, "INTEGER"
    if issubclass(annotation, Enum):
        if issubclass(annotation, int):
            return LogicalType.NUMBER, "INTEGER"
        return LogicalType.STRING, "TEXT"
    if issubclass(annotation, int):
        return LogicalType.NUMBER, "INTEGER"
    if issubclass(annotation, (float, Decimal)):
        return LogicalType.NUMBER, "REAL"
    if issubclass(annotation, str):
        return LogicalType.STRING, "TEXT"
    if issubclass(annotation, datetime):
        return LogicalType.DATETIME, "TEXT"
    if issubclass(annotation, date):
        return LogicalType.DATE, "TEXT"
    if issubclass(annotation, (bytes, bytearray)):
        return LogicalType.BINARY, "BLOB"
    return LogicalType.JSON, "TEXT"


def describe_model(table: str, model: type[BaseModel]) -> TableDescriptor:
    """Describe a pydantic model as the table ``table``."""
    fields: list[FieldDescriptor] = []
    for name, info in model.model_fields.items():
        if name == IDENTITY:
            continue
        inner, optional, metadata = _unwrap(info.annotation)
        metadata = list(info.metadata) + metadata
        logical, sql_type = _logical_type(inner)
        ref = next((m for m in metadata if isinstance(m, References)), None)
        if ref is not None and not name.endswith("_id"):
            raise ConfigurationError(
                f"Foreign key field '{name}' on '{table}' must end with '_id'"
            ).with_context(table=table, field=name)
        fields.append(
            FieldDescriptor(
                name=name,
                logical_type=logical,
                sql_type=sql_type,
                optional=optional,
                has_default=not info.is_required(),
                is_relationship=ref is not None,
                references=ref,
            )
        )
    return TableDescriptor(name=table, model=model, fields=tuple(fields))


def foreign_key_field(name: str, parent: str) -> FieldDescriptor:
    """Descriptor for a foreign-key column declared only in the relation config."""
    return FieldDescriptor(
        name=name,
        logical_type=LogicalType.NUMBER,
        sql_type="INTEGER",
        optional=True,
        has_default=True,
        is_relationship=True,
        references=References(parent),
        in_model=False,
    )


def managed_field(name: str) -> FieldDescriptor:
    """Descriptor for ``created_at``/``updated_at``/``deleted_at``."""
    return FieldDescriptor(
        name=name,
        logical_type=LogicalType.DATETIME,
        optional=True,
        has_default=True,
        managed=True,
        in_model=False,
    )


__all__ = [
    "CREATED_AT",
    "DELETED_AT",
    "IDENTITY",
    "UPDATED_AT",
    "FieldDescriptor",
    "LogicalType",
    "References",
    "TableDescriptor",
    "create_index_sql",
    "describe_model",
    "foreign_key_field",
    "managed_field",
    "storage_value",
]
