"""Hydrated records.

An :class:`Entity` wraps one row after storage transforms were inverted.
Columns read as attributes or items (``book.title``, ``book["title"]``);
relationships read as zero-argument accessors (``book.author()``,
``author.books()``); computed fields registered on the database read as
plain attributes.

Entities never write on assignment. Changes go through
:meth:`Entity.update`, which validates, persists and refreshes the record
in place; :meth:`Entity.delete` removes it.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

from spine_orm.relations import Relationship, RelationKind


class RelationAccessor:
    """Zero-argument callable returned for a relationship attribute."""

    __slots__ = ("_entity", "_edge")

    def __init__(self, entity: Entity, edge: Relationship):
        self._entity = entity
        self._edge = edge

    @property
    def relationship(self) -> Relationship:
        return self._edge

    @property
    def loaded(self) -> bool:
        return self._edge.field_name in self._entity._loaded

    def __call__(self) -> Entity | list[Entity] | None:
        loaded = self._entity._loaded
        if self._edge.field_name in loaded:
            value = loaded[self._edge.field_name]
            return list(value) if isinstance(value, list) else value
        navigator = self._entity._session.navigator
        if self._edge.kind is RelationKind.BELONGS_TO:
            return navigator.load_parent(self._edge, self._entity)
        return navigator.load_children(self._edge, self._entity)

    def __repr__(self) -> str:
        return f"<RelationAccessor {self._edge.from_table}.{self._edge.field_name}>"


class Entity:
    """One row of ``table``."""

    __slots__ = ("_table", "_data", "_session", "_loaded")

    def __init__(self, table: str, data: dict[str, Any], session: Any):
        object.__setattr__(self, "_table", table)
        object.__setattr__(self, "_data", dict(data))
        object.__setattr__(self, "_session", session)
        object.__setattr__(self, "_loaded", {})

    # -- Reading -------------------------------------------------------------

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        data = self._data
        if name in data:
            return data[name]
        edge = self._session.relationships.find(self._table, name)
        if edge is not None:
            return RelationAccessor(self, edge)
        computed: dict[str, Callable[[Entity], Any]] = self._session.computed_fields(self._table)
        if name in computed:
            return computed[name](self)
        raise AttributeError(f"'{self._table}' entity has no attribute '{name}'")

    def __getitem__(self, key: str) -> Any:
        if key in self._data:
            return self._data[key]
        if key in self._loaded:
            return self._loaded[key]
        raise KeyError(key)

    def get(self, key: str, default: Any = None) -> Any:
        try:
            return self[key]
        except KeyError:
            return default

    def __contains__(self, key: object) -> bool:
        return key in self._data or key in self._loaded

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def keys(self):
        return self._data.keys()

    @property
    def table(self) -> str:
        return self._table

    def to_dict(self, *, relations: bool = False) -> dict[str, Any]:
        """Column values; with ``relations=True`` eager-loaded relations too."""
        result = dict(self._data)
        if relations:
            for name, value in self._loaded.items():
                if isinstance(value, list):
                    result[name] = [e.to_dict(relations=True) for e in value]
                elif isinstance(value, Entity):
                    result[name] = value.to_dict(relations=True)
                else:
                    result[name] = value
        return result

    # -- Writing -------------------------------------------------------------

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(
            f"Entity attributes are read-only; use .update({name}=...) to persist changes"
        )

    def __delattr__(self, name: str) -> None:
        raise AttributeError("Entity attributes are read-only")

    def update(self, **changes: Any) -> Entity:
        """Persist ``changes`` and refresh this record in place."""
        fresh = self._session.repository(self._table).update(self._data["id"], changes)
        if fresh is not None:
            self._data.clear()
            self._data.update(fresh._data)
        return self

    def delete(self) -> bool:
        return self._session.repository(self._table).delete(self._data["id"])

    def attach(self, relation: str, value: Entity | list[Entity] | None) -> None:
        """Store eager-loaded relation data; accessors then return it without a query."""
        self._loaded[relation] = value

    # -- Identity ------------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return NotImplemented
        return self._table == other._table and self._data == other._data

    def __hash__(self) -> int:
        return hash((self._table, self._data.get("id")))

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in self._data.items())
        return f"<{self._table} {fields}>"


__all__ = ["Entity", "RelationAccessor"]
