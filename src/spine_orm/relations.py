"""
Relationship graph: belongs-to edges and their one-to-many inverses.

Built once when a :class:`~spine_orm.database.Database` opens, from two
sources that may be mixed:

1. ``References`` markers on model fields::

       author_id: Annotated[int | None, References("authors")] = None

2. A relation config mapping child tables to foreign keys::

       {"books": {"author_id": "authors"}}
       {"books": {"author": "authors"}}                 # FK column author_id
       {"books": {"editor_id": {"to": "authors", "inverse": "edited_books"}}}
       {"books": {"reviewer_id": {"to": "authors", "inverse": False}}}

Every declaration becomes a ``belongs-to`` edge (``book.author``) and,
unless suppressed, a synthesized ``one-to-many`` edge on the parent named
after the child table (``author.books``). The graph is immutable after
construction and every lookup is answered from it.

Guardrails:
    ❌ DON'T: Let two foreign keys into the same parent share the default inverse
    ✅ DO: Name the second inverse explicitly or suppress it

Tags:
    relationships, belongs-to, one-to-many, graph, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from spine_orm.errors import ConfigurationError
from spine_orm.schema import TableDescriptor


class RelationKind(str, Enum):
    BELONGS_TO = "belongs-to"
    ONE_TO_MANY = "one-to-many"


@dataclass(frozen=True)
class Relationship:
    """
    One directed edge.

    ``foreign_key`` is the FK column on ``from_table`` for belongs-to and
    empty for one-to-many; ``mapped_by`` is the FK column on ``to_table``
    that a one-to-many edge inverts.
    """

    kind: RelationKind
    from_table: str
    to_table: str
    field_name: str
    foreign_key: str = ""
    mapped_by: str = ""


@dataclass(frozen=True)
class ForeignKey:
    """A declared child → parent foreign key, before edges are built."""

    child: str
    foreign_key: str
    parent: str
    inverse: str | bool | None = None

    @property
    def field_name(self) -> str:
        return self.foreign_key[:-3] if self.foreign_key.endswith("_id") else self.foreign_key


def parse_relations_config(config: Mapping[str, Mapping[str, Any]] | None) -> list[ForeignKey]:
    """Normalize the relation config into :class:`ForeignKey` declarations."""
    declarations: list[ForeignKey] = []
    for child, mapping in (config or {}).items():
        for key, target in mapping.items():
            fk = key if key.endswith("_id") else f"{key}_id"
            if isinstance(target, str):
                declarations.append(ForeignKey(child, fk, target))
            elif isinstance(target, Mapping) and "to" in target:
                declarations.append(ForeignKey(child, fk, target["to"], target.get("inverse")))
            else:
                raise ConfigurationError(
                    f"Relation '{child}.{key}' must map to a table name or {{'to': table}}"
                ).with_context(table=child, field=key)
    return declarations


def declared_foreign_keys(descriptors: Mapping[str, TableDescriptor]) -> list[ForeignKey]:
    """Declarations carried by ``References`` markers in the models."""
    return [
        ForeignKey(desc.name, f.name, f.references.table, f.references.inverse)
        for desc in descriptors.values()
        for f in desc.fields
        if f.references is not None and f.in_model
    ]


class RelationshipGraph:
    """Immutable edge list with lookups by table, field and table pair."""

    def __init__(self, edges: tuple[Relationship, ...] = ()):
        self._edges = edges

    @property
    def edges(self) -> tuple[Relationship, ...]:
        return self._edges

    def __iter__(self) -> Iterator[Relationship]:
        return iter(self._edges)

    def __len__(self) -> int:
        return len(self._edges)

    def for_table(self, table: str) -> list[Relationship]:
        return [e for e in self._edges if e.from_table == table]

    def find(self, table: str, field_name: str) -> Relationship | None:
        for edge in self._edges:
            if edge.from_table == table and edge.field_name == field_name:
                return edge
        return None

    def belongs_to(self, table: str) -> list[Relationship]:
        return [e for e in self.for_table(table) if e.kind is RelationKind.BELONGS_TO]

    def join_columns(self, table: str, target: str) -> tuple[str, str] | None:
        """
        ``(from_col, to_col)`` joining ``table`` to ``target`` over a belongs-to
        edge in either direction, or ``None``.
        """
        for edge in self.belongs_to(table):
            if edge.to_table == target:
                return edge.foreign_key, "id"
        for edge in self.belongs_to(target):
            if edge.to_table == table:
                return "id", edge.foreign_key
        return None


def build_relationships(
    descriptors: Mapping[str, TableDescriptor],
    declarations: list[ForeignKey],
) -> RelationshipGraph:
    """
    Build the edge list.

    Raises:
        ConfigurationError: unknown source/target table, a relationship
            field clashing with a column, or two inverses with the same name.
    """
    edges: list[Relationship] = []
    seen: dict[tuple[str, str], Relationship] = {}

    def add(edge: Relationship) -> None:
        key = (edge.from_table, edge.field_name)
        existing = seen.get(key)
        if existing is not None:
            if existing == edge:
                return
            raise ConfigurationError(
                f"Relationship field '{edge.field_name}' on '{edge.from_table}' is ambiguous"
            ).with_context(table=edge.from_table, relation=edge.field_name)
        if descriptors[edge.from_table].has_column(edge.field_name):
            raise ConfigurationError(
                f"Relationship field '{edge.field_name}' clashes with a column of '{edge.from_table}'"
            ).with_context(table=edge.from_table, relation=edge.field_name)
        seen[key] = edge
        edges.append(edge)

    for decl in declarations:
        for table in (decl.child, decl.parent):
            if table not in descriptors:
                raise ConfigurationError(
                    f"Relation '{decl.child}.{decl.foreign_key}' references unknown table '{table}'"
                ).with_context(table=decl.child, relation=decl.field_name, target=table)

        add(
            Relationship(
                kind=RelationKind.BELONGS_TO,
                from_table=decl.child,
                to_table=decl.parent,
                field_name=decl.field_name,
                foreign_key=decl.foreign_key,
            )
        )

    for decl in declarations:
        if decl.inverse is False:
            continue
        inverse = decl.inverse if isinstance(decl.inverse, str) else decl.child
        add(
            Relationship(
                kind=RelationKind.ONE_TO_MANY,
                from_table=decl.parent,
                to_table=decl.child,
                field_name=inverse,
                mapped_by=decl.foreign_key,
            )
        )

    return RelationshipGraph(tuple(edges))


__all__ = [
    "ForeignKey",
    "RelationKind",
    "Relationship",
    "RelationshipGraph",
    "build_relationships",
    "declared_foreign_keys",
    "parse_relations_config",
]
