"""Tests for ``spine_orm.relations`` — relationship graph building."""

from __future__ import annotations

from typing import Annotated

import pytest
from pydantic import BaseModel

from spine_orm.errors import ConfigurationError
from spine_orm.relations import (
    ForeignKey,
    RelationKind,
    Relationship,
    build_relationships,
    declared_foreign_keys,
    parse_relations_config,
)
from spine_orm.schema import References, describe_model, foreign_key_field


class Author(BaseModel):
    name: str


class Book(BaseModel):
    title: str
    author_id: Annotated[int | None, References("authors")] = None


class Plain(BaseModel):
    title: str


def _descriptors(**models):
    return {table: describe_model(table, model) for table, model in models.items()}


class TestParseRelationsConfig:
    def test_fk_key(self):
        decls = parse_relations_config({"books": {"author_id": "authors"}})
        assert decls == [ForeignKey("books", "author_id", "authors")]
        assert decls[0].field_name == "author"

    def test_field_name_key(self):
        decls = parse_relations_config({"books": {"author": "authors"}})
        assert decls == [ForeignKey("books", "author_id", "authors")]

    def test_mapping_value(self):
        decls = parse_relations_config({"books": {"editor_id": {"to": "authors", "inverse": "edited"}}})
        assert decls == [ForeignKey("books", "editor_id", "authors", "edited")]

    def test_bad_value(self):
        with pytest.raises(ConfigurationError):
            parse_relations_config({"books": {"author_id": 42}})

    def test_none(self):
        assert parse_relations_config(None) == []


class TestBuildRelationships:
    def test_marker_produces_both_edges(self):
        descriptors = _descriptors(authors=Author, books=Book)
        graph = build_relationships(descriptors, declared_foreign_keys(descriptors))

        assert graph.find("books", "author") == Relationship(
            kind=RelationKind.BELONGS_TO,
            from_table="books",
            to_table="authors",
            field_name="author",
            foreign_key="author_id",
        )
        assert graph.find("authors", "books") == Relationship(
            kind=RelationKind.ONE_TO_MANY,
            from_table="authors",
            to_table="books",
            field_name="books",
            mapped_by="author_id",
        )
        assert len(graph) == 2

    def test_config_produces_edges(self):
        descriptors = _descriptors(authors=Author, books=Plain)
        descriptors["books"] = descriptors["books"].with_field(foreign_key_field("author_id", "authors"))
        graph = build_relationships(descriptors, parse_relations_config({"books": {"author_id": "authors"}}))
        assert graph.find("books", "author").foreign_key == "author_id"
        assert graph.find("authors", "books").kind is RelationKind.ONE_TO_MANY

    def test_marker_and_config_deduplicate(self):
        descriptors = _descriptors(authors=Author, books=Book)
        decls = declared_foreign_keys(descriptors) + parse_relations_config({"books": {"author_id": "authors"}})
        assert len(build_relationships(descriptors, decls)) == 2

    def test_inverse_suppressed(self):
        descriptors = _descriptors(authors=Author, books=Plain)
        decls = [ForeignKey("books", "author_id", "authors", inverse=False)]
        graph = build_relationships(descriptors, decls)
        assert graph.find("authors", "books") is None
        assert len(graph) == 1

    def test_custom_inverse_name(self):
        descriptors = _descriptors(authors=Author, books=Plain)
        graph = build_relationships(descriptors, [ForeignKey("books", "author_id", "authors", "works")])
        assert graph.find("authors", "works").mapped_by == "author_id"

    def test_two_fks_to_same_parent(self):
        descriptors = _descriptors(authors=Author, books=Plain)
        decls = [
            ForeignKey("books", "author_id", "authors"),
            ForeignKey("books", "editor_id", "authors", "edited_books"),
        ]
        graph = build_relationships(descriptors, decls)
        assert graph.find("books", "author").foreign_key == "author_id"
        assert graph.find("books", "editor").foreign_key == "editor_id"
        assert graph.find("authors", "edited_books").mapped_by == "editor_id"

    def test_inverse_collision_raises(self):
        descriptors = _descriptors(authors=Author, books=Plain)
        decls = [ForeignKey("books", "author_id", "authors"), ForeignKey("books", "editor_id", "authors")]
        with pytest.raises(ConfigurationError, match="ambiguous"):
            build_relationships(descriptors, decls)

    def test_inverse_clashing_with_column_raises(self):
        descriptors = _descriptors(authors=Author, books=Plain)
        with pytest.raises(ConfigurationError, match="clashes with a column"):
            build_relationships(descriptors, [ForeignKey("books", "author_id", "authors", "name")])

    def test_unknown_target_raises(self):
        descriptors = _descriptors(books=Plain)
        with pytest.raises(ConfigurationError, match="unknown table 'ghosts'") as exc_info:
            build_relationships(descriptors, [ForeignKey("books", "ghost_id", "ghosts")])
        assert exc_info.value.context.metadata == {"target": "ghosts"}

    def test_unknown_source_raises(self):
        descriptors = _descriptors(authors=Author)
        with pytest.raises(ConfigurationError):
            build_relationships(descriptors, [ForeignKey("books", "author_id", "authors")])


class TestRelationshipGraph:
    @pytest.fixture
    def graph(self):
        descriptors = _descriptors(authors=Author, books=Book)
        return build_relationships(descriptors, declared_foreign_keys(descriptors))

    def test_edges_are_frozen(self, graph):
        with pytest.raises(AttributeError):
            graph.edges[0].field_name = "x"  # type: ignore[misc]

    def test_for_table(self, graph):
        assert [e.field_name for e in graph.for_table("authors")] == ["books"]

    def test_belongs_to(self, graph):
        assert [e.field_name for e in graph.belongs_to("books")] == ["author"]
        assert graph.belongs_to("authors") == []

    def test_join_columns_both_directions(self, graph):
        assert graph.join_columns("books", "authors") == ("author_id", "id")
        assert graph.join_columns("authors", "books") == ("id", "author_id")

    def test_join_columns_unrelated(self, graph):
        assert graph.join_columns("books", "books") is None

    def test_iteration(self, graph):
        assert {e.kind for e in graph} == {RelationKind.BELONGS_TO, RelationKind.ONE_TO_MANY}
