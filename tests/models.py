"""Record models shared by the test suite."""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel

from spine_orm import References

POLL = 0.02


class Author(BaseModel):
    name: str
    country: str | None = None


class Book(BaseModel):
    title: str
    year: int | None = None
    author_id: Annotated[int | None, References("authors")] = None


class User(BaseModel):
    name: str
    score: int = 0
    active: bool = True
    tags: list[str] = []


SCHEMAS = {"authors": Author, "books": Book, "users": User}
