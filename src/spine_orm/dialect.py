"""SQLite SQL fragments used by the compilers and the schema layer.

Every piece of SQL text that depends on the engine's syntax (identifier
quoting, placeholders, DDL column types, introspection queries) is produced
here so the compilers only concatenate fragments.

Examples:
    >>> from spine_orm.dialect import SQLITE, qualify
    >>> SQLITE.placeholders(3)
    '?, ?, ?'
    >>> qualify("t1", "title")
    '"t1"."title"'
    >>> SQLITE.quote('odd"name')
    '"odd""name"'

Guardrails:
    ❌ DON'T: Interpolate user-supplied field names without ``check_identifier``
    ✅ DO: Bind every value with a placeholder

Tags:
    dialect, sql, sqlite, quoting, spine-orm

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import re

from spine_orm.errors import QueryCompilationError

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class SQLiteDialect:
    """SQLite dialect: ``?`` placeholders, double-quoted identifiers."""

    @property
    def name(self) -> str:
        return "sqlite"

    # -- Identifiers -------------------------------------------------------

    def quote(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    def qualify(self, alias: str, column: str) -> str:
        return f"{self.quote(alias)}.{self.quote(column)}"

    # -- Placeholders ------------------------------------------------------

    def placeholders(self, count: int) -> str:
        return ", ".join("?" for _ in range(count))

    # -- DDL ---------------------------------------------------------------

    def auto_increment(self) -> str:
        return "INTEGER PRIMARY KEY AUTOINCREMENT"

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        cols = ", ".join(columns)
        return f"INSERT OR IGNORE INTO {table} ({cols}) VALUES ({self.placeholders(len(columns))})"

    # -- Introspection -----------------------------------------------------

    def table_info(self, table: str) -> str:
        return f"PRAGMA table_info({self.quote(table)})"


SQLITE = SQLiteDialect()


def qualify(alias: str, column: str) -> str:
    """Canonical ``"alias"."column"`` form of a column reference."""
    return SQLITE.qualify(alias, column)


def check_identifier(name: str, *, table: str | None = None) -> str:
    """Reject field names that are not plain (optionally dotted) identifiers.

    Object-style conditions interpolate field names into SQL, so anything
    else is refused before compilation.
    """
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise QueryCompilationError(f"Invalid column name: {name!r}").with_context(
            table=table, field=str(name)
        )
    return name


__all__ = ["SQLITE", "SQLiteDialect", "check_identifier", "qualify"]
