"""Database adapters."""

from spine_orm.adapters.sqlite import SQLiteAdapter

__all__ = ["SQLiteAdapter"]
