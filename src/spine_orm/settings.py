"""
Centralized settings for spine-orm.

All fields can be set via ``SPINE_ORM_*`` environment variables (e.g.
``SPINE_ORM_POLL_INTERVAL=0.25``) or a ``.env`` file. ``Database`` takes
an explicit settings object and/or keyword overrides; otherwise it uses the
cached :func:`get_settings` instance.

Tags:
    spine-orm, configuration, settings, pydantic, caching

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

JournalMode = Literal["WAL", "DELETE", "TRUNCATE", "PERSIST", "MEMORY", "OFF"]


class OrmSettings(BaseSettings):
    """spine-orm configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SPINE_ORM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Connection ───────────────────────────────────────────────
    journal_mode: JournalMode = Field(default="WAL")
    busy_timeout: float = Field(default=5.0, description="sqlite3 connect timeout (seconds)")
    foreign_keys: bool = Field(default=True)

    # ── Change tracking ──────────────────────────────────────────
    change_tracking: bool = Field(
        default=True,
        description="Install per-table sequence triggers; off falls back to COUNT/MAX fingerprints",
    )
    track_row_changes: bool = Field(
        default=False,
        description="Keep the row-level change log that backs Database.on()",
    )
    poll_interval: float = Field(default=0.5, gt=0, description="Default subscription interval (seconds)")

    # ── Record conventions ───────────────────────────────────────
    timestamps: bool = Field(default=False, description="Maintain created_at/updated_at")
    soft_deletes: bool = Field(default=False, description="Mark rows with deleted_at instead of deleting")

    # ── Logging ──────────────────────────────────────────────────
    debug: bool = Field(default=False, description="Log every SQL statement at debug level")
    log_level: str = Field(default="INFO")

    @model_validator(mode="after")
    def _check_row_changes(self) -> OrmSettings:
        if self.track_row_changes and not self.change_tracking:
            raise ValueError("track_row_changes requires change_tracking")
        return self


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, OrmSettings] = {}


def get_settings(*, _force_reload: bool = False) -> OrmSettings:
    """Load, validate, and cache an :class:`OrmSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = OrmSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Drop the cached settings (tests, env changes)."""
    _settings_cache.clear()


__all__ = ["JournalMode", "OrmSettings", "clear_settings_cache", "get_settings"]
