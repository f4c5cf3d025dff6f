"""
Tests for the logging module.

Tests verify:
- Loggers carry the module name and keyword fields
- Scoped context is bound and unbound
- configure_logging filters by level and renders JSON
"""

import json

import pytest
import structlog
from structlog.testing import capture_logs

from spine_orm.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)


@pytest.fixture(autouse=True)
def _reset_structlog():
    clear_context()
    yield
    clear_context()
    structlog.reset_defaults()


class TestGetLogger:
    """Test logger creation."""

    def test_bound_to_name(self):
        with capture_logs() as logs:
            get_logger("spine_orm.tests").info("rows_loaded", rows=3)
        assert logs == [{"event": "rows_loaded", "rows": 3, "logger_name": "spine_orm.tests", "log_level": "info"}]

    def test_without_name(self):
        with capture_logs() as logs:
            get_logger().warning("plain")
        assert logs == [{"event": "plain", "log_level": "warning"}]


class TestContextManagement:
    """Test context bind/unbind/clear operations."""

    def test_bind_and_unbind(self):
        bind_context(table="books", revision="1:1")
        unbind_context("revision")
        assert structlog.contextvars.get_contextvars() == {"table": "books"}

    def test_clear(self):
        bind_context(table="books")
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_log_context_is_scoped(self):
        with LogContext(table="books") as ctx:
            assert isinstance(ctx, LogContext)
            assert structlog.contextvars.get_contextvars()["table"] == "books"
        assert "table" not in structlog.contextvars.get_contextvars()


class TestConfigureLogging:
    """Test logging configuration."""

    def test_json_output_with_context(self, capsys):
        configure_logging(level="DEBUG", json_format=True, add_timestamp=False)
        with LogContext(table="users"):
            get_logger("spine_orm.test").info("database_opened", tables=3)

        line = json.loads(capsys.readouterr().out.strip())
        assert line == {
            "event": "database_opened",
            "tables": 3,
            "logger_name": "spine_orm.test",
            "table": "users",
            "level": "info",
            "service": "spine-orm",
        }

    def test_level_filters(self, capsys):
        configure_logging(level="WARNING", json_format=True)
        log = get_logger("spine_orm.test")
        log.info("hidden")
        log.warning("subscription_tick_failed", table="users")

        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
        assert [line["event"] for line in lines] == ["subscription_tick_failed"]
        assert "timestamp" in lines[0]

    def test_service_name(self, capsys):
        configure_logging(json_format=True, service="inventory", add_timestamp=False)
        get_logger().info("ready")
        assert json.loads(capsys.readouterr().out)["service"] == "inventory"
        configure_logging(json_format=True, service="spine-orm")

    def test_level_from_settings(self, capsys, monkeypatch):
        monkeypatch.setenv("SPINE_ORM_LOG_LEVEL", "ERROR")
        configure_logging(json_format=True)
        log = get_logger("spine_orm.test")
        log.warning("ignored")
        log.error("store_failed")
        assert [json.loads(line)["event"] for line in capsys.readouterr().out.splitlines()] == ["store_failed"]
