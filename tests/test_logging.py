"""
Tests for Structured Logging
============================

Tests for dashsync/monitoring/logging.py
"""

import logging

import pytest
import structlog

from dashsync import __version__
from dashsync.monitoring.logging import (
    REDACTED,
    add_service_info,
    bind_context,
    configure_logging,
    get_logger,
    sanitize_sensitive_data,
    setup_logging,
    unbind_context,
)


@pytest.fixture
def restore_structlog():
    """Undo global logging configuration after the test."""
    root_level = logging.getLogger().level
    structlog.contextvars.clear_contextvars()
    yield
    logging.getLogger().setLevel(root_level)
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


class TestProcessors:
    """Tests for the custom processors."""

    def test_add_service_info(self):
        """Test service name and version are added."""
        event = add_service_info(None, "info", {"event": "cache_fetch_failed"})

        assert event["service"] == "dashsync"
        assert event["version"] == __version__

    def test_component_service_name_is_kept(self):
        """Test a logger bound with its own service name keeps it."""
        event = add_service_info(None, "info", {"event": "x", "service": "query_cache"})

        assert event["service"] == "query_cache"

    def test_sanitize_nested_payload(self):
        """Test sensitive keys are masked at any depth."""
        event = sanitize_sensitive_data(
            None,
            "info",
            {
                "event": "change_event_malformed",
                "payload": {"new": {"id": "c1", "access_token": "abc"}},
                "rows": [{"password": "x", "name": "Ann"}],
                "authorization": "Bearer xyz",
            },
        )

        assert event["payload"]["new"]["id"] == "c1"
        assert event["payload"]["new"]["access_token"] == REDACTED
        assert event["rows"] == [{"password": REDACTED, "name": "Ann"}]
        assert event["authorization"] == REDACTED


class TestConfigureLogging:
    """Tests for configure_logging and setup_logging."""

    def test_configure_json(self, restore_structlog):
        """Test JSON configuration ends in the JSON renderer."""
        configure_logging(level="DEBUG", json_output=True)

        processors = structlog.get_config()["processors"]
        assert structlog.is_configured()
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert sanitize_sensitive_data in processors
        assert logging.getLogger("redis").level == logging.WARNING

    def test_setup_from_settings(self, settings, restore_structlog):
        """Test the settings decide level and renderer."""
        settings = settings.model_copy(update={"log_level": "WARNING", "log_json": False})

        setup_logging(settings)

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        assert logging.getLogger().level == logging.WARNING

    def test_context_binding(self, restore_structlog):
        """Test bound context is merged into events until unbound."""
        bind_context(session_id="abc123")
        assert structlog.contextvars.get_contextvars() == {"session_id": "abc123"}

        unbind_context("session_id")
        assert structlog.contextvars.get_contextvars() == {}

    def test_get_logger(self, restore_structlog):
        """Test get_logger returns a usable logger."""
        configure_logging(level="INFO")

        get_logger("dashsync.tests").info("logging_configured", scope="bookings")
