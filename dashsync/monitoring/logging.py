"""
dashsync - Structured Logging

structlog setup for the sync layer. Every module logs through
``structlog.get_logger(__name__)`` with snake_case event names; this module
decides how those events are rendered.

Change payloads end up in log context (malformed messages, failed
loaders), so values under credential-like keys are redacted before
rendering.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

from dashsync import __version__

if TYPE_CHECKING:
    from dashsync.config import SyncSettings

SERVICE_NAME = "dashsync"
REDACTED = "[REDACTED]"

# Substrings of keys whose values never reach the log output
SENSITIVE_KEYS = frozenset({
    "password",
    "secret",
    "token",
    "api_key",
    "apikey",
    "authorization",
    "cookie",
    "session_key",
})

# Libraries whose INFO chatter drowns out sync events
QUIET_LOGGERS = ("redis", "httpx", "httpcore")


def add_service_info(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Stamp every event with the service name and version."""
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict["version"] = __version__
    return event_dict


def _is_sensitive(key: Any) -> bool:
    return isinstance(key, str) and any(s in key.lower() for s in SENSITIVE_KEYS)


def _redact(value: Any, depth: int) -> Any:
    if depth <= 0:
        return value
    if isinstance(value, Mapping):
        return {
            k: REDACTED if _is_sensitive(k) else _redact(v, depth - 1)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item, depth - 1) for item in value]
    return value


def sanitize_sensitive_data(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Redact credential-like keys, including inside nested change payloads."""
    redacted: EventDict = _redact(event_dict, depth=8)
    return redacted


def build_processors(json_output: bool, sanitize_logs: bool = True) -> list[Processor]:
    """Processor chain shared by every configuration."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_service_info,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if sanitize_logs:
        processors.append(sanitize_sensitive_data)

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    sanitize_logs: bool = True,
) -> None:
    """
    Configure structlog on top of the standard library logging module.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines instead of console output
        sanitize_logs: Redact sensitive keys
    """
    log_level = getattr(logging, level.upper())

    structlog.configure(
        processors=build_processors(json_output, sanitize_logs),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Sessions may reconfigure; module loggers must pick that up
        cache_logger_on_first_use=False,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    logging.getLogger().setLevel(log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(settings: SyncSettings) -> None:
    """Configure logging from the ``DASHSYNC_LOG_*`` settings."""
    configure_logging(level=settings.log_level, json_output=settings.log_json)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    bound_logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return bound_logger


def bind_context(**kwargs: Any) -> None:
    """Bind values that appear in every subsequent event of this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)
