"""
dashsync Monitoring

Structured logging configuration.
"""

from dashsync.monitoring.logging import (
    bind_context,
    configure_logging,
    get_logger,
    setup_logging,
    unbind_context,
)

__all__ = [
    "configure_logging",
    "setup_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
]
