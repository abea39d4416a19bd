"""Structured logging module."""

from .config import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    unbind_context,
)

__all__ = [
    "LogContext",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "set_correlation_id",
    "unbind_context",
]
