"""Structured logging configuration with structlog.

Every admission runs inside a ``LogContext`` carrying its job id and
correlation id, so store, flag and notification logs emitted while handling
it can be joined without threading ids through each call.
"""

import logging
import os
import sys
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import EventDict, Processor

if TYPE_CHECKING:
    from genguard.config import LoggingSettings

# Correlation ID of the admission currently being handled on this task
_correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_service_info = {"service": "genguard", "version": "0.1.0"}


def get_correlation_id() -> str | None:
    return _correlation_id_var.get()


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id_var.set(correlation_id)


def add_correlation_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Fill ``correlation_id`` from the task's context unless already bound."""
    correlation_id = _correlation_id_var.get()
    if correlation_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def add_service_info(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.update(_service_info)
    return event_dict


def configure_logging(
    settings: "LoggingSettings | None" = None,
    *,
    level: str | None = None,
    json_format: bool | None = None,
    service_name: str | None = None,
) -> None:
    """Route structlog and stdlib logging to stdout.

    Explicit ``level``/``json_format`` arguments win over ``settings``, which
    default to the ``LOG_`` environment group. JSON output is meant for
    deployed services; the console renderer for local runs.
    """
    if settings is None:
        from genguard.config import LoggingSettings

        settings = LoggingSettings()
    log_level = (level or settings.level).upper()
    use_json = settings.json_format if json_format is None else json_format

    _service_info["service"] = service_name or os.environ.get("SERVICE_NAME", "genguard")
    _service_info["version"] = os.environ.get("SERVICE_VERSION", "0.1.0")

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_correlation_id,
        add_service_info,
    ]
    if use_json:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level),
    )
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """Bind values for the duration of a block.

    On exit the previous bindings are restored, so nested contexts that reuse
    a key (e.g. a retried job inside a batch) do not clobber the outer value.
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._tokens: Any = None

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self._context)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


def bind_context(**kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
