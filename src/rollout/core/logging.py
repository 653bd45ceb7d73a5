"""
Structured logging for rollout-core.

All modules log through ``get_logger(__name__)`` and emit dotted event
names with key/value fields::

    logger.info("stage.complete", stage="build", outcome="succeeded")

``configure_logging()`` is called once at the edge (CLI, API factory).
JSON lines use ECS field names (``@timestamp``, ``log.level``,
``service.name``) so pipeline logs can be shipped to a log aggregator
unchanged. A tty gets the coloured console renderer instead.

The engine binds ``run_id`` and ``pipeline`` with :class:`LogContext` for
the duration of a run; stage threads inherit it and add ``stage``.

Fields whose name looks like a secret (``password``, ``token``, ...) are
masked before rendering.

Tags:
    logging, structlog, observability, rollout-core
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog._config import BoundLoggerLazyProxy
from structlog.types import EventDict, Processor, WrappedLogger

REDACTED = "***"
SECRET_KEYS = ("password", "token", "secret", "api_key", "authorization")

_service = "rollout"

_ECS_FIELDS = {"timestamp": "@timestamp", "level": "log.level", "logger": "log.logger"}


def _service_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service.name", _service)
    return event_dict


def _redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask values of secret-looking keys."""
    for key in list(event_dict):
        lowered = key.lower()
        if any(marker in lowered for marker in SECRET_KEYS) and event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def _ecs_names(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for plain, ecs in _ECS_FIELDS.items():
        if plain in event_dict:
            event_dict[ecs] = event_dict.pop(plain)
    return event_dict


def _stderr(*args: Any) -> structlog.PrintLogger:
    # stdout carries --json command output; sys.stderr is looked up per logger for capture in tests.
    return structlog.PrintLogger(file=sys.stderr)


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "rollout",
) -> None:
    """Configure structlog for the process.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: True for JSON lines, False for the console renderer,
            None to pick JSON unless stderr is a tty
        service: Value of ``service.name`` on every event
    """
    global _service
    _service = service
    numeric = getattr(logging, level.upper())
    if json_format is None:
        json_format = not sys.stderr.isatty()

    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.dev.set_exc_info,
        _service_name,
        _redact_secrets,
    ]
    if json_format:
        processors += [structlog.processors.format_exc_info, _ecs_names, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=_stderr,
        cache_logger_on_first_use=False,
    )
    logging.getLogger().setLevel(numeric)


def get_logger(name: str | None = None) -> Any:
    """A lazy structlog logger; ``name`` is emitted as the ``logger`` field."""
    # PrintLogger has no name of its own, so the name travels as a bound value.
    if name is None:
        return structlog.get_logger()
    # structlog.get_logger(logger=...) collides with wrap_logger's ``logger`` parameter.
    return BoundLoggerLazyProxy(None, initial_values={"logger": name}, logger_factory_args=())


def bind_context(**kwargs: Any) -> None:
    """Attach fields to every event logged from the current context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind fields for the duration of a ``with`` block.

    Example:
        with LogContext(run_id=run.run_id, pipeline="web-release"):
            logger.info("pipeline.start")
    """

    def __init__(self, **fields: Any):
        self.fields = fields

    def __enter__(self) -> LogContext:
        bind_context(**self.fields)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        unbind_context(*self.fields)


__all__ = [
    "LogContext",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
]
