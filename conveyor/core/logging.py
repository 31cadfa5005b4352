"""Structured Logging for Conveyor

structlog on top of the stdlib logging tree:
- Colored console output in development, JSON lines in production
- Per-task context (pool, worker) via contextvars
- AppError values expanded into structured fields
- Job payloads reduced to their type name
"""
from __future__ import annotations

import asyncio
import logging
import sys

import structlog
from structlog.types import EventDict, Processor

from conveyor.core.config import get_settings


def _add_runtime_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Processor that tags events with the service and the emitting asyncio task."""
    event_dict.setdefault("service", "conveyor")
    try:
        task = asyncio.current_task()
    except RuntimeError:
        task = None
    if task is not None:
        event_dict.setdefault("task", task.get_name())
    return event_dict


def _stringify_payloads(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Processor that keeps opaque job payloads out of log lines.

    Payloads belong to the caller and may be large or sensitive; only their
    type is logged.
    """
    payload = event_dict.pop("payload", None)
    if payload is not None:
        event_dict["payload_type"] = type(payload).__name__
    return event_dict


def _expand_app_errors(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Processor rendering AppError values passed as ``error=`` fields."""
    error = event_dict.get("error")
    to_dict = getattr(error, "to_dict", None)
    if callable(to_dict):
        event_dict["error"] = to_dict()["error"]
    return event_dict


def get_shared_processors() -> list[Processor]:
    """Processors applied to structlog and foreign (stdlib) records alike."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_runtime_info,
        _stringify_payloads,
        _expand_app_errors,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _build_renderer(json_logs: bool) -> Processor:
    if json_logs:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=sys.stdout.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def configure_logging(
    level: str | None = None,
    json_logs: bool | None = None,
) -> None:
    """Route structlog and stdlib logging through one stdout handler.

    Args:
        level: Minimum level name; defaults to ``CONVEYOR_LOG_LEVEL``.
        json_logs: JSON lines instead of console output; defaults to
            ``CONVEYOR_LOG_JSON``.
    """
    settings = get_settings()
    level = level or settings.LOG_LEVEL
    json_logs = settings.LOG_JSON if json_logs is None else json_logs

    shared = get_shared_processors()

    structlog.configure(
        processors=[
            *shared,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _build_renderer(json_logs),
        ],
    ))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # asyncio's debug chatter is noise next to worker logs
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str = "conveyor") -> structlog.stdlib.BoundLogger:
    """Logger for one component, named ``conveyor.<component>``."""
    return structlog.get_logger(name)


def bind_context(**kwargs) -> None:
    """Attach fields to every event logged from the current task.

    asyncio tasks copy contextvars on creation, so values bound inside a
    worker task stay local to that task.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)
