"""
Structured logging for the API, worker and reaper processes.

Modules log through ``logging.getLogger(__name__)`` and pass fields with
``extra={}``. structlog sits behind the root handler and turns those records
into JSON lines (or coloured console lines in development), stamped with the
invocation context bound by the entry point and the active span, if any.
"""

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from kvqueue.config import get_settings

# Every store command is an HTTP request; these would drown the job log
_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Stamp the current span's ids onto a record when a span is recording."""
    span = trace.get_current_span()
    if span is None or not span.is_recording():
        return event_dict
    span_context = span.get_span_context()
    event_dict["trace_id"] = f"{span_context.trace_id:032x}"
    event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def _pre_chain() -> list[Any]:
    """Processors applied to both structlog and stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
    ]


def _renderer(log_format: str) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging() -> None:
    """
    Route all process logging through structlog.

    Reads ``LOG_LEVEL`` and ``LOG_FORMAT`` from settings. Safe to call more
    than once: the root handler list is replaced, not appended to.
    """
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(settings.log_format),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**fields: Any) -> None:
    """
    Attach fields to every record logged for the rest of this invocation.

    Entry points use it to tag records with e.g. the drained queue name or
    the reaper run id.
    """
    structlog.contextvars.bind_contextvars(**fields)


def clear_context() -> None:
    """Drop everything bound by :func:`bind_context`."""
    structlog.contextvars.clear_contextvars()
