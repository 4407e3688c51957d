"""Structured logging for Blueberry.

Uses structlog's ProcessorFormatter to transparently upgrade all existing
``logging.getLogger(__name__)`` call sites. Zero changes needed at call sites.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (add-on / log aggregation)

Each record carries the instance name (the configured client name) and the
OTel trace context. With ``log_root`` set, a JSON copy of everything at DEBUG
and above goes to ``{log_root}/blueberry.log``.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_instance_context: ContextVar[str | None] = ContextVar("blueberry_instance", default=None)

# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_instance_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``instance`` key from the ContextVar into the event dict."""
    event_dict["instance"] = _instance_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    ctx = trace.get_current_span().get_span_context()
    valid = bool(ctx and ctx.trace_id)
    event_dict["trace_id"] = format(ctx.trace_id, "032x") if valid else "0" * 32
    event_dict["span_id"] = format(ctx.span_id, "016x") if valid else "0" * 16
    return event_dict


def token_prefix(token: str | None) -> str:
    """Return a loggable prefix of an access token (never the full secret)."""
    if not token:
        return "<none>"
    return f"{token[:8]}..."


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

_NOISE_LOGGERS = (
    "aiohttp.access",
    "aiohttp.client",
    "httpx",
    "httpcore",
)

_LOG_FILE_NAME = "blueberry.log"


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_instance_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _handler(
    handler: logging.Handler, renderer: structlog.types.Processor, time_fmt: str
) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=_pre_chain(time_fmt),
        )
    )
    return handler


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    instance_name: str | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        Output format, ``"text"`` for colored console, ``"json"`` for JSON lines.
    log_root:
        Directory for the JSON log file.
    instance_name:
        Instance identity attached to each record.
    """
    if instance_name:
        _instance_context.set(instance_name)

    if fmt == "json":
        time_fmt, renderer = "iso", structlog.processors.JSONRenderer()
    else:
        time_fmt, renderer = "%H:%M:%S", structlog.dev.ConsoleRenderer()

    root = logging.getLogger()
    for existing in root.handlers:
        existing.close()
    root.handlers.clear()
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), renderer, time_fmt))
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        file_handler = _handler(
            logging.FileHandler(log_root / _LOG_FILE_NAME),
            structlog.processors.JSONRenderer(),
            "iso",
        )
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

    # Direct structlog.get_logger() users share the console chain
    structlog.configure(
        processors=[
            *_pre_chain(time_fmt),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
