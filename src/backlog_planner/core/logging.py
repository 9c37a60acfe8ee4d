"""Structured logging for the planner.

Uses structlog's ProcessorFormatter to transparently upgrade all existing
``logging.getLogger(__name__)`` call sites.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (production / log aggregation)

The current user id and OTel trace context are injected automatically via
processors that read from a ContextVar and the current OTel span.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

LOG_FILENAME = "planner.log"

# ---------------------------------------------------------------------------
# User context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_user_context: ContextVar[str | None] = ContextVar("planner_user_id", default=None)


def get_user_context() -> str | None:
    """Get the user id bound to the current async context."""
    return _user_context.get()


@contextmanager
def user_context(user_id: str) -> Iterator[None]:
    """Bind *user_id* to log records emitted inside the block."""
    token = _user_context.set(user_id)
    try:
        yield
    finally:
        _user_context.reset(token)


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_user_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``user_id`` from the ContextVar into the event dict."""
    event_dict["user_id"] = _user_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    span = trace.get_current_span()
    ctx = span.get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
    "asyncpg",
)


def _build_processors(
    time_fmt: str,
) -> list[structlog.types.Processor]:
    """Build the pre-chain processor list with the given timestamp format."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_user_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _make_file_handler(path: Path, processors: list) -> logging.FileHandler:
    """Create a JSON file handler at *path*."""
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        Output format: ``"text"`` for colored console, ``"json"`` for JSON lines.
    log_root:
        When set, JSON logs are also written to ``{log_root}/planner.log``.
    """
    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    # Remove existing handlers to avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        root.addHandler(
            _make_file_handler(log_root / LOG_FILENAME, _build_processors(time_fmt="iso"))
        )

    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
