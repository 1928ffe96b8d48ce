"""Structured logging for the aggregation worker, built on structlog.

``configure_logging()`` is called once when the CLI starts.  Every event
emitted afterwards carries the ``run_id`` of this process and the
``worker_id`` whose checkpoint it advances, so log lines from several worker
instances sharing one lock can be told apart.

Processors, in order:

  merge_contextvars → add_log_level → TimeStamper(iso, utc) → renderer

The renderer is ``JSONRenderer`` for ``logging.format = "json"`` (the default,
one object per line for log shippers) and ``ConsoleRenderer`` for ``"text"``.

    run_id = configure_logging()
    log = get_logger(__name__)
    log.info("batch committed", applied=412, unresolved=3)
    # → {"worker_id": "pullstats", "run_id": "9c1e0b7a", "applied": 412,
    #    "unresolved": 3, "event": "batch committed", "level": "info",
    #    "timestamp": "2026-10-19T08:15:02.118Z"}
"""

import logging as _stdlib
import sys
import uuid

import structlog

from pullstats.config import Settings, get_settings


def configure_logging(settings: Settings | None = None) -> str:
    """Configure structlog for this process and return the run_id.

    Reconfiguring replaces the pipeline and binds a fresh run_id.

    Args:
        settings: Pre-loaded settings; loads from ``get_settings()`` if None.

    Returns:
        run_id — 8-character hex string bound to every subsequent log event.
    """
    if settings is None:
        settings = get_settings()

    level_int = getattr(_stdlib, settings.logging.level, _stdlib.INFO)

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.logging.format == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_int),
        context_class=dict,
        # stdout carries command output; logs go to stderr.  Logger caching
        # stays off so CliRunner's per-invocation stderr swap is honoured.
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    run_id = uuid.uuid4().hex[:8]
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        run_id=run_id,
        worker_id=settings.worker.worker_id,
    )
    return run_id


def get_logger(name: str = "pullstats") -> structlog.BoundLogger:
    """Return a structlog logger; pass ``__name__`` from the calling module."""
    return structlog.get_logger(name)
