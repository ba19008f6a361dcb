"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import os
import sys

import structlog

# Chatty transport libraries that log every request at INFO
_NOISY_LOGGERS = ("httpx", "httpcore")


def _renderer(fmt: str) -> structlog.types.Processor:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def setup_logging(level: str | None = None, fmt: str | None = None) -> structlog.stdlib.BoundLogger:
    """Configure structlog for the deployment engine.

    ``LOG_LEVEL`` picks the threshold (default INFO). ``NOONA_LOG_FORMAT=json``
    switches to one JSON object per line for log shippers.
    """
    log_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    numeric_level = getattr(logging, log_level, logging.INFO)
    log_format = (fmt or os.environ.get("NOONA_LOG_FORMAT", "console")).lower()

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
    else:
        processors.append(structlog.dev.set_exc_info)
    processors.append(_renderer(log_format))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=numeric_level, stream=sys.stderr, format="%(message)s")
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    return structlog.get_logger("noona_deploy")


logger: structlog.stdlib.BoundLogger = setup_logging()


def install_exception_hooks() -> None:
    """Send uncaught exceptions through structlog instead of the bare traceback printer."""

    def handle_exception(exc_type, exc_value, exc_traceback):  # type: ignore[no-untyped-def]
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logger.critical("Unhandled error in deployment engine", exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = handle_exception


install_exception_hooks()
