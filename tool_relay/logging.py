"""Logging configuration for Tool Relay."""

import logging
import sys
from typing import TextIO

import structlog

from tool_relay.config import LoggingConfig, get_config


def _renderer(fmt: str):
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    if fmt == "console":
        return structlog.dev.ConsoleRenderer(colors=False)
    raise ValueError(f"Unknown log format '{fmt}'. Use 'console' or 'json'.")


def configure_logging(settings: LoggingConfig | None = None, stream: TextIO | None = None) -> None:
    """Configure structured logging.

    Args:
        settings: Logging section to apply; defaults to the global config
        stream: Where rendered lines go; defaults to stderr so stdout stays
            free for the host's own output
    """
    settings = settings or get_config().logging
    log_level = getattr(logging, settings.level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(settings.format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance (usually ``get_logger(__name__)``)."""
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
