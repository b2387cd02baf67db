"""
Structured logging configuration using structlog.
Routes structlog through the standard library so SQLAlchemy and uvicorn logs share one stream.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from src.reporting import config

_configured = False


def add_severity(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add severity level for structured logging."""
    event_dict["severity"] = method_name.upper()
    return event_dict


# PUBLIC_INTERFACE
def configure_logging(force: bool = False) -> None:
    """
    Configure structured logging for the engine.
    JSON output when LOG_FORMAT=json, console output otherwise. Safe to call more than once.
    """
    global _configured
    if _configured and not force:
        return

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    )

    if config.LOG_FORMAT == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_severity,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


# PUBLIC_INTERFACE
def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance, typically named after the calling module."""
    return structlog.get_logger(name)
