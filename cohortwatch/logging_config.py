"""
Structured logging setup.

All modules log through ``structlog.get_logger(__name__)`` with snake_case
event names and keyword context. This module wires structlog onto stdlib
logging once per process.
"""

import logging
import sys

import structlog

from cohortwatch.config import settings

_configured = False


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog (idempotent)."""
    global _configured
    if _configured:
        return

    level_name = (level or settings.log_level).upper()
    renderer_name = fmt or settings.log_format

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

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
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if renderer_name == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True
