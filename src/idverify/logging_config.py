"""
structlog configuration for the IDVERIFY system.

Library modules only call ``structlog.get_logger(__name__)``; applications
(the command-line front end, a web service embedding the core) call
``configure_logging`` once at start-up.
"""

import logging
import sys
from typing import Optional

import structlog

from . import config


def configure_logging(
    level: Optional[str] = None, structured: Optional[bool] = None
) -> None:
    """
    Configure structlog processors and the log level.

    Parameters
    ----------
    level : str, optional
        Log level name. Defaults to ``config.LOG_LEVEL``.
    structured : bool, optional
        Render JSON lines instead of console output. Defaults to
        ``config.STRUCTURED_LOGGING``.
    """
    level_name = (level or config.LOG_LEVEL).upper()
    use_json = config.STRUCTURED_LOGGING if structured is None else structured

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if use_json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
