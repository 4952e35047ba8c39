"""
Structured logging for Switchboard.
Uses structlog: JSON lines in production, colored console output with DEBUG.

Every line emitted while handling one HTTP request or one Celery task carries
the fields bound for it (request_id, task, call_id, ...), so a claim race can
be followed across agents by grepping a single call_id.
"""

import logging
import sys
from typing import Any
import structlog
from switchboard.config import config

# Client libraries and the ORM log every request/statement at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "twilio", "urllib3", "celery", "sqlalchemy.engine")


def build_processors(debug: bool) -> list:
    """Processor chain; the first step pulls in whatever bind_context() set."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    processors.append(structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer())
    return processors


def bind_context(**fields: Any) -> None:
    """Add fields to every log line for the rest of the current request or task."""
    structlog.contextvars.bind_contextvars(**fields)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


def configure_logging():
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=build_processors(config.DEBUG),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None) -> Any:
    """
    Usage:
        logger = get_logger(__name__)
        logger.info("claim_won", call_id=12, agent_id="agent-a")
    """
    return structlog.get_logger(name)


configure_logging()

logger = get_logger("switchboard")
