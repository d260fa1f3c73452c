"""
Structured logging setup for the mailbox sync workers.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_job_context,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)


def _add_job_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag entries emitted while a queue job is bound to the context."""
    if "job_id" in event_dict and "component" not in event_dict:
        event_dict["component"] = "worker"
    return event_dict


def bind_job_context(job_id: str, job_name: str, account_id: str | None = None) -> None:
    """Bind job identifiers to every log line emitted by the current task."""
    structlog.contextvars.bind_contextvars(
        job_id=job_id, job_name=job_name, account_id=account_id
    )


def clear_job_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_sync_result(account_id: str, trigger: str, result: dict, duration_ms: float) -> None:
    """Log reconciliation results with consistent fields."""
    logger = get_logger("sync")

    logger.info(
        "Mailbox sync completed",
        account_id=account_id,
        trigger=trigger,
        duration_ms=round(duration_ms, 2),
        event_type="mailbox_sync",
        **result,
    )
