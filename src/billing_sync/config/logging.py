"""Structured logging for billing runs.

Every event of a run carries the run id, run date and dry-run flag through
structlog context variables, so one cron run can be followed across contracts
in the collected JSON.
"""

import logging
import sys
import uuid
from datetime import date
from typing import Literal

import structlog

from billing_sync.config.settings import get_settings

# Event keys that may carry credentials
_SECRET_KEYS = frozenset({"authorization", "token", "crm_token", "access_token"})

# Chatty libraries logging every CRM request at INFO
_QUIET_LOGGERS = ("httpx", "httpcore")


def redact_secrets(
    logger: structlog.types.WrappedLogger, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Mask credential-like values before rendering."""
    for key in event_dict.keys() & _SECRET_KEYS:
        event_dict[key] = "***"
    return event_dict


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=sys.stdout.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
    format: Literal["json", "console"] | None = None,
) -> None:
    """Configure structlog over the standard library root logger.

    Args:
        level: Log level. Defaults to ``LOG_LEVEL``.
        format: ``json`` for cron runs, ``console`` for operators. Defaults to ``LOG_FORMAT``.
    """
    settings = get_settings()
    log_level = getattr(logging, level or settings.log_level)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets,
            _renderer(format or settings.log_format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_run_context(today: date, dry_run: bool, run_id: str | None = None) -> str:
    """Attach run-wide fields to every following log event. Returns the run id."""
    run_id = run_id or uuid.uuid4().hex[:12]
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        run_id=run_id, run_date=today.isoformat(), dry_run=dry_run
    )
    return run_id
