"""
Logging for the migration engine.

Every line carries the tenant and job it was emitted for. Code that works on
a job wraps itself in ``job_log_context``; ``JobContextFilter`` copies the
active ids onto each record so background batch workers, rollbacks and HTTP
requests stay traceable in one shared stream.
"""
from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from logging.config import dictConfig
from typing import Iterator, Optional, Tuple

NO_CONTEXT = "-"

_job_context: contextvars.ContextVar[Tuple[str, str]] = contextvars.ContextVar(
    "migration_job_context", default=(NO_CONTEXT, NO_CONTEXT)
)

_is_configured = False

# Chatty third-party loggers; per-record noise from them drowns batch progress.
QUIET_LOGGERS = ("sqlalchemy.engine", "botocore", "boto3", "urllib3", "httpx", "anthropic")


@contextmanager
def job_log_context(job_id: Optional[str], tenant_id: Optional[str] = None) -> Iterator[None]:
    """Tag log lines emitted in this context (and threads started from it) with a job."""
    token = _job_context.set((tenant_id or NO_CONTEXT, job_id or NO_CONTEXT))
    try:
        yield
    finally:
        _job_context.reset(token)


def current_job_context() -> Tuple[str, str]:
    """``(tenant_id, job_id)`` of the active context, ``"-"`` where unset."""
    return _job_context.get()


class JobContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        tenant_id, job_id = _job_context.get()
        record.tenant_id = getattr(record, "tenant_id", tenant_id)
        record.job_id = getattr(record, "job_id", job_id)
        return True


def configure_logging(level: Optional[str] = None, batch_level: Optional[str] = None) -> None:
    """
    Install the console handler once.

    Args:
        level: level for the engine and root loggers (e.g. "DEBUG", "INFO")
        batch_level: separate level for per-batch executor lines, which are
            DEBUG and very frequent on large imports
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()
    loggers = {name: {"level": "WARNING"} for name in QUIET_LOGGERS}
    loggers["migration_engine"] = {"level": log_level}
    if batch_level:
        loggers["migration_engine.domain.imports.executor"] = {"level": batch_level.upper()}

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "job_context": {"()": JobContextFilter},
            },
            "formatters": {
                "migration": {
                    "format": (
                        "%(asctime)s | %(levelname)-7s | %(threadName)s | %(name)s | "
                        "tenant=%(tenant_id)s job=%(job_id)s | %(message)s"
                    ),
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "migration",
                    "filters": ["job_context"],
                    "level": "DEBUG" if batch_level else log_level,
                }
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
            "loggers": loggers,
        }
    )

    _is_configured = True
