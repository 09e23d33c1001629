"""Logging from config and env, with the running refresh job in every record.

Levels (inclusive):
- ERROR: failed jobs only
- WARNING: skipped repositories, failed API calls, and ERROR
- INFO: sync progress, WARNING, and ERROR
- DEBUG: per-page and per-record details and all levels above

Records logged while a refresh job runs carry its id in %(job_id)s ("-"
outside a job). Configure via config.yaml (logging.level, logging.format) or
env (LOGGING_LEVEL, LOGGING_FORMAT).
"""

import contextlib
import contextvars
import logging
from typing import Iterator

from hours.config import LoggingConfig

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

DEFAULT_LEVEL = "INFO"
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(job_id)s] %(message)s"
NO_JOB = "-"

# Chatty at INFO/DEBUG; kept at WARNING unless hours itself logs at DEBUG
NOISY_LOGGERS = ("urllib3", "sqlalchemy.engine")

_current_job: contextvars.ContextVar[str | None] = contextvars.ContextVar("hours_job_id", default=None)


def _resolve_level(level: str) -> int:
    """Map level name to logging constant.

    Falls back to INFO if unknown.
    """
    return LEVELS.get(level.upper().strip(), logging.INFO)


def current_job_id() -> str | None:
    return _current_job.get()


@contextlib.contextmanager
def job_context(job_id: str) -> Iterator[None]:
    """Tag records logged inside the block (same thread) with job_id."""
    token = _current_job.set(job_id)
    try:
        yield
    finally:
        _current_job.reset(token)


class JobContextFilter(logging.Filter):
    """Sets record.job_id from the active job_context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "job_id"):
            record.job_id = _current_job.get() or NO_JOB
        return True


class HoursLogging:
    """Configures root logger from LoggingConfig (YAML + env LOGGING_*)."""

    def __init__(self, config: LoggingConfig) -> None:
        self._level = _resolve_level(config.level)
        self._format = config.format or DEFAULT_FORMAT

    def setup(self) -> None:
        """Apply level and format to the root logger and attach the job filter."""
        logging.basicConfig(
            level=self._level,
            format=self._format,
            force=True,
        )
        for handler in logging.getLogger().handlers:
            if not any(isinstance(f, JobContextFilter) for f in handler.filters):
                handler.addFilter(JobContextFilter())
        noisy_level = logging.DEBUG if self._level <= logging.DEBUG else logging.WARNING
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(noisy_level)
