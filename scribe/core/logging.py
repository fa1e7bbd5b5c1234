"""Structured key=value logging for Scribe."""

import logging
import sys
from typing import Any

# Attributes every LogRecord carries; anything else arrived through `extra=`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
}


def _context_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}


class StructuredFormatter(logging.Formatter):
    """One line per record: fixed fields first, then any context passed via extra."""

    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "module": record.module,
            "function": record.funcName,
            "message": record.getMessage(),
        }

        context = _context_fields(record)
        # run_id leads so one vectorization run greps as a block
        if "run_id" in context:
            fields["run_id"] = context.pop("run_id")
        fields.update(context)

        line = " ".join(f"{key}={value}" for key, value in fields.items())
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _level_for(env: str) -> int:
    return logging.DEBUG if env == "dev" else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger writing structured lines to stdout.

    Level is DEBUG when SCRIBE_ENV=dev, INFO otherwise.

    Args:
        name: Logger name (typically __name__)
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    logger.addHandler(handler)

    try:
        from scribe.core.config import get_settings

        logger.setLevel(_level_for(get_settings().SCRIBE_ENV))
    except Exception:
        # Settings can fail to load at import time (no OPENAI_API_KEY yet)
        logger.setLevel(logging.INFO)

    return logger


def log_with_context(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """
    Log with context fields such as document_id, run_id or counters.

    Keys that collide with LogRecord attributes are prefixed with ctx_.
    """
    extra = {(f"ctx_{key}" if key in _RECORD_ATTRS else key): value for key, value in kwargs.items()}
    logger.log(level, msg, extra=extra)
