"""
Structured logging for CLI Connect.

Log lines are written to stderr (or a log file) so the CLI's own output on
stdout stays readable. Every line logged while a login attempt runs carries
that attempt's id, which makes interleaved attempts for different tools
easy to pull apart.
"""

import logging
import re
import sys
import uuid
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

_attempt_id: ContextVar[Optional[str]] = ContextVar("attempt_id", default=None)

# Event keys whose values must never reach a log sink
SENSITIVE_KEY_RE = re.compile(r"token|secret|password|api_key|credential_content", re.IGNORECASE)

QUIET_LOGGERS = ("aiohttp", "asyncio")

EventDict = Dict[str, Any]


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    json_logs: bool = True
) -> None:
    """
    Configure structlog and standard-library logging.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_file: Append to this file instead of writing to stderr
        json_logs: JSON lines when True, the console renderer otherwise
    """
    level = getattr(logging, log_level.upper())
    handler: logging.Handler = (
        logging.FileHandler(log_file, encoding="utf-8") if log_file
        else logging.StreamHandler(sys.stderr)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_attempt_id,
            add_timestamp,
            drop_sensitive_values,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s", handlers=[handler], force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def close_logging() -> None:
    """Flush and close the handlers installed by setup_logging."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


def add_attempt_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    attempt_id = _attempt_id.get()
    if attempt_id:
        event_dict["attempt_id"] = attempt_id
    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def drop_sensitive_values(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask values logged under secret-looking keys."""
    for key in list(event_dict):
        if key != "event" and SENSITIVE_KEY_RE.search(key):
            event_dict[key] = "***"
    return event_dict


def current_attempt_id() -> Optional[str]:
    return _attempt_id.get()


class LogContext:
    """
    Tag every log line inside the block with a login attempt id.

    A fresh id is generated when none is given. Contexts nest; leaving one
    restores the enclosing id.
    """

    def __init__(self, attempt_id: Optional[str] = None):
        self.attempt_id = attempt_id or uuid.uuid4().hex[:12]
        self._token: Optional[Token] = None

    def __enter__(self) -> str:
        self._token = _attempt_id.set(self.attempt_id)
        return self.attempt_id

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        _attempt_id.reset(self._token)
