"""
Structured JSON logging.

Every record becomes one JSON line on stdout carrying the request id and
caller from the context vars below, plus whatever was passed in `extra`.
Extra fields named like secrets (tokens, passwords, OAuth codes) are
replaced with "[redacted]" before the line is written; callers should
not pass them in the first place, this is the backstop.

Usage:
    # Once, at process startup:
    from gtdmail.logging.config import setup_logging
    setup_logging("info")

    # Anywhere:
    logger = logging.getLogger(__name__)
    logger.info("imap.connected", extra={"action": "imap.connected", "exists": 120})
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import IO, Any, Optional

# Set per request by the HTTP middleware.
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")
current_user_var: ContextVar[str] = ContextVar("current_user", default="anonymous")

REDACTED = "[redacted]"
SECRET_FIELDS = frozenset({
    "access_token",
    "refresh_token",
    "client_secret",
    "password",
    "authorization",
    "code",
    "credentials",
    "encryption_key",
})

# Attributes every LogRecord has; anything else came in through `extra`.
_RECORD_ATTRIBUTES = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "taskName"}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(),
            "user": current_user_var.get(),
        }

        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES or key in line:
                continue
            line[key] = REDACTED if key.lower() in SECRET_FIELDS else value

        if record.exc_info and record.exc_info[0] is not None:
            line["exception_type"] = record.exc_info[0].__name__
            line["exception_message"] = str(record.exc_info[1])
            line["traceback"] = self.formatException(record.exc_info)

        return json.dumps(line, default=str)


def setup_logging(level: str = "info", stream: Optional[IO[str]] = None) -> None:
    """Route the root logger through JSONFormatter. Safe to call again; handlers are replaced."""
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Per-request HTTP client chatter would drown out the fetch events.
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
