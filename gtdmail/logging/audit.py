"""
Audit logging for tracking fetches, classifications and user corrections.

SECURITY: Never log email content, subjects, body text, recipient addresses,
OAuth tokens, or IMAP passwords. Only log metadata.

Usage:
    from gtdmail.logging.audit import audit
    audit.info("classification.stored", email_id="18c2f...", confidence=0.82)

    with audit.timed("gmail.fetch.completed", account_id=account_id) as fields:
        emails = await client.fetch_emails(50)
        fields["emails_fetched"] = len(emails)
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator


class AuditLogger:
    """Thin wrapper around logging that enforces structured action fields."""

    def __init__(self, name: str = "audit"):
        self._logger = logging.getLogger(name)

    def info(self, action: str, **fields: Any) -> None:
        self._logger.info(action, extra={"action": action, **fields})

    def warning(self, action: str, **fields: Any) -> None:
        self._logger.warning(action, extra={"action": action, **fields})

    def error(self, action: str, **fields: Any) -> None:
        self._logger.error(action, extra={"action": action, **fields})

    @contextmanager
    def timed(self, action: str, **fields: Any) -> Iterator[dict[str, Any]]:
        """
        Log `action` with latency_ms when the block exits normally.

        The yielded dict can be filled in by the block; its keys are added
        to the log line. Nothing is logged if the block raises.
        """
        start = time.monotonic()
        extra: dict[str, Any] = dict(fields)
        yield extra
        extra["latency_ms"] = int((time.monotonic() - start) * 1000)
        self.info(action, **extra)


audit = AuditLogger()
