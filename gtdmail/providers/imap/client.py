"""
IMAP mail client.

The connection is an explicit state machine:

    DISCONNECTED -> CONNECTING -> READY -> FETCHING -> DISCONNECTED

CONNECTING moves to READY only when the transport reports the mailbox as
ready; any connection error drops straight back to DISCONNECTED and the
error propagates. A fetch consumes the transport's event stream, stitching
each message together from its chunks, and ends as soon as max_results
messages are complete or the range runs out. Either way, and also when the
fetch is cancelled or times out, the connection is released exactly once.

Usage:
    imap = ImapClient(credentials, settings)
    emails = await imap.fetch_emails(max_results=10)
"""

import logging
import time
from dataclasses import dataclass, field
from email import policy
from email.parser import BytesParser
from enum import Enum
from typing import Optional

from pydantic import ValidationError

from gtdmail.config import Settings
from gtdmail.errors import CredentialMismatchError, MalformedMessageError, ProviderError
from gtdmail.logging.audit import audit
from gtdmail.mail.schemas import EmailMetadata, EmailProvider, EmailRecipients, ImapCredentials
from gtdmail.providers.imap.bodystructure import has_attachments
from gtdmail.providers.imap.events import (
    BodyChunk,
    HeaderChunk,
    ImapTransport,
    MessageAttributes,
    MessageEnded,
    MessageStarted,
    RangeEnded,
    ServerReady,
)
from gtdmail.providers.imap.transport import ImaplibTransport
from gtdmail.providers.normalize import headers_from_bytes, make_snippet, parse_date

logger = logging.getLogger(__name__)

PROVIDER = EmailProvider.IMAP.value


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    FETCHING = "fetching"


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({ConnectionState.READY, ConnectionState.DISCONNECTED}),
    ConnectionState.READY: frozenset({ConnectionState.FETCHING, ConnectionState.DISCONNECTED}),
    ConnectionState.FETCHING: frozenset({ConnectionState.DISCONNECTED}),
}


@dataclass
class _PendingMessage:
    """A message whose MessageEnded has not arrived yet."""

    seqno: int
    attributes: Optional[MessageAttributes] = None
    header: bytearray = field(default_factory=bytearray)
    body: bytearray = field(default_factory=bytearray)


class ImapClient:
    """IMAP variant of the provider capability. Stateful: one session per fetch."""

    provider = EmailProvider.IMAP

    def __init__(
        self,
        credentials: ImapCredentials,
        settings: Settings,
        transport: Optional[ImapTransport] = None,
        account_id: str = "",
    ):
        if not isinstance(credentials, ImapCredentials):
            raise CredentialMismatchError(
                f"ImapClient cannot use {getattr(credentials, 'provider', type(credentials).__name__)} credentials"
            )
        self._settings = settings
        self._transport = transport or ImaplibTransport(credentials, settings)
        self._account_id = account_id
        self._host = credentials.host
        self._state = ConnectionState.DISCONNECTED
        self._exists = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _transition(self, target: ConnectionState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise ProviderError(f"imap: illegal transition {self._state.value} -> {target.value}", PROVIDER)
        logger.debug(
            "imap.state",
            extra={"action": "imap.state", "from": self._state.value, "to": target.value},
        )
        self._state = target

    # =========================================================================
    # SESSION
    # =========================================================================

    async def connect(self) -> None:
        self._transition(ConnectionState.CONNECTING)
        try:
            ready = await self._transport.connect()
            if not isinstance(ready, ServerReady):
                raise ProviderError("imap.connect: server never reported ready", PROVIDER)
        except BaseException:
            self._transition(ConnectionState.DISCONNECTED)
            await self._transport.logout()
            raise

        self._exists = ready.exists
        self._transition(ConnectionState.READY)
        logger.info(
            "imap.connected",
            extra={"action": "imap.connected", "host": self._host, "exists": ready.exists},
        )

    async def disconnect(self) -> None:
        """Release the session. Safe to call any number of times."""
        if self._state is ConnectionState.DISCONNECTED:
            return
        self._transition(ConnectionState.DISCONNECTED)
        await self._transport.logout()
        logger.info("imap.disconnected", extra={"action": "imap.disconnected", "host": self._host})

    # =========================================================================
    # FETCHING
    # =========================================================================

    async def fetch_emails(self, max_results: Optional[int] = None) -> list[EmailMetadata]:
        """
        Fetch up to max_results messages, newest sequence number first.

        Connects if needed and always disconnects before returning or
        raising. Messages that fail to normalize are skipped and do not
        count toward max_results.
        """
        max_results = max_results or self._settings.fetch_default_max_results
        start = time.monotonic()

        if self._state is ConnectionState.DISCONNECTED:
            await self.connect()

        emails: list[EmailMetadata] = []
        skipped = 0
        self._transition(ConnectionState.FETCHING)
        try:
            pending: dict[int, _PendingMessage] = {}
            events = self._transport.fetch(range(self._exists, 0, -1))
            try:
                async for event in events:
                    if isinstance(event, RangeEnded):
                        break
                    if isinstance(event, MessageStarted):
                        pending[event.seqno] = _PendingMessage(event.seqno)
                    elif isinstance(event, MessageAttributes):
                        _pending(pending, event.seqno).attributes = event
                    elif isinstance(event, HeaderChunk):
                        _pending(pending, event.seqno).header.extend(event.data)
                    elif isinstance(event, BodyChunk):
                        _pending(pending, event.seqno).body.extend(event.data)
                    elif isinstance(event, MessageEnded):
                        message = pending.pop(event.seqno, None)
                        if message is None:
                            continue
                        try:
                            emails.append(self._normalize(message))
                        except MalformedMessageError as e:
                            skipped += 1
                            logger.warning(
                                "imap.parse_message.skipped",
                                extra={
                                    "action": "imap.parse_message.skipped",
                                    "seqno": message.seqno,
                                    "error": str(e),
                                },
                            )
                        if len(emails) >= max_results:
                            break
            finally:
                await events.aclose()
        finally:
            await self.disconnect()

        audit.info(
            "imap.fetch.completed",
            account_id=self._account_id,
            emails_fetched=len(emails),
            skipped=skipped,
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        return emails

    # =========================================================================
    # NORMALIZATION
    # =========================================================================

    def _normalize(self, message: _PendingMessage) -> EmailMetadata:
        attributes = message.attributes
        if attributes is None:
            raise MalformedMessageError(
                f"message {message.seqno} ended without attributes", PROVIDER, str(message.seqno)
            )
        message_id = attributes.uid or str(message.seqno)

        try:
            header = bytes(message.header)
            headers = headers_from_bytes(header)
            received_at = attributes.internal_date or parse_date(headers.date)
            date = parse_date(headers.date, fallback=received_at)
            flags = {flag.lower() for flag in attributes.flags}
            body_text = _extract_text(header, bytes(message.body))

            return EmailMetadata(
                id=message_id,
                account_id=self._account_id,
                provider_id=message_id,
                thread_id=headers.thread_key,
                subject=headers.subject,
                sender=headers.sender,
                recipients=EmailRecipients(to=headers.to, cc=headers.cc, bcc=headers.bcc),
                date=date,
                received_at=received_at,
                size=attributes.size,
                # System flags start with a backslash; everything else is a keyword.
                labels=[flag for flag in attributes.flags if not flag.startswith("\\")],
                is_read="\\seen" in flags,
                is_starred="\\flagged" in flags,
                is_draft="\\draft" in flags,
                is_sent=False,
                is_trash="\\deleted" in flags,
                is_spam="$junk" in flags or "junk" in flags,
                has_attachments=has_attachments(attributes.structure),
                snippet=make_snippet(body_text),
                preview_text=body_text,
            )
        except (TypeError, ValueError, ValidationError) as e:
            raise MalformedMessageError(
                f"Unparseable IMAP message {message.seqno}: {e}", PROVIDER, message_id
            ) from e


def _pending(pending: dict[int, _PendingMessage], seqno: int) -> _PendingMessage:
    message = pending.get(seqno)
    if message is None:
        message = pending[seqno] = _PendingMessage(seqno)
    return message


def _extract_text(header: bytes, body: bytes) -> str:
    """Best-effort plain-text body. Undecodable content yields ""."""
    if not body:
        return ""
    message = BytesParser(policy=policy.default).parsebytes(header + body)
    try:
        part = message.get_body(preferencelist=("plain",))
        if part is None:
            return ""
        return part.get_content()
    except (KeyError, LookupError, UnicodeError, ValueError) as e:
        logger.debug("imap.body.undecodable", extra={"action": "imap.body.undecodable", "error": str(e)})
        return ""
