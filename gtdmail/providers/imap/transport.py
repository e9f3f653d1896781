"""
imaplib-backed IMAP transport.

imaplib is blocking, so every protocol round trip runs in a worker thread
via asyncio.to_thread. A worker thread cannot be interrupted once started,
so a cancelled fetch may still be talking to the server; a per-connection
thread lock keeps logout from interleaving with it on the same socket.

The mailbox is selected read-only and bodies are fetched with BODY.PEEK,
so fetching never sets \\Seen on the server.

Messages are requested in pages of `imap_fetch_page_size`, one FETCH
command per page covering the page's sequence set. The next page is only
requested when the consumer asks for more events, so a client that stops
early never pays for the rest of the mailbox.
"""

import asyncio
import imaplib
import logging
import threading
from datetime import datetime
from typing import AsyncGenerator, Optional, Sequence

from gtdmail.config import Settings
from gtdmail.errors import AuthExpiredError, ProviderError, TransientNetworkError
from gtdmail.mail.schemas import EmailProvider, ImapCredentials
from gtdmail.providers.imap.bodystructure import parse_bodystructure
from gtdmail.providers.imap.events import (
    BodyChunk,
    FetchEvent,
    HeaderChunk,
    MessageAttributes,
    MessageEnded,
    MessageStarted,
    RangeEnded,
    ServerReady,
)
from gtdmail.providers.imap.protocol import parse_fetch_response

logger = logging.getLogger(__name__)

FETCH_ITEMS = "(UID FLAGS INTERNALDATE RFC822.SIZE BODYSTRUCTURE BODY.PEEK[HEADER] BODY.PEEK[TEXT])"

INTERNALDATE_FORMAT = "%d-%b-%Y %H:%M:%S %z"

PROVIDER = EmailProvider.IMAP.value


class ImaplibTransport:
    """ImapTransport over a real server connection."""

    def __init__(self, credentials: ImapCredentials, settings: Settings):
        self._credentials = credentials
        self._mailbox = settings.imap_mailbox
        self._chunk_size = settings.imap_chunk_size
        self._page_size = settings.imap_fetch_page_size
        self._timeout = settings.http_timeout_seconds
        self._conn: Optional[imaplib.IMAP4] = None
        # Held by worker threads for the duration of each command.
        self._conn_lock = threading.Lock()

    async def connect(self) -> ServerReady:
        return await asyncio.to_thread(self._connect_sync)

    async def fetch(self, seqnos: Sequence[int]) -> AsyncGenerator[FetchEvent, None]:
        for start in range(0, len(seqnos), self._page_size):
            page = seqnos[start:start + self._page_size]
            conn = self._require_connection()
            responses = await asyncio.to_thread(self._fetch_sync, conn, page)

            for seqno in page:
                fields = responses.get(seqno)
                event: Optional[MessageAttributes] = None
                if fields is not None:
                    try:
                        event = _attributes_event(seqno, fields)
                    except ValueError as e:
                        logger.warning(
                            "imap.fetch_response.unparseable",
                            extra={"action": "imap.fetch_response.unparseable", "seqno": seqno, "error": str(e)},
                        )

                # A message without attributes still starts and ends, so the
                # client can account for it as skipped.
                yield MessageStarted(seqno)
                if event is not None:
                    yield event
                    for chunk in _chunks(_as_bytes(fields.get("BODY[HEADER]")), self._chunk_size):
                        yield HeaderChunk(seqno, chunk)
                    for chunk in _chunks(_as_bytes(fields.get("BODY[TEXT]")), self._chunk_size):
                        yield BodyChunk(seqno, chunk)
                yield MessageEnded(seqno)

        yield RangeEnded()

    async def logout(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await asyncio.to_thread(self._logout_sync, conn)
        except (imaplib.IMAP4.error, OSError) as e:
            # The session is gone either way.
            logger.warning(
                "imap.logout.failed",
                extra={"action": "imap.logout.failed", "host": self._credentials.host, "error": str(e)},
            )

    # =========================================================================
    # BLOCKING HALF: runs in worker threads
    # =========================================================================

    def _connect_sync(self) -> ServerReady:
        creds = self._credentials
        try:
            if creds.use_tls:
                conn = imaplib.IMAP4_SSL(creds.host, creds.port, timeout=self._timeout)
            else:
                conn = imaplib.IMAP4(creds.host, creds.port, timeout=self._timeout)
        except (imaplib.IMAP4.error, OSError) as e:
            raise TransientNetworkError(f"imap.connect: {creds.host}:{creds.port}: {e}", PROVIDER) from e

        try:
            conn.login(creds.username, creds.password)
            typ, data = conn.select(_quote_mailbox(self._mailbox), readonly=True)
        except imaplib.IMAP4.abort as e:
            _shutdown(conn)
            raise TransientNetworkError(f"imap.login: connection dropped: {e}", PROVIDER) from e
        except imaplib.IMAP4.error as e:
            _shutdown(conn)
            raise AuthExpiredError(f"imap.login: credentials rejected by {creds.host}", PROVIDER) from e
        except OSError as e:
            _shutdown(conn)
            raise TransientNetworkError(f"imap.login: {e}", PROVIDER) from e

        if typ != "OK":
            _shutdown(conn)
            raise ProviderError(f"imap.select: cannot open {self._mailbox}", PROVIDER)

        self._conn = conn
        try:
            exists = int(data[0] or 0)
        except (TypeError, ValueError):
            exists = 0
        return ServerReady(exists=exists)

    def _fetch_sync(self, conn: imaplib.IMAP4, seqnos: Sequence[int]) -> dict[int, dict]:
        """FETCH a page of messages. Messages the server did not return are absent from the result."""
        message_set = sequence_set(seqnos)
        try:
            with self._conn_lock:
                typ, data = conn.fetch(message_set, FETCH_ITEMS)
        except imaplib.IMAP4.abort as e:
            raise TransientNetworkError(f"imap.fetch: connection dropped: {e}", PROVIDER) from e
        except imaplib.IMAP4.error as e:
            raise ProviderError(f"imap.fetch: {e}", PROVIDER) from e
        except OSError as e:
            raise TransientNetworkError(f"imap.fetch: {e}", PROVIDER) from e

        if typ != "OK":
            return {}
        try:
            responses = parse_fetch_response(data)
        except ValueError as e:
            logger.warning(
                "imap.fetch_response.unparseable",
                extra={"action": "imap.fetch_response.unparseable", "message_set": message_set, "error": str(e)},
            )
            return {}
        # Unsolicited FETCH responses for other messages may ride along.
        wanted = set(seqnos)
        return {seqno: fields for seqno, fields in responses if seqno in wanted}

    def _logout_sync(self, conn: imaplib.IMAP4) -> None:
        with self._conn_lock:
            conn.logout()

    def _require_connection(self) -> imaplib.IMAP4:
        if self._conn is None:
            raise ProviderError("imap.fetch: not connected", PROVIDER)
        return self._conn


def _attributes_event(seqno: int, fields: dict) -> MessageAttributes:
    structure = fields.get("BODYSTRUCTURE")
    return MessageAttributes(
        seqno=seqno,
        uid=str(fields.get("UID") or ""),
        flags=tuple(str(flag) for flag in (fields.get("FLAGS") or [])),
        size=max(0, int(fields.get("RFC822.SIZE") or 0)),
        internal_date=_parse_internaldate(fields.get("INTERNALDATE")),
        structure=parse_bodystructure(structure) if structure is not None else None,
    )


def sequence_set(seqnos: Sequence[int]) -> str:
    """Compact IMAP sequence set, e.g. [12, 11, 10, 4] -> "4,10:12"."""
    ordered = sorted(set(seqnos))
    runs: list[str] = []
    start = prev = ordered[0]
    for seqno in ordered[1:]:
        if seqno != prev + 1:
            runs.append(f"{start}:{prev}" if start != prev else str(start))
            start = seqno
        prev = seqno
    runs.append(f"{start}:{prev}" if start != prev else str(start))
    return ",".join(runs)


def _parse_internaldate(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(str(value).strip(), INTERNALDATE_FORMAT)
    except ValueError:
        return None


def _as_bytes(value) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def _chunks(data: bytes, size: int):
    for start in range(0, len(data), size):
        yield data[start:start + size]


def _quote_mailbox(name: str) -> str:
    if name.startswith('"') or not any(c in name for c in ' "\\'):
        return name
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _shutdown(conn: imaplib.IMAP4) -> None:
    try:
        conn.shutdown()
    except OSError as e:
        logger.debug("imap.shutdown.failed", extra={"action": "imap.shutdown.failed", "error": str(e)})
