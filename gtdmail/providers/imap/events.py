"""
Events emitted by an IMAP transport during connect and fetch.

A fetch is a stream of events. Events for different messages may
interleave; every event carries the sequence number of the message it
belongs to, and a message is complete only once its MessageEnded arrives.
Header and body bytes can arrive split over any number of chunks.

    MessageStarted(7)
    MessageAttributes(7, uid="42", ...)
    HeaderChunk(7, b"From: ...")
    BodyChunk(7, b"Hello")
    BodyChunk(7, b" world")
    MessageEnded(7)
    ...
    RangeEnded()
"""

from dataclasses import dataclass
from datetime import datetime
from typing import AsyncGenerator, Optional, Protocol, Sequence, Union

from gtdmail.providers.imap.bodystructure import MimePart


@dataclass(frozen=True)
class ServerReady:
    """The mailbox is selected; `exists` is its message count."""

    exists: int


@dataclass(frozen=True)
class MessageStarted:
    seqno: int


@dataclass(frozen=True)
class MessageAttributes:
    seqno: int
    uid: str = ""
    flags: tuple[str, ...] = ()
    size: int = 0
    internal_date: Optional[datetime] = None
    structure: Optional[MimePart] = None


@dataclass(frozen=True)
class HeaderChunk:
    seqno: int
    data: bytes


@dataclass(frozen=True)
class BodyChunk:
    seqno: int
    data: bytes


@dataclass(frozen=True)
class MessageEnded:
    seqno: int


@dataclass(frozen=True)
class RangeEnded:
    """No more messages in the requested range."""


FetchEvent = Union[MessageStarted, MessageAttributes, HeaderChunk, BodyChunk, MessageEnded, RangeEnded]


class ImapTransport(Protocol):
    """The event source behind ImapClient."""

    async def connect(self) -> ServerReady: ...

    def fetch(self, seqnos: Sequence[int]) -> AsyncGenerator[FetchEvent, None]:
        """Stream events for `seqnos`, in order, ending with RangeEnded."""
        ...

    async def logout(self) -> None: ...
