"""
Message normalization helpers shared by every provider variant.

Each client maps its own wire format (Gmail JSON, Graph JSON, raw RFC822
header bytes) into EmailMetadata, but the fiddly parts are common:
address parsing, header decoding, date fallback and base64url bodies.
"""

import base64
import binascii
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.header import decode_header, make_header
from email.parser import BytesHeaderParser
from email.policy import compat32
from email.utils import parsedate_to_datetime
from typing import Iterable, Optional

from gtdmail.mail.schemas import SNIPPET_MAX_CHARS, EmailAddress

# "optional display name" followed by "<email>". The name group is greedy so
# a display name containing its own angle brackets keeps them, and the last
# bracketed token is taken as the address.
ADDRESS_PATTERN = re.compile(r"^(?P<name>.*)<(?P<email>[^<>]*)>\s*$", re.DOTALL)

_FOLDING = re.compile(r"\r?\n[ \t]+")
_WHITESPACE = re.compile(r"\s+")

# Decoded per display name, after the list is split.
_ADDRESS_HEADERS = frozenset({"from", "to", "cc", "bcc"})


def parse_address(value: str) -> EmailAddress:
    """
    Parse one address.

    "Jane Doe <jane@x.com>" -> name "Jane Doe", email "jane@x.com"
    "jane@x.com"            -> name "",         email "jane@x.com"
    """
    value = (value or "").strip()
    match = ADDRESS_PATTERN.match(value)
    if match:
        return EmailAddress(
            name=_unquote(match.group("name").strip()),
            email=match.group("email").strip(),
        )
    return EmailAddress(name="", email=value)


def split_addresses(value: str) -> list[str]:
    """Split an address list on commas outside quotes and angle brackets."""
    parts: list[str] = []
    current: list[str] = []
    in_quotes = False
    depth = 0
    escaped = False

    for char in value or "":
        if escaped:
            current.append(char)
            escaped = False
            continue
        if char == "\\" and in_quotes:
            current.append(char)
            escaped = True
            continue
        if char == '"':
            in_quotes = not in_quotes
        elif char == "<" and not in_quotes:
            depth += 1
        elif char == ">" and not in_quotes and depth:
            depth -= 1
        elif char == "," and not in_quotes and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)

    parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


def parse_address_list(value: str) -> list[EmailAddress]:
    return [parse_address(part) for part in split_addresses(value)]


def parse_encoded_address_list(value: str) -> list[EmailAddress]:
    """
    Parse a raw (undecoded) address header.

    The list is split before any RFC 2047 decoding, and only display names
    are decoded afterwards, so an encoded comma ("=2C") in a name never
    becomes a separator.
    """
    unfolded = _FOLDING.sub(" ", value or "")
    addresses = []
    for part in split_addresses(unfolded):
        address = parse_address(part)
        addresses.append(address.model_copy(update={"name": decode_header_value(address.name)}))
    return addresses


def parse_date(value: Optional[str], fallback: Optional[datetime] = None) -> datetime:
    """
    Parse an RFC 2822 or ISO 8601 date. Never returns None: an empty or
    unparseable value yields `fallback`, or the current time.
    """
    if value:
        text = value.strip()
        parsed: Optional[datetime] = None
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return fallback or datetime.now(timezone.utc)


def from_epoch_millis(value) -> Optional[datetime]:
    """Gmail internalDate and similar epoch-millisecond strings."""
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def decode_base64url(data: Optional[str]) -> str:
    """Decode a base64url body part. Returns "" when the data is unusable."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return ""
    return raw.decode("utf-8", errors="replace")


def decode_header_value(value: Optional[str]) -> str:
    """Unfold and decode RFC 2047 encoded-words. Falls back to the raw text."""
    if not value:
        return ""
    unfolded = _FOLDING.sub(" ", str(value))
    try:
        return str(make_header(decode_header(unfolded)))
    except (LookupError, UnicodeDecodeError, ValueError):
        return unfolded


def make_snippet(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()[:SNIPPET_MAX_CHARS]


@dataclass
class ParsedHeaders:
    """The header fields the canonical model cares about."""

    subject: str = ""
    sender: EmailAddress = field(default_factory=EmailAddress)
    to: list[EmailAddress] = field(default_factory=list)
    cc: list[EmailAddress] = field(default_factory=list)
    bcc: list[EmailAddress] = field(default_factory=list)
    date: Optional[str] = None
    message_id: str = ""
    in_reply_to: str = ""
    references: str = ""
    content_type: str = ""

    @property
    def thread_key(self) -> str:
        """Root of the conversation: first References id, else the parent, else self."""
        refs = self.references.split()
        if refs:
            return refs[0]
        return self.in_reply_to.strip() or self.message_id.strip()


def headers_from_pairs(pairs: Iterable[tuple[str, str]]) -> ParsedHeaders:
    headers = ParsedHeaders()
    for name, raw in pairs:
        key = (name or "").lower()
        if key in _ADDRESS_HEADERS:
            addresses = parse_encoded_address_list(str(raw or ""))
            if key == "from":
                headers.sender = addresses[0] if addresses else EmailAddress()
            else:
                setattr(headers, key, addresses)
            continue

        value = decode_header_value(raw)
        if key == "subject":
            headers.subject = value.strip()
        elif key == "date":
            headers.date = value
        elif key == "message-id":
            headers.message_id = value.strip()
        elif key == "in-reply-to":
            headers.in_reply_to = value.strip()
        elif key == "references":
            headers.references = value
        elif key == "content-type":
            headers.content_type = value
    return headers


def headers_from_bytes(raw: bytes) -> ParsedHeaders:
    """Parse a raw RFC822 header block."""
    message = BytesHeaderParser(policy=compat32).parsebytes(raw)
    return headers_from_pairs(message.items())


def _unquote(name: str) -> str:
    if len(name) >= 2 and name[0] == name[-1] == '"':
        return name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return name
