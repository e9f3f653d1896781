"""
BODYSTRUCTURE parsing and attachment detection.

The server describes a message's MIME tree as nested lists (RFC 3501
section 7.4.2). Only the fields needed to find attachments are kept.

Single part:
    (type subtype (params) id description encoding size ...extension)
    text/*          has a line count before the extension data
    message/rfc822  has envelope, embedded body and line count before it
Multipart:
    (part part ... subtype (params) disposition language location)

The extension data of a single part starts with the MD5, then the
disposition. The disposition itself looks like ("attachment" ("filename" "a.pdf")).
"""

from dataclasses import dataclass, field
from typing import Any, Optional

# Index where extension data starts, per single-part shape.
_BASIC_EXTENSION_AT = 7
_TEXT_EXTENSION_AT = 8
_MESSAGE_EXTENSION_AT = 10
_MESSAGE_BODY_AT = 8


@dataclass(frozen=True)
class MimeDisposition:
    type: str
    params: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class MimePart:
    type: str
    subtype: str
    params: dict[str, str] = field(default_factory=dict)
    disposition: Optional[MimeDisposition] = None
    parts: tuple["MimePart", ...] = ()
    size: int = 0

    @property
    def mime_type(self) -> str:
        return f"{self.type}/{self.subtype}"

    @property
    def is_multipart(self) -> bool:
        return self.type == "multipart"


def parse_bodystructure(node: Any) -> MimePart:
    """Build a MimePart tree. Raises ValueError if `node` is not a body structure."""
    if not isinstance(node, list) or not node:
        raise ValueError("BODYSTRUCTURE must be a non-empty list")

    if isinstance(node[0], list):
        return _parse_multipart(node)
    return _parse_single(node)


def has_attachments(part: Optional[MimePart]) -> bool:
    """True if any part, at any depth, has an "attachment" disposition."""
    if part is None:
        return False
    if part.disposition is not None and part.disposition.type == "attachment":
        return True
    return any(has_attachments(child) for child in part.parts)


def _parse_multipart(node: list) -> MimePart:
    children = []
    index = 0
    while index < len(node) and isinstance(node[index], list):
        children.append(parse_bodystructure(node[index]))
        index += 1

    subtype = _text(_at(node, index)).lower() or "mixed"
    return MimePart(
        type="multipart",
        subtype=subtype,
        params=_params(_at(node, index + 1)),
        disposition=_disposition(_at(node, index + 2)),
        parts=tuple(children),
    )


def _parse_single(node: list) -> MimePart:
    if len(node) < _BASIC_EXTENSION_AT:
        raise ValueError(f"single-part BODYSTRUCTURE has {len(node)} fields, expected at least 7")

    mime_type = _text(node[0]).lower()
    subtype = _text(node[1]).lower()

    parts: tuple[MimePart, ...] = ()
    if mime_type == "text":
        extension_at = _TEXT_EXTENSION_AT
    elif mime_type == "message" and subtype == "rfc822":
        extension_at = _MESSAGE_EXTENSION_AT
        embedded = _at(node, _MESSAGE_BODY_AT)
        if isinstance(embedded, list) and embedded:
            parts = (parse_bodystructure(embedded),)
    else:
        extension_at = _BASIC_EXTENSION_AT

    return MimePart(
        type=mime_type,
        subtype=subtype,
        params=_params(node[2]),
        # extension data: md5, then disposition
        disposition=_disposition(_at(node, extension_at + 1)),
        parts=parts,
        size=_int(node[6]),
    )


def _disposition(value: Any) -> Optional[MimeDisposition]:
    if not isinstance(value, list) or not value:
        return None
    return MimeDisposition(
        type=_text(value[0]).lower(),
        params=_params(value[1] if len(value) > 1 else None),
    )


def _params(value: Any) -> dict[str, str]:
    if not isinstance(value, list):
        return {}
    return {_text(k).lower(): _text(v) for k, v in zip(value[::2], value[1::2])}


def _at(node: list, index: int) -> Any:
    return node[index] if index < len(node) else None


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _int(value: Any) -> int:
    try:
        return max(0, int(_text(value)))
    except ValueError:
        return 0
