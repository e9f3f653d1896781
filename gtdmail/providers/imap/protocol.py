"""
IMAP FETCH response parsing.

imaplib hands FETCH data back half-parsed: a list whose items are either
plain bytes lines or (prefix, literal) tuples, where the prefix ends in a
`{N}` literal marker and the literal holds the N raw bytes. This module
regroups those items per message and parses each one into a dict of
data items:

    [(b'7 (UID 42 BODY[HEADER] {11}', b'Subject: x\r\n'), b')']
        -> [(7, {"UID": "42", "BODY[HEADER]": b"Subject: x\r\n"})]

Values are atoms (str), quoted strings (str), literals (bytes),
parenthesized lists (list) or NIL (None). Numbers stay as atom strings.
"""

import re
from typing import Any, Iterable, Iterator, Optional, Union

FetchItem = Union[bytes, tuple[bytes, bytes]]

_MESSAGE_START = re.compile(rb"^\s*(\d+)\s+\(")
_LITERAL_MARKER = re.compile(rb"\{(\d+)\}")
_ATOM_END = frozenset(b" \t\r\n()")


def group_fetch_items(data: Iterable[Optional[FetchItem]]) -> list[tuple[bytes, list[bytes]]]:
    """
    Regroup raw imaplib FETCH items into one (text, literals) pair per message.

    `text` is the response with literal payloads removed (their `{N}`
    markers stay in place); `literals` holds the payloads in order.
    """
    groups: list[tuple[bytearray, list[bytes]]] = []
    for item in data:
        if item is None:
            continue
        head, literal = item if isinstance(item, tuple) else (item, None)
        if not groups or _MESSAGE_START.match(head):
            groups.append((bytearray(), []))
        text, literals = groups[-1]
        text += head
        if literal is not None:
            literals.append(literal)
    return [(bytes(text), literals) for text, literals in groups]


def parse_fetch_response(data: Iterable[Optional[FetchItem]]) -> list[tuple[int, dict[str, Any]]]:
    """Parse imaplib FETCH data into (seqno, {ITEM-NAME: value}) pairs."""
    return [_parse_message(text, literals) for text, literals in group_fetch_items(data)]


def _parse_message(text: bytes, literals: list[bytes]) -> tuple[int, dict[str, Any]]:
    match = _MESSAGE_START.match(text)
    if not match:
        raise ValueError(f"not a FETCH response: {text[:40]!r}")
    seqno = int(match.group(1))

    items = parse_list(text[match.end() - 1:], literals)
    if len(items) != 1 or not isinstance(items[0], list):
        raise ValueError(f"FETCH response for {seqno} is not a single list")
    fields = items[0]
    if len(fields) % 2:
        raise ValueError(f"FETCH response for {seqno} has an odd number of fields")

    return seqno, {str(name).upper(): value for name, value in zip(fields[::2], fields[1::2])}


def parse_list(text: bytes, literals: Optional[list[bytes]] = None) -> list[Any]:
    """
    Parse a sequence of IMAP values.

    Raises ValueError on unbalanced parentheses, an unterminated quoted
    string, or a literal marker with no payload behind it.
    """
    pending_literals: Iterator[bytes] = iter(literals or [])
    stack: list[list[Any]] = [[]]
    pos = 0
    length = len(text)

    while pos < length:
        char = text[pos]
        if char in b" \t\r\n":
            pos += 1
        elif char == ord("("):
            stack.append([])
            pos += 1
        elif char == ord(")"):
            if len(stack) == 1:
                raise ValueError(f"unbalanced ')' at offset {pos}")
            closed = stack.pop()
            stack[-1].append(closed)
            pos += 1
        elif char == ord('"'):
            value, pos = _read_quoted(text, pos)
            stack[-1].append(value)
        elif char == ord("{"):
            match = _LITERAL_MARKER.match(text, pos)
            if not match:
                raise ValueError(f"bad literal marker at offset {pos}")
            try:
                stack[-1].append(next(pending_literals))
            except StopIteration:
                raise ValueError(f"literal {match.group(0)!r} has no payload") from None
            pos = match.end()
        else:
            atom, pos = _read_atom(text, pos)
            stack[-1].append(None if atom.upper() == "NIL" else atom)

    if len(stack) != 1:
        raise ValueError("unbalanced '(': response ended inside a list")
    return stack[0]


def _read_quoted(text: bytes, pos: int) -> tuple[str, int]:
    out = bytearray()
    pos += 1
    while pos < len(text):
        char = text[pos]
        if char == ord("\\") and pos + 1 < len(text):
            out.append(text[pos + 1])
            pos += 2
        elif char == ord('"'):
            return out.decode("utf-8", errors="replace"), pos + 1
        else:
            out.append(char)
            pos += 1
    raise ValueError("unterminated quoted string")


def _read_atom(text: bytes, pos: int) -> tuple[str, int]:
    # Section specs such as BODY[HEADER.FIELDS (FROM TO)] contain spaces
    # and parentheses; they belong to the atom until the closing bracket.
    start = pos
    depth = 0
    while pos < len(text):
        char = text[pos]
        if char == ord("["):
            depth += 1
        elif char == ord("]") and depth:
            depth -= 1
        elif depth == 0 and char in _ATOM_END:
            break
        pos += 1
    return text[start:pos].decode("ascii", errors="replace"), pos
