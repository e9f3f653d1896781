"""Tests for the IMAP variant: wire parsing, the transport and the session state machine."""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from gtdmail.config import Settings
from gtdmail.errors import AuthExpiredError, CredentialMismatchError, ProviderError
from gtdmail.logging.config import setup_logging
from gtdmail.mail.schemas import GmailOAuthCredentials, ImapCredentials
from gtdmail.providers.imap.bodystructure import (
    MimeDisposition,
    MimePart,
    has_attachments,
    parse_bodystructure,
)
from gtdmail.providers.imap.client import ConnectionState, ImapClient
from gtdmail.providers.imap.events import (
    BodyChunk,
    HeaderChunk,
    MessageAttributes,
    MessageEnded,
    MessageStarted,
    RangeEnded,
    ServerReady,
)
from gtdmail.providers.imap.protocol import parse_fetch_response, parse_list
from gtdmail.providers.imap.transport import (
    FETCH_ITEMS,
    ImaplibTransport,
    _quote_mailbox,
    sequence_set,
)


@pytest.fixture(autouse=True)
def init_logging():
    setup_logging("debug")


@pytest.fixture
def settings():
    return Settings(encryption_key="test-key", _env_file=None)


@pytest.fixture
def credentials():
    return ImapCredentials(host="imap.example.com", port=993, username="me@example.com", password="pw")


def make_header(seqno: int, subject: str = "") -> bytes:
    return (
        f"From: Ann <ann@example.com>\r\n"
        f"To: me@example.com\r\n"
        f"Subject: {subject or f'Message {seqno}'}\r\n"
        f"Date: Tue, 14 Jan 2025 09:30:00 +0000\r\n"
        f"Message-ID: <{seqno}@example.com>\r\n"
        f"Content-Type: text/plain; charset=utf-8\r\n"
        f"\r\n"
    ).encode()


def message_events(seqno: int, body: bytes = b"Hello world\r\n", **attributes) -> list:
    """The complete, unchunked event sequence for one message."""
    attributes.setdefault("uid", str(1000 + seqno))
    return [
        MessageStarted(seqno),
        MessageAttributes(seqno, **attributes),
        HeaderChunk(seqno, make_header(seqno)),
        BodyChunk(seqno, body),
        MessageEnded(seqno),
    ]


def split(data: bytes, *cuts: int) -> list[bytes]:
    bounds = [0, *cuts, len(data)]
    return [data[a:b] for a, b in zip(bounds, bounds[1:])]


class FakeTransport:
    """Scripted ImapTransport that records how it was driven."""

    def __init__(self, script=(), exists=None, connect_error=None, delay=0.0):
        self.script = list(script)
        self.exists = exists if exists is not None else len(
            {e.seqno for e in self.script if isinstance(e, MessageStarted)}
        )
        self.connect_error = connect_error
        self.delay = delay
        self.connects = 0
        self.logouts = 0
        self.requested = []
        self.events_sent = 0
        self.stream_closed = False

    async def connect(self):
        self.connects += 1
        if self.connect_error is not None:
            raise self.connect_error
        return ServerReady(exists=self.exists)

    async def fetch(self, seqnos):
        self.requested = list(seqnos)
        try:
            for event in self.script:
                if self.delay:
                    await asyncio.sleep(self.delay)
                self.events_sent += 1
                yield event
            yield RangeEnded()
        finally:
            self.stream_closed = True

    async def logout(self):
        self.logouts += 1


def run(coro):
    return asyncio.run(coro)


# =========================================================================
# WIRE PARSING
# =========================================================================


class TestParseFetchResponse:
    def test_literal_and_atoms(self):
        data = [(b"7 (UID 42 FLAGS (\\Seen) BODY[HEADER] {12}", b"Subject: x\r\n"), b")"]
        assert parse_fetch_response(data) == [
            (7, {"UID": "42", "FLAGS": ["\\Seen"], "BODY[HEADER]": b"Subject: x\r\n"})
        ]

    def test_two_messages_in_one_response(self):
        data = [
            (b"1 (UID 10 BODY[TEXT] {3}", b"abc"),
            b")",
            (b"2 (UID 11 BODY[TEXT] {3}", b"def"),
            b")",
        ]
        parsed = parse_fetch_response(data)
        assert [seqno for seqno, _ in parsed] == [1, 2]
        assert parsed[1][1]["BODY[TEXT]"] == b"def"

    def test_two_literals_for_one_message(self):
        data = [
            (b"3 (BODY[HEADER] {2}", b"h\n"),
            (b" BODY[TEXT] {2}", b"b\n"),
            b")",
        ]
        assert parse_fetch_response(data) == [(3, {"BODY[HEADER]": b"h\n", "BODY[TEXT]": b"b\n"})]

    def test_none_items_ignored(self):
        assert parse_fetch_response([None]) == []

    def test_odd_field_count_rejected(self):
        with pytest.raises(ValueError):
            parse_fetch_response([b"1 (UID)"])


class TestParseList:
    def test_quoted_strings_and_nil(self):
        assert parse_list(b'("a \\"b\\"" NIL 12)') == [['a "b"', None, "12"]]

    def test_section_spec_with_spaces_is_one_atom(self):
        assert parse_list(b"BODY[HEADER.FIELDS (FROM TO)] {3}", [b"abc"]) == [
            "BODY[HEADER.FIELDS (FROM TO)]",
            b"abc",
        ]

    def test_nested_lists(self):
        assert parse_list(b"(a (b (c)) d)") == [["a", ["b", ["c"]], "d"]]

    @pytest.mark.parametrize("text", [b"(a (b)", b"a)", b'("open'])
    def test_unbalanced_input(self, text):
        with pytest.raises(ValueError):
            parse_list(text)

    def test_literal_without_payload(self):
        with pytest.raises(ValueError):
            parse_list(b"{3}", [])


MIXED_WITH_PDF = (
    b'(("text" "plain" ("charset" "utf-8") NIL NIL "7bit" 12 1 NIL NIL NIL NIL)'
    b'("application" "pdf" ("name" "a.pdf") NIL NIL "base64" 1000 NIL'
    b' ("attachment" ("filename" "a.pdf")) NIL NIL)'
    b' "mixed" ("boundary" "xyz") NIL NIL NIL)'
)


class TestBodyStructure:
    def test_multipart_with_attachment(self):
        part = parse_bodystructure(parse_list(MIXED_WITH_PDF)[0])
        assert part.mime_type == "multipart/mixed"
        assert part.is_multipart
        assert part.params == {"boundary": "xyz"}
        text, pdf = part.parts
        assert text.mime_type == "text/plain"
        assert text.disposition is None
        assert pdf.size == 1000
        assert pdf.disposition == MimeDisposition("attachment", {"filename": "a.pdf"})
        assert has_attachments(part) is True

    def test_attachment_inside_forwarded_message(self):
        inner = MIXED_WITH_PDF.decode()
        outer = (
            '(("text" "plain" ("charset" "utf-8") NIL NIL "7bit" 5 1 NIL NIL NIL NIL)'
            f'("message" "rfc822" NIL NIL NIL "7bit" 2000 NIL {inner} 40 NIL ("inline" NIL) NIL NIL)'
            ' "mixed" ("boundary" "outer") NIL NIL NIL)'
        ).encode()
        part = parse_bodystructure(parse_list(outer)[0])
        forwarded = part.parts[1]
        assert forwarded.mime_type == "message/rfc822"
        assert forwarded.disposition.type == "inline"
        assert forwarded.parts[0].mime_type == "multipart/mixed"
        assert has_attachments(part) is True

    def test_inline_only_has_no_attachments(self):
        node = parse_list(b'("image" "png" NIL "<cid1>" NIL "base64" 300 NIL ("inline" NIL) NIL NIL)')[0]
        part = parse_bodystructure(node)
        assert part.disposition.type == "inline"
        assert has_attachments(part) is False

    def test_none_structure(self):
        assert has_attachments(None) is False

    def test_invalid_structures(self):
        with pytest.raises(ValueError):
            parse_bodystructure("text")
        with pytest.raises(ValueError):
            parse_bodystructure(["text", "plain"])


# =========================================================================
# TRANSPORT
# =========================================================================


class FakeImapConnection:
    """Stands in for an imaplib.IMAP4 after login and select."""

    def __init__(self, responses):
        self.responses = responses
        self.fetches = []
        self.calls = []
        self.logged_out = False

    def fetch(self, message_set, items):
        self.fetches.append((message_set, items))
        self.calls.append("fetch")
        return self.responses.get((message_set, items), ("OK", [None]))

    def logout(self):
        self.calls.append("logout")
        self.logged_out = True
        return "BYE", [b"logging out"]


class SlowImapConnection(FakeImapConnection):
    """FETCH blocks until released, like a worker thread stuck on a slow server."""

    def __init__(self):
        super().__init__({})
        self.fetch_started = threading.Event()
        self.release = threading.Event()

    def fetch(self, message_set, items):
        self.fetch_started.set()
        self.release.wait(5)
        result = super().fetch(message_set, items)
        self.calls.append("fetch returned")
        return result


def simple_response(seqno: int) -> list:
    return [
        (
            f"{seqno} (UID {seqno} FLAGS () RFC822.SIZE 10 BODY[HEADER] {{12}}".encode(),
            b"Subject: x\r\n",
        ),
        (b" BODY[TEXT] {2}", b"hi"),
        b")",
    ]


def page_response(*seqnos: int) -> tuple:
    data = []
    for seqno in seqnos:
        data.extend(simple_response(seqno))
    return "OK", data


class TestImaplibTransport:
    def collect(self, transport, seqnos):
        async def go():
            return [event async for event in transport.fetch(seqnos)]

        return run(go())

    def test_events_for_one_message(self, credentials):
        settings = Settings(encryption_key="test-key", imap_chunk_size=5, _env_file=None)
        conn = FakeImapConnection(
            {
                ("2", FETCH_ITEMS): (
                    "OK",
                    [
                        (
                            b'2 (UID 77 FLAGS (\\Seen Work) INTERNALDATE "14-Jan-2025 09:30:00 +0000"'
                            b' RFC822.SIZE 321 BODYSTRUCTURE'
                            b' ("text" "plain" ("charset" "utf-8") NIL NIL "7bit" 11 1 NIL NIL NIL NIL)'
                            b" BODY[HEADER] {12}",
                            b"Subject: x\r\n",
                        ),
                        (b" BODY[TEXT] {11}", b"hello world"),
                        b")",
                    ],
                ),
            }
        )
        transport = ImaplibTransport(credentials, settings)
        transport._conn = conn

        events = self.collect(transport, [2])

        assert events[0] == MessageStarted(2)
        attributes = events[1]
        assert attributes.uid == "77"
        assert attributes.flags == ("\\Seen", "Work")
        assert attributes.size == 321
        assert attributes.internal_date == datetime(2025, 1, 14, 9, 30, tzinfo=timezone.utc)
        assert attributes.structure.mime_type == "text/plain"
        assert [e.data for e in events if isinstance(e, HeaderChunk)] == [b"Subje", b"ct: x", b"\r\n"]
        assert [e.data for e in events if isinstance(e, BodyChunk)] == [b"hello", b" worl", b"d"]
        assert events[-2:] == [MessageEnded(2), RangeEnded()]

    def test_one_fetch_command_per_page(self, credentials, settings):
        conn = FakeImapConnection({("1:10", FETCH_ITEMS): page_response(*range(10, 0, -1))})
        transport = ImaplibTransport(credentials, settings)
        transport._conn = conn

        events = self.collect(transport, range(10, 0, -1))

        assert conn.fetches == [("1:10", FETCH_ITEMS)]
        assert [e.seqno for e in events if isinstance(e, MessageAttributes)] == list(range(10, 0, -1))
        assert events[-1] == RangeEnded()

    def test_pages_follow_requested_order(self, credentials):
        settings = Settings(encryption_key="test-key", imap_fetch_page_size=2, _env_file=None)
        conn = FakeImapConnection(
            {
                ("4:5", FETCH_ITEMS): page_response(5, 4),
                ("2:3", FETCH_ITEMS): page_response(3, 2),
                ("1", FETCH_ITEMS): page_response(1),
            }
        )
        transport = ImaplibTransport(credentials, settings)
        transport._conn = conn

        events = self.collect(transport, range(5, 0, -1))

        assert [m for m, _ in conn.fetches] == ["4:5", "2:3", "1"]
        assert [e.seqno for e in events if isinstance(e, MessageStarted)] == [5, 4, 3, 2, 1]

    def test_later_pages_not_requested_when_consumer_stops(self, credentials):
        settings = Settings(encryption_key="test-key", imap_fetch_page_size=2, _env_file=None)
        conn = FakeImapConnection({("4:5", FETCH_ITEMS): page_response(5, 4)})
        transport = ImaplibTransport(credentials, settings)
        transport._conn = conn

        async def go():
            events = transport.fetch(range(5, 0, -1))
            try:
                async for event in events:
                    if isinstance(event, MessageEnded):
                        return event
            finally:
                await events.aclose()

        assert run(go()) == MessageEnded(5)
        assert conn.fetches == [("4:5", FETCH_ITEMS)]

    def test_missing_message_still_starts_and_ends(self, credentials, settings):
        transport = ImaplibTransport(credentials, settings)
        transport._conn = FakeImapConnection({})

        assert self.collect(transport, [5]) == [MessageStarted(5), MessageEnded(5), RangeEnded()]

    def test_unsolicited_responses_ignored(self, credentials, settings):
        conn = FakeImapConnection({("3", FETCH_ITEMS): page_response(9, 3)})
        transport = ImaplibTransport(credentials, settings)
        transport._conn = conn

        events = self.collect(transport, [3])

        assert [e.seqno for e in events if isinstance(e, MessageAttributes)] == [3]

    def test_fetch_without_connection(self, credentials, settings):
        with pytest.raises(ProviderError):
            self.collect(ImaplibTransport(credentials, settings), [1])

    def test_logout_is_idempotent(self, credentials, settings):
        conn = FakeImapConnection({})
        transport = ImaplibTransport(credentials, settings)
        transport._conn = conn

        run(transport.logout())
        run(transport.logout())
        assert conn.logged_out is True
        assert conn.calls == ["logout"]

    def test_logout_waits_for_abandoned_fetch(self, credentials, settings):
        conn = SlowImapConnection()
        transport = ImaplibTransport(credentials, settings)
        transport._conn = conn

        async def go():
            pending = asyncio.ensure_future(transport.fetch([1]).__anext__())
            await asyncio.to_thread(conn.fetch_started.wait, 5)
            pending.cancel()

            logout = asyncio.ensure_future(transport.logout())
            await asyncio.sleep(0.05)
            assert conn.calls == []

            conn.release.set()
            await logout

        run(go())
        assert conn.calls == ["fetch", "fetch returned", "logout"]

    def test_sequence_set(self):
        assert sequence_set(range(10, 0, -1)) == "1:10"
        assert sequence_set([12, 11, 10, 4]) == "4,10:12"
        assert sequence_set([7]) == "7"

    def test_mailbox_quoting(self):
        assert _quote_mailbox("INBOX") == "INBOX"
        assert _quote_mailbox("Sent Items") == '"Sent Items"'


# =========================================================================
# CLIENT STATE MACHINE
# =========================================================================


class TestImapClientSession:
    def test_connect_reaches_ready(self, credentials, settings):
        transport = FakeTransport(exists=3)
        client = ImapClient(credentials, settings, transport=transport)
        assert client.state is ConnectionState.DISCONNECTED

        run(client.connect())
        assert client.state is ConnectionState.READY

    def test_connect_failure_returns_to_disconnected(self, credentials, settings):
        transport = FakeTransport(connect_error=AuthExpiredError("bad password", "IMAP"))
        client = ImapClient(credentials, settings, transport=transport)

        with pytest.raises(AuthExpiredError):
            run(client.connect())
        assert client.state is ConnectionState.DISCONNECTED
        assert transport.logouts == 1

    def test_can_reconnect_after_failure(self, credentials, settings):
        transport = FakeTransport(connect_error=AuthExpiredError("bad password", "IMAP"))
        client = ImapClient(credentials, settings, transport=transport)
        with pytest.raises(AuthExpiredError):
            run(client.connect())

        transport.connect_error = None
        run(client.connect())
        assert client.state is ConnectionState.READY

    def test_connect_twice_is_illegal(self, credentials, settings):
        client = ImapClient(credentials, settings, transport=FakeTransport())
        run(client.connect())
        with pytest.raises(ProviderError):
            run(client.connect())

    def test_disconnect_when_disconnected_is_noop(self, credentials, settings):
        transport = FakeTransport()
        client = ImapClient(credentials, settings, transport=transport)
        run(client.disconnect())
        assert transport.logouts == 0

    def test_rejects_oauth_credentials(self, settings):
        creds = GmailOAuthCredentials(
            access_token="a", expires_at=datetime.now(timezone.utc) + timedelta(hours=1)
        )
        with pytest.raises(CredentialMismatchError):
            ImapClient(creds, settings, transport=FakeTransport())


class TestImapClientFetch:
    def test_normalizes_message(self, credentials, settings):
        structure = MimePart(
            "multipart",
            "mixed",
            parts=(MimePart("application", "pdf", disposition=MimeDisposition("attachment")),),
        )
        script = message_events(
            1,
            flags=("\\Seen", "\\Flagged", "Work", "$Junk"),
            size=512,
            internal_date=datetime(2025, 1, 14, 9, 31, tzinfo=timezone.utc),
            structure=structure,
        )
        client = ImapClient(credentials, settings, transport=FakeTransport(script), account_id="acc-i")

        [email] = run(client.fetch_emails(10))

        assert email.id == "1001"
        assert email.account_id == "acc-i"
        assert email.subject == "Message 1"
        assert email.sender.email == "ann@example.com"
        assert [a.email for a in email.recipients.to] == ["me@example.com"]
        assert email.thread_id == "<1@example.com>"
        assert email.date == datetime(2025, 1, 14, 9, 30, tzinfo=timezone.utc)
        assert email.received_at == datetime(2025, 1, 14, 9, 31, tzinfo=timezone.utc)
        assert email.size == 512
        assert email.labels == ["Work", "$Junk"]
        assert email.is_read is True
        assert email.is_starred is True
        assert email.is_spam is True
        assert email.has_attachments is True
        assert email.preview_text.strip() == "Hello world"
        assert email.snippet == "Hello world"

    def test_requests_newest_first(self, credentials, settings):
        transport = FakeTransport(message_events(3) + message_events(2) + message_events(1))
        client = ImapClient(credentials, settings, transport=transport)

        emails = run(client.fetch_emails(10))
        assert transport.requested == [3, 2, 1]
        assert [e.id for e in emails] == ["1003", "1002", "1001"]

    def test_interleaved_chunked_messages(self, credentials, settings):
        header_a, header_b = make_header(1, "Alpha"), make_header(2, "Beta")
        ha, hb = split(header_a, 7, 30), split(header_b, 11)
        script = [
            MessageStarted(2),
            MessageStarted(1),
            MessageAttributes(1, uid="a"),
            HeaderChunk(1, ha[0]),
            MessageAttributes(2, uid="b"),
            HeaderChunk(2, hb[0]),
            HeaderChunk(1, ha[1]),
            HeaderChunk(2, hb[1]),
            HeaderChunk(1, ha[2]),
            BodyChunk(2, b"Second "),
            BodyChunk(1, b"First body"),
            BodyChunk(2, b"body"),
            MessageEnded(1),
            MessageEnded(2),
        ]
        client = ImapClient(credentials, settings, transport=FakeTransport(script))

        emails = run(client.fetch_emails(10))

        assert [(e.id, e.subject) for e in emails] == [("a", "Alpha"), ("b", "Beta")]
        assert emails[0].preview_text == "First body"
        assert emails[1].preview_text == "Second body"

    def test_stops_at_max_results_and_disconnects_once(self, credentials, settings):
        script = [event for seqno in range(100, 0, -1) for event in message_events(seqno)]
        transport = FakeTransport(script)
        client = ImapClient(credentials, settings, transport=transport)

        emails = run(client.fetch_emails(10))

        assert len(emails) == 10
        assert transport.events_sent == 10 * 5
        assert transport.stream_closed is True
        assert transport.logouts == 1
        assert client.state is ConnectionState.DISCONNECTED

    def test_range_end_before_max_results(self, credentials, settings):
        transport = FakeTransport(message_events(2) + message_events(1))
        client = ImapClient(credentials, settings, transport=transport)

        emails = run(client.fetch_emails(50))
        assert len(emails) == 2
        assert transport.logouts == 1

    def test_message_without_attributes_is_skipped(self, credentials, settings):
        script = [
            MessageStarted(3),
            HeaderChunk(3, make_header(3)),
            MessageEnded(3),
            *message_events(2),
            *message_events(1),
        ]
        client = ImapClient(credentials, settings, transport=FakeTransport(script))

        emails = run(client.fetch_emails(2))
        assert [e.id for e in emails] == ["1002", "1001"]

    def test_unparseable_dates_fall_back(self, credentials, settings):
        script = [
            MessageStarted(1),
            MessageAttributes(1, uid="u1"),
            HeaderChunk(1, b"Subject: no date\r\nDate: someday\r\n\r\n"),
            MessageEnded(1),
        ]
        before = datetime.now(timezone.utc)
        client = ImapClient(credentials, settings, transport=FakeTransport(script))

        [email] = run(client.fetch_emails(1))
        assert email.date >= before
        assert email.received_at >= before
        assert email.preview_text == ""

    def test_timeout_still_disconnects(self, credentials, settings):
        transport = FakeTransport(message_events(1), delay=5.0)
        client = ImapClient(credentials, settings, transport=transport)

        async def go():
            await asyncio.wait_for(client.fetch_emails(10), timeout=0.05)

        with pytest.raises(asyncio.TimeoutError):
            run(go())
        assert transport.logouts == 1
        assert transport.stream_closed is True
        assert client.state is ConnectionState.DISCONNECTED

    def test_connect_failure_during_fetch(self, credentials, settings):
        transport = FakeTransport(connect_error=AuthExpiredError("bad password", "IMAP"))
        client = ImapClient(credentials, settings, transport=transport)

        with pytest.raises(AuthExpiredError):
            run(client.fetch_emails(10))
        assert transport.logouts == 1
        assert client.state is ConnectionState.DISCONNECTED
