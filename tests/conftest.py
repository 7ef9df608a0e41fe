# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the Ctrl-Mail test suite:
#
#   - FakeIMAPServer: a scripted IMAP peer plugged into IMAPSession through
#     its `opener` hook, so the real command engine runs without a socket
#   - MemoryKeyring: an in-process keyring backend
#   - a temporary SQLite cache
#   - sample accounts and messages
# =============================================================================

import re
from datetime import datetime, timezone

import keyring
import keyring.errors
import pytest
from keyring.backend import KeyringBackend

from ctrl_mail.core import (
    Account,
    ConnectionParameters,
    Message,
    MessageFlags,
    TransportError,
)
from ctrl_mail.imap import IMAPSession
from ctrl_mail.storage import CacheStore, Database


# =============================================================================
# Wire data builders
# =============================================================================

def envelope_line(
    seq: int,
    uid: int | None,
    *,
    subject: str = "Hello",
    sender: tuple[str, str, str] = ("Alice", "alice", "example.com"),
    to: tuple[str, str] = ("bob", "example.com"),
    cc: tuple[str, str] | None = None,
    date: str = "Mon, 15 Jan 2024 10:30:00 +0000",
    flags: str = "",
    message_id: str = "",
    in_reply_to: str = "",
) -> bytes:
    """One untagged FETCH (UID FLAGS ENVELOPE) response line."""
    name, mailbox, host = sender
    address = f'(("{name}" NIL "{mailbox}" "{host}"))'
    recipient = f'((NIL NIL "{to[0]}" "{to[1]}"))'
    copied = f'((NIL NIL "{cc[0]}" "{cc[1]}"))' if cc else "NIL"
    reply = f'"{in_reply_to}"' if in_reply_to else "NIL"
    mid = f'"{message_id}"' if message_id else "NIL"
    uid_item = f"UID {uid} " if uid is not None else ""
    return (
        f'* {seq} FETCH ({uid_item}FLAGS ({flags}) ENVELOPE ("{date}" "{subject}" '
        f"{address} {address} {address} {recipient} {copied} NIL {reply} {mid}))\r\n"
    ).encode("utf-8")


def body_line(seq: int, uid: int | None, raw: bytes) -> bytes:
    """One untagged FETCH (BODY[]) response carrying `raw` as a literal."""
    uid_item = f"UID {uid} " if uid is not None else ""
    return f"* {seq} FETCH ({uid_item}BODY[] {{{len(raw)}}}\r\n".encode("ascii") + raw + b")\r\n"


def rfc822(body: str = "Hi Bob,\r\nSee you soon.\r\n", **headers: str) -> bytes:
    """A minimal single-part text/plain message."""
    lines = [
        "From: Alice <alice@example.com>",
        "To: bob@example.com",
        f"Subject: {headers.pop('subject', 'Hello')}",
        "Content-Type: text/plain; charset=utf-8",
    ]
    lines.extend(f"{key.replace('_', '-').title()}: {value}" for key, value in headers.items())
    return ("\r\n".join(lines) + "\r\n\r\n" + body).encode("utf-8")


# =============================================================================
# Fake IMAP server
# =============================================================================

class FakeTransport:
    """The byte stream IMAPSession sees; replies come from the server script."""

    def __init__(self, server: "FakeIMAPServer") -> None:
        self.server = server
        self.pending = bytearray(server.greeting)
        self.closed = False

    @property
    def is_open(self) -> bool:
        return not self.closed

    async def send(self, data: bytes) -> None:
        if self.closed:
            raise TransportError("Connection is closed")
        line = data.decode("utf-8").rstrip("\r\n")
        if line:
            tag, _, command = line.partition(" ")
            self.server.last_tag = tag
        else:
            # Answer to a continuation request belongs to the open command
            tag, command = self.server.last_tag, ""
        self.server.commands.append(command)
        self.pending += self.server.reply_for(tag, command)

    async def receive_chunk(self) -> bytes:
        if self.closed:
            raise TransportError("Connection is closed")
        if self.server.fail_next_read:
            self.server.fail_next_read = False
            raise TransportError("Connection reset by peer")
        size = self.server.chunk_size or len(self.pending)
        chunk = bytes(self.pending[:size])
        del self.pending[:size]
        return chunk

    async def close(self) -> None:
        self.closed = True


class FakeIMAPServer:
    """
    A scripted IMAP server.

    Mailbox contents are kept per folder as {uid: (seq, envelope kwargs, raw)}.
    FETCH, SEARCH, SELECT, STORE, COPY and EXPUNGE are answered from that
    state; `on(prefix, ...)` overrides the reply for any command.

    Attributes:
        commands: Every command received, without its tag.
        chunk_size: Deliver replies in pieces of this size (None = at once).
    """

    def __init__(self) -> None:
        self.greeting = b"* OK [CAPABILITY IMAP4rev1 AUTH=PLAIN AUTH=XOAUTH2] Fake server ready\r\n"
        self.folders: dict[str, dict[int, tuple[int, dict, bytes]]] = {"INBOX": {}}
        self.selected: str | None = None
        self.commands: list[str] = []
        self.last_tag = ""
        self.overrides: list[tuple[str, bytes | None, str | None]] = []
        self.chunk_size: int | None = None
        self.fail_next_read = False
        self.transport: FakeTransport | None = None

    async def open(self, params: ConnectionParameters) -> FakeTransport:
        self.transport = FakeTransport(self)
        return self.transport

    # -------------------------------------------------------------------------
    # Scripting
    # -------------------------------------------------------------------------

    def add_message(self, uid: int, folder: str = "INBOX", raw: bytes | None = None, **envelope) -> None:
        mailbox = self.folders.setdefault(folder, {})
        seq = len(mailbox) + 1
        envelope.setdefault("subject", f"Message {uid}")
        mailbox[uid] = (seq, envelope, raw or rfc822(subject=envelope["subject"]))

    def on(self, prefix: str, untagged: bytes = b"", status: str | None = "OK done") -> None:
        """Answer commands starting with `prefix` with `untagged` then `status` (None = no tagged line)."""
        self.overrides.append((prefix.upper(), untagged, status))

    def sent(self, prefix: str) -> list[str]:
        return [c for c in self.commands if c.upper().startswith(prefix.upper())]

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def reply_for(self, tag: str, command: str) -> bytes:
        upper = command.upper()
        for prefix, untagged, status in reversed(self.overrides):
            if upper.startswith(prefix):
                tail = f"{tag} {status}\r\n".encode("ascii") if status else b""
                return untagged + tail

        untagged, status = self._dispatch(command)
        return untagged + f"{tag} {status}\r\n".encode("ascii")

    def _dispatch(self, command: str) -> tuple[bytes, str]:
        verb = command.split(" ", 1)[0].upper()
        if verb == "UID":
            return self._dispatch_uid(command.split(" ", 1)[1])
        if verb == "LOGIN" or verb == "AUTHENTICATE":
            return b"", "OK [CAPABILITY IMAP4rev1 IDLE] Logged in"
        if verb == "LOGOUT":
            return b"* BYE Logging out\r\n", "OK LOGOUT completed"
        if verb == "SELECT":
            name = command.split(" ", 1)[1].strip('"')
            if name not in self.folders:
                return b"", "NO Mailbox does not exist"
            self.selected = name
            count = len(self.folders[name])
            untagged = f"* {count} EXISTS\r\n* 0 RECENT\r\n* OK [UIDVALIDITY 42] UIDs valid\r\n"
            return untagged.encode("ascii"), "OK [READ-WRITE] SELECT completed"
        if verb == "SEARCH":
            seqs = sorted(seq for seq, _e, _r in self._mailbox().values())
            return _search_line(seqs), "OK SEARCH completed"
        if verb == "FETCH":
            _verb, number, items = command.split(" ", 2)
            return self._fetch(self._by_seq(int(number)), items), "OK FETCH completed"
        if verb == "EXPUNGE":
            mailbox = self._mailbox()
            for uid in [u for u, (_s, env, _r) in mailbox.items() if "\\Deleted" in env.get("flags", "")]:
                del mailbox[uid]
            return b"", "OK EXPUNGE completed"
        return b"", "BAD Unknown command"

    def _dispatch_uid(self, command: str) -> tuple[bytes, str]:
        verb, rest = command.split(" ", 1)
        verb = verb.upper()
        mailbox = self._mailbox()
        if verb == "SEARCH":
            low = int(re.search(r"UID (\d+):\*", rest).group(1))
            uids = sorted(u for u in mailbox if u >= low)
            if not uids and mailbox:
                # "N:*" always includes the highest UID
                uids = [max(mailbox)]
            return _search_line(uids), "OK UID SEARCH completed"
        uid = int(rest.split(" ", 1)[0])
        if verb == "FETCH":
            entry = mailbox.get(uid)
            return self._fetch((uid, entry) if entry else None, rest.split(" ", 1)[1]), "OK FETCH completed"
        if verb == "STORE":
            if uid not in mailbox:
                return b"", "NO No such message"
            seq, envelope, raw = mailbox[uid]
            flag = re.search(r"\((\\\w+)\)", rest).group(1)
            current = envelope.get("flags", "").split()
            if "+FLAGS" in rest.upper():
                current = current + [flag] if flag not in current else current
            else:
                current = [f for f in current if f != flag]
            envelope["flags"] = " ".join(current)
            return b"", "OK STORE completed"
        if verb == "COPY":
            destination = rest.split(" ", 1)[1].strip('"')
            if uid not in mailbox or destination not in self.folders:
                return b"", "NO [TRYCREATE] No such mailbox"
            target = self.folders[destination]
            _seq, envelope, raw = mailbox[uid]
            new_uid = max(target, default=0) + 1
            target[new_uid] = (len(target) + 1, dict(envelope), raw)
            return b"", "OK COPY completed"
        return b"", "BAD Unknown UID command"

    def _mailbox(self) -> dict[int, tuple[int, dict, bytes]]:
        return self.folders.get(self.selected or "", {})

    def _by_seq(self, seq: int) -> tuple[int, tuple[int, dict, bytes]] | None:
        for uid, entry in self._mailbox().items():
            if entry[0] == seq:
                return uid, entry
        return None

    def _fetch(self, found, items: str) -> bytes:
        if found is None:
            return b""
        uid, (seq, envelope, raw) = found
        if "ENVELOPE" in items.upper():
            return envelope_line(seq, uid, **envelope)
        return body_line(seq, uid, raw)


def _search_line(numbers: list[int]) -> bytes:
    listed = " ".join(str(n) for n in numbers)
    return f"* SEARCH {listed}".rstrip().encode("ascii") + b"\r\n"


@pytest.fixture
def imap_server():
    """A fake server with an empty INBOX, Archive and Trash."""
    server = FakeIMAPServer()
    server.folders["Archive"] = {}
    server.folders["Trash"] = {}
    return server


@pytest.fixture
def connection_params():
    return ConnectionParameters(
        host="imap.example.com",
        port=993,
        username="test@example.com",
        credential_ref="test",
    )


@pytest.fixture
def imap_session(imap_server, connection_params):
    """An IMAPSession wired to the fake server (not yet connected)."""
    return IMAPSession(
        connection_params,
        opener=imap_server.open,
        max_read_attempts=3,
        read_backoff=0,
    )


@pytest.fixture
async def connected_session(imap_session):
    """A session that has connected and logged in."""
    await imap_session.connect()
    await imap_session.authenticate("test@example.com", "secret")
    yield imap_session
    await imap_session.disconnect()


# =============================================================================
# Keyring
# =============================================================================

class MemoryKeyring(KeyringBackend):
    """Keyring backend that keeps secrets in a dict."""

    priority = 1

    def __init__(self) -> None:
        super().__init__()
        self.entries: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str) -> str | None:
        return self.entries.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.entries[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        try:
            del self.entries[(service, username)]
        except KeyError:
            raise keyring.errors.PasswordDeleteError("Password not found") from None


@pytest.fixture
def memory_keyring():
    """Install an in-memory keyring for the duration of a test."""
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


# =============================================================================
# Storage
# =============================================================================

@pytest.fixture
async def database(tmp_path):
    """A connected cache database in a temporary directory."""
    db = Database(tmp_path / "cache.db")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
async def cache(database):
    return CacheStore(database)


# =============================================================================
# Sample data
# =============================================================================

@pytest.fixture
def sample_account():
    """Create a sample Account for testing."""
    return Account(
        name="test",
        email="test@example.com",
        display_name="Test User",
        imap_host="imap.example.com",
        imap_port=993,
        smtp_host="smtp.example.com",
        smtp_port=465,
    )


def make_message(
    uid: int,
    *,
    subject: str = "Hello",
    sender: str = "alice@example.com",
    day: int = 1,
    flags: MessageFlags = MessageFlags.NONE,
    message_id: str = "",
    in_reply_to: str = "",
    body: str = "Body text",
    folder: str = "INBOX",
) -> Message:
    return Message(
        uid=uid,
        subject=subject,
        sender=sender,
        date=datetime(2024, 1, day, 12, 0, tzinfo=timezone.utc),
        flags=flags,
        message_id=message_id,
        in_reply_to=in_reply_to,
        body=body,
        folder=folder,
    )


@pytest.fixture
def sample_message():
    """Create a sample Message for testing."""
    return make_message(
        12345,
        subject="Test Subject",
        sender="sender@example.com",
        message_id="<test123@example.com>",
        body="This is a test email body.",
    )
