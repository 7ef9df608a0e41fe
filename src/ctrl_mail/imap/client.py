# =============================================================================
# IMAP Session
# =============================================================================
# Tagged command/response engine on top of a TransportSession.
#
# Key responsibilities:
#   - Connection management (greeting, LOGIN / XOAUTH2, LOGOUT)
#   - Tag allocation (A001, A002, ...) and response completion detection
#   - Folder selection and SEARCH
#   - Two-phase message fetch (envelope+flags, then full body)
#   - Fire-and-forget mutations (STORE, COPY, EXPUNGE) and move/delete
#
# Design notes:
#   - One command in flight per connection. Public operations hold an
#     asyncio.Lock for their whole exchange sequence; private helpers assume
#     the lock is already held.
#   - A read that never completes is not an error: after max_read_attempts
#     empty reads the partial buffer is returned as a status-less response.
#   - Transport failures always propagate. Per-message parse problems never
#     do; they are logged and the message is skipped or degraded.
# =============================================================================

import asyncio
import base64
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from ctrl_mail.core import (
    AuthenticationFailed,
    AuthType,
    ConnectionParameters,
    Message,
    NotConnectedError,
    ServerError,
    TransportError,
)
from ctrl_mail.credentials import CredentialStore
from ctrl_mail.imap.assembler import assemble_message
from ctrl_mail.imap.protocol import (
    IMAPResponse,
    ResponseScanner,
    quote_mailbox,
    quote_string,
)
from ctrl_mail.transport import TransportSession

logger = logging.getLogger(__name__)

# Opens a transport for the given parameters; swapped out in tests
Opener = Callable[[ConnectionParameters], Awaitable[TransportSession]]

DEFAULT_FETCH_LIMIT = 50

_CAPABILITY_CODE = re.compile(r"\[CAPABILITY ([^\]]+)\]", re.IGNORECASE)


@dataclass
class ConnectionState:
    """
    Tracks the current state of an IMAP connection.

    Attributes:
        connected: Transport open and greeting received.
        authenticated: LOGIN or AUTHENTICATE succeeded.
        selected_folder: Currently selected folder, if any.
        capabilities: Capabilities advertised in the greeting or login reply.
        uidvalidity: UIDVALIDITY of the selected folder.
    """
    connected: bool = False
    authenticated: bool = False
    selected_folder: str | None = None
    capabilities: list[str] = field(default_factory=list)
    uidvalidity: int | None = None


class IMAPSession:
    """
    Async IMAP session over a single encrypted connection.

    Usage:
        >>> session = IMAPSession(account.imap_parameters())
        >>> await session.connect()
        >>> await session.authenticate(account.imap_username, password)
        >>> messages = await session.fetch_messages("INBOX", limit=50)
        >>> await session.logout()

    Attributes:
        params: Connection parameters for the server.
        state: Current connection state.
    """

    # Empty reads tolerated while waiting for one response
    MAX_READ_ATTEMPTS = 50

    # Sleep between empty reads (seconds)
    READ_BACKOFF = 0.05

    def __init__(
        self,
        params: ConnectionParameters,
        *,
        opener: Opener | None = None,
        max_read_attempts: int | None = None,
        read_backoff: float | None = None,
    ) -> None:
        self.params = params
        self.state = ConnectionState()
        self.max_read_attempts = max_read_attempts or self.MAX_READ_ATTEMPTS
        self.read_backoff = read_backoff if read_backoff is not None else self.READ_BACKOFF
        self._opener = opener or TransportSession.open
        self._transport: TransportSession | None = None
        self._tag_counter = 0
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Check if the session is connected and authenticated."""
        return (
            self.state.connected
            and self.state.authenticated
            and self._transport is not None
            and self._transport.is_open
        )

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        """
        Open the transport and read the server greeting.

        Raises:
            TransportError: If the connection fails or the server says BYE.
        """
        async with self._lock:
            logger.info(f"Connecting to {self.params.host}:{self.params.port}")
            self._transport = await self._opener(self.params)
            greeting = await self._read_response(None, greeting=True)
            text = greeting.text

            if text.startswith("* BYE"):
                await self._teardown()
                raise TransportError(f"Server {self.params.host} refused the connection: {text.strip()}")
            if not text.startswith("* "):
                logger.warning(f"No greeting from {self.params.host}; continuing anyway")

            self.state.connected = True
            self._update_capabilities(text)
            if text.startswith("* PREAUTH"):
                self.state.authenticated = True
            logger.debug(f"Greeting received, capabilities: {self.state.capabilities}")

    async def authenticate(self, username: str, password: str) -> None:
        """
        Log in with LOGIN.

        On failure the connection is closed and the session is left
        disconnected.

        Raises:
            NotConnectedError: If connect() has not been called.
            AuthenticationFailed: If the server answers NO/BAD or nothing parseable.
        """
        async with self._lock:
            self._require_transport()
            logger.debug(f"Authenticating as {username}")
            response = await self._command(
                f"LOGIN {quote_string(username)} {quote_string(password)}",
                redacted="LOGIN ****",
            )
            await self._finish_authentication(response, username)

    async def authenticate_oauth2(self, username: str, access_token: str) -> None:
        """
        Log in with AUTHENTICATE XOAUTH2 (initial response in the command).

        Raises:
            NotConnectedError: If connect() has not been called.
            AuthenticationFailed: If the token is rejected.
        """
        sasl = f"user={username}\x01auth=Bearer {access_token}\x01\x01"
        encoded = base64.b64encode(sasl.encode("utf-8")).decode("ascii")

        async with self._lock:
            self._require_transport()
            logger.debug(f"Authenticating as {username} with XOAUTH2")
            response = await self._command(
                f"AUTHENTICATE XOAUTH2 {encoded}",
                redacted="AUTHENTICATE XOAUTH2 ****",
                continuation=True,
            )
            if response.status is None and response.continuation:
                # Server sent an error challenge; an empty line ends the exchange
                await self._transport.send(b"\r\n")
                response = await self._read_response(response.tag)
            await self._finish_authentication(response, username)

    async def login(self, credentials: CredentialStore, auth_type: AuthType) -> None:
        """
        Authenticate with a secret from the credential store.

        Raises:
            AuthenticationFailed: If no secret is stored or the server rejects it.
        """
        account = self.params.credential_ref
        username = self.params.username
        if auth_type == AuthType.OAUTH2:
            token = credentials.get_token(account)
            if token is None:
                raise AuthenticationFailed(f"No OAuth token stored for {account}")
            if token.is_expired:
                logger.warning(f"OAuth token for {account} has expired; trying it anyway")
            await self.authenticate_oauth2(username, token.access_token)
        else:
            password = credentials.get_password(account)
            if not password:
                raise AuthenticationFailed(
                    f"No password stored for {account}. "
                    f"Set it with: ctrl-mail set-password {account}"
                )
            await self.authenticate(username, password)

    async def logout(self) -> None:
        """
        Send LOGOUT and close the connection.

        Errors during LOGOUT are logged; the transport is closed regardless.
        """
        async with self._lock:
            if self._transport is None:
                return
            try:
                if self._transport.is_open:
                    logger.debug("Sending LOGOUT")
                    await self._command("LOGOUT")
            except TransportError as e:
                logger.warning(f"Error during logout: {e}")
            finally:
                await self._teardown()

    async def disconnect(self) -> None:
        """Close the connection without LOGOUT."""
        async with self._lock:
            await self._teardown()

    async def __aenter__(self) -> "IMAPSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.logout()

    # =========================================================================
    # Folder Operations
    # =========================================================================

    async def select_folder(self, folder_name: str) -> dict[str, int]:
        """
        Select a folder for subsequent operations.

        Returns:
            Dictionary with folder status (EXISTS, RECENT, UIDVALIDITY, UIDNEXT).

        Raises:
            ServerError: If the server refuses the folder (stage "SELECT").
        """
        async with self._lock:
            return await self._select(folder_name)

    async def search_all(self) -> list[int]:
        """Sequence numbers of every message in the selected folder, in server order."""
        async with self._lock:
            return await self._search("SEARCH ALL")

    # =========================================================================
    # Fetching
    # =========================================================================

    async def fetch_envelope_and_flags(self, message_id: int, *, by_uid: bool = False) -> IMAPResponse:
        """FETCH (UID FLAGS ENVELOPE) for one message; the lighter first phase."""
        async with self._lock:
            return await self._fetch(message_id, "(UID FLAGS ENVELOPE)", by_uid=by_uid)

    async def fetch_full_body(self, message_id: int, *, by_uid: bool = False) -> IMAPResponse:
        """FETCH (BODY.PEEK[]) for one message; does not set \\Seen."""
        async with self._lock:
            return await self._fetch(message_id, "(BODY.PEEK[])", by_uid=by_uid)

    async def fetch_messages(self, folder_name: str, limit: int = DEFAULT_FETCH_LIMIT) -> list[Message]:
        """
        Fetch the most recent `limit` messages of a folder.

        Uses sequence numbers from SEARCH ALL, so it works even when the
        server omits UIDs from FETCH responses.

        Raises:
            ServerError: If the folder cannot be selected or searched.
            TransportError: On connection failure.
        """
        async with self._lock:
            await self._select(folder_name)
            sequence = await self._search("SEARCH ALL")
            wanted = sequence[-limit:] if limit > 0 else []
            logger.debug(f"Fetching {len(wanted)} of {len(sequence)} messages from {folder_name}")
            return await self._fetch_each(folder_name, wanted, by_uid=False)

    async def fetch_since(
        self,
        uid: int,
        folder_name: str,
        limit: int = DEFAULT_FETCH_LIMIT,
    ) -> list[Message]:
        """
        Fetch messages whose UID is greater than `uid`, oldest first.

        Each returned Message carries its UID and flags.

        Raises:
            ServerError: If the folder cannot be selected or searched.
            TransportError: On connection failure.
        """
        async with self._lock:
            await self._select(folder_name)
            found = await self._search(f"UID SEARCH UID {uid + 1}:*")
            # "N:*" always matches the highest UID, even when it is <= N
            newer = sorted(u for u in set(found) if u > uid)
            wanted = newer[:limit] if limit > 0 else []
            logger.debug(f"{len(newer)} messages above UID {uid} in {folder_name}, fetching {len(wanted)}")
            return await self._fetch_each(folder_name, wanted, by_uid=True)

    async def _fetch_each(self, folder_name: str, ids: list[int], *, by_uid: bool) -> list[Message]:
        messages = []
        for message_id in ids:
            envelope = await self._fetch(message_id, "(UID FLAGS ENVELOPE)", by_uid=by_uid)
            if envelope.status in ("NO", "BAD"):
                logger.warning(f"Envelope fetch for {message_id} in {folder_name} failed: {envelope.message}")
                continue
            body = await self._fetch(message_id, "(BODY.PEEK[])", by_uid=by_uid)
            if body.status in ("NO", "BAD"):
                logger.warning(f"Body fetch for {message_id} in {folder_name} failed: {body.message}")
                continue
            try:
                message = assemble_message(
                    envelope.raw,
                    body.raw,
                    folder=folder_name,
                    uid=message_id if by_uid else None,
                )
            except (ValueError, TypeError, IndexError) as e:
                logger.error(f"Failed to assemble message {message_id} in {folder_name}: {e}")
                continue
            messages.append(message)
        logger.debug(f"Fetched {len(messages)} messages from {folder_name}")
        return messages

    # =========================================================================
    # Flag and Message Operations
    # =========================================================================
    # These are fire-and-forget: a declined command is logged at WARNING and
    # reported through the return value, never raised.

    async def store_flag(self, uid: int, flag: str, *, add: bool = True, folder: str | None = None) -> bool:
        """Add or remove one flag (e.g. "\\Seen") on a message."""
        async with self._lock:
            return await self._store(uid, flag, add=add, folder=folder)

    async def copy_to(self, uid: int, destination: str, *, folder: str | None = None) -> bool:
        """Copy a message to another folder."""
        async with self._lock:
            return await self._copy(uid, destination, folder=folder)

    async def mark_deleted(self, uid: int, *, folder: str | None = None) -> bool:
        """Set \\Deleted on a message (removed at the next EXPUNGE)."""
        async with self._lock:
            return await self._store(uid, "\\Deleted", add=True, folder=folder)

    async def expunge(self, *, folder: str | None = None) -> bool:
        """Permanently remove messages flagged \\Deleted."""
        async with self._lock:
            return await self._expunge(folder=folder)

    async def move_message(self, uid: int, destination: str, *, folder: str) -> bool:
        """
        Move a message with COPY + STORE \\Deleted + EXPUNGE.

        Returns:
            False if the COPY was declined; the source is then left untouched.
        """
        async with self._lock:
            logger.debug(f"Moving UID {uid} from {folder} to {destination}")
            if not await self._copy(uid, destination, folder=folder):
                return False
            await self._store(uid, "\\Deleted", add=True, folder=folder)
            return await self._expunge(folder=folder)

    async def delete_message(self, uid: int, *, folder: str) -> bool:
        """Permanently delete a message with STORE \\Deleted + EXPUNGE."""
        async with self._lock:
            logger.debug(f"Deleting UID {uid} from {folder}")
            await self._store(uid, "\\Deleted", add=True, folder=folder)
            return await self._expunge(folder=folder)

    async def _store(self, uid: int, flag: str, *, add: bool, folder: str | None) -> bool:
        await self._ensure_selected(folder)
        sign = "+" if add else "-"
        response = await self._command(f"UID STORE {uid} {sign}FLAGS ({flag})")
        return self._accepted(response, f"STORE {sign}{flag} on UID {uid}")

    async def _copy(self, uid: int, destination: str, *, folder: str | None) -> bool:
        await self._ensure_selected(folder)
        response = await self._command(f"UID COPY {uid} {quote_mailbox(destination)}")
        return self._accepted(response, f"COPY UID {uid} to {destination}")

    async def _expunge(self, *, folder: str | None) -> bool:
        await self._ensure_selected(folder)
        response = await self._command("EXPUNGE")
        return self._accepted(response, "EXPUNGE")

    @staticmethod
    def _accepted(response: IMAPResponse, action: str) -> bool:
        if response.ok:
            return True
        logger.warning(f"Server declined {action}: {response.status} {response.message}".rstrip())
        return False

    # =========================================================================
    # Command Engine
    # =========================================================================

    def _next_tag(self) -> str:
        self._tag_counter += 1
        return f"A{self._tag_counter:03d}"

    def _require_transport(self) -> TransportSession:
        if self._transport is None or not self._transport.is_open or not self.state.connected:
            raise NotConnectedError("IMAP session is not connected")
        return self._transport

    def _require_authenticated(self) -> TransportSession:
        transport = self._require_transport()
        if not self.state.authenticated:
            raise NotConnectedError("IMAP session is not authenticated")
        return transport

    async def _command(
        self,
        command: str,
        *,
        redacted: str | None = None,
        continuation: bool = False,
    ) -> IMAPResponse:
        """Send one tagged command and wait for its completion."""
        transport = self._require_transport()
        tag = self._next_tag()
        logger.debug(f"> {tag} {redacted or command}")
        await transport.send(f"{tag} {command}\r\n".encode("utf-8"))
        response = await self._read_response(tag, continuation=continuation)
        logger.debug(f"< {tag} {response.status or 'incomplete'} {response.message}".rstrip())
        return response

    async def _read_response(
        self,
        tag: str | None,
        *,
        greeting: bool = False,
        continuation: bool = False,
    ) -> IMAPResponse:
        """
        Accumulate chunks until the response for `tag` is complete.

        Empty reads are counted; once max_read_attempts is reached the
        partial buffer is returned with status None.
        """
        transport = self._transport
        if transport is None:
            raise NotConnectedError("IMAP session is not connected")

        scanner = ResponseScanner(tag, greeting=greeting, continuation=continuation)
        empty_reads = 0
        while True:
            chunk = await transport.receive_chunk()
            if chunk:
                if scanner.feed(chunk):
                    break
                continue
            empty_reads += 1
            if empty_reads >= self.max_read_attempts:
                logger.warning(
                    f"No complete response for {tag or 'greeting'} after "
                    f"{empty_reads} attempts; using {len(scanner.buffer)} bytes received"
                )
                break
            await asyncio.sleep(self.read_backoff)

        return IMAPResponse.from_buffer(bytes(scanner.buffer), tag)

    async def _finish_authentication(self, response: IMAPResponse, username: str) -> None:
        if not response.ok:
            detail = f"{response.status} {response.message}" if response.status else "no response"
            await self._teardown()
            raise AuthenticationFailed(f"Authentication failed for {username}: {detail}")
        self.state.authenticated = True
        self._update_capabilities(response.text)
        logger.info(f"Authenticated to {self.params.host} as {username}")

    async def _select(self, folder_name: str) -> dict[str, int]:
        self._require_authenticated()
        logger.debug(f"Selecting folder: {folder_name}")
        response = await self._command(f"SELECT {quote_mailbox(folder_name)}")
        if not response.ok:
            self.state.selected_folder = None
            raise ServerError(
                f"Failed to select folder '{folder_name}': {response.status or 'no response'} {response.message}".rstrip(),
                stage="SELECT",
            )
        status = _parse_select_status(response.text)
        self.state.selected_folder = folder_name
        self.state.uidvalidity = status.get("UIDVALIDITY")
        logger.debug(f"Selected folder: {folder_name}, {status}")
        return status

    async def _ensure_selected(self, folder: str | None) -> None:
        self._require_authenticated()
        if folder is not None and folder != self.state.selected_folder:
            await self._select(folder)

    async def _search(self, command: str) -> list[int]:
        self._require_authenticated()
        response = await self._command(command)
        if response.status in ("NO", "BAD"):
            raise ServerError(f"{command} failed: {response.message}", stage="SEARCH")
        numbers = []
        for line in response.untagged("SEARCH"):
            for word in line.split()[2:]:
                if word.isdigit():
                    numbers.append(int(word))
        return numbers

    async def _fetch(self, message_id: int, items: str, *, by_uid: bool) -> IMAPResponse:
        self._require_authenticated()
        verb = "UID FETCH" if by_uid else "FETCH"
        return await self._command(f"{verb} {message_id} {items}")

    async def _teardown(self) -> None:
        if self._transport is not None:
            await self._transport.close()
        self._transport = None
        self.state = ConnectionState()

    def _update_capabilities(self, text: str) -> None:
        match = _CAPABILITY_CODE.search(text)
        if match:
            self.state.capabilities = match.group(1).upper().split()


def _parse_select_status(text: str) -> dict[str, int]:
    """Parse SELECT response into a status dictionary."""
    status = {}
    patterns = {
        "EXISTS": r"\*\s+(\d+)\s+EXISTS",
        "RECENT": r"\*\s+(\d+)\s+RECENT",
        "UIDVALIDITY": r"UIDVALIDITY\s+(\d+)",
        "UIDNEXT": r"UIDNEXT\s+(\d+)",
        "UNSEEN": r"UNSEEN\s+(\d+)",
    }
    for key, pattern in patterns.items():
        match = re.search(pattern, text, re.IGNORECASE)
        if match:
            status[key] = int(match.group(1))
    return status
