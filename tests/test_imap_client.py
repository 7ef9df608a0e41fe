# =============================================================================
# IMAP Session Tests
# =============================================================================
# Drives the real command engine against the scripted FakeIMAPServer.
# =============================================================================

import pytest

from ctrl_mail.core import (
    AuthenticationFailed,
    AuthType,
    NotConnectedError,
    ServerError,
    TransportError,
)
from ctrl_mail.credentials import CredentialStore


class TestConnection:
    async def test_connect_reads_greeting_and_capabilities(self, imap_session):
        await imap_session.connect()

        assert imap_session.state.connected
        assert not imap_session.state.authenticated
        assert "XOAUTH2" not in imap_session.state.capabilities
        assert "AUTH=XOAUTH2" in imap_session.state.capabilities

    async def test_bye_greeting_raises(self, imap_server, imap_session):
        imap_server.greeting = b"* BYE Too many connections\r\n"
        with pytest.raises(TransportError):
            await imap_session.connect()
        assert not imap_session.state.connected

    async def test_preauth_greeting_is_authenticated(self, imap_server, imap_session):
        imap_server.greeting = b"* PREAUTH Welcome back\r\n"
        await imap_session.connect()
        assert imap_session.is_connected

    async def test_login_success(self, imap_server, imap_session):
        await imap_session.connect()
        await imap_session.authenticate("test@example.com", "secret")

        assert imap_session.is_connected
        assert imap_server.commands == ['LOGIN "test@example.com" "secret"']
        # Capabilities from the tagged OK replace the greeting's
        assert "IDLE" in imap_session.state.capabilities

    async def test_login_rejected(self, imap_server, imap_session):
        imap_server.on("LOGIN", status="NO [AUTHENTICATIONFAILED] Invalid credentials")
        await imap_session.connect()

        with pytest.raises(AuthenticationFailed):
            await imap_session.authenticate("test@example.com", "wrong")

        assert not imap_session.is_connected
        assert not imap_session.state.connected
        assert imap_server.transport.closed

    async def test_login_password_not_logged(self, imap_session, caplog):
        caplog.set_level("DEBUG", logger="ctrl_mail.imap.client")
        await imap_session.connect()
        await imap_session.authenticate("test@example.com", "hunter2")
        assert "hunter2" not in caplog.text

    async def test_xoauth2(self, imap_server, imap_session):
        await imap_session.connect()
        await imap_session.authenticate_oauth2("test@example.com", "token-123")

        assert imap_session.is_connected
        assert imap_server.commands[0].startswith("AUTHENTICATE XOAUTH2 ")

    async def test_xoauth2_error_challenge(self, imap_server, imap_session):
        # Later registrations win, so the blank-line answer is the fallback
        imap_server.on("", status="NO [AUTHENTICATIONFAILED] Invalid token")
        imap_server.on("AUTHENTICATE", untagged=b"+ eyJzdGF0dXMiOiI0MDEifQ==\r\n", status=None)
        await imap_session.connect()

        with pytest.raises(AuthenticationFailed):
            await imap_session.authenticate_oauth2("test@example.com", "expired")

        assert imap_server.commands[-1] == ""
        assert not imap_session.state.connected

    async def test_login_uses_credential_store(self, memory_keyring, imap_server, imap_session):
        CredentialStore().save_password("test", "from-keyring")
        await imap_session.connect()
        await imap_session.login(CredentialStore(), AuthType.PASSWORD)

        assert imap_server.commands == ['LOGIN "test@example.com" "from-keyring"']

    async def test_login_without_stored_password(self, memory_keyring, imap_session):
        await imap_session.connect()
        with pytest.raises(AuthenticationFailed):
            await imap_session.login(CredentialStore(), AuthType.PASSWORD)

    async def test_logout_closes_transport(self, imap_server, connected_session):
        await connected_session.logout()

        assert imap_server.commands[-1] == "LOGOUT"
        assert imap_server.transport.closed
        assert not connected_session.is_connected


class TestCommandEngine:
    async def test_operations_before_connect_raise(self, imap_session):
        with pytest.raises(NotConnectedError):
            await imap_session.select_folder("INBOX")
        with pytest.raises(NotConnectedError):
            await imap_session.authenticate("user", "pass")

    async def test_select_before_login_raises(self, imap_session):
        await imap_session.connect()
        with pytest.raises(NotConnectedError):
            await imap_session.select_folder("INBOX")

    async def test_tags_increase_monotonically(self, imap_server, connected_session):
        sent_tags = []
        original = imap_server.reply_for

        def recording(tag, command):
            sent_tags.append(tag)
            return original(tag, command)

        imap_server.reply_for = recording
        await connected_session.select_folder("INBOX")
        await connected_session.search_all()
        await connected_session.select_folder("INBOX")

        # LOGIN was A001
        assert sent_tags == ["A002", "A003", "A004"]

    async def test_response_split_into_small_chunks(self, imap_server, connected_session):
        imap_server.add_message(1, subject="Chunked")
        imap_server.chunk_size = 7

        messages = await connected_session.fetch_messages("INBOX")

        assert [m.subject for m in messages] == ["Chunked"]

    async def test_incomplete_response_returns_partial_buffer(self, imap_server, connected_session):
        imap_server.on("NOOP", untagged=b"* 4 EXISTS\r\n", status=None)
        response = await connected_session._command("NOOP")

        assert response.status is None
        assert b"* 4 EXISTS" in response.raw

    async def test_transport_failure_propagates(self, imap_server, connected_session):
        imap_server.fail_next_read = True
        with pytest.raises(TransportError):
            await connected_session.select_folder("INBOX")


class TestFolders:
    async def test_select_returns_status(self, imap_server, connected_session):
        imap_server.add_message(10)
        imap_server.add_message(11)

        status = await connected_session.select_folder("INBOX")

        assert status["EXISTS"] == 2
        assert status["UIDVALIDITY"] == 42
        assert connected_session.state.selected_folder == "INBOX"
        assert connected_session.state.uidvalidity == 42

    async def test_select_missing_folder(self, connected_session):
        with pytest.raises(ServerError) as exc_info:
            await connected_session.select_folder("Nope")

        assert exc_info.value.stage == "SELECT"
        assert connected_session.state.selected_folder is None
        # The session survives a refused SELECT
        assert connected_session.is_connected

    async def test_search_refused(self, imap_server, connected_session):
        imap_server.on("SEARCH", status="NO Search failed")
        await connected_session.select_folder("INBOX")
        with pytest.raises(ServerError) as exc_info:
            await connected_session.search_all()
        assert exc_info.value.stage == "SEARCH"


class TestFetching:
    async def test_fetch_messages(self, imap_server, connected_session):
        imap_server.add_message(101, subject="First", flags="\\Seen")
        imap_server.add_message(102, subject="Second")
        imap_server.add_message(103, subject="Third", flags="\\Flagged")

        messages = await connected_session.fetch_messages("INBOX")

        assert [m.uid for m in messages] == [101, 102, 103]
        assert [m.subject for m in messages] == ["First", "Second", "Third"]
        assert messages[0].is_read
        assert messages[2].is_starred
        assert all(m.folder == "INBOX" for m in messages)
        assert imap_server.sent("FETCH 1 ") == ["FETCH 1 (UID FLAGS ENVELOPE)", "FETCH 1 (BODY.PEEK[])"]

    async def test_fetch_messages_takes_newest(self, imap_server, connected_session):
        for uid in range(1, 6):
            imap_server.add_message(uid)

        messages = await connected_session.fetch_messages("INBOX", limit=2)

        assert [m.uid for m in messages] == [4, 5]

    async def test_cc_reaches_message(self, imap_server, connected_session):
        imap_server.add_message(5, cc=("carol", "example.com"))

        [message] = await connected_session.fetch_messages("INBOX")

        assert message.recipients == ["bob@example.com"]
        assert message.cc == ["carol@example.com"]

    async def test_body_is_decoded(self, imap_server, connected_session):
        imap_server.add_message(7, raw=b"Content-Type: text/plain\r\n\r\nA001 OK inside the body\r\n")

        [message] = await connected_session.fetch_messages("INBOX")

        assert message.body == "A001 OK inside the body"

    async def test_failed_envelope_skips_message(self, imap_server, connected_session):
        imap_server.add_message(1)
        imap_server.add_message(2)
        imap_server.on("FETCH 1 (UID FLAGS ENVELOPE)", status="NO Message gone")

        messages = await connected_session.fetch_messages("INBOX")

        assert [m.uid for m in messages] == [2]

    async def test_fetch_since(self, imap_server, connected_session):
        for uid in (3, 5, 8, 9):
            imap_server.add_message(uid)

        messages = await connected_session.fetch_since(5, "INBOX")

        assert [m.uid for m in messages] == [8, 9]
        assert "UID SEARCH UID 6:*" in imap_server.commands
        assert imap_server.sent("UID FETCH 8 ") == ["UID FETCH 8 (UID FLAGS ENVELOPE)", "UID FETCH 8 (BODY.PEEK[])"]

    async def test_fetch_since_ignores_star_match_at_or_below_watermark(self, imap_server, connected_session):
        imap_server.add_message(4)
        imap_server.add_message(5)

        assert await connected_session.fetch_since(5, "INBOX") == []
        assert not imap_server.sent("UID FETCH")

    async def test_fetch_since_respects_limit(self, imap_server, connected_session):
        for uid in range(1, 11):
            imap_server.add_message(uid)

        messages = await connected_session.fetch_since(2, "INBOX", limit=3)

        assert [m.uid for m in messages] == [3, 4, 5]


class TestMutations:
    async def test_store_flag(self, imap_server, connected_session):
        imap_server.add_message(5)

        assert await connected_session.store_flag(5, "\\Seen", folder="INBOX")
        assert imap_server.commands[-1] == "UID STORE 5 +FLAGS (\\Seen)"

        assert await connected_session.store_flag(5, "\\Seen", add=False)
        assert imap_server.commands[-1] == "UID STORE 5 -FLAGS (\\Seen)"

    async def test_declined_store_returns_false(self, imap_server, connected_session, caplog):
        imap_server.add_message(5)
        imap_server.on("UID STORE", status="NO Permission denied")

        assert not await connected_session.store_flag(5, "\\Seen", folder="INBOX")
        assert "declined" in caplog.text

    async def test_move_message(self, imap_server, connected_session):
        imap_server.add_message(5)

        assert await connected_session.move_message(5, "Archive", folder="INBOX")

        assert imap_server.commands[-3:] == [
            "UID COPY 5 Archive",
            "UID STORE 5 +FLAGS (\\Deleted)",
            "EXPUNGE",
        ]
        assert 5 not in imap_server.folders["INBOX"]
        assert len(imap_server.folders["Archive"]) == 1

    async def test_move_stops_when_copy_declined(self, imap_server, connected_session):
        imap_server.add_message(5)

        assert not await connected_session.move_message(5, "Missing Folder", folder="INBOX")

        assert imap_server.commands[-1] == 'UID COPY 5 "Missing Folder"'
        assert 5 in imap_server.folders["INBOX"]

    async def test_delete_message(self, imap_server, connected_session):
        imap_server.add_message(5)
        imap_server.add_message(6)

        assert await connected_session.delete_message(5, folder="INBOX")

        assert list(imap_server.folders["INBOX"]) == [6]
