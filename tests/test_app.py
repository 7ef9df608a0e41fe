# =============================================================================
# Command Line Tests
# =============================================================================

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import aiosmtplib
import pytest

from conftest import make_message

from ctrl_mail import app
from ctrl_mail.core import AuthenticationFailed, CacheEntry, ServerError
from ctrl_mail.credentials import CredentialStore
from ctrl_mail.storage import CacheStore, Database
from ctrl_mail.transport import TransportSession

CONFIG = """
[general]
default_account = "test"

[accounts.test]
email = "test@example.com"
imap_host = "imap.example.com"
smtp_host = "smtp.example.com"
"""


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """XDG dirs, config file and database under tmp_path; root logger restored."""
    for var in ("XDG_CONFIG_HOME", "XDG_DATA_HOME", "XDG_STATE_HOME"):
        monkeypatch.setenv(var, str(tmp_path / var.lower()))
    config_path = tmp_path / "config.toml"
    config_path.write_text(CONFIG)

    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield ["--config", str(config_path), "--database", str(tmp_path / "cache.db")]
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestParseArgs:
    def test_sync_options(self):
        args = app.parse_args(["sync", "work", "--all", "--limit", "10"])
        assert args.command == "sync"
        assert args.account == "work"
        assert args.all
        assert args.limit == 10
        assert args.folder == "INBOX"

    def test_send_recipients(self):
        args = app.parse_args(["send", "--to", "a@example.com", "b@example.com", "--subject", "Hi"])
        assert args.to == ["a@example.com", "b@example.com"]
        assert args.body is None

    def test_command_required(self):
        with pytest.raises(SystemExit):
            app.parse_args([])


class TestMain:
    def test_paths(self, cli_env, capsys):
        assert app.main(["--paths"]) == app.EXIT_OK
        assert "cache.db" in capsys.readouterr().out

    def test_threads_on_empty_cache(self, cli_env, capsys):
        assert app.main([*cli_env, "threads"]) == app.EXIT_OK
        assert "No cached mail" in capsys.readouterr().out

    def test_unknown_account(self, cli_env):
        assert app.main([*cli_env, "threads", "nobody"]) == app.EXIT_CONFIG

    def test_clear_cache(self, cli_env, capsys):
        assert app.main([*cli_env, "clear-cache"]) == app.EXIT_OK
        assert "Removed 0 cached messages" in capsys.readouterr().out

    def test_authentication_failure(self, cli_env, monkeypatch):
        async def rejected(account, config, credentials):
            raise AuthenticationFailed("LOGIN failed")

        monkeypatch.setattr(app, "open_imap_session", rejected)
        assert app.main([*cli_env, "sync"]) == app.EXIT_AUTH

    def test_server_error(self, cli_env, monkeypatch, capsys):
        async def refused(account, config, credentials):
            raise ServerError("SELECT failed", stage="SELECT")

        monkeypatch.setattr(app, "open_imap_session", refused)
        assert app.main([*cli_env, "sync"]) == app.EXIT_NETWORK
        assert "at SELECT" in capsys.readouterr().err

    def test_threads_show_preview(self, cli_env, tmp_path, capsys):
        async def seed():
            async with Database(tmp_path / "cache.db") as db:
                message = make_message(1, subject="Lunch", body="Noon at the usual place?")
                await CacheStore(db).replace_entries("test", "INBOX", [CacheEntry(message, "INBOX")])

        asyncio.run(seed())

        assert app.main([*cli_env, "threads"]) == app.EXIT_OK
        out = capsys.readouterr().out
        assert "Lunch" in out
        assert "    Noon at the usual place?" in out

    def test_missing_password_closes_connection(self, cli_env, imap_server, memory_keyring, monkeypatch):
        async def fake_open(params, **kwargs):
            return await imap_server.open(params)

        monkeypatch.setattr(TransportSession, "open", fake_open)

        assert app.main([*cli_env, "sync"]) == app.EXIT_AUTH
        assert not imap_server.transport.is_open
        assert not imap_server.sent("LOGIN")

    def test_send_connection_lost(self, cli_env, memory_keyring, monkeypatch):
        client = MagicMock()
        client.is_connected = True
        client.supports_extension.return_value = True
        for name in ("connect", "ehlo", "auth_login", "mail", "rcpt", "data", "rset", "quit"):
            setattr(client, name, AsyncMock())
        client.rcpt.side_effect = aiosmtplib.SMTPServerDisconnected("Server disconnected")
        monkeypatch.setattr(aiosmtplib, "SMTP", MagicMock(return_value=client))
        CredentialStore().save_password("test", "secret")

        argv = [*cli_env, "send", "--to", "bob@example.com", "--subject", "Hi", "--body", "Hello"]
        assert app.main(argv) == app.EXIT_NETWORK
        client.data.assert_not_awaited()
