# =============================================================================
# Ctrl-Mail Command Line
# =============================================================================
# Thin argparse front end over the engine:
#
#   ctrl-mail sync [ACCOUNT]          sync one folder (or --all) into the cache
#   ctrl-mail threads [ACCOUNT]       list cached conversations (no network)
#   ctrl-mail send [ACCOUNT]          send a message
#   ctrl-mail set-password ACCOUNT    store a password in the keyring
#   ctrl-mail clear-cache [ACCOUNT]   drop cached mail
#
# Exit codes: 0 success, 1 configuration/usage error, 2 authentication
# failure, 3 network or server error.
# =============================================================================

import argparse
import asyncio
import functools
import getpass
import logging
import sys
from pathlib import Path

from ctrl_mail import __app_name__, __version__
from ctrl_mail.config import Config, ConfigError, ensure_directories, print_paths
from ctrl_mail.core import Account, AuthenticationFailed, MailError, ServerError
from ctrl_mail.credentials import CredentialError, CredentialStore
from ctrl_mail.imap import IMAPSession, SyncManager
from ctrl_mail.log import setup_logging
from ctrl_mail.smtp import SMTPSession
from ctrl_mail.storage import CacheStore, Database
from ctrl_mail.threads import create_threads
from ctrl_mail.transport import TransportSession

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_AUTH = 2
EXIT_NETWORK = 3


# =============================================================================
# Session helpers
# =============================================================================

async def open_imap_session(
    account: Account,
    config: Config,
    credentials: CredentialStore,
) -> IMAPSession:
    """Connect and authenticate an IMAP session using the protocol settings."""
    protocol = config.protocol
    opener = functools.partial(
        TransportSession.open,
        connect_timeout=protocol.connect_timeout_seconds,
        read_timeout=protocol.read_timeout_seconds,
    )
    session = IMAPSession(
        account.imap_parameters(),
        opener=opener,
        max_read_attempts=protocol.max_read_attempts,
        read_backoff=protocol.read_backoff_ms / 1000,
    )
    await session.connect()
    try:
        await session.login(credentials, account.auth_type)
    except (MailError, CredentialError):
        await session.disconnect()
        raise
    return session


# =============================================================================
# Commands
# =============================================================================

async def cmd_sync(config: Config, args: argparse.Namespace) -> int:
    account = config.get_account(args.account)
    credentials = CredentialStore()

    async with Database(args.database) as db:
        session = await open_imap_session(account, config, credentials)
        try:
            sync = SyncManager(
                session,
                CacheStore(db),
                account.name,
                freshness_minutes=config.sync.freshness_minutes,
                fetch_limit=args.limit or config.sync.fetch_limit,
                folders=config.sync.folders,
            )

            if args.all:
                result = await sync.sync_all_folders(full=args.full)
                print(
                    f"{account.name}: {result.new_messages} messages in "
                    f"{len(result.synced_folders)} folders ({result.duration_seconds:.1f}s)"
                )
                for error in result.errors:
                    print(f"  {error}", file=sys.stderr)
                if result.success or result.partially_successful:
                    return EXIT_OK
                return EXIT_NETWORK

            count = await sync.sync_folder(args.folder, full=args.full)
            print(f"{account.name}/{args.folder}: {count} messages")

            if args.watch:
                interval = config.sync.check_interval_minutes * 60
                if interval <= 0:
                    print("sync.check_interval_minutes is 0; nothing to watch", file=sys.stderr)
                    return EXIT_CONFIG
                sync.start_periodic_sync(args.folder, interval=interval)
                print(f"Watching {args.folder} every {config.sync.check_interval_minutes} min (Ctrl-C to stop)")
                try:
                    await asyncio.Event().wait()
                finally:
                    await sync.stop_periodic_sync()
            return EXIT_OK
        finally:
            await session.logout()


async def cmd_threads(config: Config, args: argparse.Namespace) -> int:
    account = config.get_account(args.account)
    async with Database(args.database) as db:
        messages = await CacheStore(db).load_messages(account.name, args.folder)

    threads = create_threads(messages)
    if not threads:
        print(f"No cached mail in {account.name}/{args.folder}. Run 'ctrl-mail sync' first.")
        return EXIT_OK

    for thread in threads[:args.limit]:
        unread = "*" if thread.is_unread else " "
        starred = "!" if thread.is_starred else " "
        count = f" ({thread.message_count})" if thread.message_count > 1 else ""
        print(
            f"{thread.updated_at:%Y-%m-%d %H:%M} {unread}{starred} "
            f"{thread.latest.display_name}: {thread.subject}{count}"
        )
        preview = thread.latest.message.preview
        if preview:
            print(f"    {preview}")
    return EXIT_OK


async def cmd_send(config: Config, args: argparse.Namespace) -> int:
    account = config.get_account(args.account)
    body = args.body if args.body is not None else sys.stdin.read()

    session = SMTPSession(
        account.smtp_parameters(),
        start_tls=account.smtp_start_tls,
        timeout=config.protocol.connect_timeout_seconds,
    )
    await session.connect()
    try:
        await session.login(CredentialStore(), account.auth_type)
        message_id = await session.send_message(
            account.email,
            args.to,
            args.subject,
            body,
            from_name=account.display_name,
            is_html=args.html,
        )
    finally:
        await session.disconnect()

    print(f"Sent {message_id}")
    return EXIT_OK


async def cmd_clear_cache(config: Config, args: argparse.Namespace) -> int:
    async with Database(args.database) as db:
        cache = CacheStore(db)
        if args.account:
            removed = await cache.clear_account(config.get_account(args.account).name)
        else:
            removed = await cache.clear_all()
    print(f"Removed {removed} cached messages")
    return EXIT_OK


def cmd_set_password(config: Config, args: argparse.Namespace) -> int:
    account = config.get_account(args.account)
    password = getpass.getpass(f"Password for {account.email}: ")
    if not password:
        print("No password given", file=sys.stderr)
        return EXIT_CONFIG
    CredentialStore().save_password(account.name, password)
    print(f"Password stored for {account.name}")
    return EXIT_OK


# =============================================================================
# Entry point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="Ctrl-Mail: IMAP sync, threading and SMTP sending from the terminal",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--paths", action="store_true", help="Print configuration paths and exit")
    parser.add_argument("--config", type=Path, help="Path to config file (default: XDG config location)")
    parser.add_argument("--database", type=Path, help="Path to cache database (default: XDG data location)")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode (verbose logging)")

    commands = parser.add_subparsers(dest="command")

    sync = commands.add_parser("sync", help="Sync mail into the local cache")
    sync.add_argument("account", nargs="?", help="Account name (default: default_account)")
    sync.add_argument("--folder", default="INBOX", help="Folder to sync (default: INBOX)")
    sync.add_argument("--all", action="store_true", help="Sync every configured folder")
    sync.add_argument("--full", action="store_true", help="Replace the cache instead of merging new mail")
    sync.add_argument("--limit", type=int, help="Maximum messages to fetch per folder")
    sync.add_argument("--watch", action="store_true", help="Keep running and sync periodically")
    sync.set_defaults(handler=cmd_sync)

    threads = commands.add_parser("threads", help="List cached conversations")
    threads.add_argument("account", nargs="?", help="Account name (default: default_account)")
    threads.add_argument("--folder", default="INBOX", help="Folder to list (default: INBOX)")
    threads.add_argument("--limit", type=int, default=50, help="Maximum threads to show")
    threads.set_defaults(handler=cmd_threads)

    send = commands.add_parser("send", help="Send a message")
    send.add_argument("account", nargs="?", help="Account name (default: default_account)")
    send.add_argument("--to", nargs="+", required=True, help="Recipient addresses")
    send.add_argument("--subject", required=True, help="Subject line")
    send.add_argument("--body", help="Message body (default: read from stdin)")
    send.add_argument("--html", action="store_true", help="Send the body as HTML")
    send.set_defaults(handler=cmd_send)

    set_password = commands.add_parser("set-password", help="Store an account password in the keyring")
    set_password.add_argument("account", help="Account name")
    set_password.set_defaults(handler=cmd_set_password)

    clear = commands.add_parser("clear-cache", help="Delete cached mail")
    clear.add_argument("account", nargs="?", help="Account to clear (default: all accounts)")
    clear.set_defaults(handler=cmd_clear_cache)

    args = parser.parse_args(argv)
    if not args.paths and args.command is None:
        parser.error("a command is required")
    return args


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for Ctrl-Mail.

    Returns:
        Exit code (see module header).
    """
    args = parse_args(argv)

    if args.paths:
        print_paths()
        return EXIT_OK

    ensure_directories()
    setup_logging(debug=args.debug)

    try:
        config = Config.load(args.config)
        outcome = args.handler(config, args)
        if asyncio.iscoroutine(outcome):
            outcome = asyncio.run(outcome)
        return outcome
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except (AuthenticationFailed, CredentialError) as e:
        logger.error(f"Authentication failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        print(AuthenticationFailed.hint, file=sys.stderr)
        return EXIT_AUTH
    except ServerError as e:
        logger.error(f"Server refused {e.stage or 'request'}: {e}")
        stage = f" at {e.stage}" if e.stage else ""
        print(f"Error{stage}: {e}", file=sys.stderr)
        return EXIT_NETWORK
    except MailError as e:
        logger.error(f"{type(e).__name__}: {e}")
        print(f"Error: {e}", file=sys.stderr)
        print(e.hint, file=sys.stderr)
        return EXIT_NETWORK
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
