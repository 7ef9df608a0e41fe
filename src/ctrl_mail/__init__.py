# =============================================================================
# Ctrl-Mail: Async Mail Session Engine
# =============================================================================
#
# Ctrl-Mail speaks IMAP and SMTP over an encrypted transport, keeps an
# offline SQLite copy of each mailbox folder, and turns raw MIME wire data
# into readable messages and conversation threads.
#
# Features:
#   - Tagged IMAP command engine with literal-aware response framing
#   - Full and incremental (UID watermark) folder sync into SQLite
#   - Tolerant MIME decoding (quoted-printable, base64, charsets)
#   - Reply-noise stripping and conversation threading
#   - SMTP sending via aiosmtplib, password or XOAUTH2 auth
#   - Credentials kept in the system keyring
#   - XDG Base Directory compliant
#
# =============================================================================

__version__ = "0.1.0"
__author__ = "Kord"
__app_name__ = "ctrl-mail"

# Main entry point - this is what gets called by the 'ctrl-mail' command
from ctrl_mail.app import main

__all__ = ["main", "__version__", "__app_name__"]
