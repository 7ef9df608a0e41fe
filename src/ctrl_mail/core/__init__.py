# =============================================================================
# Ctrl-Mail Core Module
# =============================================================================
# Core domain models. These are plain dataclasses and enums that import
# nothing from the rest of ctrl_mail, so any layer can use them without
# circular imports. The only third-party import is inscriptis, which
# Message.preview uses to flatten HTML bodies.
#
#   - Account / ConnectionParameters: who we connect as, and where
#   - Message / Attachment / MessageFlags: a fetched email
#   - MailFolder / FolderSyncMetadata / CacheEntry: sync bookkeeping
#   - errors: the exception taxonomy shared by every layer
# =============================================================================

from ctrl_mail.core.account import Account, AuthType, ConnectionParameters
from ctrl_mail.core.errors import (
    AuthenticationFailed,
    MailError,
    NotConnectedError,
    ServerError,
    TransportError,
)
from ctrl_mail.core.folder import (
    CacheEntry,
    FolderState,
    FolderSyncMetadata,
    MailFolder,
)
from ctrl_mail.core.message import Attachment, Message, MessageFlags

__all__ = [
    "Account",
    "AuthType",
    "ConnectionParameters",
    "Message",
    "MessageFlags",
    "Attachment",
    "MailFolder",
    "FolderState",
    "FolderSyncMetadata",
    "CacheEntry",
    "MailError",
    "TransportError",
    "AuthenticationFailed",
    "ServerError",
    "NotConnectedError",
]
