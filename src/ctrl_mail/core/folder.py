# =============================================================================
# Folder Model
# =============================================================================
# Standard mailbox folders, per-folder sync bookkeeping, and the cache entry
# wrapper that the sync engine persists.
#
# Folder state machine (per account + folder):
#
#   UNCACHED -> VALID -> STALE -> SYNCING -> VALID | ERROR
#
# VALID means the last successful sync is within the freshness window.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, auto

from ctrl_mail.core.message import Message


class MailFolder(Enum):
    """
    The standard folder set, with the display name as value.

    IMAP servers name these differently; `imap_name` gives the mailbox name
    sent on the wire. Custom folders are passed around as plain strings.
    """
    INBOX = "Inbox"
    SENT = "Sent"
    DRAFTS = "Drafts"
    TRASH = "Trash"
    SPAM = "Spam"
    ARCHIVE = "Archive"

    @property
    def imap_name(self) -> str:
        """Mailbox name used in SELECT/COPY commands."""
        # INBOX is the only case-insensitive, reserved name in IMAP
        if self is MailFolder.INBOX:
            return "INBOX"
        return self.value

    @classmethod
    def from_name(cls, name: str) -> "MailFolder | None":
        """
        Look up a standard folder by display or IMAP name.

        Also accepts the usual provider variants ("Junk", "Deleted Items",
        "[Gmail]/Sent Mail").

        Returns:
            The matching MailFolder, or None for custom folders.
        """
        lowered = name.strip().lower()
        # Gmail nests its special folders under "[Gmail]/"
        if "/" in lowered:
            lowered = lowered.rsplit("/", 1)[-1]
        for folder in cls:
            if lowered == folder.value.lower():
                return folder
        return _FOLDER_ALIASES.get(lowered)


_FOLDER_ALIASES = {
    "sent mail": MailFolder.SENT,
    "sent items": MailFolder.SENT,
    "sent messages": MailFolder.SENT,
    "draft": MailFolder.DRAFTS,
    "deleted": MailFolder.TRASH,
    "deleted items": MailFolder.TRASH,
    "deleted messages": MailFolder.TRASH,
    "bin": MailFolder.TRASH,
    "junk": MailFolder.SPAM,
    "junk e-mail": MailFolder.SPAM,
    "junk email": MailFolder.SPAM,
    "bulk mail": MailFolder.SPAM,
    "all mail": MailFolder.ARCHIVE,
    "archives": MailFolder.ARCHIVE,
}


class FolderState(Enum):
    """Where a folder is in its sync lifecycle."""
    UNCACHED = auto()   # Never synced
    VALID = auto()      # Synced within the freshness window
    STALE = auto()      # Freshness window elapsed
    SYNCING = auto()    # A sync is running right now
    ERROR = auto()      # The last sync attempt failed


@dataclass
class FolderSyncMetadata:
    """
    Sync bookkeeping for one (account, folder).

    Attributes:
        folder: Folder name.
        last_sync: When the last successful sync finished (UTC).
        highest_uid: Highest UID seen so far. Never decreases across merges;
                     incremental sync asks only for UIDs above it.
        total_emails: Number of cached entries for the folder.
    """
    folder: str
    last_sync: datetime
    highest_uid: int = 0
    total_emails: int = 0

    def is_fresh(self, window: timedelta, now: datetime | None = None) -> bool:
        """True if the last sync is younger than `window`."""
        now = now or datetime.now(timezone.utc)
        return now - self.last_sync < window


@dataclass
class CacheEntry:
    """
    A cached message. At most one entry exists per (account, folder, UID).

    Attributes:
        message: The cached message.
        folder: Folder the entry belongs to.
        cached_at: When the entry was written (UTC).
    """
    message: Message
    folder: str
    cached_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def uid(self) -> int:
        return self.message.uid
