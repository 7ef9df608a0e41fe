# =============================================================================
# Message Model
# =============================================================================
# The canonical message entity produced by the IMAP layer and owned by the
# sync engine once fetched.
#
# A Message carries:
#   - Envelope information (from, to, subject, date)
#   - One decoded body (HTML preferred) plus an is_html discriminator
#   - Threading headers (Message-ID, In-Reply-To, References)
#   - IMAP state (UID, flags)
#
# The local `id` is generated on every parse. The cache keeps the first id
# it saw for a given (account, folder, UID), so the same server message keeps
# one identity across re-fetches.
# =============================================================================

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntFlag

from inscriptis import get_text


class MessageFlags(IntFlag):
    """
    IMAP system flags, stored as a bitmask.

    Usage:
        msg.flags = MessageFlags.SEEN | MessageFlags.FLAGGED
        if msg.flags & MessageFlags.SEEN:
            ...
    """
    NONE = 0
    SEEN = 1 << 0       # \Seen
    ANSWERED = 1 << 1   # \Answered
    FLAGGED = 1 << 2    # \Flagged (starred)
    DELETED = 1 << 3    # \Deleted
    DRAFT = 1 << 4      # \Draft

    @classmethod
    def from_imap(cls, tokens: list[str]) -> "MessageFlags":
        """Build a bitmask from IMAP flag tokens such as ["\\Seen", "$Junk"]."""
        result = cls.NONE
        for token in tokens:
            result |= _IMAP_FLAG_NAMES.get(token.upper(), cls.NONE)
        return result


_IMAP_FLAG_NAMES = {
    "\\SEEN": MessageFlags.SEEN,
    "\\ANSWERED": MessageFlags.ANSWERED,
    "\\FLAGGED": MessageFlags.FLAGGED,
    "\\DELETED": MessageFlags.DELETED,
    "\\DRAFT": MessageFlags.DRAFT,
}


@dataclass
class Attachment:
    """
    A file attached to a message.

    Only metadata is kept; the payload is not cached.

    Attributes:
        filename: Original filename (a generated one if the part had none).
        content_type: MIME type, e.g. "application/pdf".
        size: Decoded size in bytes.
        content_id: Content-ID for inline images (<img src="cid:...">).
        is_inline: True when the part is embedded in the HTML body.
    """
    filename: str
    content_type: str
    size: int
    content_id: str | None = None
    is_inline: bool = False

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "content_type": self.content_type,
            "size": self.size,
            "content_id": self.content_id,
            "is_inline": self.is_inline,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Attachment":
        return cls(
            filename=data.get("filename", ""),
            content_type=data.get("content_type", "application/octet-stream"),
            size=data.get("size", 0),
            content_id=data.get("content_id"),
            is_inline=data.get("is_inline", False),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Message:
    """
    An email message as seen by the engine.

    Attributes:
        id: Local identifier (UUID string). Stable within the cache.
        message_id: RFC 5322 Message-ID header, if any.
        sender: The "From" address.
        sender_name: Display name of the sender, if any.
        recipients: "To" addresses.
        cc: "Cc" addresses.
        subject: Decoded subject line.
        date: Origination date, always timezone-aware UTC.
        date_estimated: True when the Date could not be parsed and `date`
                        is the fetch time instead.
        flags: IMAP flag bitmask.
        raw_flags: The flag tokens exactly as the server sent them.
        folder: Name of the folder the message was fetched from.
        body: Decoded, noise-stripped body text (HTML or plain).
        is_html: True when `body` is markup.
        attachments: Attachment metadata.
        in_reply_to: Message-ID this replies to.
        references: Message-IDs of the thread ancestry.
        uid: IMAP UID within `folder`. 0 until known.
    """

    sender: str = "Unknown"
    sender_name: str = ""
    recipients: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    subject: str = "(no subject)"
    date: datetime = field(default_factory=_utcnow)
    date_estimated: bool = False

    flags: MessageFlags = MessageFlags.NONE
    raw_flags: list[str] = field(default_factory=list)
    folder: str = "INBOX"

    body: str = ""
    is_html: bool = False
    attachments: list[Attachment] = field(default_factory=list)

    message_id: str = ""
    in_reply_to: str = ""
    references: list[str] = field(default_factory=list)

    uid: int = 0
    id: str = field(default_factory=_new_id)

    # -------------------------------------------------------------------------
    # Flag helpers
    # -------------------------------------------------------------------------

    @property
    def is_read(self) -> bool:
        return bool(self.flags & MessageFlags.SEEN)

    @property
    def is_starred(self) -> bool:
        return bool(self.flags & MessageFlags.FLAGGED)

    @property
    def is_deleted(self) -> bool:
        return bool(self.flags & MessageFlags.DELETED)

    def mark_read(self) -> None:
        self.flags |= MessageFlags.SEEN

    def mark_unread(self) -> None:
        self.flags &= ~MessageFlags.SEEN

    def toggle_starred(self) -> None:
        self.flags ^= MessageFlags.FLAGGED

    # -------------------------------------------------------------------------
    # Display helpers
    # -------------------------------------------------------------------------

    @property
    def display_sender(self) -> str:
        """Prefers sender_name, falls back to the address."""
        return self.sender_name or self.sender

    @property
    def preview(self) -> str:
        """
        A short plain-text preview of the body (at most 100 chars).

        Markup is flattened to text with inscriptis.
        """
        text = self.body or ""
        if self.is_html:
            text = get_text(text)
        text = " ".join(text.split())
        if len(text) > 100:
            return text[:97] + "..."
        return text

    def __str__(self) -> str:
        read_marker = " " if self.is_read else "*"
        star_marker = "!" if self.is_starred else " "
        return f"{read_marker}{star_marker} {self.display_sender}: {self.subject}"

    def __repr__(self) -> str:
        return (
            f"Message(uid={self.uid}, folder={self.folder!r}, "
            f"subject={self.subject!r}, from={self.sender!r}, flags={self.flags!r})"
        )
