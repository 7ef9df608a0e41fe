# =============================================================================
# Conversation Threads
# =============================================================================
# Groups messages into conversations and extracts readable snippets.
#
# Bucketing key, first match wins:
#   1. In-Reply-To      ("reply:<id>")
#   2. Message-ID       ("mid:<id>")
#   3. Normalized subject ("subj:<subject>")
#
# Threads are recomputed from the message list on every call; nothing here
# is cached or persisted.
# =============================================================================

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from inscriptis import get_text

from ctrl_mail.core import MailFolder, Message
from ctrl_mail.imap.mime import (
    HTML_QUOTE_BLOCKS,
    ORIGINAL_MESSAGE_MARKER,
    find_html_element,
    looks_like_html,
    remove_html_element,
)

logger = logging.getLogger(__name__)

# Reply/forward prefixes, English and common European variants
_SUBJECT_PREFIX = re.compile(r"^(?:re|fwd?|aw|vs)\s*:\s*", re.IGNORECASE)

_WROTE = re.compile(r"\bOn\b.*\bwrote:", re.IGNORECASE)
_BLOCKQUOTE = re.compile(r"<blockquote\b[^>]*>", re.IGNORECASE)
_GMAIL_QUOTE = re.compile(r'<div\b[^>]*class="[^"]*\bgmail_quote\b[^"]*"[^>]*>', re.IGNORECASE)


@dataclass
class ConversationMessage:
    """
    One message as shown inside a conversation.

    Attributes:
        id: Message-ID, or the local id when the message has none.
        sender: Sender address.
        display_name: Human-friendly sender name.
        timestamp: Message date.
        main_response: Body with quoted replies removed, as plain text.
        quoted_text: The quoted part, when one was found.
        is_read: Whether the message has been seen.
        message: The full message.
    """
    id: str
    sender: str
    display_name: str
    timestamp: datetime
    main_response: str
    is_read: bool
    message: Message
    quoted_text: str | None = None


@dataclass
class ConversationThread:
    """
    A group of related messages, oldest first.

    Attributes:
        id: Id of the newest message.
        subject: Normalized subject of the newest message.
        participants: Distinct sender addresses, sorted.
        messages: Messages in ascending date order.
        created_at: Date of the oldest message.
        updated_at: Date of the newest message.
        is_unread: Any message unread.
        is_starred: Any message starred.
        folder: Folder of the newest message.
    """
    id: str
    subject: str
    participants: list[str]
    messages: list[ConversationMessage]
    created_at: datetime
    updated_at: datetime
    is_unread: bool
    is_starred: bool
    folder: str

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def latest(self) -> ConversationMessage:
        return self.messages[-1]


# =============================================================================
# Grouping
# =============================================================================

def thread_key(message: Message) -> str:
    """The bucket a message belongs to."""
    in_reply_to = message.in_reply_to.strip().lower()
    if in_reply_to:
        return f"reply:{in_reply_to}"
    message_id = message.message_id.strip().lower()
    if message_id:
        return f"mid:{message_id}"
    return f"subj:{normalize_subject(message.subject).lower()}"


def create_threads(messages: list[Message]) -> list[ConversationThread]:
    """
    Group messages into conversation threads.

    Returns:
        Threads ordered by last update, newest first.
    """
    buckets: dict[str, list[Message]] = {}
    for message in messages:
        buckets.setdefault(thread_key(message), []).append(message)

    threads = [_build_thread(group) for group in buckets.values()]
    threads.sort(key=lambda t: (t.updated_at, t.id), reverse=True)
    logger.debug(f"Grouped {len(messages)} messages into {len(threads)} threads")
    return threads


def _build_thread(group: list[Message]) -> ConversationThread:
    ordered = sorted(group, key=lambda m: (m.date, m.uid, m.id))
    conversation = [_conversation_message(m) for m in ordered]
    newest = ordered[-1]
    return ConversationThread(
        id=conversation[-1].id,
        subject=normalize_subject(newest.subject) or "(no subject)",
        participants=sorted({m.sender for m in ordered}),
        messages=conversation,
        created_at=ordered[0].date,
        updated_at=newest.date,
        is_unread=any(not m.is_read for m in ordered),
        is_starred=any(m.is_starred for m in ordered),
        folder=newest.folder or MailFolder.INBOX.imap_name,
    )


def _conversation_message(message: Message) -> ConversationMessage:
    is_html = message.is_html or looks_like_html(message.body)
    return ConversationMessage(
        id=message.message_id or message.id,
        sender=message.sender,
        display_name=message.sender_name or extract_display_name(message.sender),
        timestamp=message.date,
        main_response=extract_main_response(message.body, is_html=is_html),
        is_read=message.is_read,
        message=message,
        quoted_text=extract_quoted_text(message.body, is_html=is_html),
    )


# =============================================================================
# Text helpers
# =============================================================================

def normalize_subject(subject: str) -> str:
    """
    Strip leading reply/forward prefixes, repeatedly, and trim.

    Example:
        >>> normalize_subject("Re: Re: Fwd: Hello")
        'Hello'
    """
    normalized = subject.strip()
    while True:
        stripped = _SUBJECT_PREFIX.sub("", normalized, count=1).strip()
        if stripped == normalized:
            return normalized
        normalized = stripped


def extract_display_name(sender: str) -> str:
    """
    "Jane Doe <jane@example.com>" -> "Jane Doe"; "jane@example.com" -> "Jane".
    """
    if "<" in sender:
        name = sender.split("<", 1)[0].strip().strip('"')
        if name:
            return name
    local = sender.split("@", 1)[0]
    return local.capitalize() if local else sender


def extract_main_response(body: str, *, is_html: bool = False) -> str:
    """
    The newest part of a reply, without quoted history.

    Plain text stops at the first quoted line, "On ... wrote:" or
    original-message divider. Markup loses its quote containers and is
    flattened to text.
    """
    if is_html:
        for opening, tag in HTML_QUOTE_BLOCKS:
            body = remove_html_element(body, opening, tag)
        return get_text(body).strip()

    kept = []
    for line in body.splitlines():
        trimmed = line.strip()
        if (trimmed.startswith(">")
                or (trimmed.startswith("On ") and "wrote:" in trimmed)
                or trimmed.startswith(ORIGINAL_MESSAGE_MARKER)):
            break
        if trimmed:
            kept.append(line)
    return "\n".join(kept).strip()


def extract_quoted_text(body: str, *, is_html: bool = False) -> str | None:
    """
    The quoted history of a reply, if one is recognizable.

    Markup: the first blockquote, else the Gmail quote container.
    Plain text: everything from the "On ... wrote:" attribution onward.
    """
    if is_html:
        return (find_html_element(body, _BLOCKQUOTE, "blockquote")
                or find_html_element(body, _GMAIL_QUOTE, "div"))

    match = _WROTE.search(body)
    if match:
        return body[match.start():]
    return None
