# =============================================================================
# Envelope Parser
# =============================================================================
# Turns the response to `FETCH n (UID FLAGS ENVELOPE)` into structured
# metadata: sender, recipients, subject, date, threading ids and flags.
#
# The ENVELOPE structure (RFC 3501) is:
#
#   (date subject from sender reply-to to cc bcc in-reply-to message-id)
#
# where each address list is ((name adl mailbox host) ...) or NIL.
#
# Parsing is two-tier. The tokenizer in imap.protocol handles well-formed
# responses. If that yields nothing usable (truncated or mangled responses),
# a regex pass picks out quoted strings and ("user" "host") pairs instead.
# Neither tier raises: missing data becomes a placeholder.
# =============================================================================

import email.header
import email.utils
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ctrl_mail.core import MessageFlags
from ctrl_mail.imap.protocol import as_text, parse_fetch

logger = logging.getLogger(__name__)

NO_SUBJECT = "(no subject)"
UNKNOWN_SENDER = "Unknown"
SELF_ADDRESS = "me@example.com"

# Tried in order after the trailing "(GMT)"-style comment is dropped
DATE_FORMATS = (
    "%a, %d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %z",
    "%a, %d %b %Y %H:%M:%S",
    "%d %b %Y %H:%M:%S",
)


@dataclass
class Envelope:
    """
    Structured message metadata.

    Attributes:
        sender: From address, or "Unknown".
        sender_name: From display name (may be empty).
        recipients: To addresses; a single self placeholder when absent.
        cc: Cc addresses.
        subject: Decoded subject, or "(no subject)".
        date: Origination date in UTC.
        date_estimated: True when `date` is a fallback rather than parsed.
        message_id: Message-ID, if present.
        in_reply_to: In-Reply-To, if present.
        flags: Flag bitmask from the FLAGS group.
        raw_flags: The FLAGS tokens verbatim.
        uid: UID if the response carried one.
    """
    sender: str = UNKNOWN_SENDER
    sender_name: str = ""
    recipients: list[str] = field(default_factory=lambda: [SELF_ADDRESS])
    cc: list[str] = field(default_factory=list)
    subject: str = NO_SUBJECT
    date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    date_estimated: bool = True
    message_id: str = ""
    in_reply_to: str = ""
    flags: MessageFlags = MessageFlags.NONE
    raw_flags: list[str] = field(default_factory=list)
    uid: int | None = None

    @property
    def is_read(self) -> bool:
        return bool(self.flags & MessageFlags.SEEN)


# =============================================================================
# Field helpers
# =============================================================================

def decode_header_value(value: str) -> str:
    """Decode an RFC 2047 encoded-word header value ("=?utf-8?q?...?=")."""
    if not value:
        return ""
    try:
        return str(email.header.make_header(email.header.decode_header(value)))
    except (ValueError, LookupError, UnicodeDecodeError):
        return value


def parse_date(value: str) -> datetime | None:
    """
    Parse an envelope date string into an aware UTC datetime.

    Trailing comments such as " (GMT)" or " (PDT)" are dropped first. Naive
    results are taken to be UTC.

    Returns:
        The parsed datetime, or None if no format matched.
    """
    if not value:
        return None
    cleaned = re.sub(r"\s*\([^)]*\)\s*$", "", value.strip())
    cleaned = " ".join(cleaned.split())

    parsed = None
    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(cleaned, fmt)
            break
        except ValueError:
            continue

    if parsed is None:
        # Obsolete zone names ("EST", "GMT") and other RFC 2822 variants
        try:
            parsed = email.utils.parsedate_to_datetime(cleaned)
        except (TypeError, ValueError, IndexError):
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _address_list(value: Any) -> list[tuple[str, str]]:
    """Turn a tokenized address list into (name, email) pairs."""
    if not isinstance(value, list):
        return []
    addresses = []
    for entry in value:
        if not isinstance(entry, list) or len(entry) < 4:
            continue
        name, _adl, mailbox, host = entry[:4]
        mailbox_text = as_text(mailbox)
        host_text = as_text(host)
        if not mailbox_text:
            # Group syntax markers have a NIL host
            continue
        address = f"{mailbox_text}@{host_text}" if host_text else mailbox_text
        addresses.append((decode_header_value(as_text(name)), address))
    return addresses


# =============================================================================
# Parsing
# =============================================================================

_FLAGS_GROUP = re.compile(r"FLAGS\s*\(([^)]*)\)", re.IGNORECASE)
_UID_ITEM = re.compile(r"\bUID\s+(\d+)", re.IGNORECASE)
_QUOTED = re.compile(r'"((?:[^"\\]|\\.)*)"')
_ADDRESS_PAIR = re.compile(r'"([^"@\s]+)"\s+"([^"\s]+\.[^"\s]+)"')


def parse_envelope(raw: bytes | str) -> Envelope:
    """
    Parse a FETCH (FLAGS ENVELOPE) response.

    Args:
        raw: The full response text or bytes, untagged and tagged lines.

    Returns:
        An Envelope. Fields that could not be read hold placeholders.
    """
    data = raw.encode("utf-8", errors="replace") if isinstance(raw, str) else raw

    envelope = Envelope()
    fetched = parse_fetch(data)
    items = fetched[0][1] if fetched else {}

    _apply_flags(envelope, items, data)

    if items.get("UID") is not None:
        try:
            envelope.uid = int(as_text(items["UID"]))
        except ValueError:
            envelope.uid = None

    structure = items.get("ENVELOPE")
    if isinstance(structure, list) and len(structure) >= 2:
        _apply_structure(envelope, structure)
    else:
        logger.debug("ENVELOPE did not tokenize cleanly, using pattern fallback")
        _apply_fallback(envelope, data.decode("utf-8", errors="replace"))

    return envelope


def _apply_flags(envelope: Envelope, items: dict[str, Any], data: bytes) -> None:
    flags = items.get("FLAGS")
    if isinstance(flags, list):
        tokens = [as_text(f) for f in flags if f is not None]
    else:
        text = data.decode("utf-8", errors="replace")
        match = _FLAGS_GROUP.search(text)
        if match:
            tokens = match.group(1).split()
        else:
            # No clean group: look for system flags anywhere on the line
            tokens = re.findall(r"\\[A-Za-z]+", text.split("\n", 1)[0])
    envelope.raw_flags = tokens
    envelope.flags = MessageFlags.from_imap(tokens)


def _apply_structure(envelope: Envelope, structure: list[Any]) -> None:
    fields = list(structure) + [None] * (10 - len(structure))

    date = parse_date(as_text(fields[0]))
    if date is not None:
        envelope.date = date
        envelope.date_estimated = False

    subject = decode_header_value(as_text(fields[1])).strip()
    if subject:
        envelope.subject = subject

    senders = _address_list(fields[2])
    if senders:
        envelope.sender_name, envelope.sender = senders[0]

    recipients = [address for _name, address in _address_list(fields[5])]
    if recipients:
        envelope.recipients = recipients

    envelope.cc = [address for _name, address in _address_list(fields[6])]
    envelope.in_reply_to = as_text(fields[8]).strip()
    envelope.message_id = as_text(fields[9]).strip()


def _apply_fallback(envelope: Envelope, text: str) -> None:
    start = text.upper().find("ENVELOPE (")
    if start == -1:
        return
    content = text[start + len("ENVELOPE ("):]

    quoted = _QUOTED.findall(content)
    if quoted:
        date = parse_date(quoted[0])
        if date is not None:
            envelope.date = date
            envelope.date_estimated = False
    if len(quoted) > 1 and quoted[1].strip():
        envelope.subject = decode_header_value(quoted[1]).strip() or NO_SUBJECT

    pairs = [f"{user}@{host}" for user, host in _ADDRESS_PAIR.findall(content)]
    if pairs:
        envelope.sender = pairs[0]
        # Later pairs are recipients; drop repeats of the sender
        recipients = [p for p in pairs[1:] if p != envelope.sender]
        if recipients:
            envelope.recipients = list(dict.fromkeys(recipients))
