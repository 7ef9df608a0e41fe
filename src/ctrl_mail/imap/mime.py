# =============================================================================
# MIME Decoder
# =============================================================================
# Rebuilds one readable body from the response to `FETCH n (BODY.PEEK[])`.
#
# Pipeline:
#   1. Cut the message out of its {N} literal (exactly N bytes), ignoring the
#      FETCH wrapper and the tagged line that follow it.
#   2. Multipart only if a "Content-Type: multipart/..." header is present.
#   3. Pick a part: text/html first, then text/plain, then any text part.
#      HTML wins because commercial mail carries its real formatting there.
#   4. Transfer-decode the part (quoted-printable on bytes so split UTF-8
#      sequences reassemble; base64 with fallback to the input) and apply the
#      part's charset.
#   5. Drop stray boundary lines and header fragments.
#   6. Strip thread noise: quoted lines and reply dividers for plain text,
#      quote containers for HTML. HTML is otherwise left intact.
#
# Nothing here raises on bad input. A part that cannot be decoded falls back
# to its raw text; the worst outcome is a less tidy body.
# =============================================================================

import base64
import binascii
import email
import email.message
import logging
import re
from dataclasses import dataclass, field

from ctrl_mail.core import Attachment
from ctrl_mail.imap.envelope import decode_header_value
from ctrl_mail.imap.protocol import as_text, parse_fetch

logger = logging.getLogger(__name__)


@dataclass
class DecodedBody:
    """
    Result of decoding a message body.

    Attributes:
        text: The decoded, noise-stripped body.
        is_html: True when `text` is markup.
        attachments: Metadata for non-body parts.
        message_id / in_reply_to / references: Threading headers read from
            the message itself, for servers whose ENVELOPE omits them.
    """
    text: str
    is_html: bool = False
    attachments: list[Attachment] = field(default_factory=list)
    message_id: str = ""
    in_reply_to: str = ""
    references: list[str] = field(default_factory=list)


# =============================================================================
# Transfer decoding
# =============================================================================

_SOFT_BREAK = re.compile(rb"=[ \t]*\r?\n")
_HEX_ESCAPE = re.compile(rb"=([0-9A-Fa-f]{2})")

# Escapes that practically only occur in quoted-printable text. A bare
# "=10" is too common in HTML attributes (width=100) to count.
_QP_EVIDENCE = re.compile(r"=\r?\n|=(?:3D|20|09|0D|0A|[89A-F][0-9A-F])")


def _to_bytes(content: str | bytes) -> bytes:
    if isinstance(content, bytes):
        return content
    # Surrogate escapes carry undecodable 8-bit bytes from the email parser
    return content.encode("utf-8", errors="surrogateescape")


def _decode_charset(data: bytes, charset: str | None) -> str:
    charset = charset or "utf-8"
    try:
        return data.decode(charset)
    except LookupError:
        logger.debug(f"Unknown charset {charset!r}, using utf-8")
        return data.decode("utf-8", errors="replace")
    except UnicodeDecodeError:
        return data.decode(charset, errors="replace")


def looks_quoted_printable(content: str) -> bool:
    """True if `content` carries quoted-printable escapes or soft breaks."""
    return _QP_EVIDENCE.search(content) is not None


def decode_quoted_printable(content: str | bytes, charset: str | None = "utf-8") -> str:
    """
    Decode quoted-printable text.

    Soft line breaks are removed, then every =XX escape is replaced by its
    byte. Decoding to text happens only at the end, so a multi-byte UTF-8
    character spread over several escapes comes back whole.

    Args:
        content: Encoded text (or bytes).
        charset: Charset of the decoded bytes.
    """
    data = _SOFT_BREAK.sub(b"", _to_bytes(content))
    data = _HEX_ESCAPE.sub(lambda m: bytes([int(m.group(1), 16)]), data)
    return _decode_charset(data, charset)


def base64_to_bytes(content: str | bytes) -> bytes | None:
    """
    Decode standard base64, ignoring whitespace and missing padding.

    Returns:
        The decoded bytes, or None if `content` is not valid base64.
    """
    clean = re.sub(rb"\s+", b"", _to_bytes(content))
    clean += b"=" * (-len(clean) % 4)
    try:
        return base64.b64decode(clean, validate=True)
    except (binascii.Error, ValueError):
        return None


def decode_base64(content: str, charset: str | None = "utf-8") -> str:
    """
    Decode a base64 body part to text.

    Falls back to `content` unchanged if it is not valid base64.
    """
    data = base64_to_bytes(content)
    if data is None:
        logger.debug("Malformed base64 part, keeping encoded text")
        return content
    return _decode_charset(data, charset)


def decode_transfer(content: str, encoding: str | None, charset: str | None) -> str:
    """
    Apply a Content-Transfer-Encoding to a part's raw text.

    With no encoding header, text that looks quoted-printable is treated as
    such; everything else is taken as 7bit/8bit.
    """
    encoding = (encoding or "").strip().lower()
    if not encoding and looks_quoted_printable(content):
        encoding = "quoted-printable"

    if encoding == "base64":
        return decode_base64(content, charset)
    if encoding == "quoted-printable":
        return decode_quoted_printable(content, charset)
    return _decode_charset(_to_bytes(content), charset)


# =============================================================================
# Thread-noise stripping
# =============================================================================

REPLY_ABOVE_MARKER = "##- Please type your reply above this line"
ORIGINAL_MESSAGE_MARKER = "-----Original Message-----"

_WROTE_LINE = re.compile(r"\bOn\b.*\bwrote:\s*$")
_MONTH_DAY = re.compile(
    r"\b(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\s+\d{1,2}",
    re.IGNORECASE,
)
_TICKET_ID = re.compile(r"\[[A-Z0-9]+(?:-[A-Z0-9]+)+\]")
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")


def _is_attribution_line(trimmed: str) -> bool:
    """A "Name, Jul 27, 2024, 8:06 AM PDT" style header line."""
    return ", 20" in trimmed and ":" in trimmed and _MONTH_DAY.search(trimmed) is not None


def strip_plain_noise(body: str) -> str:
    """
    Remove quoted replies and reply scaffolding from a plain-text body.

    Drops lines quoted with ">", reply dividers ("On ... wrote:",
    "-----Original Message-----", helpdesk "type your reply above" markers),
    long ---/=== separators, a leading attribution/timestamp line and
    bracketed ticket ids, then collapses runs of blank lines.
    """
    cleaned: list[str] = []
    checked_first = False

    for line in body.splitlines():
        trimmed = line.strip()

        if not trimmed and not cleaned:
            continue

        if (REPLY_ABOVE_MARKER in trimmed
                or ORIGINAL_MESSAGE_MARKER in trimmed
                or _WROTE_LINE.search(trimmed)):
            continue

        if trimmed.startswith(">"):
            continue

        if trimmed.startswith(("---", "===")) and len(trimmed) > 20:
            continue

        if not checked_first and trimmed:
            checked_first = True
            if _is_attribution_line(trimmed):
                continue

        cleaned.append(line)

    text = "\n".join(cleaned)
    text = _TICKET_ID.sub("", text)
    text = _EXTRA_BLANK_LINES.sub("\n\n", text)
    return text.strip()


# Opening tags of quote containers, paired with the element name to balance
HTML_QUOTE_BLOCKS = (
    (re.compile(r'<div\b[^>]*class="[^"]*\bgmail_quote\b[^"]*"[^>]*>', re.IGNORECASE), "div"),
    (re.compile(r'<div\b[^>]*class="[^"]*\bgmail_attr\b[^"]*"[^>]*>', re.IGNORECASE), "div"),
    (re.compile(r'<div\b[^>]*id="divRplyFwd"[^>]*>', re.IGNORECASE), "div"),
    (re.compile(r'<blockquote\b[^>]*>', re.IGNORECASE), "blockquote"),
)


def _find_element_end(html: str, tag: str, start: int) -> int:
    """
    Index just past the closing tag that balances the element opened
    before `start`, or len(html) if it never closes.
    """
    tag_pattern = re.compile(rf"<(/?){tag}\b[^>]*>", re.IGNORECASE)
    depth = 1
    for match in tag_pattern.finditer(html, start):
        if match.group(1):
            depth -= 1
            if depth == 0:
                return match.end()
        elif not match.group(0).endswith("/>"):
            depth += 1
    return len(html)


def remove_html_element(html: str, opening: re.Pattern, tag: str) -> str:
    """Remove every element whose opening tag matches `opening`, children included."""
    while True:
        match = opening.search(html)
        if not match:
            return html
        end = _find_element_end(html, tag, match.end())
        html = html[:match.start()] + html[end:]


def find_html_element(html: str, opening: re.Pattern, tag: str) -> str | None:
    """Return the first element matching `opening`, children included."""
    match = opening.search(html)
    if not match:
        return None
    return html[match.start():_find_element_end(html, tag, match.end())]


def strip_html_noise(html: str) -> str:
    """
    Remove quote containers (Gmail quote/attribution divs, Outlook reply
    blocks, blockquotes) and plain reply dividers from markup.

    The rest of the document is preserved verbatim.
    """
    for opening, tag in HTML_QUOTE_BLOCKS:
        html = remove_html_element(html, opening, tag)
    html = html.replace(REPLY_ABOVE_MARKER + " -##", "")
    html = html.replace(ORIGINAL_MESSAGE_MARKER, "")
    return html.strip()


_MARKUP_ROOTS = ("<html", "<!doctype", "<body", "<div", "<table")


def looks_like_html(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _MARKUP_ROOTS)


# =============================================================================
# Artifact cleanup
# =============================================================================

_BOUNDARY_PARAM = re.compile(r'boundary\s*=\s*"?([^";\r\n]+)"?', re.IGNORECASE)
_HEADER_FRAGMENT = re.compile(
    r"^\s*Content-(?:Type|Transfer-Encoding|Disposition|ID|Description):[^\n]*$"
    r"|^[ \t]+(?:charset|boundary|name|filename)=\S+;?[ \t]*$"
    r"|^\s*-*=_[^\n]*$",
    re.IGNORECASE | re.MULTILINE,
)


def remove_mime_artifacts(text: str, boundaries: list[str]) -> str:
    """
    Drop boundary delimiter lines and leftover MIME header lines.

    Only whole lines are removed, so body text that merely mentions a
    header name survives.
    """
    if boundaries:
        lines = []
        for line in text.split("\n"):
            stripped = line.strip()
            if any(stripped in (f"--{b}", f"--{b}--") for b in boundaries):
                continue
            lines.append(line)
        text = "\n".join(lines)
    text = _HEADER_FRAGMENT.sub("", text)
    return _EXTRA_BLANK_LINES.sub("\n\n", text)


# =============================================================================
# Literal extraction
# =============================================================================

_LITERAL_MARKER = re.compile(rb"\{(\d+)\}\r?\n")


def extract_literal(raw: bytes | str) -> bytes:
    """
    Isolate the message bytes from a BODY[] FETCH response.

    Takes exactly N bytes after the first {N} marker. Responses without a
    literal are either a FETCH with a quoted body or the bare message.
    """
    data = _to_bytes(raw)
    match = _LITERAL_MARKER.search(data)
    if match:
        start = match.end()
        return data[start:start + int(match.group(1))]

    if data.lstrip().startswith(b"* "):
        for _seq, items in parse_fetch(data):
            for key, value in items.items():
                if key.startswith("BODY[") or key == "RFC822":
                    return value if isinstance(value, bytes) else _to_bytes(as_text(value))
    return data


# =============================================================================
# Part selection
# =============================================================================

_MULTIPART_HEADER = re.compile(rb"^content-type:\s*multipart/", re.IGNORECASE | re.MULTILINE)


def _is_attachment(part: email.message.Message) -> bool:
    disposition = str(part.get("Content-Disposition", "")).lower()
    if "attachment" in disposition:
        return True
    return part.get_filename() is not None and part.get_content_maintype() != "text"


def _select_body_part(parts: list[email.message.Message]) -> email.message.Message | None:
    candidates = [p for p in parts if not _is_attachment(p)]
    for wanted in ("text/html", "text/plain"):
        for part in candidates:
            if part.get_content_type() == wanted:
                return part
    for part in candidates:
        if part.get_content_maintype() == "text":
            return part
    return None


def _decode_part(part: email.message.Message) -> str:
    payload = part.get_payload(decode=False)
    if not isinstance(payload, str):
        payload = str(payload)
    return decode_transfer(
        payload,
        part.get("Content-Transfer-Encoding"),
        part.get_content_charset(),
    )


def _extract_attachment(part: email.message.Message) -> Attachment:
    content_type = part.get_content_type()
    filename = part.get_filename()
    if filename:
        filename = decode_header_value(filename)
    else:
        ext = content_type.split("/")[-1] if "/" in content_type else "bin"
        filename = f"attachment.{ext}"

    payload = part.get_payload(decode=True)
    content_id = part.get("Content-ID")
    disposition = str(part.get("Content-Disposition", "")).lower()
    return Attachment(
        filename=filename,
        content_type=content_type,
        size=len(payload) if isinstance(payload, bytes) else 0,
        content_id=content_id.strip().strip("<>") if content_id else None,
        is_inline="inline" in disposition or (content_id is not None and "attachment" not in disposition),
    )


_PART_BY_TYPE = r"Content-Type:\s*{}[^\r\n]*(?:\r?\n[^\r\n]+)*\r?\n\r?\n([\s\S]*?)(?=\r?\n--[^\r\n]+|$)"


def _regex_part(text: str, content_type: str) -> tuple[str, str | None, str | None] | None:
    """
    Pattern-based fallback for multipart bodies the parser could not split.

    Returns:
        (content, transfer encoding, charset) or None.
    """
    pattern = re.compile(_PART_BY_TYPE.format(re.escape(content_type)), re.IGNORECASE)
    match = pattern.search(text)
    if not match:
        return None
    block = match.group(0)
    encoding = re.search(r"Content-Transfer-Encoding:\s*([^\s;]+)", block, re.IGNORECASE)
    charset = re.search(r'charset\s*=\s*"?([^";\s]+)"?', block, re.IGNORECASE)
    return (
        match.group(1),
        encoding.group(1) if encoding else None,
        charset.group(1) if charset else None,
    )


# =============================================================================
# Entry point
# =============================================================================

def decode_body(raw: bytes | str) -> DecodedBody:
    """
    Decode the response to a BODY[] fetch into one readable body.

    Args:
        raw: The whole FETCH response (or just the RFC 822 message).

    Returns:
        A DecodedBody. Never raises on malformed input.
    """
    payload = extract_literal(raw)
    try:
        return _decode_payload(payload)
    except Exception as e:
        logger.error(f"Error decoding message body, using raw text: {e}", exc_info=True)
        return DecodedBody(text=payload.decode("utf-8", errors="replace").strip())


def _decode_payload(payload: bytes) -> DecodedBody:
    message = email.message_from_bytes(payload)
    text_view = payload.decode("utf-8", errors="replace")
    boundaries = _BOUNDARY_PARAM.findall(text_view)

    result = DecodedBody(text="")
    result.message_id = str(message.get("Message-ID", "")).strip()
    result.in_reply_to = str(message.get("In-Reply-To", "")).strip()
    result.references = str(message.get("References", "")).split()

    content_type = None
    if _MULTIPART_HEADER.search(payload):
        leaves = [p for p in message.walk() if not p.is_multipart()]
        chosen = _select_body_part(leaves) if message.is_multipart() else None
        if chosen is not None:
            content_type = chosen.get_content_type()
            body = _decode_part(chosen)
            result.attachments = [
                _extract_attachment(p) for p in leaves
                if p is not chosen and (_is_attachment(p) or p.get_content_maintype() != "text")
            ]
        else:
            logger.debug("Multipart structure unreadable, falling back to pattern extraction")
            found = _regex_part(text_view, "text/html") or _regex_part(text_view, "text/plain")
            if found:
                content, encoding, charset = found
                body = decode_transfer(content, encoding, charset)
            else:
                body = text_view
    elif message.keys():
        content_type = message.get_content_type()
        body = _decode_part(message)
    else:
        # No header block at all: the payload is the body
        body = decode_transfer(text_view, None, "utf-8")

    body = remove_mime_artifacts(body.replace("\r\n", "\n"), boundaries)

    result.is_html = content_type == "text/html" or looks_like_html(body)
    if result.is_html:
        result.text = strip_html_noise(body)
    else:
        result.text = strip_plain_noise(body)
    return result
