# =============================================================================
# IMAP Wire Grammar
# =============================================================================
# Small, explicit parsers for the parts of the IMAP grammar we rely on:
#
#   - Line splitting that honours literals: a line ending in {N} is followed
#     by exactly N raw bytes which may themselves contain CRLFs.
#   - Response completion: a tagged "TAG OK|NO|BAD" line for the command we
#     are waiting on, or an untagged line while waiting for the greeting.
#   - A tokenizer for parenthesized data (FETCH items, ENVELOPE, address
#     lists): atoms, quoted strings, literals, NIL and nested lists.
#
# Everything here is pure and tolerant of truncated input. Nothing raises on
# malformed server data; callers get whatever could be parsed.
# =============================================================================

import re
from dataclasses import dataclass, field
from typing import Any, Iterator

# A literal marker at the very end of a line: "... {123}\r\n"
_LITERAL_AT_EOL = re.compile(rb"\{(\d+)\}\r?\n$")

_STATUS_WORDS = (b"OK", b"NO", b"BAD")


def iter_lines(buffer: bytes) -> Iterator[bytes]:
    """
    Yield complete protocol lines from `buffer`, without their terminators.

    Literal payloads are skipped, so a tagged-looking line inside a message
    body is never mistaken for a completion. An unterminated trailing line,
    or a literal that has not fully arrived, ends the iteration.
    """
    pos = 0
    size = len(buffer)
    while pos < size:
        end = buffer.find(b"\n", pos)
        if end == -1:
            return
        line = buffer[pos:end + 1]
        pos = end + 1
        match = _LITERAL_AT_EOL.search(line)
        if match:
            pos += int(match.group(1))
            if pos > size:
                # Literal still incomplete
                return
        yield line.rstrip(b"\r\n")


def _tagged_status(line: bytes, prefix: bytes) -> tuple[str, str] | None:
    if not line.startswith(prefix):
        return None
    rest = line[len(prefix):]
    if not rest[:1].isspace():
        # "A0010" must not satisfy a wait on "A001"
        return None
    parts = rest.split(None, 1)
    if parts and parts[0].upper() in _STATUS_WORDS:
        status = parts[0].upper().decode("ascii")
        text = parts[1].decode("utf-8", errors="replace") if len(parts) > 1 else ""
        return status, text
    return None


def find_tagged_status(buffer: bytes, tag: str) -> tuple[str, str] | None:
    """
    Find the completion line for `tag`.

    Returns:
        (status, text) such as ("OK", "SELECT completed"), or None if the
        tagged line has not arrived.
    """
    prefix = tag.encode("ascii")
    for line in iter_lines(buffer):
        found = _tagged_status(line, prefix)
        if found:
            return found
    return None


class ResponseScanner:
    """
    Accumulates chunks for one exchange and detects completion.

    Lines are examined once as they complete; literal payloads are skipped
    by byte count, so large bodies are not rescanned on every chunk.

    Args:
        tag: Tag of the command being waited on (None while waiting for
             the server greeting).
        greeting: Complete on any untagged line ("* OK ...", "* BYE ...").
        continuation: Complete on a continuation request ("+ ...").
    """

    def __init__(
        self,
        tag: str | None,
        *,
        greeting: bool = False,
        continuation: bool = False,
    ) -> None:
        self.tag = tag
        self.greeting = greeting
        self.continuation = continuation
        self.buffer = bytearray()
        self.complete = False
        self._prefix = tag.encode("ascii") if tag else None
        self._pos = 0

    def feed(self, data: bytes) -> bool:
        """Append `data`; return True once the response is complete."""
        self.buffer += data
        while not self.complete and self._pos < len(self.buffer):
            end = self.buffer.find(b"\n", self._pos)
            if end == -1:
                break
            line = bytes(self.buffer[self._pos:end + 1])
            self._pos = end + 1
            match = _LITERAL_AT_EOL.search(line)
            if match:
                # May point past the buffer until the literal has arrived
                self._pos += int(match.group(1))
            self.complete = self._completes(line.rstrip(b"\r\n"))
        return self.complete

    def _completes(self, line: bytes) -> bool:
        if self._prefix is not None and _tagged_status(line, self._prefix):
            return True
        if self.greeting and line.startswith(b"* "):
            return True
        if self.continuation and line.startswith(b"+"):
            return True
        return False


def is_response_complete(
    buffer: bytes,
    tag: str | None,
    *,
    greeting: bool = False,
    continuation: bool = False,
) -> bool:
    """Decide whether `buffer` holds a complete response (see ResponseScanner)."""
    scanner = ResponseScanner(tag, greeting=greeting, continuation=continuation)
    return scanner.feed(buffer)


@dataclass
class IMAPResponse:
    """
    One complete (or timed-out partial) server response.

    Attributes:
        tag: Tag of the command, or None for the greeting.
        status: "OK", "NO" or "BAD"; None when no tagged line arrived.
        message: Human-readable text after the status word.
        raw: Every byte received for this exchange.
    """
    tag: str | None
    status: str | None
    message: str = ""
    raw: bytes = b""
    continuation: bool = field(default=False)

    @property
    def ok(self) -> bool:
        return self.status == "OK"

    @property
    def text(self) -> str:
        """The raw response decoded for scanning (invalid bytes replaced)."""
        return self.raw.decode("utf-8", errors="replace")

    def untagged(self, keyword: str) -> list[bytes]:
        """
        Untagged lines whose first word (or second, after a number) is `keyword`.

        Example:
            "* SEARCH 1 2 3"   matches keyword "SEARCH"
            "* 12 EXISTS"      matches keyword "EXISTS"
        """
        wanted = keyword.upper().encode("ascii")
        found = []
        for line in iter_lines(self.raw):
            if not line.startswith(b"* "):
                continue
            words = line[2:].split(None, 2)
            if words and words[0].upper() == wanted:
                found.append(line)
            elif len(words) > 1 and words[0].isdigit() and words[1].upper() == wanted:
                found.append(line)
        return found

    @classmethod
    def from_buffer(cls, buffer: bytes, tag: str | None) -> "IMAPResponse":
        status = None
        message = ""
        continuation = False
        if tag is not None:
            found = find_tagged_status(buffer, tag)
            if found:
                status, message = found
        for line in iter_lines(buffer):
            if line.startswith(b"+"):
                continuation = True
                break
        return cls(tag=tag, status=status, message=message, raw=buffer, continuation=continuation)


# =============================================================================
# Quoting
# =============================================================================

def quote_string(value: str) -> str:
    """Render `value` as an IMAP quoted string, escaping quote and backslash."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def quote_mailbox(name: str) -> str:
    """
    Quote a mailbox name if it contains characters that need it.

    Plain names like INBOX are sent as atoms; "Sent Items" is quoted.
    """
    if not name or any(c in name for c in ' "\\(){}[]%*'):
        return quote_string(name)
    return name


# =============================================================================
# Tokenizer
# =============================================================================

_ATOM_STOP = frozenset(b" ()\r\n")


class _Tokenizer:
    """Recursive-descent reader over parenthesized IMAP data."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def _skip_space(self) -> None:
        while self.pos < len(self.data) and self.data[self.pos] in b" \r\n\t":
            self.pos += 1

    def read_sequence(self, closing: bool) -> list[Any]:
        items: list[Any] = []
        while True:
            self._skip_space()
            if self.pos >= len(self.data):
                return items
            char = self.data[self.pos]
            if char == ord(")"):
                self.pos += 1
                if closing:
                    return items
                # Stray close paren at top level
                continue
            items.append(self.read_item())

    def read_item(self) -> Any:
        char = self.data[self.pos]
        if char == ord("("):
            self.pos += 1
            return self.read_sequence(closing=True)
        if char == ord('"'):
            return self._read_quoted()
        if char == ord("{"):
            literal = self._read_literal()
            if literal is not None:
                return literal
        return self._read_atom()

    def _read_quoted(self) -> str:
        self.pos += 1
        out = bytearray()
        while self.pos < len(self.data):
            char = self.data[self.pos]
            if char == ord("\\") and self.pos + 1 < len(self.data):
                out.append(self.data[self.pos + 1])
                self.pos += 2
                continue
            self.pos += 1
            if char == ord('"'):
                break
            out.append(char)
        return out.decode("utf-8", errors="replace")

    def _read_literal(self) -> bytes | None:
        match = re.match(rb"\{(\d+)\}\r?\n", self.data[self.pos:self.pos + 32])
        if not match:
            return None
        start = self.pos + match.end()
        end = start + int(match.group(1))
        self.pos = min(end, len(self.data))
        return self.data[start:self.pos]

    def _read_atom(self) -> str | None:
        start = self.pos
        depth = 0
        while self.pos < len(self.data):
            char = self.data[self.pos]
            if char == ord("["):
                depth += 1
            elif char == ord("]"):
                depth = max(0, depth - 1)
            elif depth == 0 and char in _ATOM_STOP:
                break
            self.pos += 1
        if self.pos == start:
            # Lone unexpected byte; consume it so parsing always advances
            self.pos += 1
        atom = self.data[start:self.pos].decode("utf-8", errors="replace")
        if atom.upper() == "NIL":
            return None
        return atom


def tokenize(data: bytes) -> list[Any]:
    """
    Parse parenthesized IMAP data into nested Python lists.

    Atoms and quoted strings become str, literals become bytes, NIL
    becomes None and parenthesized groups become lists.

    Example:
        >>> tokenize(b'(FLAGS (\\\\Seen) UID 7 X NIL)')
        [['FLAGS', ['\\\\Seen'], 'UID', '7', 'X', None]]
    """
    return _Tokenizer(data).read_sequence(closing=False)


def as_text(value: Any) -> str:
    """Coerce a token (str, bytes literal or None) to text."""
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, list):
        return ""
    return str(value)


_FETCH_START = re.compile(rb"\*\s+(\d+)\s+FETCH\s+\(", re.IGNORECASE)


def parse_fetch(raw: bytes) -> list[tuple[int, dict[str, Any]]]:
    """
    Parse every untagged FETCH response in `raw`.

    Returns:
        List of (sequence number, items) where items maps upper-cased data
        item names ("UID", "FLAGS", "ENVELOPE", "BODY[]") to their values.
    """
    results = []
    tokenizer = _Tokenizer(raw)
    pos = 0
    while True:
        match = _FETCH_START.search(raw, pos)
        if not match:
            break
        tokenizer.pos = match.end()
        tokens = tokenizer.read_sequence(closing=True)
        items: dict[str, Any] = {}
        for i in range(0, len(tokens) - 1, 2):
            key = tokens[i]
            if isinstance(key, str):
                items[key.upper()] = tokens[i + 1]
        results.append((int(match.group(1)), items))
        # Resume after this response so literal payloads are never rescanned
        pos = max(tokenizer.pos, match.end())
    return results
