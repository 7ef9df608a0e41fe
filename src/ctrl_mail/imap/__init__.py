# =============================================================================
# IMAP Module
# =============================================================================
# Handles all IMAP (Internet Message Access Protocol) operations:
#   - Tagged command/response engine over a TransportSession
#   - Envelope parsing and MIME body decoding
#   - Assembling fetched data into Message objects
#   - Syncing folders into the local cache (full, incremental, periodic)
#
# The engine speaks the wire protocol directly on top of asyncio streams;
# there is no IMAP library underneath.
# =============================================================================

from ctrl_mail.imap.assembler import assemble_message
from ctrl_mail.imap.client import (
    DEFAULT_FETCH_LIMIT,
    ConnectionState,
    IMAPSession,
)
from ctrl_mail.imap.envelope import Envelope, parse_envelope
from ctrl_mail.imap.mime import DecodedBody, decode_body
from ctrl_mail.imap.protocol import IMAPResponse
from ctrl_mail.imap.sync import SyncManager, SyncResult

__all__ = [
    # Session
    "IMAPSession",
    "IMAPResponse",
    "ConnectionState",
    "DEFAULT_FETCH_LIMIT",
    # Parsing
    "Envelope",
    "parse_envelope",
    "DecodedBody",
    "decode_body",
    "assemble_message",
    # Sync
    "SyncManager",
    "SyncResult",
]
