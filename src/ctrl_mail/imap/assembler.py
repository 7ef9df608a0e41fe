# =============================================================================
# Message Assembler
# =============================================================================
# Combines the envelope parser and MIME decoder output for one message into
# the canonical Message entity.
#
# Every call assigns a fresh local id. The cache keeps the first id it saw
# for a given (account, folder, UID), so re-fetching does not duplicate.
# =============================================================================

import logging

from ctrl_mail.core import Message
from ctrl_mail.imap.envelope import parse_envelope
from ctrl_mail.imap.mime import decode_body

logger = logging.getLogger(__name__)


def assemble_message(
    envelope_response: bytes | str,
    body_response: bytes | str,
    *,
    folder: str,
    uid: int | None = None,
) -> Message:
    """
    Build a Message from the two FETCH round trips for one message.

    Args:
        envelope_response: Response to FETCH (UID FLAGS ENVELOPE).
        body_response: Response to FETCH (BODY.PEEK[]).
        folder: Folder the message was fetched from.
        uid: UID to use if the envelope response carried none.

    Returns:
        The assembled Message. UID stays 0 when neither source knows it.
    """
    envelope = parse_envelope(envelope_response)
    body = decode_body(body_response)

    if envelope.date_estimated:
        logger.warning(
            f"Unparseable date for {folder} message "
            f"{envelope.uid or uid or '?'}; using fetch time"
        )

    return Message(
        sender=envelope.sender,
        sender_name=envelope.sender_name,
        recipients=list(envelope.recipients),
        cc=list(envelope.cc),
        subject=envelope.subject,
        date=envelope.date,
        date_estimated=envelope.date_estimated,
        flags=envelope.flags,
        raw_flags=list(envelope.raw_flags),
        folder=folder,
        body=body.text,
        is_html=body.is_html,
        attachments=body.attachments,
        message_id=envelope.message_id or body.message_id,
        in_reply_to=envelope.in_reply_to or body.in_reply_to,
        references=body.references,
        uid=envelope.uid or uid or 0,
    )
