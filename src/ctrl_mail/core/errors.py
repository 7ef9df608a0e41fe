# =============================================================================
# Error Taxonomy
# =============================================================================
# Exceptions shared by the transport, IMAP, SMTP and sync layers.
#
#   - TransportError: connect/read/write failure. Fatal to the session.
#   - AuthenticationFailed: credentials rejected. Fatal to the session,
#     no retry without new credentials.
#   - ServerError: a single operation was refused (SELECT, RCPT TO, ...).
#     The session itself may still be usable.
#   - NotConnectedError: an operation was called before connect().
#
# Parse problems in the MIME/envelope code are never raised; those parsers
# fall back to placeholders or raw text instead.
# =============================================================================


class MailError(Exception):
    """Base exception for all mail engine failures."""

    # Short, actionable advice for the presentation layer
    hint = "Try again later."


class TransportError(MailError):
    """Raised when the underlying connection cannot be opened, read or written."""

    hint = "Check your network connection and the server host/port."


class AuthenticationFailed(MailError):
    """Raised when the server rejects the supplied credentials."""

    hint = "Check your username and password (or re-authorize the account)."


class ServerError(MailError):
    """
    Raised when the server refuses a single operation.

    Attributes:
        stage: Protocol phase that failed (e.g. "SELECT", "RCPT TO", "DATA").
        recipient: For SMTP recipient rejections, the refused address.
        code: Numeric SMTP reply code, when there is one.
    """

    hint = "The server refused the request."

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        recipient: str | None = None,
        code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.recipient = recipient
        self.code = code


class NotConnectedError(MailError):
    """Raised when a session operation is used before connect()."""

    hint = "Connect the account before using it."
