# =============================================================================
# SMTP Session
# =============================================================================
# Sends one message at a time through an SMTP server.
#
# Key responsibilities:
#   - Connection with implicit TLS (or STARTTLS when configured)
#   - AUTH LOGIN with a password, or AUTH XOAUTH2 with an access token
#   - Building the outgoing MIME message
#   - Driving MAIL FROM / RCPT TO / DATA step by step, so a refusal names
#     the stage (and recipient) that failed
#
# Any recipient refusal aborts the whole send: DATA is never issued for a
# partially accepted recipient list.
#
# Uses aiosmtplib for the wire protocol.
# =============================================================================

import base64
import logging
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid

import aiosmtplib

from ctrl_mail.core import (
    AuthenticationFailed,
    AuthType,
    ConnectionParameters,
    NotConnectedError,
    ServerError,
    TransportError,
)
from ctrl_mail.credentials import CredentialStore

logger = logging.getLogger(__name__)

# Failures that mean the connection is gone rather than the request refused
_CONNECTION_LOST = (aiosmtplib.SMTPServerDisconnected, aiosmtplib.SMTPTimeoutError, OSError)


def _lost_during(stage: str, error: Exception) -> TransportError:
    logger.error(f"SMTP connection lost during {stage}: {error}")
    return TransportError(f"SMTP connection lost during {stage}: {error}")


class SMTPSession:
    """
    Async SMTP session.

    Usage:
        >>> session = SMTPSession(account.smtp_parameters())
        >>> await session.connect()
        >>> await session.authenticate(account.smtp_username, password)
        >>> await session.send_message(account.email, ["bob@example.com"], "Hi", "Hello")
        >>> await session.disconnect()

    Attributes:
        params: Connection parameters for the server.
        start_tls: Upgrade a plain connection with STARTTLS.
    """

    # Timeout for SMTP operations (seconds)
    TIMEOUT = 30

    def __init__(
        self,
        params: ConnectionParameters,
        *,
        start_tls: bool = False,
        timeout: float | None = None,
    ) -> None:
        self.params = params
        self.start_tls = start_tls and not params.use_ssl
        self.timeout = timeout or self.TIMEOUT
        self._client: aiosmtplib.SMTP | None = None

    @property
    def is_connected(self) -> bool:
        """Check if client is connected."""
        return self._client is not None and self._client.is_connected

    async def connect(self) -> None:
        """
        Connect, read the greeting and send EHLO.

        Raises:
            TransportError: If the server cannot be reached.
        """
        logger.info(f"Connecting to SMTP {self.params.host}:{self.params.port}")
        client = aiosmtplib.SMTP(
            hostname=self.params.host,
            port=self.params.port,
            use_tls=self.params.use_ssl,
            start_tls=self.start_tls,
            timeout=self.timeout,
        )
        try:
            await client.connect()
            await client.ehlo()
        except (aiosmtplib.SMTPException, OSError) as e:
            raise TransportError(
                f"Failed to connect to SMTP {self.params.host}:{self.params.port}: {e}"
            ) from e
        self._client = client
        logger.debug("SMTP connection established")

    async def authenticate(self, username: str, password: str) -> None:
        """
        AUTH LOGIN, if the server offers AUTH at all.

        Raises:
            AuthenticationFailed: If the server rejects the credentials.
        """
        client = self._require_client()
        if not client.supports_extension("auth"):
            logger.debug("SMTP server does not offer AUTH; sending unauthenticated")
            return
        logger.debug(f"Authenticating as {username}")
        try:
            await client.auth_login(username, password)
        except aiosmtplib.SMTPAuthenticationError as e:
            raise AuthenticationFailed(f"SMTP authentication failed for {username}: {e}") from e
        except _CONNECTION_LOST as e:
            raise _lost_during("AUTH", e) from e
        logger.debug("SMTP authentication successful")

    async def authenticate_oauth2(self, username: str, access_token: str) -> None:
        """
        AUTH XOAUTH2 with a bearer token (success is reply code 235).

        Raises:
            AuthenticationFailed: If the token is rejected.
        """
        client = self._require_client()
        sasl = f"user={username}\x01auth=Bearer {access_token}\x01\x01"
        encoded = base64.b64encode(sasl.encode("utf-8"))
        logger.debug(f"Authenticating as {username} with XOAUTH2")
        try:
            response = await client.execute_command(b"AUTH", b"XOAUTH2", encoded)
            if response.code == 334:
                # Error challenge; an empty reply gets the final status
                response = await client.execute_command(b"")
        except _CONNECTION_LOST as e:
            raise _lost_during("AUTH", e) from e
        if response.code != 235:
            raise AuthenticationFailed(
                f"SMTP XOAUTH2 failed for {username}: {response.code} {response.message}"
            )
        logger.debug("SMTP authentication successful")

    async def login(self, credentials: CredentialStore, auth_type: AuthType) -> None:
        """
        Authenticate with a secret from the credential store.

        Raises:
            AuthenticationFailed: If no secret is stored or it is rejected.
        """
        account = self.params.credential_ref
        if auth_type == AuthType.OAUTH2:
            token = credentials.get_token(account)
            if token is None:
                raise AuthenticationFailed(f"No OAuth token stored for {account}")
            await self.authenticate_oauth2(self.params.username, token.access_token)
        else:
            password = credentials.get_password(account)
            if not password:
                raise AuthenticationFailed(
                    f"No password stored for {account}. "
                    f"Set it with: ctrl-mail set-password {account}"
                )
            await self.authenticate(self.params.username, password)

    async def disconnect(self) -> None:
        """Send QUIT and close. Errors are logged, not raised."""
        client = self._client
        self._client = None
        if client is None or not client.is_connected:
            return
        try:
            logger.debug("Disconnecting from SMTP")
            await client.quit()
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.warning(f"Error during SMTP disconnect: {e}")
            client.close()

    async def __aenter__(self) -> "SMTPSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    # =========================================================================
    # Sending
    # =========================================================================

    async def send_message(
        self,
        from_addr: str,
        to: list[str],
        subject: str,
        body: str,
        *,
        from_name: str = "",
        is_html: bool = False,
    ) -> str:
        """
        Send a message to every address in `to`.

        Returns:
            Message-ID of the sent message.

        Raises:
            NotConnectedError: If connect() has not been called.
            TransportError: If the connection drops or times out mid-send.
            ServerError: If the server refuses the sender, any recipient or
                         the data. `stage` and `recipient` say which.
        """
        client = self._require_client()
        if not to:
            raise ServerError("No recipients specified", stage="RCPT TO")

        message = build_message(from_addr, to, subject, body, from_name=from_name, is_html=is_html)
        message_id = message["Message-ID"]

        logger.info(f"Sending email to {', '.join(to)}")
        try:
            await client.mail(from_addr)
        except aiosmtplib.SMTPSenderRefused as e:
            raise ServerError(
                f"Sender {from_addr} refused: {e.code} {e.message}",
                stage="MAIL FROM",
                code=e.code,
            ) from e
        except _CONNECTION_LOST as e:
            raise _lost_during("MAIL FROM", e) from e

        for recipient in to:
            try:
                await client.rcpt(recipient)
            except aiosmtplib.SMTPRecipientRefused as e:
                await self._abort_transaction()
                raise ServerError(
                    f"Recipient {recipient} refused: {e.code} {e.message}",
                    stage="RCPT TO",
                    recipient=recipient,
                    code=e.code,
                ) from e
            except _CONNECTION_LOST as e:
                raise _lost_during("RCPT TO", e) from e

        try:
            await client.data(message.as_bytes())
        except aiosmtplib.SMTPDataError as e:
            raise ServerError(
                f"Message refused: {e.code} {e.message}",
                stage="DATA",
                code=e.code,
            ) from e
        except _CONNECTION_LOST as e:
            raise _lost_during("DATA", e) from e

        logger.info(f"Email sent successfully: {message_id}")
        return message_id

    async def _abort_transaction(self) -> None:
        try:
            await self._client.rset()
        except aiosmtplib.SMTPException as e:
            logger.warning(f"RSET after refused recipient failed: {e}")

    def _require_client(self) -> aiosmtplib.SMTP:
        if self._client is None:
            raise NotConnectedError("SMTP session is not connected")
        return self._client


def build_message(
    from_addr: str,
    to: list[str],
    subject: str,
    body: str,
    *,
    from_name: str = "",
    is_html: bool = False,
) -> MIMEText:
    """Build the outgoing MIME message with From/To/Subject/Date/Message-ID."""
    msg = MIMEText(body, "html" if is_html else "plain", "utf-8")
    msg["From"] = formataddr((from_name, from_addr)) if from_name else from_addr
    msg["To"] = ", ".join(to)
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=True)
    domain = from_addr.split("@", 1)[1] if "@" in from_addr else None
    msg["Message-ID"] = make_msgid(domain=domain)
    msg["X-Mailer"] = "ctrl-mail"
    return msg
