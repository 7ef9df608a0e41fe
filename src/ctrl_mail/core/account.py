# =============================================================================
# Account Model
# =============================================================================
# Represents an email account configuration: connection details for both
# IMAP (receiving) and SMTP (sending), plus the authentication mode.
#
# IMPORTANT: Passwords and OAuth tokens are NOT stored here. They live in the
# system keyring (see ctrl_mail.credentials) and are looked up at connect
# time using the account name.
# =============================================================================

from dataclasses import dataclass
from enum import Enum


class AuthType(Enum):
    """How the account proves its identity to the servers."""
    PASSWORD = "password"
    OAUTH2 = "oauth2"


@dataclass(frozen=True)
class ConnectionParameters:
    """
    Everything needed to open one protocol connection.

    Immutable for the lifetime of a session.

    Attributes:
        host: Server hostname.
        port: Server port (993 for IMAPS, 465/587 for SMTP).
        username: Login name sent to the server.
        use_ssl: Implicit TLS on connect. When False the stream is plain TCP.
        credential_ref: Key used to look the secret up in the credential store.
    """
    host: str
    port: int
    username: str
    use_ssl: bool = True
    credential_ref: str = ""


@dataclass
class Account:
    """
    An email account with IMAP and SMTP configuration.

    Attributes:
        name: Unique identifier for this account (e.g. "personal", "work").
              Used as the config key and for keyring lookups.
        email: The address associated with this account.
        display_name: Name shown in the "From" header.
        auth_type: Password or OAuth2 (XOAUTH2) authentication.

        imap_host / imap_port / imap_username / imap_use_ssl: IMAP server.
        smtp_host / smtp_port / smtp_username / smtp_use_ssl: SMTP server.
        smtp_start_tls: Upgrade a plain SMTP connection with STARTTLS.

    Example:
        >>> account = Account(
        ...     name="personal",
        ...     email="user@example.com",
        ...     imap_host="imap.example.com",
        ...     smtp_host="smtp.example.com",
        ... )
        >>> account.imap_parameters().port
        993
    """

    # Account identification
    name: str
    email: str
    display_name: str = ""
    auth_type: AuthType = AuthType.PASSWORD

    # IMAP configuration
    imap_host: str = ""
    imap_port: int = 993
    imap_username: str = ""             # Defaults to email
    imap_use_ssl: bool = True

    # SMTP configuration
    smtp_host: str = ""
    smtp_port: int = 465
    smtp_username: str = ""             # Defaults to email
    smtp_use_ssl: bool = True
    smtp_start_tls: bool = False

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.email
        if not self.imap_username:
            self.imap_username = self.email
        if not self.smtp_username:
            self.smtp_username = self.email

    @property
    def keyring_service(self) -> str:
        """
        Service name used for keyring storage.

        Secrets can be inspected with the keyring CLI:
            keyring get ctrl-mail:personal password
        """
        return f"ctrl-mail:{self.name}"

    def imap_parameters(self) -> ConnectionParameters:
        """Connection parameters for the IMAP session."""
        return ConnectionParameters(
            host=self.imap_host,
            port=self.imap_port,
            username=self.imap_username,
            use_ssl=self.imap_use_ssl,
            credential_ref=self.name,
        )

    def smtp_parameters(self) -> ConnectionParameters:
        """Connection parameters for the SMTP session."""
        return ConnectionParameters(
            host=self.smtp_host,
            port=self.smtp_port,
            username=self.smtp_username,
            use_ssl=self.smtp_use_ssl,
            credential_ref=self.name,
        )

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"
