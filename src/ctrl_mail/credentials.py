# =============================================================================
# Credential Store
# =============================================================================
# Keeps account secrets in the system keyring via the 'keyring' library.
#
# Two credential classes are stored per account, under the service name
# "ctrl-mail:<account>":
#   - "password":     the plain IMAP/SMTP password
#   - "oauth2-token": an OAuthToken serialized as JSON
#
# Missing entries come back as None; keyring backend failures raise
# CredentialError so callers can tell "not set" from "keyring broken".
# =============================================================================

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

import keyring
import keyring.errors

logger = logging.getLogger(__name__)

PASSWORD_KEY = "password"
OAUTH_TOKEN_KEY = "oauth2-token"


@dataclass
class OAuthToken:
    """
    An OAuth2 bearer token as returned by the provider's token endpoint.

    Attributes:
        access_token: Bearer token used for XOAUTH2.
        refresh_token: Long-lived token for obtaining a new access token.
        expires_at: Absolute expiry time (UTC), if the provider gave one.
        token_type: Usually "Bearer".
        scope: Space-separated granted scopes.
    """
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: str | None = None

    @classmethod
    def from_response(cls, data: dict) -> "OAuthToken":
        """Build a token from a token-endpoint JSON response (expires_in seconds)."""
        expires_at = None
        if data.get("expires_in") is not None:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(data["expires_in"]))
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope"),
        )

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) >= self.expires_at

    def to_json(self) -> str:
        data = asdict(self)
        if self.expires_at is not None:
            data["expires_at"] = self.expires_at.isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "OAuthToken":
        data = json.loads(raw)
        expires_at = data.get("expires_at")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope"),
        )


class CredentialStore:
    """
    Save, look up and delete account secrets in the system keyring.

    Usage:
        >>> store = CredentialStore()
        >>> store.save_password("personal", "hunter2")
        >>> store.get_password("personal")
        'hunter2'
    """

    SERVICE_PREFIX = "ctrl-mail"

    def service_name(self, account: str) -> str:
        """Keyring service for an account, e.g. "ctrl-mail:personal"."""
        return f"{self.SERVICE_PREFIX}:{account}"

    # -------------------------------------------------------------------------
    # Passwords
    # -------------------------------------------------------------------------

    def save_password(self, account: str, password: str) -> None:
        self._set(account, PASSWORD_KEY, password)

    def get_password(self, account: str) -> str | None:
        return self._get(account, PASSWORD_KEY)

    def delete_password(self, account: str) -> None:
        self._delete(account, PASSWORD_KEY)

    # -------------------------------------------------------------------------
    # OAuth2 tokens
    # -------------------------------------------------------------------------

    def save_token(self, account: str, token: OAuthToken) -> None:
        self._set(account, OAUTH_TOKEN_KEY, token.to_json())

    def get_token(self, account: str) -> OAuthToken | None:
        """
        Load the stored OAuth2 token.

        Returns:
            The token, or None if nothing is stored or the entry is corrupt.
        """
        raw = self._get(account, OAUTH_TOKEN_KEY)
        if raw is None:
            return None
        try:
            return OAuthToken.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable OAuth token for {account}: {e}")
            return None

    def delete_token(self, account: str) -> None:
        self._delete(account, OAUTH_TOKEN_KEY)

    def delete_all(self, account: str) -> None:
        """Remove every secret stored for the account."""
        self.delete_password(account)
        self.delete_token(account)

    # -------------------------------------------------------------------------
    # keyring plumbing
    # -------------------------------------------------------------------------

    def _set(self, account: str, key: str, value: str) -> None:
        try:
            keyring.set_password(self.service_name(account), key, value)
        except keyring.errors.KeyringError as e:
            raise CredentialError(f"Could not save {key} for {account}: {e}") from e
        logger.debug(f"Stored {key} for {account}")

    def _get(self, account: str, key: str) -> str | None:
        try:
            return keyring.get_password(self.service_name(account), key)
        except keyring.errors.KeyringError as e:
            raise CredentialError(f"Could not read {key} for {account}: {e}") from e

    def _delete(self, account: str, key: str) -> None:
        try:
            keyring.delete_password(self.service_name(account), key)
        except keyring.errors.PasswordDeleteError:
            # Nothing stored
            pass
        except keyring.errors.KeyringError as e:
            raise CredentialError(f"Could not delete {key} for {account}: {e}") from e


# =============================================================================
# Exceptions
# =============================================================================

class CredentialError(Exception):
    """Raised when the keyring backend fails."""
    pass
