# =============================================================================
# Configuration Management
# =============================================================================
# Loads and saves Ctrl-Mail configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/ctrl-mail/  (default: ~/.config/ctrl-mail/)
#   - Data:    $XDG_DATA_HOME/ctrl-mail/    (default: ~/.local/share/ctrl-mail/)
#   - State:   $XDG_STATE_HOME/ctrl-mail/   (default: ~/.local/state/ctrl-mail/)
#
# Files:
#   - config.toml:   accounts and preferences (config directory)
#   - cache.db:      SQLite message cache (data directory)
#   - ctrl-mail.log: rotating log file (state directory)
#
# Account settings are read as written. No provider defaults are guessed.
# =============================================================================

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w

from ctrl_mail.core import Account, AuthType, MailFolder


# =============================================================================
# XDG Directory Management
# =============================================================================

APP_NAME = "ctrl-mail"


def _xdg_dir(env_var: str, *default: str) -> Path:
    value = os.environ.get(env_var)
    base = Path(value) if value else Path.home().joinpath(*default)
    return base / APP_NAME


def get_xdg_config_home() -> Path:
    """Config directory. Respects $XDG_CONFIG_HOME, else ~/.config/ctrl-mail/."""
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def get_xdg_data_home() -> Path:
    """Data directory (the SQLite cache). Respects $XDG_DATA_HOME."""
    return _xdg_dir("XDG_DATA_HOME", ".local", "share")


def get_xdg_state_home() -> Path:
    """
    State directory for logs.

    Respects $XDG_STATE_HOME, otherwise uses ~/.local/state/ctrl-mail/
    """
    return _xdg_dir("XDG_STATE_HOME", ".local", "state")


def ensure_directories() -> dict[str, Path]:
    """
    Create the XDG directories if they don't exist.

    Returns:
        Mapping of directory type ("config", "data", "state") to path.
    """
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
        "state": get_xdg_state_home(),
    }
    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)
    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

DEFAULT_SYNC_FOLDERS = [folder.imap_name for folder in MailFolder]


@dataclass
class SyncConfig:
    """
    Synchronization settings.

    Attributes:
        freshness_minutes: A folder synced less than this long ago is served
                           from cache without touching the network.
        check_interval_minutes: Period of the background sync (0 = manual only).
        fetch_limit: Maximum messages fetched per folder per sync.
        folders: Folders swept by "sync all".
    """
    freshness_minutes: int = 5
    check_interval_minutes: int = 5
    fetch_limit: int = 50
    folders: list[str] = field(default_factory=lambda: list(DEFAULT_SYNC_FOLDERS))


@dataclass
class ProtocolConfig:
    """
    Low-level protocol tuning.

    Attributes:
        max_read_attempts: Empty reads tolerated while waiting for one
                           response before giving up and returning what
                           has been received so far.
        read_backoff_ms: Sleep between empty reads.
        read_timeout_seconds: How long a single read waits for data.
        connect_timeout_seconds: Timeout for opening the connection.
    """
    max_read_attempts: int = 50
    read_backoff_ms: int = 50
    read_timeout_seconds: float = 0.2
    connect_timeout_seconds: float = 30.0


@dataclass
class Config:
    """
    Top-level configuration.

    Usage:
        >>> config = Config.load()
        >>> config.accounts["personal"].imap_host
        'imap.example.com'
    """
    default_account: str = ""
    accounts: dict[str, Account] = field(default_factory=dict)
    sync: SyncConfig = field(default_factory=SyncConfig)
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def database_path() -> Path:
        return get_xdg_data_home() / "cache.db"

    @staticmethod
    def log_file_path() -> Path:
        return get_xdg_state_home() / "ctrl-mail.log"

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_account(self, name: str | None = None) -> Account:
        """
        Return the named account, or the default one.

        Raises:
            ConfigError: If no such account is configured.
        """
        name = name or self.default_account
        if not name and len(self.accounts) == 1:
            name = next(iter(self.accounts))
        if not name:
            raise ConfigError("No account given and no default_account configured")
        try:
            return self.accounts[name]
        except KeyError:
            raise ConfigError(f"Unknown account: {name}") from None

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from `path` (default: the XDG config file).

        A missing file yields the default configuration.

        Raises:
            ConfigError: If the file exists but is not valid TOML or has
                         invalid values.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """Write the configuration as TOML, creating the directory if needed."""
        config_path = path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        config = cls()

        general = data.get("general", {})
        config.default_account = general.get("default_account", "")

        sync = data.get("sync", {})
        config.sync = SyncConfig(
            freshness_minutes=sync.get("freshness_minutes", 5),
            check_interval_minutes=sync.get("check_interval_minutes", 5),
            fetch_limit=sync.get("fetch_limit", 50),
            folders=list(sync.get("folders", DEFAULT_SYNC_FOLDERS)),
        )
        if config.sync.fetch_limit < 1:
            raise ConfigError("sync.fetch_limit must be at least 1")

        protocol = data.get("protocol", {})
        config.protocol = ProtocolConfig(
            max_read_attempts=protocol.get("max_read_attempts", 50),
            read_backoff_ms=protocol.get("read_backoff_ms", 50),
            read_timeout_seconds=protocol.get("read_timeout_seconds", 0.2),
            connect_timeout_seconds=protocol.get("connect_timeout_seconds", 30.0),
        )

        # Each key under [accounts] is an account name
        for name, acct in data.get("accounts", {}).items():
            try:
                auth_type = AuthType(acct.get("auth_type", "password"))
            except ValueError:
                raise ConfigError(
                    f"accounts.{name}.auth_type must be 'password' or 'oauth2'"
                ) from None
            config.accounts[name] = Account(
                name=name,
                email=acct.get("email", ""),
                display_name=acct.get("display_name", ""),
                auth_type=auth_type,
                imap_host=acct.get("imap_host", ""),
                imap_port=acct.get("imap_port", 993),
                imap_username=acct.get("imap_username", ""),
                imap_use_ssl=acct.get("imap_use_ssl", True),
                smtp_host=acct.get("smtp_host", ""),
                smtp_port=acct.get("smtp_port", 465),
                smtp_username=acct.get("smtp_username", ""),
                smtp_use_ssl=acct.get("smtp_use_ssl", True),
                smtp_start_tls=acct.get("smtp_start_tls", False),
            )

        return config

    def _to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "general": {"default_account": self.default_account},
            "sync": {
                "freshness_minutes": self.sync.freshness_minutes,
                "check_interval_minutes": self.sync.check_interval_minutes,
                "fetch_limit": self.sync.fetch_limit,
                "folders": list(self.sync.folders),
            },
            "protocol": {
                "max_read_attempts": self.protocol.max_read_attempts,
                "read_backoff_ms": self.protocol.read_backoff_ms,
                "read_timeout_seconds": self.protocol.read_timeout_seconds,
                "connect_timeout_seconds": self.protocol.connect_timeout_seconds,
            },
            "accounts": {},
        }

        for name, account in self.accounts.items():
            data["accounts"][name] = {
                "email": account.email,
                "display_name": account.display_name,
                "auth_type": account.auth_type.value,
                "imap_host": account.imap_host,
                "imap_port": account.imap_port,
                "imap_username": account.imap_username,
                "imap_use_ssl": account.imap_use_ssl,
                "smtp_host": account.smtp_host,
                "smtp_port": account.smtp_port,
                "smtp_username": account.smtp_username,
                "smtp_use_ssl": account.smtp_use_ssl,
                "smtp_start_tls": account.smtp_start_tls,
            }

        return data


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths() -> None:
    """Print all XDG paths, for users wondering where things are stored."""
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print(f"State:   {get_xdg_state_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Cache:        {Config.database_path()}")
    print(f"Log file:     {Config.log_file_path()}")
