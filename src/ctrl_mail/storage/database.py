# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages the SQLite connection backing the message cache.
#
# Schema overview:
#   - cache_entries: one row per cached message, keyed by
#                    (account, folder, uid)
#   - folder_sync:   sync metadata per (account, folder)
#   - schema_version
#
# Uses aiosqlite for async operations, with WAL mode so a reader (e.g. the
# CLI listing threads) does not block the syncing writer.
# =============================================================================

from pathlib import Path

import aiosqlite

from ctrl_mail.config import Config

# Current schema version - increment when making schema changes
SCHEMA_VERSION = 2

_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS cache_entries (
    account TEXT NOT NULL,
    folder TEXT NOT NULL,
    uid INTEGER NOT NULL,
    id TEXT NOT NULL,
    message_id TEXT,
    in_reply_to TEXT,
    "references" TEXT,      -- JSON array of Message-IDs
    subject TEXT,
    sender TEXT,
    sender_name TEXT,
    recipients TEXT,        -- JSON array
    date TEXT NOT NULL,     -- ISO 8601, UTC
    date_estimated INTEGER NOT NULL DEFAULT 0,
    flags INTEGER NOT NULL DEFAULT 0,
    raw_flags TEXT,         -- JSON array
    body TEXT,
    is_html INTEGER NOT NULL DEFAULT 0,
    attachments TEXT,       -- JSON array of attachment dicts
    cached_at TEXT NOT NULL,
    cc TEXT,                -- JSON array (added in v2)
    PRIMARY KEY (account, folder, uid)
);

CREATE TABLE IF NOT EXISTS folder_sync (
    account TEXT NOT NULL,
    folder TEXT NOT NULL,
    last_sync TEXT NOT NULL,
    highest_uid INTEGER NOT NULL DEFAULT 0,
    total_emails INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (account, folder)
);

CREATE INDEX IF NOT EXISTS idx_cache_entries_date
    ON cache_entries(account, folder, date DESC);
"""


class Database:
    """
    Manages the SQLite database connection and schema.

    Usage:
        >>> db = Database()
        >>> await db.connect()
        >>> async with db.conn.execute("SELECT ...") as cursor:
        ...     rows = await cursor.fetchall()
        >>> await db.close()

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """
        Initialize the database manager.

        Args:
            db_path: Path to database file. Defaults to XDG data location.
        """
        self.db_path = db_path or Config.database_path()
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """
        Open the database connection and ensure schema is up to date.

        Creates the database file if it doesn't exist.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path)
        await self._connection.execute("PRAGMA foreign_keys = ON")
        await self._connection.execute("PRAGMA journal_mode = WAL")
        await self._init_schema()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        """
        Get the active database connection.

        Raises:
            RuntimeError: If not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def _init_schema(self) -> None:
        try:
            async with self.conn.execute("SELECT MAX(version) FROM schema_version") as cursor:
                row = await cursor.fetchone()
                current_version = row[0] if row and row[0] else 0
        except aiosqlite.OperationalError:
            # Fresh database
            current_version = 0

        if current_version < SCHEMA_VERSION:
            await self.conn.executescript(_SCHEMA)
            if current_version > 0:
                await self._run_migrations(current_version)
            await self.conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self.conn.commit()

    async def _run_migrations(self, from_version: int) -> None:
        """Bring an existing database from `from_version` up to SCHEMA_VERSION."""
        if from_version < 2:
            await self.conn.execute("ALTER TABLE cache_entries ADD COLUMN cc TEXT")
