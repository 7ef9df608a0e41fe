# =============================================================================
# Cache Store - Data Access Layer
# =============================================================================
# Persists cache entries and folder sync metadata per (account, folder).
#
# Writes come in two shapes:
#   - replace_entries: drop the folder's entries and write a new set
#                      (full sync)
#   - merge_entries:   upsert by UID (incremental sync). A UID that is
#                      already cached keeps its local id, so re-fetching a
#                      message never duplicates it.
#
# All methods are async and commit before returning.
# =============================================================================

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ctrl_mail.core import Attachment, CacheEntry, FolderSyncMetadata, Message, MessageFlags

if TYPE_CHECKING:
    from ctrl_mail.storage.database import Database

logger = logging.getLogger(__name__)

_ENTRY_COLUMNS = (
    'account, folder, uid, id, message_id, in_reply_to, "references", '
    "subject, sender, sender_name, recipients, date, date_estimated, "
    "flags, raw_flags, body, is_html, attachments, cached_at, cc"
)

_UPSERT = f"""
    INSERT INTO cache_entries ({_ENTRY_COLUMNS})
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(account, folder, uid) DO UPDATE SET
        message_id = excluded.message_id,
        in_reply_to = excluded.in_reply_to,
        "references" = excluded."references",
        subject = excluded.subject,
        sender = excluded.sender,
        sender_name = excluded.sender_name,
        recipients = excluded.recipients,
        date = excluded.date,
        date_estimated = excluded.date_estimated,
        flags = excluded.flags,
        raw_flags = excluded.raw_flags,
        body = excluded.body,
        is_html = excluded.is_html,
        attachments = excluded.attachments,
        cached_at = excluded.cached_at,
        cc = excluded.cc
"""


class CacheStore:
    """
    Message cache backed by SQLite.

    Usage:
        >>> store = CacheStore(database)
        >>> await store.replace_entries("personal", "INBOX", entries)
        >>> messages = await store.load_messages("personal", "INBOX")

    Attributes:
        db: Connected Database instance.
    """

    def __init__(self, db: "Database") -> None:
        self.db = db

    # =========================================================================
    # Entries
    # =========================================================================

    async def load_entries(self, account: str, folder: str) -> list[CacheEntry]:
        """
        Load every cached entry of a folder, newest first.

        Returns:
            Entries ordered by message date, descending.
        """
        async with self.db.conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM cache_entries "
            "WHERE account = ? AND folder = ? ORDER BY date DESC, uid DESC",
            (account, folder),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_entry(row) for row in rows]

    async def load_messages(self, account: str, folder: str) -> list[Message]:
        """Cached messages of a folder, newest first."""
        return [entry.message for entry in await self.load_entries(account, folder)]

    async def get_entry(self, account: str, folder: str, uid: int) -> CacheEntry | None:
        async with self.db.conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM cache_entries "
            "WHERE account = ? AND folder = ? AND uid = ?",
            (account, folder, uid),
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_entry(row) if row else None

    async def count_entries(self, account: str, folder: str) -> int:
        async with self.db.conn.execute(
            "SELECT COUNT(*) FROM cache_entries WHERE account = ? AND folder = ?",
            (account, folder),
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def replace_entries(self, account: str, folder: str, entries: list[CacheEntry]) -> None:
        """
        Overwrite the folder's entire entry set.

        Entries sharing a UID collapse to the last one given. UIDs that were
        cached before keep their local id, as with merge_entries.
        """
        known = await self._local_ids(account, folder, [entry.uid for entry in entries])
        for entry in entries:
            if entry.uid in known:
                entry.message.id = known[entry.uid]

        await self.db.conn.execute(
            "DELETE FROM cache_entries WHERE account = ? AND folder = ?",
            (account, folder),
        )
        await self.db.conn.executemany(
            _UPSERT,
            [self._entry_to_row(account, folder, entry) for entry in entries],
        )
        await self.db.conn.commit()
        logger.debug(f"Replaced cache for {account}/{folder} with {len(entries)} entries")

    async def merge_entries(self, account: str, folder: str, entries: list[CacheEntry]) -> None:
        """
        Upsert entries by UID into the folder's existing set.

        A UID that is already cached keeps its stored local id; the entry's
        message is updated in place to carry that id.
        """
        if not entries:
            return

        known = await self._local_ids(account, folder, [entry.uid for entry in entries])
        for entry in entries:
            if entry.uid in known:
                entry.message.id = known[entry.uid]

        await self.db.conn.executemany(
            _UPSERT,
            [self._entry_to_row(account, folder, entry) for entry in entries],
        )
        await self.db.conn.commit()
        logger.debug(
            f"Merged {len(entries)} entries into {account}/{folder} "
            f"({len(known)} already cached)"
        )

    async def update_flags(
        self,
        account: str,
        folder: str,
        uid: int,
        flags: MessageFlags,
    ) -> bool:
        """
        Update one entry's flags.

        Returns:
            False if no such entry is cached.
        """
        cursor = await self.db.conn.execute(
            "UPDATE cache_entries SET flags = ? WHERE account = ? AND folder = ? AND uid = ?",
            (int(flags), account, folder, uid),
        )
        await self.db.conn.commit()
        return cursor.rowcount > 0

    async def delete_entry(self, account: str, folder: str, uid: int) -> bool:
        """
        Remove one entry.

        Returns:
            False if no such entry is cached.
        """
        cursor = await self.db.conn.execute(
            "DELETE FROM cache_entries WHERE account = ? AND folder = ? AND uid = ?",
            (account, folder, uid),
        )
        await self.db.conn.commit()
        return cursor.rowcount > 0

    async def _local_ids(self, account: str, folder: str, uids: list[int]) -> dict[int, str]:
        found: dict[int, str] = {}
        # Batches stay under SQLite's bound-parameter limit
        for i in range(0, len(uids), 500):
            batch = uids[i:i + 500]
            placeholders = ",".join("?" for _ in batch)
            async with self.db.conn.execute(
                f"SELECT uid, id FROM cache_entries "
                f"WHERE account = ? AND folder = ? AND uid IN ({placeholders})",
                (account, folder, *batch),
            ) as cursor:
                for row in await cursor.fetchall():
                    found[row[0]] = row[1]
        return found

    # =========================================================================
    # Folder Metadata
    # =========================================================================

    async def load_metadata(self, account: str, folder: str) -> FolderSyncMetadata | None:
        async with self.db.conn.execute(
            "SELECT folder, last_sync, highest_uid, total_emails FROM folder_sync "
            "WHERE account = ? AND folder = ?",
            (account, folder),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return FolderSyncMetadata(
            folder=row[0],
            last_sync=_parse_timestamp(row[1]),
            highest_uid=row[2],
            total_emails=row[3],
        )

    async def save_metadata(self, account: str, metadata: FolderSyncMetadata) -> None:
        await self.db.conn.execute(
            """INSERT OR REPLACE INTO folder_sync
               (account, folder, last_sync, highest_uid, total_emails)
               VALUES (?, ?, ?, ?, ?)""",
            (
                account,
                metadata.folder,
                metadata.last_sync.isoformat(),
                metadata.highest_uid,
                metadata.total_emails,
            ),
        )
        await self.db.conn.commit()

    # =========================================================================
    # Clearing
    # =========================================================================

    async def clear_account(self, account: str) -> int:
        """
        Drop every cached entry and sync record of an account.

        Returns:
            Number of entries removed.
        """
        cursor = await self.db.conn.execute(
            "DELETE FROM cache_entries WHERE account = ?", (account,)
        )
        removed = cursor.rowcount
        await self.db.conn.execute("DELETE FROM folder_sync WHERE account = ?", (account,))
        await self.db.conn.commit()
        logger.info(f"Cleared {removed} cached messages for {account}")
        return removed

    async def clear_all(self) -> int:
        """Drop the whole cache. Returns the number of entries removed."""
        async with self.db.conn.execute("SELECT COUNT(*) FROM cache_entries") as cursor:
            row = await cursor.fetchone()
            removed = row[0] if row else 0
        await self.db.conn.execute("DELETE FROM cache_entries")
        await self.db.conn.execute("DELETE FROM folder_sync")
        await self.db.conn.commit()
        logger.info(f"Cleared {removed} cached messages")
        return removed

    # =========================================================================
    # Row conversion
    # =========================================================================

    def _entry_to_row(self, account: str, folder: str, entry: CacheEntry) -> tuple:
        msg = entry.message
        return (
            account, folder, msg.uid, msg.id,
            msg.message_id, msg.in_reply_to, json.dumps(msg.references),
            msg.subject, msg.sender, msg.sender_name, json.dumps(msg.recipients),
            msg.date.isoformat(), int(msg.date_estimated),
            int(msg.flags), json.dumps(msg.raw_flags),
            msg.body, int(msg.is_html),
            json.dumps([a.to_dict() for a in msg.attachments]),
            entry.cached_at.isoformat(), json.dumps(msg.cc),
        )

    def _row_to_entry(self, row) -> CacheEntry:
        """Convert a database row to a CacheEntry."""
        message = Message(
            uid=row[2],
            id=row[3],
            message_id=row[4] or "",
            in_reply_to=row[5] or "",
            references=json.loads(row[6]) if row[6] else [],
            subject=row[7] or "",
            sender=row[8] or "",
            sender_name=row[9] or "",
            recipients=json.loads(row[10]) if row[10] else [],
            cc=json.loads(row[19]) if row[19] else [],
            date=_parse_timestamp(row[11]),
            date_estimated=bool(row[12]),
            flags=MessageFlags(row[13]),
            raw_flags=json.loads(row[14]) if row[14] else [],
            body=row[15] or "",
            is_html=bool(row[16]),
            attachments=[Attachment.from_dict(a) for a in json.loads(row[17] or "[]")],
            folder=row[1],
        )
        return CacheEntry(message=message, folder=row[1], cached_at=_parse_timestamp(row[18]))


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
