# =============================================================================
# IMAP Sync Manager
# =============================================================================
# Keeps the local cache of one account in step with the server.
#
# Sync strategy:
#   1. Full sync: fetch the newest `limit` messages and replace the folder's
#      cache with them.
#   2. Incremental sync: fetch only UIDs above the stored watermark and merge
#      them by UID. The watermark never goes down.
#   3. Periodic sync: a background task that runs an incremental sync when
#      the cache is stale and the session is connected.
#
# Per-folder state:
#   Uncached -> Valid -> Stale -> Syncing -> Valid | Error
#
# Concurrency:
#   - One asyncio.Lock per folder; a full and an incremental sync of the
#     same folder never interleave.
#   - The periodic task skips a tick while that folder is syncing.
#   - The IMAP session serializes its own commands.
# =============================================================================

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

from ctrl_mail.core import (
    AuthenticationFailed,
    CacheEntry,
    FolderState,
    FolderSyncMetadata,
    MailFolder,
    Message,
)
from ctrl_mail.imap.client import DEFAULT_FETCH_LIMIT, IMAPSession
from ctrl_mail.storage.repository import CacheStore

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """
    Result of a multi-folder sync.

    Attributes:
        success: True if every folder synced.
        new_messages: Total messages written to the cache.
        synced_folders: Folders that synced.
        failed_folders: Folders whose sync raised.
        errors: One message per failure.
        duration_seconds: Time taken for the sweep.
    """
    success: bool = True
    new_messages: int = 0
    synced_folders: list[str] = field(default_factory=list)
    failed_folders: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def partially_successful(self) -> bool:
        """Some folders synced and some failed."""
        return bool(self.synced_folders) and bool(self.failed_folders)


class SyncManager:
    """
    Synchronizes folders of one account into the cache.

    Usage:
        >>> sync = SyncManager(session, cache, "personal")
        >>> await sync.sync_folder("INBOX")
        >>> messages = await sync.load_cached("INBOX")
        >>> sync.start_periodic_sync("INBOX", interval=300)

    Attributes:
        session: Connected IMAP session for the account.
        cache: Cache store shared by every account.
        account: Account name the cache is keyed by.
        freshness: How long a synced folder counts as valid.
        fetch_limit: Default page size for full and incremental syncs.
        folders: Folders swept by sync_all_folders().
    """

    def __init__(
        self,
        session: IMAPSession,
        cache: CacheStore,
        account: str,
        *,
        freshness_minutes: float = 5,
        fetch_limit: int = DEFAULT_FETCH_LIMIT,
        folders: list[str] | None = None,
    ) -> None:
        self.session = session
        self.cache = cache
        self.account = account
        self.freshness = timedelta(minutes=freshness_minutes)
        self.fetch_limit = fetch_limit
        self.folders = folders or [folder.imap_name for folder in MailFolder]
        self._locks: dict[str, asyncio.Lock] = {}
        self._syncing: set[str] = set()
        self._failed: set[str] = set()
        self._periodic_task: asyncio.Task | None = None

    # =========================================================================
    # Cache reads
    # =========================================================================

    async def load_cached(self, folder: str) -> list[Message]:
        """Cached messages of a folder, newest first. No network."""
        return await self.cache.load_messages(self.account, folder)

    async def is_valid(self, folder: str, now: datetime | None = None) -> bool:
        """True if the folder was synced within the freshness window."""
        metadata = await self.cache.load_metadata(self.account, folder)
        return metadata is not None and metadata.is_fresh(self.freshness, now)

    async def folder_state(self, folder: str) -> FolderState:
        if folder in self._syncing:
            return FolderState.SYNCING
        if folder in self._failed:
            return FolderState.ERROR
        metadata = await self.cache.load_metadata(self.account, folder)
        if metadata is None:
            return FolderState.UNCACHED
        if metadata.is_fresh(self.freshness):
            return FolderState.VALID
        return FolderState.STALE

    def is_syncing(self, folder: str) -> bool:
        return folder in self._syncing

    # =========================================================================
    # Sync operations
    # =========================================================================

    async def sync_folder(self, folder: str, *, full: bool = False, limit: int | None = None) -> int:
        """
        Sync one folder: incremental when it has been synced before, full otherwise.

        Errors propagate to the caller.

        Returns:
            Number of messages written to the cache.
        """
        if full:
            return await self.full_sync(folder, limit)
        return await self.incremental_sync(folder, limit)

    async def full_sync(self, folder: str, limit: int | None = None) -> int:
        """
        Replace the folder's cache with its newest `limit` messages.

        Messages the server returned without a UID get a position-based
        UID (1, 2, ...) in fetch order.

        Returns:
            Number of messages cached.
        """
        limit = limit or self.fetch_limit
        async with self._syncing_folder(folder):
            logger.info(f"Full sync of {self.account}/{folder} (limit {limit})")
            messages = await self.session.fetch_messages(folder, limit)

            for position, message in enumerate(messages, start=1):
                if not message.uid:
                    message.uid = position

            entries = [CacheEntry(message=m, folder=folder) for m in messages]
            await self.cache.replace_entries(self.account, folder, entries)

            uids = {m.uid for m in messages}
            await self.cache.save_metadata(self.account, FolderSyncMetadata(
                folder=folder,
                last_sync=datetime.now(timezone.utc),
                highest_uid=max(uids, default=0),
                total_emails=len(uids),
            ))
            logger.info(f"Cached {len(uids)} messages for {self.account}/{folder}")
            return len(uids)

    async def incremental_sync(self, folder: str, limit: int | None = None) -> int:
        """
        Fetch messages above the stored highest UID and merge them by UID.

        Falls back to a full sync when the folder has never been synced.
        With no new mail only the sync time is refreshed.

        Returns:
            Number of new messages merged.
        """
        limit = limit or self.fetch_limit
        metadata = await self.cache.load_metadata(self.account, folder)
        if metadata is None:
            logger.debug(f"No sync metadata for {self.account}/{folder}, doing a full sync")
            return await self.full_sync(folder, limit)

        async with self._syncing_folder(folder):
            # Re-read under the lock; a concurrent sync may have moved it
            metadata = await self.cache.load_metadata(self.account, folder) or metadata
            watermark = metadata.highest_uid
            logger.info(f"Incremental sync of {self.account}/{folder} above UID {watermark}")
            messages = await self.session.fetch_since(watermark, folder, limit)
            # UID-less responses cannot be placed relative to the watermark
            messages = [m for m in messages if m.uid > watermark]

            if messages:
                entries = [CacheEntry(message=m, folder=folder) for m in messages]
                await self.cache.merge_entries(self.account, folder, entries)
                metadata.highest_uid = max(watermark, max(m.uid for m in messages))
                metadata.total_emails = await self.cache.count_entries(self.account, folder)

            metadata.last_sync = datetime.now(timezone.utc)
            await self.cache.save_metadata(self.account, metadata)
            logger.info(f"{len(messages)} new messages in {self.account}/{folder}")
            return len(messages)

    async def sync_all_folders(self, folders: list[str] | None = None, *, full: bool = False) -> SyncResult:
        """
        Sync every folder in turn, continuing past per-folder failures.

        Authentication failures end the sweep.

        Returns:
            SyncResult with per-folder outcomes.
        """
        start_time = datetime.now()
        result = SyncResult()

        for folder in folders or self.folders:
            try:
                result.new_messages += await self.sync_folder(folder, full=full)
                result.synced_folders.append(folder)
            except AuthenticationFailed:
                raise
            except Exception as e:
                error_msg = f"Error syncing {folder}: {e}"
                logger.error(error_msg, exc_info=True)
                result.success = False
                result.failed_folders.append(folder)
                result.errors.append(error_msg)

        result.duration_seconds = (datetime.now() - start_time).total_seconds()
        logger.info(
            f"Sync of {self.account} finished: {len(result.synced_folders)} folders ok, "
            f"{len(result.failed_folders)} failed, {result.new_messages} messages"
        )
        return result

    # =========================================================================
    # Periodic sync
    # =========================================================================

    @property
    def is_periodic_running(self) -> bool:
        return self._periodic_task is not None and not self._periodic_task.done()

    def start_periodic_sync(self, folder: str = "INBOX", interval: float = 300) -> None:
        """
        Start a background task that syncs `folder` every `interval` seconds.

        Must be called from a running event loop.
        """
        if self.is_periodic_running:
            logger.warning("Periodic sync already running")
            return
        logger.info(f"Starting periodic sync of {self.account}/{folder} every {interval}s")
        self._periodic_task = asyncio.create_task(
            self._periodic_loop(folder, interval),
            name=f"sync-{self.account}-{folder}",
        )

    async def stop_periodic_sync(self) -> None:
        """Cancel the periodic task and wait for it to finish."""
        task = self._periodic_task
        self._periodic_task = None
        if task is None:
            return
        task.cancel()
        try:
            await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), timeout=2.0)
        except asyncio.TimeoutError:
            logger.warning("Periodic sync task did not stop cleanly")

    async def periodic_tick(self, folder: str) -> bool:
        """
        One periodic check.

        Returns:
            True if an incremental sync ran.
        """
        if folder in self._syncing:
            logger.debug(f"Skipping periodic sync of {folder}: already syncing")
            return False
        if not self.session.is_connected:
            logger.debug(f"Skipping periodic sync of {folder}: not connected")
            return False
        if await self.is_valid(folder):
            logger.debug(f"Skipping periodic sync of {folder}: cache is fresh")
            return False
        await self.incremental_sync(folder)
        return True

    async def _periodic_loop(self, folder: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.periodic_tick(folder)
            except AuthenticationFailed as e:
                # Needs new credentials; retrying will not help
                logger.error(f"Periodic sync stopped for {self.account}: {e}")
                return
            except Exception as e:
                logger.error(f"Periodic sync of {self.account}/{folder} failed: {e}", exc_info=True)

    # =========================================================================
    # Message operations (server + cache)
    # =========================================================================

    async def mark_read(self, message: Message) -> None:
        await self.session.store_flag(message.uid, "\\Seen", add=True, folder=message.folder)
        message.mark_read()
        await self.cache.update_flags(self.account, message.folder, message.uid, message.flags)

    async def mark_unread(self, message: Message) -> None:
        await self.session.store_flag(message.uid, "\\Seen", add=False, folder=message.folder)
        message.mark_unread()
        await self.cache.update_flags(self.account, message.folder, message.uid, message.flags)

    async def toggle_starred(self, message: Message) -> None:
        add = not message.is_starred
        await self.session.store_flag(message.uid, "\\Flagged", add=add, folder=message.folder)
        message.toggle_starred()
        await self.cache.update_flags(self.account, message.folder, message.uid, message.flags)

    async def move_message(self, message: Message, destination: str) -> bool:
        """
        Move a message on the server and drop it from the source folder's cache.

        The destination folder picks it up on its next sync.

        Returns:
            False if the server declined the copy; the cache is then untouched.
        """
        source = message.folder
        if not await self.session.move_message(message.uid, destination, folder=source):
            return False
        await self._forget(source, message.uid)
        return True

    async def delete_message(self, message: Message, *, permanent: bool = False) -> bool:
        """
        Delete a message: move it to Trash, or expunge it when it is already
        in Trash or `permanent` is set.
        """
        in_trash = MailFolder.from_name(message.folder) is MailFolder.TRASH
        if not permanent and not in_trash:
            return await self.move_message(message, self.trash_folder)

        accepted = await self.session.delete_message(message.uid, folder=message.folder)
        await self._forget(message.folder, message.uid)
        return accepted

    @property
    def trash_folder(self) -> str:
        """
        The account's Trash mailbox.

        The first configured folder that names Trash under any provider
        spelling ("Deleted Items", "[Gmail]/Trash"), else "Trash".
        """
        for name in self.folders:
            if MailFolder.from_name(name) is MailFolder.TRASH:
                return name
        return MailFolder.TRASH.imap_name

    async def _forget(self, folder: str, uid: int) -> None:
        await self.cache.delete_entry(self.account, folder, uid)
        metadata = await self.cache.load_metadata(self.account, folder)
        if metadata is not None:
            metadata.total_emails = await self.cache.count_entries(self.account, folder)
            await self.cache.save_metadata(self.account, metadata)

    # =========================================================================
    # Cache management
    # =========================================================================

    async def clear_cache(self) -> int:
        """Drop this account's cache. Returns the number of entries removed."""
        self._failed.clear()
        return await self.cache.clear_account(self.account)

    async def clear_all_cache(self) -> int:
        """Drop the cache of every account."""
        self._failed.clear()
        return await self.cache.clear_all()

    # =========================================================================
    # Helpers
    # =========================================================================

    @asynccontextmanager
    async def _syncing_folder(self, folder: str) -> AsyncIterator[None]:
        """Hold the folder's lock and track SYNCING/ERROR around one sync."""
        lock = self._locks.setdefault(folder, asyncio.Lock())
        async with lock:
            self._syncing.add(folder)
            try:
                yield
            except asyncio.CancelledError:
                raise
            except Exception:
                self._failed.add(folder)
                raise
            else:
                self._failed.discard(folder)
            finally:
                self._syncing.discard(folder)
