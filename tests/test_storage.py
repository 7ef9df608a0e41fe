# =============================================================================
# Cache Storage Tests
# =============================================================================

from datetime import datetime, timezone

import aiosqlite

from conftest import make_message

from ctrl_mail.core import Attachment, CacheEntry, FolderSyncMetadata, MessageFlags
from ctrl_mail.storage import CacheStore, Database
from ctrl_mail.storage.database import SCHEMA_VERSION

VERSION_ONE_SCHEMA = """
CREATE TABLE schema_version (version INTEGER PRIMARY KEY);
INSERT INTO schema_version (version) VALUES (1);
CREATE TABLE cache_entries (
    account TEXT NOT NULL,
    folder TEXT NOT NULL,
    uid INTEGER NOT NULL,
    id TEXT NOT NULL,
    message_id TEXT,
    in_reply_to TEXT,
    "references" TEXT,
    subject TEXT,
    sender TEXT,
    sender_name TEXT,
    recipients TEXT,
    date TEXT NOT NULL,
    date_estimated INTEGER NOT NULL DEFAULT 0,
    flags INTEGER NOT NULL DEFAULT 0,
    raw_flags TEXT,
    body TEXT,
    is_html INTEGER NOT NULL DEFAULT 0,
    attachments TEXT,
    cached_at TEXT NOT NULL,
    PRIMARY KEY (account, folder, uid)
);
"""


def entries(*messages):
    return [CacheEntry(message=m, folder=m.folder) for m in messages]


class TestDatabase:
    async def test_schema_version_recorded(self, database):
        async with database.conn.execute("SELECT version FROM schema_version") as cursor:
            assert (await cursor.fetchone())[0] == SCHEMA_VERSION

    async def test_reopen_keeps_data(self, tmp_path):
        path = tmp_path / "nested" / "cache.db"
        async with Database(path) as db:
            await CacheStore(db).replace_entries("acct", "INBOX", entries(make_message(1)))

        async with Database(path) as db:
            assert await CacheStore(db).count_entries("acct", "INBOX") == 1

    async def test_version_one_database_gains_cc(self, tmp_path):
        path = tmp_path / "cache.db"
        async with aiosqlite.connect(path) as conn:
            await conn.executescript(VERSION_ONE_SCHEMA)
            await conn.execute(
                "INSERT INTO cache_entries (account, folder, uid, id, date, cached_at) "
                "VALUES ('acct', 'INBOX', 1, 'kept-id', '2024-01-01T00:00:00+00:00', "
                "'2024-01-01T00:00:00+00:00')"
            )
            await conn.commit()

        async with Database(path) as db:
            async with db.conn.execute("SELECT MAX(version) FROM schema_version") as cursor:
                assert (await cursor.fetchone())[0] == SCHEMA_VERSION

            entry = await CacheStore(db).get_entry("acct", "INBOX", 1)
            assert entry.message.id == "kept-id"
            assert entry.message.cc == []

        # A second open must not try to add the column again
        async with Database(path) as db:
            assert await CacheStore(db).count_entries("acct", "INBOX") == 1


class TestEntries:
    async def test_load_is_newest_first(self, cache):
        await cache.replace_entries("acct", "INBOX", entries(
            make_message(1, day=1), make_message(2, day=3), make_message(3, day=2),
        ))

        messages = await cache.load_messages("acct", "INBOX")

        assert [m.uid for m in messages] == [2, 3, 1]

    async def test_fields_survive_round_trip(self, cache):
        message = make_message(
            7,
            subject="Design review",
            flags=MessageFlags.SEEN | MessageFlags.FLAGGED,
            message_id="<m7@example.com>",
            in_reply_to="<m6@example.com>",
        )
        message.references = ["<m5@example.com>", "<m6@example.com>"]
        message.recipients = ["bob@example.com", "carol@example.com"]
        message.cc = ["dave@example.com"]
        message.raw_flags = ["\\Seen", "\\Flagged", "$Important"]
        message.attachments = [Attachment("a.pdf", "application/pdf", 1024)]
        message.is_html = True
        message.date_estimated = True
        await cache.replace_entries("acct", "INBOX", entries(message))

        stored = (await cache.get_entry("acct", "INBOX", 7)).message

        assert stored.id == message.id
        assert stored.subject == "Design review"
        assert stored.flags == MessageFlags.SEEN | MessageFlags.FLAGGED
        assert stored.references == ["<m5@example.com>", "<m6@example.com>"]
        assert stored.recipients == ["bob@example.com", "carol@example.com"]
        assert stored.cc == ["dave@example.com"]
        assert stored.raw_flags == ["\\Seen", "\\Flagged", "$Important"]
        assert stored.attachments[0].filename == "a.pdf"
        assert stored.is_html
        assert stored.date_estimated
        assert stored.date == message.date
        assert stored.folder == "INBOX"

    async def test_accounts_and_folders_are_separate(self, cache):
        await cache.replace_entries("one", "INBOX", entries(make_message(1)))
        await cache.replace_entries("two", "INBOX", entries(make_message(1), make_message(2)))
        await cache.replace_entries("one", "Archive", entries(make_message(1, folder="Archive")))

        assert await cache.count_entries("one", "INBOX") == 1
        assert await cache.count_entries("two", "INBOX") == 2
        assert await cache.count_entries("one", "Archive") == 1

    async def test_replace_drops_missing_uids(self, cache):
        await cache.replace_entries("acct", "INBOX", entries(make_message(1), make_message(2)))
        await cache.replace_entries("acct", "INBOX", entries(make_message(3)))

        assert [m.uid for m in await cache.load_messages("acct", "INBOX")] == [3]

    async def test_replace_keeps_local_id_of_known_uid(self, cache):
        first = make_message(1)
        await cache.replace_entries("acct", "INBOX", entries(first))

        refetched = make_message(1, subject="Edited")
        assert refetched.id != first.id
        await cache.replace_entries("acct", "INBOX", entries(refetched))

        stored = await cache.get_entry("acct", "INBOX", 1)
        assert stored.message.id == first.id
        assert refetched.id == first.id

    async def test_merge_upserts_by_uid(self, cache):
        original = make_message(1, subject="Old")
        await cache.replace_entries("acct", "INBOX", entries(original, make_message(2)))

        await cache.merge_entries("acct", "INBOX", entries(make_message(1, subject="New"), make_message(3)))

        messages = {m.uid: m for m in await cache.load_messages("acct", "INBOX")}
        assert sorted(messages) == [1, 2, 3]
        assert messages[1].subject == "New"
        assert messages[1].id == original.id

    async def test_merge_is_idempotent(self, cache):
        batch = [make_message(1), make_message(2)]
        await cache.merge_entries("acct", "INBOX", entries(*batch))
        ids = [m.id for m in await cache.load_messages("acct", "INBOX")]

        await cache.merge_entries("acct", "INBOX", entries(make_message(1), make_message(2)))

        assert [m.id for m in await cache.load_messages("acct", "INBOX")] == ids

    async def test_merge_nothing(self, cache):
        await cache.merge_entries("acct", "INBOX", [])
        assert await cache.count_entries("acct", "INBOX") == 0

    async def test_update_flags(self, cache):
        await cache.replace_entries("acct", "INBOX", entries(make_message(1)))

        assert await cache.update_flags("acct", "INBOX", 1, MessageFlags.SEEN)
        assert not await cache.update_flags("acct", "INBOX", 99, MessageFlags.SEEN)
        assert (await cache.get_entry("acct", "INBOX", 1)).message.is_read

    async def test_delete_entry(self, cache):
        await cache.replace_entries("acct", "INBOX", entries(make_message(1), make_message(2)))

        assert await cache.delete_entry("acct", "INBOX", 1)
        assert not await cache.delete_entry("acct", "INBOX", 1)
        assert await cache.get_entry("acct", "INBOX", 1) is None


class TestMetadata:
    async def test_round_trip(self, cache):
        synced = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        await cache.save_metadata("acct", FolderSyncMetadata("INBOX", synced, highest_uid=42, total_emails=7))

        metadata = await cache.load_metadata("acct", "INBOX")

        assert metadata == FolderSyncMetadata("INBOX", synced, highest_uid=42, total_emails=7)
        assert await cache.load_metadata("acct", "Archive") is None
        assert await cache.load_metadata("other", "INBOX") is None


class TestClearing:
    async def test_clear_account(self, cache):
        now = datetime.now(timezone.utc)
        await cache.replace_entries("one", "INBOX", entries(make_message(1), make_message(2)))
        await cache.replace_entries("two", "INBOX", entries(make_message(1)))
        await cache.save_metadata("one", FolderSyncMetadata("INBOX", now))

        assert await cache.clear_account("one") == 2

        assert await cache.count_entries("one", "INBOX") == 0
        assert await cache.load_metadata("one", "INBOX") is None
        assert await cache.count_entries("two", "INBOX") == 1

    async def test_clear_all(self, cache):
        await cache.replace_entries("one", "INBOX", entries(make_message(1)))
        await cache.replace_entries("two", "INBOX", entries(make_message(1)))

        assert await cache.clear_all() == 2
        assert await cache.count_entries("two", "INBOX") == 0
