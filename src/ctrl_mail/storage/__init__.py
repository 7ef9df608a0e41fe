# =============================================================================
# Storage Module
# =============================================================================
# Local message cache in SQLite.
#
# Provides:
#   - Database initialization and schema versioning
#   - Cache entries per (account, folder, uid) with replace and merge writes
#   - Folder sync metadata (last sync, highest UID, total)
#   - Async operations via aiosqlite
#
# The database lives in the XDG data directory (~/.local/share/ctrl-mail/).
# =============================================================================

from ctrl_mail.storage.database import Database
from ctrl_mail.storage.repository import CacheStore

__all__ = ["Database", "CacheStore"]
