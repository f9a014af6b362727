# =============================================================================
# Storage Module
# =============================================================================
# Handles persistent storage using SQLite.
#
# Provides:
#   - Database initialization and schema versioning
#   - Sync token and known-UID persistence for callers
#   - The bundled response cache backend
#   - Async operations via aiosqlite
#
# The database is stored in the XDG state directory (~/.local/state/mailsync/).
# =============================================================================

from mailsync.storage.cache import (
    ResponseCache,
    SqliteCacheBackend,
    SqliteCacheFactory,
)
from mailsync.storage.database import Database
from mailsync.storage.repository import Repository

__all__ = [
    "Database",
    "Repository",
    "ResponseCache",
    "SqliteCacheBackend",
    "SqliteCacheFactory",
]
