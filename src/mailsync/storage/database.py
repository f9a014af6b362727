# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages the SQLite database that callers use to persist sync state.
#
# Schema overview:
#   - sync_tokens: Last sync token per (account, folder)
#   - known_uids:  UIDs the caller holds per (account, folder), used for
#                  vanished-message detection on servers without QRESYNC
#   - cache:       Response cache entries (see storage/cache.py)
#
# Uses aiosqlite for async operations, with WAL mode for better
# concurrent performance.
# =============================================================================

import logging
from pathlib import Path

import aiosqlite

from mailsync.config import Config

logger = logging.getLogger(__name__)


# Current schema version - increment when making schema changes
SCHEMA_VERSION = 1


SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Sync token per folder. folder_id is the Folder.folder_id string, so the
-- flagged search folder ("INBOX/FLAGGED") gets its own row.
CREATE TABLE IF NOT EXISTS sync_tokens (
    account_id INTEGER NOT NULL,
    folder_id TEXT NOT NULL,
    token TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (account_id, folder_id)
);

-- UIDs reported to the caller so far
CREATE TABLE IF NOT EXISTS known_uids (
    account_id INTEGER NOT NULL,
    folder_id TEXT NOT NULL,
    uid INTEGER NOT NULL,
    PRIMARY KEY (account_id, folder_id, uid)
);

-- Response cache, one namespace per account
CREATE TABLE IF NOT EXISTS cache (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value BLOB NOT NULL,
    PRIMARY KEY (namespace, key)
);
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
            db_path: Path to database file. Defaults to XDG state location.
        """
        self.db_path = db_path or Config.database_path()
        self._connection: aiosqlite.Connection | None = None

    @property
    def is_connected(self) -> bool:
        """True between connect() and close()."""
        return self._connection is not None

    async def connect(self) -> None:
        """
        Open the database connection and ensure schema is up to date.

        Creates the database file if it doesn't exist.
        """
        # Ensure parent directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)

        # Enable WAL mode for better concurrent performance
        await self._connection.execute("PRAGMA journal_mode = WAL")

        await self._init_schema()
        logger.debug(f"Opened database {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
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
        """
        Initialize the database schema.

        Creates tables if they don't exist, runs migrations if needed.
        """
        try:
            async with self.conn.execute(
                "SELECT MAX(version) FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
                current_version = row[0] if row and row[0] else 0
        except aiosqlite.OperationalError:
            # Table doesn't exist, this is a fresh database
            current_version = 0

        if current_version < SCHEMA_VERSION:
            await self.conn.executescript(SCHEMA)
            await self.conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,)
            )
            await self.conn.commit()
            logger.info(f"Database schema at version {SCHEMA_VERSION}")
