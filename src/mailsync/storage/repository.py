# =============================================================================
# Repository - Sync State Access Layer
# =============================================================================
# Persists what a caller needs between two sync passes of a folder:
#   - the opaque sync token returned by the last pass
#   - the UIDs reported so far (for vanished detection without QRESYNC)
#
# All methods are async for non-blocking database access.
# =============================================================================

from typing import TYPE_CHECKING

from mailsync.core import SyncResponse

if TYPE_CHECKING:
    from mailsync.storage.database import Database


class Repository:
    """
    Data access layer for per-folder sync state.

    Usage:
        >>> repo = Repository(database)
        >>> token = await repo.get_sync_token(account.id, "INBOX")
        >>> response = await manager.sync_messages(account, SyncRequest("INBOX", token))
        >>> await repo.apply_sync_response(account.id, "INBOX", response)

    Attributes:
        db: Database instance for executing queries.
    """

    def __init__(self, db: "Database") -> None:
        self.db = db

    # =========================================================================
    # Sync Tokens
    # =========================================================================

    async def get_sync_token(self, account_id: int, folder_id: str) -> str | None:
        """
        Get the stored sync token of a folder.

        Returns:
            The token, or None if the folder was never synced.
        """
        async with self.db.conn.execute(
            "SELECT token FROM sync_tokens WHERE account_id = ? AND folder_id = ?",
            (account_id, folder_id)
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else None

    async def save_sync_token(self, account_id: int, folder_id: str, token: str) -> None:
        """Store (insert or replace) the sync token of a folder."""
        await self.db.conn.execute(
            """INSERT INTO sync_tokens (account_id, folder_id, token, updated_at)
               VALUES (?, ?, ?, CURRENT_TIMESTAMP)
               ON CONFLICT(account_id, folder_id)
               DO UPDATE SET token = excluded.token, updated_at = excluded.updated_at""",
            (account_id, folder_id, token)
        )
        await self.db.conn.commit()

    async def delete_sync_tokens(self, account_id: int, folder_id: str | None = None) -> int:
        """
        Forget sync state, forcing a full resync on the next pass.

        Args:
            account_id: Account whose state is dropped.
            folder_id: Only drop this folder. None drops every folder.

        Returns:
            Number of tokens deleted.
        """
        if folder_id is None:
            where, params = "account_id = ?", (account_id,)
        else:
            where, params = "account_id = ? AND folder_id = ?", (account_id, folder_id)

        cursor = await self.db.conn.execute(f"DELETE FROM sync_tokens WHERE {where}", params)
        await self.db.conn.execute(f"DELETE FROM known_uids WHERE {where}", params)
        await self.db.conn.commit()
        return cursor.rowcount

    # =========================================================================
    # Known UIDs
    # =========================================================================

    async def get_known_uids(self, account_id: int, folder_id: str) -> set[int]:
        """Get all UIDs reported to the caller for a folder."""
        async with self.db.conn.execute(
            "SELECT uid FROM known_uids WHERE account_id = ? AND folder_id = ?",
            (account_id, folder_id)
        ) as cursor:
            rows = await cursor.fetchall()
            return {row[0] for row in rows}

    async def apply_sync_response(
        self,
        account_id: int,
        folder_id: str,
        response: SyncResponse,
    ) -> None:
        """
        Merge a sync delta into the stored state and store its token.

        A full resync replaces the known UIDs instead of merging.
        """
        conn = self.db.conn
        key = (account_id, folder_id)

        if response.full_resync:
            await conn.execute(
                "DELETE FROM known_uids WHERE account_id = ? AND folder_id = ?", key
            )

        if response.new_messages:
            await conn.executemany(
                "INSERT OR IGNORE INTO known_uids (account_id, folder_id, uid) VALUES (?, ?, ?)",
                [(*key, uid) for uid in response.new_uids]
            )

        if response.vanished_messages:
            await conn.executemany(
                "DELETE FROM known_uids WHERE account_id = ? AND folder_id = ? AND uid = ?",
                [(*key, uid) for uid in response.vanished_messages]
            )

        await conn.execute(
            """INSERT INTO sync_tokens (account_id, folder_id, token, updated_at)
               VALUES (?, ?, ?, CURRENT_TIMESTAMP)
               ON CONFLICT(account_id, folder_id)
               DO UPDATE SET token = excluded.token, updated_at = excluded.updated_at""",
            (*key, response.sync_token)
        )
        await conn.commit()
