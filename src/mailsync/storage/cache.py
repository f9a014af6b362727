# =============================================================================
# Response Cache
# =============================================================================
# Optional cache for server responses that never change for a given
# (mailbox, UIDVALIDITY, UID): the envelope details of a message.
#
# The cache is strictly optional. The connection provider only attaches it
# when [imap] server_side_cache is on and a factory reports itself
# available; any failure leaves the client running uncached.
#
# Contracts:
#   - CacheBackend:  async get(key) -> bytes | None, async set(key, value)
#   - CacheFactory:  is_available() -> bool, create(namespace) -> CacheBackend
#
# SqliteCacheFactory is the bundled implementation, storing entries in the
# same aiosqlite database as the sync state.
# =============================================================================

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from mailsync.core import MessageSummary

if TYPE_CHECKING:
    from mailsync.storage.database import Database

logger = logging.getLogger(__name__)


class CacheBackend(Protocol):
    """Byte-blob key/value store scoped to one namespace."""

    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes) -> None: ...


class CacheFactory(Protocol):
    """Creates per-account cache backends."""

    def is_available(self) -> bool: ...

    def create(self, namespace: str) -> CacheBackend: ...


class SqliteCacheBackend:
    """CacheBackend stored in the `cache` table of a Database."""

    def __init__(self, db: "Database", namespace: str) -> None:
        self.db = db
        self.namespace = namespace

    async def get(self, key: str) -> bytes | None:
        async with self.db.conn.execute(
            "SELECT value FROM cache WHERE namespace = ? AND key = ?",
            (self.namespace, key)
        ) as cursor:
            row = await cursor.fetchone()
            return bytes(row[0]) if row else None

    async def set(self, key: str, value: bytes) -> None:
        await self.db.conn.execute(
            "INSERT OR REPLACE INTO cache (namespace, key, value) VALUES (?, ?, ?)",
            (self.namespace, key, value)
        )
        await self.db.conn.commit()


class SqliteCacheFactory:
    """
    CacheFactory backed by an aiosqlite Database.

    Available only while the database is connected.
    """

    def __init__(self, db: "Database") -> None:
        self.db = db

    def is_available(self) -> bool:
        return self.db.is_connected

    def create(self, namespace: str) -> SqliteCacheBackend:
        return SqliteCacheBackend(self.db, namespace)


class ResponseCache:
    """
    Caches message envelope details per (mailbox, UIDVALIDITY, UID).

    Entries are JSON blobs of the envelope fields only; flags change over
    time and always come from the server. Backend errors are logged and treated as
    misses, so a broken cache only costs a refetch.

    Attributes:
        backend: The namespaced byte store.
    """

    def __init__(self, backend: CacheBackend) -> None:
        self.backend = backend

    @staticmethod
    def _key(mailbox: str, uidvalidity: int, uid: int) -> str:
        return f"summary:{mailbox}:{uidvalidity}:{uid}"

    async def get_summary(
        self, mailbox: str, uidvalidity: int, uid: int
    ) -> MessageSummary | None:
        """Return the cached envelope of a message, or None on a miss."""
        try:
            raw = await self.backend.get(self._key(mailbox, uidvalidity, uid))
        except Exception as e:
            logger.warning(f"Cache read failed for {mailbox}:{uid}: {e}")
            return None
        if raw is None:
            return None

        try:
            data = json.loads(raw)
            date_sent = datetime.fromisoformat(data["date_sent"]) if data.get("date_sent") else None
            return MessageSummary(
                uid=uid,
                subject=data.get("subject", ""),
                sender=data.get("sender", ""),
                sender_name=data.get("sender_name", ""),
                date_sent=date_sent,
                message_id=data.get("message_id", ""),
            )
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding corrupt cache entry for {mailbox}:{uid}: {e}")
            return None

    async def put_summary(self, mailbox: str, uidvalidity: int, summary: MessageSummary) -> None:
        """Store the envelope details of a message."""
        data = {
            "subject": summary.subject,
            "sender": summary.sender,
            "sender_name": summary.sender_name,
            "date_sent": summary.date_sent.isoformat() if summary.date_sent else None,
            "message_id": summary.message_id,
        }
        try:
            await self.backend.set(
                self._key(mailbox, uidvalidity, summary.uid),
                json.dumps(data).encode("utf-8"),
            )
        except Exception as e:
            logger.warning(f"Cache write failed for {mailbox}:{summary.uid}: {e}")
