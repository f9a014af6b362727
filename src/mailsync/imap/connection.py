# =============================================================================
# Connection Provider
# =============================================================================
# Lazily creates and caches one logged-in IMAPClient per account.
#
# On the first request for an account:
#   1. decrypt the stored IMAP password
#   2. resolve the security mode ("none" -> plain, "" -> implicit TLS)
#   3. attach the response cache, when enabled and available
#   4. attach the protocol trace, when [imap] debug is on
#   5. connect with the configured timeout and log in
#
# Concurrent first requests for one account share a single login through a
# per-account asyncio.Lock.
# =============================================================================

import asyncio
import logging
from typing import Callable

from mailsync.config import Config
from mailsync.core import Account
from mailsync.credentials import CredentialStore
from mailsync.errors import DecryptionError, IMAPConnectionError
from mailsync.imap.client import IMAPClient
from mailsync.storage.cache import CacheFactory, ResponseCache

logger = logging.getLogger(__name__)

# Default security when an account leaves imap_security empty
DEFAULT_SECURITY = "ssl"

# Logger aioimaplib writes its protocol chatter to
PROTOCOL_LOGGER = "aioimaplib"

ClientFactory = Callable[..., IMAPClient]


def resolve_security(value: str | None) -> str | None:
    """
    Map the stored security setting to what IMAPClient expects.

    Example:
        >>> resolve_security("none") is None
        True
        >>> resolve_security("")
        'ssl'
        >>> resolve_security("starttls")
        'starttls'
    """
    if not value:
        return DEFAULT_SECURITY
    if value.lower() == "none":
        return None
    return value.lower()


class ConnectionProvider:
    """
    Per-account cache of connected IMAP clients.

    Usage:
        >>> provider = ConnectionProvider(config, credentials, cache_factory)
        >>> client = await provider.get_connection(account)
        >>> ...
        >>> await provider.close()

    Attributes:
        config: Application configuration ([imap] and [sync] sections).
        credentials: Decrypts the stored account passwords.
        cache_factory: Optional response cache backend factory.
    """

    def __init__(
        self,
        config: Config,
        credentials: CredentialStore,
        cache_factory: CacheFactory | None = None,
        *,
        client_factory: ClientFactory = IMAPClient,
    ) -> None:
        """
        Args:
            config: Application configuration.
            credentials: Credential store used to decrypt passwords.
            cache_factory: Response cache factory, None to run uncached.
            client_factory: Builds the client; tests substitute a fake.
        """
        self.config = config
        self.credentials = credentials
        self.cache_factory = cache_factory
        self._client_factory = client_factory
        self._connections: dict[int, IMAPClient] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._debug_handler: logging.Handler | None = None

    def _lock_for(self, account_id: int) -> asyncio.Lock:
        if account_id not in self._locks:
            self._locks[account_id] = asyncio.Lock()
        return self._locks[account_id]

    async def get_connection(self, account: Account) -> IMAPClient:
        """
        Return the connected client of an account, creating it on first use.

        Raises:
            IMAPConnectionError: If the password can't be decrypted or the
                                 server can't be reached.
            IMAPAuthenticationError: If the server rejects the credentials.
        """
        client = self._connections.get(account.id)
        if client is not None:
            return client

        async with self._lock_for(account.id):
            # Another task may have connected while we waited
            client = self._connections.get(account.id)
            if client is not None:
                return client

            client = self._create_client(account)
            try:
                await client.connect()
            except IMAPConnectionError:
                logger.error(f"Could not connect account {account.email}", exc_info=True)
                await client.disconnect()
                raise
            except Exception:
                await client.disconnect()
                raise

            self._connections[account.id] = client
            return client

    def _create_client(self, account: Account) -> IMAPClient:
        """Build (but don't connect) the client of an account."""
        try:
            password = self.credentials.decrypt(account.imap_password)
        except DecryptionError as e:
            raise IMAPConnectionError(f"Cannot decrypt IMAP password of {account.email}: {e}") from e

        imap_config = self.config.imap
        if imap_config.debug:
            self._enable_protocol_trace()

        return self._client_factory(
            account,
            password,
            security=resolve_security(account.imap_security),
            timeout=int(imap_config.timeout),
            cache=self._create_cache(account),
            batch_size=self.config.sync.fetch_batch_size,
        )

    def _create_cache(self, account: Account) -> ResponseCache | None:
        """Attach a response cache when configured; never fails."""
        if not self.config.imap.server_side_cache or self.cache_factory is None:
            return None

        try:
            if not self.cache_factory.is_available():
                logger.warning("Response cache unavailable, running uncached")
                return None
            return ResponseCache(self.cache_factory.create(account.cache_namespace))
        except Exception as e:
            logger.warning(f"Could not create response cache for {account.email}: {e}")
            return None

    def _enable_protocol_trace(self) -> None:
        """Send aioimaplib's protocol log to imap-debug.log (once per provider)."""
        if self._debug_handler is not None:
            return

        path = Config.imap_debug_log_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))

        protocol_logger = logging.getLogger(PROTOCOL_LOGGER)
        protocol_logger.addHandler(handler)
        protocol_logger.setLevel(logging.DEBUG)
        self._debug_handler = handler
        logger.info(f"IMAP protocol trace enabled: {path}")

    def is_connected(self, account: Account) -> bool:
        """True if a client for the account is cached."""
        return account.id in self._connections

    async def release(self, account: Account) -> None:
        """Log out and forget the account's connection, if any."""
        client = self._connections.pop(account.id, None)
        if client is not None:
            await client.disconnect()
            logger.debug(f"Released connection of {account.email}")

    async def close(self) -> None:
        """Log out every cached connection and detach the protocol trace."""
        connections = list(self._connections.values())
        self._connections.clear()
        for client in connections:
            await client.disconnect()

        if self._debug_handler is not None:
            logging.getLogger(PROTOCOL_LOGGER).removeHandler(self._debug_handler)
            self._debug_handler.close()
            self._debug_handler = None
