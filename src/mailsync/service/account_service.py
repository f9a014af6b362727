# =============================================================================
# Account Service
# =============================================================================
# Looks up the accounts of one user for the duration of a request.
#
# An AccountSession memoizes the user's account list the first time it is
# asked for and drops it again on save/delete. Leaving the session (async
# with) releases the IMAP connections of every account it handed out, so
# nothing outlives the request that opened it.
# =============================================================================

import logging
from pathlib import Path
from typing import Protocol

from mailsync.config import Config
from mailsync.core import Account
from mailsync.errors import ServiceError
from mailsync.imap.connection import ConnectionProvider
from mailsync.service.mail_manager import MailManager

logger = logging.getLogger(__name__)


class AccountStore(Protocol):
    """Where accounts are persisted."""

    def find_by_user_id(self, user_id: str) -> list[Account]: ...

    def find(self, account_id: int) -> Account | None: ...

    def save(self, account: Account) -> None: ...

    def delete(self, account: Account) -> None: ...


class ConfigAccountStore:
    """
    AccountStore backed by the [accounts] tables of the config file.

    Accounts are keyed by name in the file; ids must be unique across it.
    """

    def __init__(self, config: Config, path: Path | None = None) -> None:
        self.config = config
        self.path = path

    def find_by_user_id(self, user_id: str) -> list[Account]:
        return [a for a in self.config.accounts.values() if a.user_id == user_id]

    def find(self, account_id: int) -> Account | None:
        for account in self.config.accounts.values():
            if account.id == account_id:
                return account
        return None

    def save(self, account: Account) -> None:
        # Renaming an account replaces its old entry
        for name, existing in list(self.config.accounts.items()):
            if existing.id == account.id and name != account.name:
                del self.config.accounts[name]
        self.config.accounts[account.name] = account
        self.config.save(self.path)

    def delete(self, account: Account) -> None:
        self.config.accounts = {
            name: a for name, a in self.config.accounts.items() if a.id != account.id
        }
        self.config.save(self.path)


class AccountSession:
    """
    Request-scoped view of one user's accounts.

    Usage:
        >>> async with AccountSession(user_id, store, provider, manager) as session:
        ...     account = session.find(3)
        ...     roots = await manager.get_folders(account)

    Attributes:
        user_id: The user whose accounts this session serves.
        store: Account persistence.
        provider: Connection provider; connections are released on close.
        mail_manager: Used for cross-folder operations.
    """

    def __init__(
        self,
        user_id: str,
        store: AccountStore,
        provider: ConnectionProvider,
        mail_manager: MailManager,
    ) -> None:
        self.user_id = user_id
        self.store = store
        self.provider = provider
        self.mail_manager = mail_manager
        self._accounts: list[Account] | None = None
        self._handed_out: dict[int, Account] = {}

    async def __aenter__(self) -> "AccountSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def find_all(self) -> list[Account]:
        """All accounts of the user, loaded once per session."""
        if self._accounts is None:
            self._accounts = self.store.find_by_user_id(self.user_id)
        for account in self._accounts:
            self._handed_out[account.id] = account
        return self._accounts

    def find(self, account_id: int) -> Account:
        """
        One account of the user.

        Raises:
            ServiceError: If the id is unknown or belongs to another user.
        """
        if self._accounts is not None:
            for account in self._accounts:
                if account.id == account_id:
                    self._handed_out[account.id] = account
                    return account
            raise ServiceError(f"Invalid account id {account_id}")

        account = self.store.find(account_id)
        if account is None or account.user_id != self.user_id:
            raise ServiceError(f"Invalid account id {account_id}")
        self._handed_out[account.id] = account
        return account

    async def move_message(
        self,
        account_id: int,
        folder_id: str,
        message_id: int,
        dest_account_id: int,
        dest_folder_id: str,
    ) -> None:
        """
        Move a message between folders of one account.

        Raises:
            ServiceError: For moves across accounts or unknown ids.
        """
        if account_id != dest_account_id:
            raise ServiceError("Moving messages between accounts is not supported")

        account = self.find(account_id)
        await self.mail_manager.move_message(account, folder_id, message_id, dest_folder_id)

    def save(self, account: Account) -> Account:
        """Persist an account of this user."""
        account.user_id = self.user_id
        self.store.save(account)
        self._accounts = None
        return account

    async def delete(self, account_id: int) -> None:
        """Remove an account of this user and drop its connection."""
        account = self.find(account_id)
        await self.provider.release(account)
        self._handed_out.pop(account.id, None)
        self.store.delete(account)
        self._accounts = None
        logger.info(f"Deleted account {account.email}")

    async def close(self) -> None:
        """Release the connections of every account handed out, clear the memo."""
        for account in self._handed_out.values():
            await self.provider.release(account)
        self._handed_out.clear()
        self._accounts = None
