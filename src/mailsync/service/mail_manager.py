# =============================================================================
# Mail Manager
# =============================================================================
# Single entry point for callers (HTTP handlers, the CLI). Every operation
# takes an Account, fetches its connection from the ConnectionProvider and
# delegates to the FolderMapper or the Synchronizer.
#
# Deleting a message moves it to the account's trash, resolved as:
#   1. the folder carrying the trash role (most messages wins)
#   2. the first folder whose display name contains "trash"
#   3. a new "Trash" folder, created on the copy
# A message already in the trash is expunged for good.
# =============================================================================

import logging

from mailsync.core import Account, Folder, FolderKind, SpecialUse, SyncRequest, SyncResponse
from mailsync.errors import IMAPError, MailboxNotFoundError, ServiceError
from mailsync.imap.connection import ConnectionProvider
from mailsync.imap.sync import Synchronizer
from mailsync.service.folder_mapper import FolderMapper
from mailsync.service.translator import FolderNameTranslator

logger = logging.getLogger(__name__)

# Name given to the trash folder when an account has none
DEFAULT_TRASH_NAME = "Trash"


class MailManager:
    """
    Orchestrates folder listing, sync and message operations per account.

    Usage:
        >>> manager = MailManager(provider, FolderMapper(config), Synchronizer())
        >>> roots = await manager.get_folders(account)
        >>> response = await manager.sync_messages(account, SyncRequest("INBOX"))
        >>> await manager.delete_message(account, "INBOX", 42)

    Callers serialize calls per account: one connection serves one
    operation at a time.
    """

    def __init__(
        self,
        provider: ConnectionProvider,
        mapper: FolderMapper,
        synchronizer: Synchronizer,
        translator: FolderNameTranslator | None = None,
    ) -> None:
        self.provider = provider
        self.mapper = mapper
        self.synchronizer = synchronizer
        self.translator = translator or FolderNameTranslator()

    # =========================================================================
    # Folders
    # =========================================================================

    async def get_folders(self, account: Account) -> list[Folder]:
        """
        Return the account's folder tree (roots only, children attached).

        The search folder appears as a root right after the inbox.
        """
        client = await self.provider.get_connection(account)
        folders = await self.mapper.mapped_folders(account, client)
        self.mapper.sort_folders(folders)
        self.translator.translate_all(folders)
        return self.mapper.build_hierarchy(folders)

    async def get_drafts_folder(self, account: Account) -> Folder:
        client = await self.provider.get_connection(account)
        return await self.mapper.find_drafts_folder(account, client)

    async def get_sent_folder(self, account: Account) -> Folder:
        client = await self.provider.get_connection(account)
        return await self.mapper.find_sent_folder(account, client)

    async def create_folder(
        self, account: Account, name: str, special_use: SpecialUse | None = None
    ) -> Folder:
        client = await self.provider.get_connection(account)
        folder = await self.mapper.create(account, client, name, special_use)
        logger.info(f"Created folder {name} for {account.email}")
        return folder

    async def delete_folder(self, account: Account, folder_id: str) -> None:
        client = await self.provider.get_connection(account)
        await self.mapper.delete(account, client, folder_id)
        logger.info(f"Deleted folder {folder_id} of {account.email}")

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync_messages(self, account: Account, request: SyncRequest) -> SyncResponse:
        """
        Compute the delta of one folder since the request's token.

        Raises:
            ServiceError: If the folder id is invalid or names no mailbox.
            IMAPError: If the server can't be queried.
        """
        folder = self.mapper.find(account, request.folder_id)
        client = await self.provider.get_connection(account)
        try:
            return await self.synchronizer.sync(client, folder, request)
        except MailboxNotFoundError as e:
            raise ServiceError(f"Invalid folder id {request.folder_id}: {e}") from e

    # =========================================================================
    # Messages
    # =========================================================================

    async def move_message(
        self,
        account: Account,
        source_folder_id: str,
        message_id: int,
        dest_folder_id: str,
    ) -> None:
        """
        Move one message (by UID) between folders of the same account.

        Raises:
            ServiceError: If either folder id is invalid, or the destination
                          is the search folder.
            IMAPError: If the server refuses the move.
        """
        source = self.mapper.find(account, source_folder_id)
        dest = self.mapper.find(account, dest_folder_id)
        if dest.kind is not FolderKind.REGULAR:
            raise ServiceError(f"Cannot move messages into {dest_folder_id}")

        client = await self.provider.get_connection(account)
        await client.copy(source.mailbox, dest.mailbox, [message_id], move=True)
        logger.debug(f"Moved message {message_id} from {source.mailbox} to {dest.mailbox}")

    async def delete_message(self, account: Account, source_folder_id: str, message_id: int) -> None:
        """
        Delete one message: move it to the trash, or expunge it if it's
        already there.

        Raises:
            ServiceError: If the folder id is invalid.
            IMAPError: If the server refuses the operation.
        """
        source = self.mapper.find(account, source_folder_id)
        client = await self.provider.get_connection(account)

        folders = await self.mapper.mapped_folders(account, client)
        trash = self.find_trash_folder(folders)
        trash_mailbox = trash.mailbox if trash is not None else DEFAULT_TRASH_NAME

        if source.mailbox == trash_mailbox:
            await client.expunge(source.mailbox, [message_id], delete=True)
            logger.info(f"Message {message_id} expunged from {trash_mailbox}")
            return

        await client.copy(
            source.mailbox, trash_mailbox, [message_id], move=True, create=trash is None
        )
        logger.info(f"Message {message_id} moved to trash {trash_mailbox}")

    def find_trash_folder(self, folders: list[Folder]) -> Folder | None:
        """The trash by role, else by name; None if the account has none."""
        regular = [f for f in folders if f.kind is FolderKind.REGULAR]
        trash = self.mapper.find_special_folder(regular, SpecialUse.TRASH)
        if trash is not None:
            return trash

        for folder in regular:
            if "trash" in folder.display_name.lower():
                return folder
        return None

    # =========================================================================
    # Diagnostics
    # =========================================================================

    async def test_connectivity(self, account: Account) -> bool:
        """
        Check that the account can connect and log in.

        A connection opened only for the check is closed again.
        """
        was_connected = self.provider.is_connected(account)
        try:
            client = await self.provider.get_connection(account)
            await client.noop()
        except IMAPError as e:
            logger.warning(f"Connectivity check failed for {account.email}: {e}")
            return False
        finally:
            if not was_connected:
                await self.provider.release(account)
        return True
