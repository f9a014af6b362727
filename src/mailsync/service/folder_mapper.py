# =============================================================================
# Folder Mapper
# =============================================================================
# Turns the server's mailbox listing into the Folder tree callers display:
#
#   list_folders()        LIST, drop internal mailboxes, synthesize the
#                         flagged search folder next to INBOX, attach tokens
#   get_folders_status()  one STATUS batch for the syncable folders (part of
#                         list_folders, callable again to refresh)
#   detect_special_use()  server SPECIAL-USE attributes, else name heuristic
#   sort_folders()        role rank, then name (top level only)
#   build_hierarchy()     parent/child links, returns the roots
#
# Given identical server responses every step produces the same order;
# nothing depends on set/dict iteration order or the clock.
# =============================================================================

import logging
from typing import TYPE_CHECKING

from mailsync.config import Config
from mailsync.core import Account, Folder, FolderKind, FolderStatus, SpecialUse, SyncToken
from mailsync.core.folder import (
    FLAGGED_SUFFIX,
    SPECIAL_USE_ATTRIBUTES,
    SPECIAL_USE_NAMES,
)
from mailsync.errors import ServiceError

if TYPE_CHECKING:
    from mailsync.imap.client import IMAPClient

logger = logging.getLogger(__name__)

# Internal mailboxes never shown to users (Dovecot keeps Sieve scripts in a
# mailbox on some setups, at top level or below INBOX). Exact matches only.
HIDDEN_MAILBOXES = frozenset({"dovecot.sieve", "INBOX.dovecot.sieve"})

# Mailbox that hosts the flagged search folder
INBOX = "INBOX"

# Display name of the flagged search folder before translation
SEARCH_FOLDER_NAME = "Favorites"


def make_search_folder(account_id: int, mailbox: str, attributes=(), delimiter: str | None = "/") -> Folder:
    """Build the virtual "flagged messages" view of a mailbox."""
    return Folder(
        mailbox=mailbox,
        account_id=account_id,
        attributes=list(attributes),
        delimiter=delimiter,
        kind=FolderKind.VIRTUAL_SEARCH,
        special_use=[SpecialUse.FLAGGED],
        display_name=SEARCH_FOLDER_NAME,
    )


class FolderMapper:
    """
    Builds, classifies and resolves folders of one account.

    Usage:
        >>> mapper = FolderMapper(config)
        >>> folders = await mapper.list_folders(account, client)
        >>> await mapper.get_folders_status(folders, client)  # refresh
        >>> mapper.detect_special_use(folders)
        >>> mapper.sort_folders(folders)
        >>> roots = mapper.build_hierarchy(folders)

    Attributes:
        require_condstore: Only folders on CONDSTORE/QRESYNC servers are
                           syncable ([sync] require_condstore).
    """

    def __init__(self, config: Config | None = None) -> None:
        self.require_condstore = config.sync.require_condstore if config else True

    # =========================================================================
    # Listing
    # =========================================================================

    def is_syncable(self, folder: Folder, client: "IMAPClient") -> bool:
        """Selectable, and the connection can do incremental sync."""
        if not folder.is_selectable:
            return False
        return client.supports_condstore or not self.require_condstore

    async def list_folders(self, account: Account, client: "IMAPClient", pattern: str = "*") -> list[Folder]:
        """
        List the account's folders in server order.

        The flagged search folder is inserted right after the real INBOX.
        Syncable folders get their status and current sync token from a
        single STATUS batch.
        """
        folders: list[Folder] = []
        for mailbox in await client.list_mailboxes(pattern):
            if mailbox.name in HIDDEN_MAILBOXES:
                logger.debug(f"Hiding internal mailbox {mailbox.name}")
                continue

            folder = Folder(
                mailbox=mailbox.name,
                account_id=account.id,
                attributes=list(mailbox.attributes),
                delimiter=mailbox.delimiter,
            )
            folder.syncable = self.is_syncable(folder, client)
            folders.append(folder)

            if mailbox.name == INBOX:
                search_folder = make_search_folder(
                    account.id, mailbox.name, mailbox.attributes, mailbox.delimiter
                )
                search_folder.syncable = self.is_syncable(search_folder, client)
                folders.append(search_folder)

        await self.get_folders_status(folders, client)
        logger.debug(f"Listed {len(folders)} folders for {account.email}")
        return folders

    async def get_folders_status(self, folders: list[Folder], client: "IMAPClient") -> None:
        """
        Attach STATUS and a fresh sync token to syncable folders, matched
        by exact mailbox. One STATUS batch covers every distinct mailbox.

        Folders missing from the response keep their current status.
        """
        mailboxes: list[str] = []
        for folder in folders:
            if folder.syncable and folder.mailbox not in mailboxes:
                mailboxes.append(folder.mailbox)
        if not mailboxes:
            return

        status = await client.status(mailboxes)
        for folder in folders:
            if folder.mailbox in status:
                folder.status = FolderStatus.from_dict(status[folder.mailbox])
                token = SyncToken.from_status(status[folder.mailbox]) if folder.syncable else None
                if token is not None:
                    folder.sync_token = token.encode()
            elif folder.syncable:
                logger.warning(f"No STATUS for {folder.mailbox}")

    # =========================================================================
    # Special-Use Detection
    # =========================================================================

    def detect_special_use(self, folders: list[Folder]) -> None:
        """Populate the role list of every folder that takes detection."""
        for folder in folders:
            if folder.behavior.detect_roles:
                self._detect_special_use(folder)

    def _detect_special_use(self, folder: Folder) -> None:
        # Servers disagree on casing: "\Trash", "\TRASH" and "\trash" all occur
        declared = {a.lstrip("\\").lower() for a in folder.attributes}
        for role in SPECIAL_USE_ATTRIBUTES:
            if role.value in declared:
                folder.add_special_use(role)

        if not folder.special_use:
            role = self.guess_special_use(folder)
            if role is not None:
                folder.add_special_use(role)

    @staticmethod
    def guess_special_use(folder: Folder) -> SpecialUse | None:
        """Guess a role from the folder's last path segment."""
        name = folder.leaf_name.lower()
        for role, candidates in SPECIAL_USE_NAMES.items():
            if name in candidates:
                return role
        return None

    # =========================================================================
    # Ordering and Hierarchy
    # =========================================================================

    @staticmethod
    def sort_key(folder: Folder) -> tuple[int, str, str]:
        """Role rank first (roleless last), then case-insensitive name."""
        return (folder.sort_rank, folder.display_name.lower(), folder.folder_id)

    def sort_folders(self, folders: list[Folder]) -> None:
        """Sort in place. Children are left in their current order."""
        folders.sort(key=self.sort_key)

    def build_hierarchy(self, folders: list[Folder]) -> list[Folder]:
        """
        Link children to parents and return the roots, in input order.

        Roots are search folders and folders whose parent isn't in the
        input. No folder is ever dropped.
        """
        # Only hierarchy members can be parents; a real "INBOX/FLAGGED"
        # mailbox must not be confused with the search folder.
        by_mailbox: dict[str, Folder] = {}
        for folder in folders:
            if folder.behavior.in_hierarchy:
                by_mailbox.setdefault(folder.mailbox, folder)

        roots: list[Folder] = []
        for folder in folders:
            parent_id = folder.parent_id
            parent = by_mailbox.get(parent_id) if parent_id is not None else None
            if parent is None or parent is folder:
                roots.append(folder)
            else:
                parent.add_folder(folder)
        return roots

    # =========================================================================
    # Resolution
    # =========================================================================

    @staticmethod
    def guess_best_folder(folders: list[Folder]) -> Folder | None:
        """The candidate holding the most messages; the first one on ties."""
        best: Folder | None = None
        for folder in folders:
            if best is None or folder.status.total > best.status.total:
                best = folder
        return best

    def find_special_folder(self, folders: list[Folder], role: SpecialUse) -> Folder | None:
        """Best folder carrying a role, or None."""
        return self.guess_best_folder([f for f in folders if f.has_role(role)])

    async def mapped_folders(self, account: Account, client: "IMAPClient") -> list[Folder]:
        """Flat folder list with status and roles, unsorted."""
        folders = await self.list_folders(account, client)
        self.detect_special_use(folders)
        return folders

    async def find_inbox(self, account: Account, client: "IMAPClient") -> Folder | None:
        """The inbox. Never created."""
        regular = [f for f in await self.mapped_folders(account, client) if f.kind is FolderKind.REGULAR]
        return self.find_special_folder(regular, SpecialUse.INBOX)

    async def find_drafts_folder(self, account: Account, client: "IMAPClient") -> Folder:
        """The drafts folder, created as "Drafts" if missing."""
        return await self._find_or_create(account, client, SpecialUse.DRAFTS, "Drafts")

    async def find_sent_folder(self, account: Account, client: "IMAPClient") -> Folder:
        """The sent folder, created as "Sent" if missing."""
        return await self._find_or_create(account, client, SpecialUse.SENT, "Sent")

    async def _find_or_create(
        self, account: Account, client: "IMAPClient", role: SpecialUse, name: str
    ) -> Folder:
        folders = await self.mapped_folders(account, client)
        folder = self.find_special_folder(folders, role)
        if folder is not None:
            return folder

        logger.info(f"No {role.value} folder for {account.email}, creating '{name}'")
        return await self.create(account, client, name, special_use=role)

    def find(self, account: Account, folder_id: str) -> Folder:
        """
        Resolve a folder id without touching the server.

        "<mailbox>/FLAGGED" (exactly two segments) names the search folder
        of <mailbox>; anything else is a mailbox path.

        Raises:
            ServiceError: If the id is empty.
        """
        if not folder_id:
            raise ServiceError("Invalid folder id: empty")

        parts = folder_id.split("/")
        if len(parts) == 2 and parts[0] and parts[1] == FLAGGED_SUFFIX:
            return make_search_folder(account.id, parts[0])
        return Folder(mailbox=folder_id, account_id=account.id)

    async def create(
        self,
        account: Account,
        client: "IMAPClient",
        name: str,
        special_use: SpecialUse | None = None,
    ) -> Folder:
        """
        Create a mailbox and return its folder.

        Raises:
            FolderOperationError: If the server refuses, with its reason.
        """
        await client.create_mailbox(name, special_use)
        folder = self.find(account, name)
        if special_use is not None:
            folder.add_special_use(special_use)
        return folder

    async def delete(self, account: Account, client: "IMAPClient", folder_id: str) -> None:
        """
        Delete the mailbox behind a folder id.

        Raises:
            ServiceError: For the virtual search folder.
            FolderOperationError: If the server refuses, with its reason.
        """
        folder = self.find(account, folder_id)
        if folder.kind is not FolderKind.REGULAR:
            raise ServiceError(f"Cannot delete virtual folder {folder_id}")
        await client.delete_mailbox(folder.mailbox)
