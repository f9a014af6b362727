# =============================================================================
# Folder Model
# =============================================================================
# Represents a mailbox folder (IMAP "mailbox"). Common folders include:
#   - INBOX: Primary incoming mail
#   - Sent: Copies of sent messages
#   - Drafts: Unsent message drafts
#   - Trash: Deleted messages
#   - Junk/Spam: Messages flagged as spam
#
# IMAP allows arbitrary folder hierarchies, so users may have custom folders
# like "Work/Projects/Alpha" or "INBOX.Receipts.2024". The hierarchy
# delimiter is chosen by the server and may even differ between folders.
#
# Besides real mailboxes there is one synthesized folder: the "flagged"
# virtual search folder, a view of the INBOX's flagged messages. It has no
# server counterpart and never takes part in the hierarchy.
# =============================================================================

from dataclasses import dataclass, field
from enum import Enum, auto


class SpecialUse(Enum):
    """
    Semantic roles a folder can have.

    These map to IMAP SPECIAL-USE attributes (RFC 6154) when available,
    or are inferred from common naming conventions. The values are the
    lower-cased attribute names without the leading backslash.
    """
    ALL = "all"             # Every message (Gmail's "All Mail")
    INBOX = "inbox"         # Primary incoming mail
    FLAGGED = "flagged"     # Flagged/starred messages
    DRAFTS = "drafts"       # Unsent drafts
    SENT = "sent"           # Sent messages
    ARCHIVE = "archive"     # Archived messages
    JUNK = "junk"           # Spam/junk mail
    TRASH = "trash"         # Deleted messages (before permanent deletion)
    UNKNOWN = "unknown"     # A role we don't rank


# Sort rank of each role. Roles missing from this table (UNKNOWN) sort like
# folders without any role.
SPECIAL_USE_RANK: dict[SpecialUse, int] = {
    SpecialUse.ALL: 0,
    SpecialUse.INBOX: 1,
    SpecialUse.FLAGGED: 2,
    SpecialUse.DRAFTS: 3,
    SpecialUse.SENT: 4,
    SpecialUse.ARCHIVE: 5,
    SpecialUse.JUNK: 6,
    SpecialUse.TRASH: 7,
}

# Server-declared SPECIAL-USE attributes we recognize, in the order they are
# checked. The order decides which role comes first when a server declares
# several on one folder.
SPECIAL_USE_ATTRIBUTES: tuple[SpecialUse, ...] = (
    SpecialUse.ALL,
    SpecialUse.ARCHIVE,
    SpecialUse.DRAFTS,
    SpecialUse.FLAGGED,
    SpecialUse.JUNK,
    SpecialUse.SENT,
    SpecialUse.TRASH,
)

# Name heuristic for servers without SPECIAL-USE. Keys are checked in order
# against the lower-cased last path segment of the mailbox.
SPECIAL_USE_NAMES: dict[SpecialUse, tuple[str, ...]] = {
    SpecialUse.INBOX: ("inbox",),
    SpecialUse.SENT: ("sent", "sent items", "sent messages", "sent-mail", "sentmail"),
    SpecialUse.DRAFTS: ("draft", "drafts"),
    SpecialUse.ARCHIVE: ("archive", "archives"),
    SpecialUse.TRASH: ("deleted messages", "trash"),
    SpecialUse.JUNK: ("junk", "spam", "bulk mail"),
}

# LIST attributes that mark a mailbox as not selectable
NOSELECT_ATTRIBUTES = frozenset({"\\noselect", "\\nonexistent"})

# Suffix appended to the host mailbox to build the search folder's id
FLAGGED_SUFFIX = "FLAGGED"


class FolderKind(Enum):
    """Whether a folder is a real server mailbox or a synthesized view."""
    REGULAR = auto()
    VIRTUAL_SEARCH = auto()


@dataclass(frozen=True)
class FolderKindBehavior:
    """
    Kind-specific behavior, looked up in FOLDER_KIND_BEHAVIOR.

    Attributes:
        in_hierarchy: Whether the folder may be adopted as a child or adopt
                      children of its own.
        detect_roles: Whether special-use detection applies. Virtual search
                      folders carry a fixed role instead.
        id_suffix: Appended to the mailbox to form the folder id.
    """
    in_hierarchy: bool
    detect_roles: bool
    id_suffix: str | None = None


FOLDER_KIND_BEHAVIOR: dict[FolderKind, FolderKindBehavior] = {
    FolderKind.REGULAR: FolderKindBehavior(in_hierarchy=True, detect_roles=True),
    FolderKind.VIRTUAL_SEARCH: FolderKindBehavior(
        in_hierarchy=False, detect_roles=False, id_suffix=FLAGGED_SUFFIX
    ),
}


@dataclass
class FolderStatus:
    """
    Message counts and UID state of a mailbox (from IMAP STATUS).

    Attributes:
        total: Total number of messages (MESSAGES).
        unseen: Number of unread messages (UNSEEN).
        uidvalidity: UID validity epoch (UIDVALIDITY). If this changes,
                     ALL previously seen UIDs for the mailbox are invalid.
        uidnext: Predicted next UID (UIDNEXT).
        highest_modseq: Highest modification sequence (CONDSTORE servers).
    """
    total: int = 0
    unseen: int = 0
    uidvalidity: int | None = None
    uidnext: int | None = None
    highest_modseq: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, int]) -> "FolderStatus":
        """Build a status from a parsed STATUS response (upper-case keys)."""
        return cls(
            total=data.get("MESSAGES", 0),
            unseen=data.get("UNSEEN", 0),
            uidvalidity=data.get("UIDVALIDITY"),
            uidnext=data.get("UIDNEXT"),
            highest_modseq=data.get("HIGHESTMODSEQ"),
        )


@dataclass
class Folder:
    """
    Represents a mailbox folder in an email account.

    Attributes:
        mailbox: The full server path (e.g., "INBOX", "Work/Projects").
        account_id: The Account this folder belongs to.
        attributes: Raw LIST attributes as sent by the server
                    (e.g., ["\\HasNoChildren", "\\Sent"]).
        delimiter: The hierarchy delimiter for this folder (usually "/" or ".").
                   None on servers with a flat namespace.
        kind: Real mailbox or virtual search folder.

        special_use: Roles of this folder, ordered; the first entry is the
                     primary role used for sorting. Once populated it is
                     authoritative for the rest of the pass.
        status: Message counts / UID state snapshot.
        sync_token: Opaque sync token, only set on syncable folders.
        syncable: Whether the folder can take part in incremental sync.
        children: Sub-folders, filled by FolderMapper.build_hierarchy().
        display_name: Name shown to the user. Defaults to the last path
                      segment; the translator may replace it.

    Example:
        >>> folder = Folder(mailbox="INBOX/Drafts", account_id=1, delimiter="/")
        >>> folder.parent_id
        'INBOX'
    """

    # Folder identification
    mailbox: str
    account_id: int
    attributes: list[str] = field(default_factory=list)
    delimiter: str | None = "/"
    kind: FolderKind = FolderKind.REGULAR

    # Folder classification
    special_use: list[SpecialUse] = field(default_factory=list)

    # Server state
    status: FolderStatus = field(default_factory=FolderStatus)
    sync_token: str | None = None
    syncable: bool = False

    # Hierarchy
    children: list["Folder"] = field(default_factory=list, repr=False)

    display_name: str = ""

    def __post_init__(self) -> None:
        """Derive the default display name from the mailbox path."""
        if not self.display_name:
            self.display_name = self.leaf_name

    @property
    def behavior(self) -> FolderKindBehavior:
        """Kind-specific behavior of this folder."""
        return FOLDER_KIND_BEHAVIOR[self.kind]

    @property
    def folder_id(self) -> str:
        """
        Identifier unique within one folder listing.

        Real mailboxes are identified by their path; the virtual search
        folder appends a suffix to its host mailbox ("INBOX/FLAGGED").
        """
        suffix = self.behavior.id_suffix
        if suffix:
            return f"{self.mailbox}/{suffix}"
        return self.mailbox

    @property
    def parent_id(self) -> str | None:
        """
        Returns the parent folder id, or None if this is a top-level folder.

        Example:
            >>> Folder(mailbox="Work/Projects/Alpha", ...).parent_id
            "Work/Projects"
            >>> Folder(mailbox="INBOX", ...).parent_id
            None
        """
        if not self.behavior.in_hierarchy:
            return None
        if self.delimiter and self.delimiter in self.mailbox:
            parent = self.mailbox.rsplit(self.delimiter, 1)[0]
            return parent or None
        return None

    @property
    def leaf_name(self) -> str:
        """
        Returns just the folder name without parent path.

        Example:
            >>> Folder(mailbox="Work/Projects/Alpha", ...).leaf_name
            "Alpha"
        """
        if self.delimiter and self.delimiter in self.mailbox:
            return self.mailbox.rsplit(self.delimiter, 1)[1]
        return self.mailbox

    @property
    def is_selectable(self) -> bool:
        """False for \\Noselect / \\NonExistent placeholders."""
        return not any(a.lower() in NOSELECT_ATTRIBUTES for a in self.attributes)

    @property
    def primary_role(self) -> SpecialUse | None:
        """The first role of this folder, or None if it has none."""
        return self.special_use[0] if self.special_use else None

    @property
    def sort_rank(self) -> int:
        """Rank of the primary role; unranked folders sort after all ranks."""
        role = self.primary_role
        if role is None or role not in SPECIAL_USE_RANK:
            return len(SPECIAL_USE_RANK)
        return SPECIAL_USE_RANK[role]

    def has_role(self, role: SpecialUse) -> bool:
        """Returns True if this folder carries the given role."""
        return role in self.special_use

    def add_special_use(self, role: SpecialUse) -> None:
        """Add a role, keeping the list free of duplicates."""
        if role not in self.special_use:
            self.special_use.append(role)

    def add_folder(self, child: "Folder") -> None:
        """Adopt a child folder (ignored for kinds outside the hierarchy)."""
        if self.behavior.in_hierarchy and child.behavior.in_hierarchy:
            self.children.append(child)

    def walk(self):
        """Yield this folder and all of its descendants, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()

    def __str__(self) -> str:
        """Human-readable representation."""
        unread_indicator = f" ({self.status.unseen})" if self.status.unseen > 0 else ""
        return f"{self.display_name}{unread_indicator}"


def flatten(folders: list[Folder]) -> list[Folder]:
    """Return every folder reachable from the given roots, depth first."""
    return [f for root in folders for f in root.walk()]
