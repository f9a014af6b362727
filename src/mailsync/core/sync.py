# =============================================================================
# Sync Token, Request and Response
# =============================================================================
# A sync token marks how far a caller has synchronized one folder. It is a
# high-water mark of:
#   - UIDVALIDITY:    the mailbox epoch the token belongs to
#   - HIGHESTMODSEQ:  the last modification sequence seen (CONDSTORE only)
#   - max UID:        the highest UID the caller has been told about
#
# Callers treat the token as an opaque string and hand it back on the next
# sync. A token from another UIDVALIDITY epoch is not an error: it simply
# means "no prior state" and triggers a full resync.
# =============================================================================

import base64
import binascii
import json
from dataclasses import dataclass, field

from mailsync.core.message import MessageFlags, MessageSummary
from mailsync.errors import SyncError

# Bump when the encoded layout changes; older tokens then fail to decode and
# the folder is fully resynced.
TOKEN_VERSION = 1


@dataclass(frozen=True)
class SyncToken:
    """
    Decoded form of the opaque sync token.

    Attributes:
        uidvalidity: UIDVALIDITY epoch of the mailbox when the token was issued.
        highest_modseq: HIGHESTMODSEQ at that time, None if the server
                        does not support CONDSTORE for this mailbox.
        max_uid: Highest UID reported to the caller so far (0 if empty).
    """
    uidvalidity: int
    highest_modseq: int | None = None
    max_uid: int = 0

    def encode(self) -> str:
        """Serialize to an opaque, URL-safe string."""
        payload = json.dumps(
            [TOKEN_VERSION, self.uidvalidity, self.highest_modseq, self.max_uid],
            separators=(",", ":"),
        )
        return base64.urlsafe_b64encode(payload.encode("ascii")).decode("ascii")

    @classmethod
    def from_status(cls, status: dict[str, int]) -> "SyncToken | None":
        """Token for a mailbox's current STATUS, None without UIDVALIDITY."""
        uidvalidity = status.get("UIDVALIDITY")
        if uidvalidity is None:
            return None
        return cls(
            uidvalidity=uidvalidity,
            highest_modseq=status.get("HIGHESTMODSEQ"),
            max_uid=max(status.get("UIDNEXT", 1) - 1, 0),
        )

    @classmethod
    def decode(cls, token: str) -> "SyncToken":
        """
        Parse a token produced by encode().

        Raises:
            SyncError: If the token is malformed or from another version.
        """
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
            version, uidvalidity, modseq, max_uid = json.loads(raw)
        except (binascii.Error, UnicodeError, ValueError, TypeError) as e:
            raise SyncError(f"Malformed sync token: {token!r}") from e

        if version != TOKEN_VERSION:
            raise SyncError(f"Unsupported sync token version: {version}")
        if not isinstance(uidvalidity, int) or not isinstance(max_uid, int):
            raise SyncError(f"Malformed sync token: {token!r}")
        if modseq is not None and not isinstance(modseq, int):
            raise SyncError(f"Malformed sync token: {token!r}")

        return cls(uidvalidity=uidvalidity, highest_modseq=modseq, max_uid=max_uid)


@dataclass
class SyncRequest:
    """
    A request to synchronize one folder.

    Attributes:
        folder_id: Folder to sync (mailbox path, or "<mailbox>/FLAGGED" for
                   the flagged search folder).
        sync_token: Token returned by the previous sync, None on first sync.
        with_details: Also fetch envelope details for new messages.
        known_uids: UIDs the caller currently holds for this folder. Used to
                    detect vanished messages on servers that don't report
                    expunges (no QRESYNC). Optional.
    """
    folder_id: str
    sync_token: str | None = None
    with_details: bool = False
    known_uids: set[int] | None = None


@dataclass
class SyncResponse:
    """
    The delta since the request's token.

    Attributes:
        sync_token: Token to present on the next sync of this folder.
        new_messages: Newly visible messages, ordered by UID.
        changed_messages: UID -> new flags for messages whose flags changed.
        changed_keywords: UID -> current keywords, for every changed message
                          (a keyword-only change shows up here with the
                          system flags unchanged).
        vanished_messages: UIDs removed from the folder since the token,
                           sorted. Empty when the server gives no expunge
                           information (see Synchronizer).
        full_resync: True if this response was computed without prior state;
                     the caller should replace, not merge, its message list.
    """
    sync_token: str
    new_messages: list[MessageSummary] = field(default_factory=list)
    changed_messages: dict[int, MessageFlags] = field(default_factory=dict)
    changed_keywords: dict[int, frozenset[str]] = field(default_factory=dict)
    vanished_messages: list[int] = field(default_factory=list)
    full_resync: bool = False

    @property
    def new_uids(self) -> list[int]:
        """UIDs of the new messages, in order."""
        return [m.uid for m in self.new_messages]

    @property
    def is_empty(self) -> bool:
        """True if nothing changed since the token."""
        return not (self.new_messages or self.changed_messages or self.vanished_messages)
