# =============================================================================
# Message Model
# =============================================================================
# The synchronization core does not download or parse full messages (MIME
# handling lives elsewhere). It only tracks what a sync delta needs:
#   - the message UID within its mailbox
#   - the IMAP system flags, and keywords ($Forwarded, $Junk...) as strings
#   - optionally a few envelope fields, when the caller asks for details
# =============================================================================

from dataclasses import dataclass
from datetime import datetime
from enum import IntFlag


class MessageFlags(IntFlag):
    """
    Email message flags, stored as a bitmask for efficient storage.

    Standard IMAP flags (RFC 3501):
        - SEEN: Message has been read
        - ANSWERED: Message has been replied to
        - FLAGGED: User-flagged as important (usually shown as a star)
        - DELETED: Marked for deletion (will be purged on EXPUNGE)
        - DRAFT: Message is a draft (not yet sent)

    Usage:
        # Parse from a FETCH response
        flags = MessageFlags.from_imap("\\Seen \\Flagged")

        # Check flags
        if flags & MessageFlags.SEEN:
            print("Message has been read")
    """
    NONE = 0            # No flags set
    SEEN = 1 << 0       # Message has been read (\\Seen)
    ANSWERED = 1 << 1   # Message has been replied to (\\Answered)
    FLAGGED = 1 << 2    # User-flagged / starred (\\Flagged)
    DELETED = 1 << 3    # Marked for deletion (\\Deleted)
    DRAFT = 1 << 4      # Is a draft (\\Draft)

    @classmethod
    def from_imap(cls, flags_str: str) -> "MessageFlags":
        """Convert an IMAP flags string (the inside of FLAGS (...)) to flags."""
        result = cls.NONE
        for token in flags_str.split():
            result |= _IMAP_FLAGS.get(token.lower(), cls.NONE)
        return result

    @staticmethod
    def keywords_from_imap(flags_str: str) -> frozenset[str]:
        """Keywords of an IMAP flags string: every flag without a backslash."""
        return frozenset(token for token in flags_str.split() if not token.startswith("\\"))

    def to_imap(self) -> list[str]:
        """Convert back to IMAP flag names, e.g. ["\\Seen", "\\Flagged"]."""
        return [name for name, flag in _IMAP_NAMES if self & flag]


_IMAP_NAMES: tuple[tuple[str, MessageFlags], ...] = (
    ("\\Seen", MessageFlags.SEEN),
    ("\\Answered", MessageFlags.ANSWERED),
    ("\\Flagged", MessageFlags.FLAGGED),
    ("\\Deleted", MessageFlags.DELETED),
    ("\\Draft", MessageFlags.DRAFT),
)

_IMAP_FLAGS: dict[str, MessageFlags] = {name.lower(): flag for name, flag in _IMAP_NAMES}


@dataclass
class MessageSummary:
    """
    A message as reported by a sync delta.

    Attributes:
        uid: IMAP UID, unique within the mailbox for one UIDVALIDITY epoch.
        flags: Current flags of the message.
        keywords: Current keywords (flags without a backslash, "$Forwarded").
        modseq: Modification sequence (CONDSTORE servers only).

        subject, sender, sender_name, date_sent, message_id:
            Envelope details. Only filled when the sync request asked for
            details; empty otherwise.
    """
    uid: int
    flags: MessageFlags = MessageFlags.NONE
    keywords: frozenset[str] = frozenset()
    modseq: int | None = None

    # Envelope details (optional)
    subject: str = ""
    sender: str = ""
    sender_name: str = ""
    date_sent: datetime | None = None
    message_id: str = ""

    @property
    def is_read(self) -> bool:
        """Returns True if the message has been read."""
        return bool(self.flags & MessageFlags.SEEN)

    @property
    def is_flagged(self) -> bool:
        """Returns True if the message is flagged/starred."""
        return bool(self.flags & MessageFlags.FLAGGED)
