# =============================================================================
# mailsync: Mailbox Synchronization Core
# =============================================================================
#
# mailsync connects to the IMAP store of each mail account, discovers its
# folder hierarchy, classifies folders by role (inbox, sent, drafts, trash,
# junk, archive, all mail, flagged) and synchronizes message state
# incrementally with opaque per-folder sync tokens.
#
# Features:
#   - One lazily created connection per account (SSL, STARTTLS or plain)
#   - SPECIAL-USE detection with a name heuristic fallback
#   - A virtual "flagged messages" folder next to the inbox
#   - CONDSTORE/QRESYNC deltas with a full resync fallback
#   - XDG Base Directory compliant configuration
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "mailsync"

__all__ = ["__version__", "__app_name__"]
