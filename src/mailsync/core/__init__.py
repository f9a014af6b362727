# =============================================================================
# mailsync Core Module
# =============================================================================
# This module contains the core domain models for mailsync. These are pure
# Python dataclasses with no external dependencies, so they can be imported
# anywhere without causing circular dependency issues.
#
# The core models represent the fundamental concepts of mailbox sync:
#   - Account: A mailbox owner (IMAP/SMTP parameters, encrypted credentials)
#   - Folder: A mailbox folder (Inbox, Sent, etc.) or a virtual search folder
#   - MessageSummary / MessageFlags: What a sync delta reports per message
#   - SyncToken / SyncRequest / SyncResponse: The incremental sync protocol
# =============================================================================

from mailsync.core.account import Account
from mailsync.core.folder import (
    Folder,
    FolderKind,
    FolderStatus,
    SpecialUse,
    flatten,
)
from mailsync.core.message import MessageFlags, MessageSummary
from mailsync.core.sync import SyncRequest, SyncResponse, SyncToken

__all__ = [
    "Account",
    "Folder",
    "FolderKind",
    "FolderStatus",
    "SpecialUse",
    "flatten",
    "MessageFlags",
    "MessageSummary",
    "SyncRequest",
    "SyncResponse",
    "SyncToken",
]
