# =============================================================================
# IMAP Module
# =============================================================================
# Handles all IMAP (Internet Message Access Protocol) operations:
#   - Connecting to IMAP servers with SSL/STARTTLS, one connection per account
#   - Listing folders and their STATUS
#   - Copying, moving and expunging messages
#   - Incremental sync with opaque per-folder tokens (CONDSTORE/QRESYNC)
#
# This module uses aioimaplib for async IMAP operations.
# =============================================================================

from mailsync.imap.client import (
    ConnectionState,
    IMAPClient,
    MailboxInfo,
)
from mailsync.imap.connection import ConnectionProvider, resolve_security
from mailsync.imap.sync import SyncState, Synchronizer

__all__ = [
    # Client
    "IMAPClient",
    "ConnectionState",
    "MailboxInfo",
    # Connections
    "ConnectionProvider",
    "resolve_security",
    # Sync
    "Synchronizer",
    "SyncState",
]
