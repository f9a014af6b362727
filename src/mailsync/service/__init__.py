# =============================================================================
# Service Module
# =============================================================================
# Orchestration on top of the IMAP layer:
#   - FolderMapper: listing, classification, ordering and hierarchy
#   - FolderNameTranslator: localized names of role folders
#   - MailManager: the per-account facade callers use
#   - AccountSession: request-scoped account lookup and teardown
# =============================================================================

from mailsync.service.account_service import (
    AccountSession,
    AccountStore,
    ConfigAccountStore,
)
from mailsync.service.folder_mapper import FolderMapper
from mailsync.service.mail_manager import MailManager
from mailsync.service.translator import FolderNameTranslator

__all__ = [
    "AccountSession",
    "AccountStore",
    "ConfigAccountStore",
    "FolderMapper",
    "FolderNameTranslator",
    "MailManager",
]
