# =============================================================================
# Exceptions
# =============================================================================
# Every error raised by mailsync derives from MailSyncError so callers (a REST
# layer, the CLI) can catch the whole family in one place.
#
#   MailSyncError
#     ├── IMAPError                 protocol operation failed
#     │     ├── IMAPConnectionError auth / network / TLS (also a ConnectionError)
#     │     │     └── IMAPAuthenticationError
#     │     ├── FolderOperationError create / delete mailbox failed
#     │     └── MailboxNotFoundError STATUS found no such mailbox
#     ├── SyncError                 malformed or missing delta data
#     ├── ServiceError              orchestration failure (bad ids, etc.)
#     ├── DecryptionError           stored credential could not be decrypted
#     └── ConfigError               config file unreadable or invalid
#
# SyncError is normally handled inside the Synchronizer, which degrades to a
# full resync. The heuristics (special-use guessing, trash guessing) never
# raise at all.
# =============================================================================


class MailSyncError(Exception):
    """Base exception for all mailsync errors."""
    pass


class IMAPError(MailSyncError):
    """Raised when an IMAP operation fails."""
    pass


class IMAPConnectionError(IMAPError, ConnectionError):
    """Raised when unable to connect to the IMAP server (network, TLS, login)."""
    pass


class IMAPAuthenticationError(IMAPConnectionError):
    """Raised when the server rejects the account credentials."""
    pass


class FolderOperationError(IMAPError):
    """
    Raised when creating or deleting a mailbox fails.

    Attributes:
        mailbox: The mailbox the operation targeted.
        reason: The reason reported by the server (may be empty).
    """

    def __init__(self, mailbox: str, reason: str = "") -> None:
        self.mailbox = mailbox
        self.reason = reason
        message = f"Folder operation on '{mailbox}' failed"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class MailboxNotFoundError(IMAPError):
    """Raised when the server has no STATUS for a mailbox (it doesn't exist)."""

    def __init__(self, mailbox: str) -> None:
        self.mailbox = mailbox
        super().__init__(f"No such mailbox: {mailbox}")


class SyncError(MailSyncError):
    """Raised when sync state or server delta data is malformed or missing."""
    pass


class ServiceError(MailSyncError):
    """Raised for orchestration failures such as an invalid folder id."""
    pass


class DecryptionError(MailSyncError):
    """Raised when a stored credential cannot be decrypted."""
    pass


class ConfigError(MailSyncError):
    """Raised when there's an error loading or parsing configuration."""
    pass
