# =============================================================================
# Account Model
# =============================================================================
# Represents one mailbox owner: identity, display name and the connection
# parameters for the inbound (IMAP) and outbound (SMTP) servers.
#
# IMPORTANT: Passwords are stored here ENCRYPTED. They are only decrypted by
# the ConnectionProvider at the moment a connection is opened, using the
# credential store (see mailsync.credentials). Never log these fields.
# =============================================================================

import hashlib
from dataclasses import dataclass, field


@dataclass
class Account:
    """
    Represents an email account with IMAP and SMTP configuration.

    Attributes:
        id: Stable integer identity of the account.
        name: The account's name as configured by its owner.
        email: The email address associated with this account.
        user_id: The user owning this account. Accounts are looked up per user.
        alias: Optional alias name. When set it overrides ``name`` as the
               display name (e.g. when sending from an alias address).

        imap_host: Hostname of the IMAP server (e.g., "imap.example.com").
        imap_port: Port for IMAP connection. Standard ports:
                   - 993 for IMAP with implicit TLS
                   - 143 for IMAP with STARTTLS or no security
        imap_security: Connection security mode. Three-valued:
                   - "none": unsecured connection
                   - "" (empty): resolved to implicit TLS ("ssl")
                   - anything else is passed through (e.g. "starttls")
        imap_user: Login name. Defaults to the email address.
        imap_password: Encrypted password (credential store ciphertext).

        smtp_host, smtp_port, smtp_security, smtp_user, smtp_password:
                   Outbound parameters. Kept with the account but not used
                   by the synchronization core.

    Example:
        >>> account = Account(
        ...     id=1,
        ...     name="Jane Doe",
        ...     email="jane@example.com",
        ...     imap_host="imap.example.com",
        ...     imap_password=store.encrypt("secret"),
        ... )
    """

    # Account identification
    id: int
    name: str
    email: str
    user_id: str = ""
    alias: str | None = None

    # IMAP configuration (for receiving emails)
    imap_host: str = ""
    imap_port: int = 993
    imap_security: str = ""             # "" -> implicit TLS
    imap_user: str = ""
    imap_password: str = field(default="", repr=False)

    # SMTP configuration (for sending emails)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_security: str = "starttls"
    smtp_user: str = ""
    smtp_password: str = field(default="", repr=False)

    def __post_init__(self) -> None:
        """Default the login names to the email address."""
        if not self.imap_user:
            self.imap_user = self.email
        if not self.smtp_user:
            self.smtp_user = self.email

    @property
    def display_name(self) -> str:
        """The alias if one is set, otherwise the account name."""
        return self.alias if self.alias else self.name

    @property
    def cache_namespace(self) -> str:
        """
        Stable key for this account's response cache.

        Derived from the account id and email address so that two accounts
        never share cached data, and the key survives process restarts.
        """
        return hashlib.md5(f"{self.id}{self.email}".encode("utf-8")).hexdigest()

    def __str__(self) -> str:
        """Human-readable representation showing account name and email."""
        return f"{self.display_name} <{self.email}>"
