# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating mailsync configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/mailsync/  (default: ~/.config/mailsync/)
#   - Data:    $XDG_DATA_HOME/mailsync/    (default: ~/.local/share/mailsync/)
#   - Cache:   $XDG_CACHE_HOME/mailsync/   (default: ~/.cache/mailsync/)
#   - State:   $XDG_STATE_HOME/mailsync/   (default: ~/.local/state/mailsync/)
#
# Files:
#   - config.toml: User configuration (accounts, IMAP and sync settings)
#   - mailsync.db: SQLite database with sync tokens (in state directory)
#   - cache.db: Response cache (in cache directory)
#   - imap-debug.log: Protocol trace when [imap] debug = true (in state directory)
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from mailsync.core import Account
from mailsync.errors import ConfigError


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "mailsync"


def _xdg_dir(env_var: str, *default: str) -> Path:
    """Resolve one XDG base directory, falling back to the XDG default."""
    value = os.environ.get(env_var)
    base = Path(value) if value else Path.home().joinpath(*default)
    return base / APP_NAME


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for mailsync.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/mailsync/
    This is where user configuration files live (config.toml).
    """
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def get_xdg_data_home() -> Path:
    """Returns $XDG_DATA_HOME/mailsync, default ~/.local/share/mailsync/."""
    return _xdg_dir("XDG_DATA_HOME", ".local", "share")


def get_xdg_cache_home() -> Path:
    """
    Returns the XDG cache directory for mailsync.

    Cache can be safely deleted without data loss.
    """
    return _xdg_dir("XDG_CACHE_HOME", ".cache")


def get_xdg_state_home() -> Path:
    """
    Returns the XDG state directory for mailsync.

    State is like cache but shouldn't be thrown away: sync tokens live here.
    """
    return _xdg_dir("XDG_STATE_HOME", ".local", "state")


def ensure_directories() -> dict[str, Path]:
    """
    Creates all required XDG directories if they don't exist.

    Returns:
        Dictionary mapping directory type to path.
    """
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
        "cache": get_xdg_cache_home(),
        "state": get_xdg_state_home(),
    }

    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)

    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class ImapConfig:
    """
    Configuration for IMAP connections.

    Attributes:
        timeout: Connection-level timeout in seconds. There is no per-call
                 override: a stuck network call blocks until this elapses.
        debug: Write a protocol trace to imap-debug.log in the state dir.
        server_side_cache: Use the response cache when a cache backend is
                           available. Without a backend this is a no-op.
    """
    timeout: int = 20
    debug: bool = False
    server_side_cache: bool = True


@dataclass
class SyncConfig:
    """
    Configuration for folder synchronization.

    Attributes:
        require_condstore: Only treat folders as syncable when the server
                           advertises CONDSTORE or QRESYNC. When False, any
                           selectable folder is syncable, but flag changes
                           can't be detected on servers without CONDSTORE.
        fetch_batch_size: Maximum UIDs per FETCH command.
    """
    require_condstore: bool = True
    fetch_batch_size: int = 100


@dataclass
class L10nConfig:
    """
    Configuration for folder name translation.

    Attributes:
        locale: gettext locale for role folder names ("" = untranslated).
    """
    locale: str = ""


@dataclass
class CredentialsConfig:
    """
    Configuration for the credential store.

    Attributes:
        keyring_service: Keyring service name holding the encryption key.
                         Manage it with: keyring get mailsync encryption-key
    """
    keyring_service: str = APP_NAME


@dataclass
class Config:
    """
    Main configuration container for mailsync.

    Attributes:
        accounts: Configured email accounts, keyed by name.
        imap: IMAP connection configuration.
        sync: Synchronization configuration.
        l10n: Folder name translation configuration.
        credentials: Credential store configuration.

    Usage:
        >>> config = Config.load()
        >>> print(config.accounts['personal'].email)
        'user@example.com'
    """
    # Account configurations (name -> Account)
    accounts: dict[str, Account] = field(default_factory=dict)

    # Subsystem configurations
    imap: ImapConfig = field(default_factory=ImapConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    l10n: L10nConfig = field(default_factory=L10nConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def database_path() -> Path:
        """Returns the path to the SQLite database holding sync tokens."""
        return get_xdg_state_home() / "mailsync.db"

    @staticmethod
    def cache_database_path() -> Path:
        """Returns the path to the response cache database."""
        return get_xdg_cache_home() / "cache.db"

    @staticmethod
    def imap_debug_log_path() -> Path:
        """Returns the path of the IMAP protocol trace."""
        return get_xdg_state_home() / "imap-debug.log"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from the config file.

        If the config file doesn't exist, returns default configuration.
        Creates necessary directories if they don't exist.

        Args:
            path: Config file to read. Defaults to the XDG location.

        Returns:
            Loaded Config object.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        ensure_directories()

        config_path = path or cls.config_file_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """
        Save configuration to the config file.

        Creates the config directory if it doesn't exist.
        """
        config_path = path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        This handles the nested structure of the config file and
        converts account entries into Account objects.
        """
        config = cls()

        imap = data.get("imap", {})
        try:
            timeout = int(imap.get("timeout", 20))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"[imap] timeout must be an integer: {imap.get('timeout')!r}") from e
        config.imap = ImapConfig(
            timeout=timeout,
            debug=imap.get("debug", False),
            server_side_cache=imap.get("server_side_cache", True),
        )

        sync = data.get("sync", {})
        config.sync = SyncConfig(
            require_condstore=sync.get("require_condstore", True),
            fetch_batch_size=sync.get("fetch_batch_size", 100),
        )

        l10n = data.get("l10n", {})
        config.l10n = L10nConfig(locale=l10n.get("locale", ""))

        credentials = data.get("credentials", {})
        config.credentials = CredentialsConfig(
            keyring_service=credentials.get("keyring_service", APP_NAME),
        )

        # Accounts - each key under [accounts] is an account name
        accounts_data = data.get("accounts", {})
        for name, acct_data in accounts_data.items():
            if "id" not in acct_data:
                raise ConfigError(f"Account '{name}' has no id")
            config.accounts[name] = Account(
                id=int(acct_data["id"]),
                name=name,
                email=acct_data.get("email", ""),
                user_id=acct_data.get("user_id", ""),
                alias=acct_data.get("alias") or None,
                imap_host=acct_data.get("imap_host", ""),
                imap_port=acct_data.get("imap_port", 993),
                imap_security=acct_data.get("imap_security", ""),
                imap_user=acct_data.get("imap_user", ""),
                imap_password=acct_data.get("imap_password", ""),
                smtp_host=acct_data.get("smtp_host", ""),
                smtp_port=acct_data.get("smtp_port", 587),
                smtp_security=acct_data.get("smtp_security", "starttls"),
                smtp_user=acct_data.get("smtp_user", ""),
                smtp_password=acct_data.get("smtp_password", ""),
            )

        return config

    def _to_dict(self) -> dict[str, Any]:
        """
        Convert Config to a dictionary for TOML serialization.
        """
        data: dict[str, Any] = {}

        data["imap"] = {
            "timeout": self.imap.timeout,
            "debug": self.imap.debug,
            "server_side_cache": self.imap.server_side_cache,
        }

        data["sync"] = {
            "require_condstore": self.sync.require_condstore,
            "fetch_batch_size": self.sync.fetch_batch_size,
        }

        data["l10n"] = {"locale": self.l10n.locale}

        data["credentials"] = {"keyring_service": self.credentials.keyring_service}

        # Accounts (TOML has no null, so an unset alias is simply left out)
        data["accounts"] = {}
        for name, account in self.accounts.items():
            entry = {
                "id": account.id,
                "email": account.email,
                "user_id": account.user_id,
                "imap_host": account.imap_host,
                "imap_port": account.imap_port,
                "imap_security": account.imap_security,
                "imap_user": account.imap_user,
                "imap_password": account.imap_password,
                "smtp_host": account.smtp_host,
                "smtp_port": account.smtp_port,
                "smtp_security": account.smtp_security,
                "smtp_user": account.smtp_user,
                "smtp_password": account.smtp_password,
            }
            if account.alias:
                entry["alias"] = account.alias
            data["accounts"][name] = entry

        return data


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths() -> None:
    """
    Print all XDG paths for debugging.
    Useful for users wondering where their config/data is stored.
    """
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print(f"Cache:   {get_xdg_cache_home()}")
    print(f"State:   {get_xdg_state_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Database:     {Config.database_path()}")
    print(f"Cache:        {Config.cache_database_path()}")
