# =============================================================================
# Credential Store
# =============================================================================
# Account passwords are stored encrypted (Fernet: AES-128-CBC + HMAC) in the
# config file. The Fernet key itself lives in the system keyring, so the
# config file alone is useless to an attacker.
#
# Key location:
#   keyring service: [credentials] keyring_service (default "mailsync")
#   keyring user:    "encryption-key"
#
# The key is generated on first use. Losing it makes every stored password
# undecryptable. Create ciphertexts with `mailsync encrypt-password`.
# =============================================================================

import logging
from typing import Protocol

import keyring
from cryptography.fernet import Fernet, InvalidToken

from mailsync.errors import DecryptionError

logger = logging.getLogger(__name__)

# Keyring username under which the Fernet key is stored
KEYRING_KEY_NAME = "encryption-key"


class CredentialStore(Protocol):
    """Anything that can turn a stored ciphertext back into a password."""

    def decrypt(self, ciphertext: str) -> str: ...


class FernetCredentialStore:
    """
    Encrypts and decrypts account passwords with a keyring-held Fernet key.

    Usage:
        >>> store = FernetCredentialStore()
        >>> ciphertext = store.encrypt("hunter2")
        >>> store.decrypt(ciphertext)
        'hunter2'

    Attributes:
        service: Keyring service name holding the key.
    """

    def __init__(self, service: str = "mailsync", key: bytes | None = None) -> None:
        """
        Args:
            service: Keyring service name.
            key: Explicit Fernet key. When given, the keyring is not used.
        """
        self.service = service
        self._fernet: Fernet | None = Fernet(key) if key else None

    def _cipher(self) -> Fernet:
        """Load (or on first use, create and store) the Fernet key."""
        if self._fernet is not None:
            return self._fernet

        stored = keyring.get_password(self.service, KEYRING_KEY_NAME)
        if stored:
            try:
                self._fernet = Fernet(stored.encode("ascii"))
                return self._fernet
            except (ValueError, UnicodeError) as e:
                # Never replace an unreadable key: stored passwords depend on it.
                raise DecryptionError(
                    f"Keyring entry {self.service}/{KEYRING_KEY_NAME} is not a valid key"
                ) from e

        logger.info(f"Generating new encryption key in keyring service '{self.service}'")
        key = Fernet.generate_key()
        keyring.set_password(self.service, KEYRING_KEY_NAME, key.decode("ascii"))
        self._fernet = Fernet(key)
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a password into an ASCII token suitable for the config file."""
        return self._cipher().encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a token produced by encrypt().

        Raises:
            DecryptionError: If the token is empty, corrupted or was
                             encrypted with another key.
        """
        if not ciphertext:
            raise DecryptionError("No stored password")

        try:
            return self._cipher().decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise DecryptionError("Stored password is invalid or was encrypted with another key") from e
        except UnicodeError as e:
            raise DecryptionError(f"Stored password is not valid text: {e}") from e
