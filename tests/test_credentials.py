import keyring
import pytest
from cryptography.fernet import Fernet

from mailsync.credentials import KEYRING_KEY_NAME, FernetCredentialStore
from mailsync.errors import DecryptionError


@pytest.fixture
def fake_keyring(monkeypatch):
    """Replace the system keyring with a dict."""
    entries: dict[tuple[str, str], str] = {}
    monkeypatch.setattr(keyring, "get_password", lambda service, user: entries.get((service, user)))
    monkeypatch.setattr(
        keyring, "set_password", lambda service, user, value: entries.__setitem__((service, user), value)
    )
    return entries


def test_encrypt_decrypt_round_trip() -> None:
    store = FernetCredentialStore(key=Fernet.generate_key())

    token = store.encrypt("hunter2 ünïcode")

    assert token != "hunter2 ünïcode"
    assert store.decrypt(token) == "hunter2 ünïcode"


def test_other_key_cannot_decrypt() -> None:
    token = FernetCredentialStore(key=Fernet.generate_key()).encrypt("secret")

    with pytest.raises(DecryptionError):
        FernetCredentialStore(key=Fernet.generate_key()).decrypt(token)


@pytest.mark.parametrize("ciphertext", ["", "not-a-token", "gAAAAAB-truncated"])
def test_garbage_raises_decryption_error(ciphertext) -> None:
    with pytest.raises(DecryptionError):
        FernetCredentialStore(key=Fernet.generate_key()).decrypt(ciphertext)


def test_key_is_generated_once_and_kept_in_keyring(fake_keyring) -> None:
    token = FernetCredentialStore(service="test-service").encrypt("secret")

    assert ("test-service", KEYRING_KEY_NAME) in fake_keyring
    assert FernetCredentialStore(service="test-service").decrypt(token) == "secret"


def test_unreadable_key_is_never_replaced(fake_keyring) -> None:
    fake_keyring[("test-service", KEYRING_KEY_NAME)] = "not a fernet key"

    with pytest.raises(DecryptionError):
        FernetCredentialStore(service="test-service").encrypt("secret")

    assert fake_keyring[("test-service", KEYRING_KEY_NAME)] == "not a fernet key"
