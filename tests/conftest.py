# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the mailsync test suite.
# =============================================================================

import pytest
import tempfile
from pathlib import Path

from mailsync.config import Config
from mailsync.core import Account, Folder, FolderStatus, MessageFlags
from mailsync.imap import ConnectionProvider, Synchronizer
from mailsync.service import FolderMapper, MailManager

from tests.fakes import FakeClientFactory, FakeCredentialStore, FakeIMAPClient


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def xdg_dirs(tmp_path, monkeypatch):
    """Keep config, state and cache files out of the real home directory."""
    for var in ("XDG_CONFIG_HOME", "XDG_DATA_HOME", "XDG_CACHE_HOME", "XDG_STATE_HOME"):
        monkeypatch.setenv(var, str(tmp_path / var.lower()))


@pytest.fixture
def sample_account():
    """Create a sample Account for testing."""
    return Account(
        id=1,
        name="test",
        email="test@example.com",
        user_id="user-1",
        imap_host="imap.example.com",
        imap_port=993,
        imap_security="",
        imap_password="enc:secret",
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_security="starttls",
    )


@pytest.fixture
def sample_folder():
    """Create a sample Folder for testing."""
    return Folder(
        mailbox="INBOX",
        account_id=1,
        attributes=["\\HasNoChildren"],
        status=FolderStatus(total=100, unseen=5, uidvalidity=1234567890, uidnext=101),
    )


@pytest.fixture
def fake_client():
    """
    A CONDSTORE server with an inbox of three messages (uid 2 flagged),
    a Sent folder and a Trash folder.
    """
    client = FakeIMAPClient()
    client.add_mailbox("INBOX", "\\HasNoChildren")
    client.add_mailbox("Sent", "\\Sent")
    client.add_mailbox("Trash", "\\Trash")
    client.add_message("INBOX", MessageFlags.SEEN)
    client.add_message("INBOX", MessageFlags.FLAGGED)
    client.add_message("INBOX")
    return client


@pytest.fixture
def config():
    """Default configuration without accounts."""
    return Config()


@pytest.fixture
def client_factory(fake_client):
    return FakeClientFactory(fake_client)


@pytest.fixture
def provider(config, client_factory):
    return ConnectionProvider(config, FakeCredentialStore(), client_factory=client_factory)


@pytest.fixture
def mail_manager(config, provider):
    return MailManager(provider, FolderMapper(config), Synchronizer())
