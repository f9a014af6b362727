import getpass

import keyring
import pytest

from mailsync import cli
from mailsync.config import Config
from mailsync.core import Account, MessageFlags
from mailsync.credentials import FernetCredentialStore
from mailsync.imap import ConnectionProvider

from tests.fakes import FakeClientFactory, FakeCredentialStore


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.toml"
    config = Config()
    config.accounts["test"] = Account(
        id=1,
        name="test",
        email="test@example.com",
        imap_host="imap.example.com",
        imap_password="enc:secret",
    )
    config.save(path)
    return path


@pytest.fixture
def fake_server(monkeypatch, fake_client):
    """Route the CLI's connections to the in-memory server."""
    def provider(config, credentials, cache_factory=None):
        return ConnectionProvider(
            config,
            FakeCredentialStore(),
            cache_factory,
            client_factory=FakeClientFactory(fake_client),
        )

    monkeypatch.setattr(cli, "ConnectionProvider", provider)
    return fake_client


def test_paths(capsys) -> None:
    assert cli.main(["--paths"]) == 0

    out = capsys.readouterr().out
    assert "Config file:" in out
    assert "mailsync.db" in out


def test_no_command(capsys) -> None:
    assert cli.main([]) == 2
    assert "no command given" in capsys.readouterr().err


def test_unknown_account(config_file, capsys) -> None:
    assert cli.main(["--config", str(config_file), "folders", "nobody"]) == 1
    assert "Unknown account 'nobody'" in capsys.readouterr().err


def test_invalid_config_file(tmp_path, capsys) -> None:
    path = tmp_path / "config.toml"
    path.write_text("[imap\n", encoding="utf-8")

    assert cli.main(["--config", str(path), "folders"]) == 1
    assert capsys.readouterr().err.startswith("Error: Invalid config file")


def test_folders_prints_the_tree(config_file, fake_server, capsys) -> None:
    fake_server.add_mailbox("Sent/2023")

    assert cli.main(["--config", str(config_file), "folders"]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "test <test@example.com>"
    assert lines[1].strip().startswith("Inbox")
    assert lines[2].strip().startswith("Favorites")
    assert "    2023" in lines


def test_sync_twice_reports_the_delta(config_file, fake_server, capsys) -> None:
    args = ["--config", str(config_file), "sync", "test", "INBOX"]

    assert cli.main(args) == 0
    assert "INBOX: full sync, 3 new, 0 changed, 0 vanished" in capsys.readouterr().out

    fake_server.set_flags("INBOX", 3, MessageFlags.SEEN)
    fake_server.remove_message("INBOX", 1)

    assert cli.main(args) == 0
    assert "INBOX: incremental sync, 0 new, 1 changed, 1 vanished" in capsys.readouterr().out


def test_sync_with_details_lists_new_messages(config_file, fake_server, capsys) -> None:
    assert cli.main(["--config", str(config_file), "sync", "test", "INBOX", "--details"]) == 0

    out = capsys.readouterr().out
    assert "sender2@example.com" in out
    assert "Message 3" in out


def test_encrypt_password(monkeypatch, capsys) -> None:
    entries = {}
    monkeypatch.setattr(keyring, "get_password", lambda service, user: entries.get((service, user)))
    monkeypatch.setattr(
        keyring, "set_password", lambda service, user, value: entries.__setitem__((service, user), value)
    )
    monkeypatch.setattr(getpass, "getpass", lambda prompt="": "hunter2")

    assert cli.main(["encrypt-password"]) == 0

    token = capsys.readouterr().out.strip()
    assert FernetCredentialStore().decrypt(token) == "hunter2"


def test_encrypt_empty_password(monkeypatch, capsys) -> None:
    monkeypatch.setattr(getpass, "getpass", lambda prompt="": "")

    assert cli.main(["encrypt-password"]) == 1
    assert "No password given" in capsys.readouterr().err
