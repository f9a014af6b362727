import asyncio
from datetime import datetime, timezone

import pytest

from mailsync.core import Folder, MessageFlags, SpecialUse, SyncRequest, SyncToken
from mailsync.errors import (
    FolderOperationError,
    IMAPAuthenticationError,
    IMAPConnectionError,
    IMAPError,
)
from mailsync.imap import IMAPClient, Synchronizer
from mailsync.imap.client import _quote_folder_name, build_uid_set, parse_uid_set
from mailsync.storage import ResponseCache

from tests.scripted_server import ScriptedServer, serve

LOGIN = 'LOGIN test@example.com "secret"'


class DictBackend:
    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value


def run(client: IMAPClient, operation=None):
    """Connect, then run ``operation(client)`` on the same event loop."""

    async def scenario():
        await client.connect()
        if operation is not None:
            return await operation(client)

    return asyncio.run(scenario())


def commands(server: ScriptedServer) -> list[str]:
    """Commands sent after the login handshake."""
    return server.sent[server.sent.index(LOGIN) + 2:]


# =============================================================================
# Helpers
# =============================================================================

def test_uid_sets() -> None:
    assert build_uid_set([5, 1, 2, 3, 9, 3]) == "1:3,5,9"
    assert build_uid_set([]) == ""
    assert parse_uid_set("1:3,7,10:9") == [1, 2, 3, 7, 9, 10]


def test_folder_names_are_quoted_when_needed() -> None:
    assert _quote_folder_name("INBOX") == "INBOX"
    assert _quote_folder_name("Sent Items") == '"Sent Items"'
    assert _quote_folder_name('My "Box"') == '"My \\"Box\\""'


def test_unconnected_client_raises_connection_error(sample_account) -> None:
    client = IMAPClient(sample_account, "secret")

    with pytest.raises(IMAPConnectionError):
        asyncio.run(client.noop())


# =============================================================================
# Connection
# =============================================================================

def test_connect_logs_in_and_reads_capabilities(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer("CONDSTORE", "MOVE"))
    client = IMAPClient(sample_account, "secret")

    run(client)

    assert server.sent == ["CAPABILITY", LOGIN, "CAPABILITY"]
    assert client.is_connected
    assert client.supports_condstore
    assert client.has_capability("move")
    assert not client.qresync_enabled


def test_qresync_is_enabled_right_after_login(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer("ENABLE", "CONDSTORE", "QRESYNC"))
    server.on("ENABLE QRESYNC", "* ENABLED QRESYNC\r\n")
    client = IMAPClient(sample_account, "secret")

    run(client)

    assert server.sent == ["CAPABILITY", LOGIN, "CAPABILITY", "ENABLE QRESYNC"]
    assert client.qresync_enabled


def test_enable_is_not_sent_once_a_mailbox_is_selected(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer("ENABLE", "CONDSTORE", "QRESYNC"))
    server.on("ENABLE QRESYNC", "", "NO Not now")
    client = IMAPClient(sample_account, "secret")

    async def select_then_enable(c):
        await c.select_folder("INBOX")
        return await c.enable("QRESYNC")

    assert run(client, select_then_enable) is False
    assert commands(server) == ["ENABLE QRESYNC", "SELECT INBOX"]
    assert client.is_connected


def test_failed_login_closes_the_connection(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    server.on("LOGIN", status="NO [AUTHENTICATIONFAILED] Invalid credentials")
    client = IMAPClient(sample_account, "secret")

    with pytest.raises(IMAPAuthenticationError, match="Invalid credentials"):
        run(client)

    assert server.closed
    assert not client.is_connected
    assert not client.state.connected


def test_refused_starttls_closes_the_connection(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer("STARTTLS"))
    server.on("STARTTLS", status="NO TLS not available")
    client = IMAPClient(sample_account, "secret", security="starttls")

    with pytest.raises(IMAPConnectionError, match="STARTTLS refused"):
        run(client)

    assert server.sent == ["CAPABILITY", "STARTTLS"]
    assert server.closed


def test_starttls_without_server_support_closes_the_connection(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    client = IMAPClient(sample_account, "secret", security="starttls")

    with pytest.raises(IMAPConnectionError, match="does not support STARTTLS"):
        run(client)

    assert LOGIN not in server.sent
    assert server.closed


def test_disconnect_logs_out_and_closes(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    client = IMAPClient(sample_account, "secret")

    run(client, lambda c: c.disconnect())

    assert server.sent[-1] == "LOGOUT"
    assert server.closed
    assert not client.is_connected


def test_network_failures_become_connection_errors(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    server.reset_on("NOOP")
    client = IMAPClient(sample_account, "secret")

    with pytest.raises(IMAPConnectionError):
        run(client, lambda c: c.noop())
    assert not client.state.connected


# =============================================================================
# LIST / STATUS
# =============================================================================

def test_list_parses_quoted_literal_and_nil_delimiters(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    server.on(
        'LIST "" *',
        '* LIST (\\HasNoChildren) "/" "INBOX"\r\n'
        '* LIST (\\HasNoChildren) "/" {8}\r\nMy "Box"\r\n'
        '* LIST (\\HasNoChildren \\Sent) "/" Sent\r\n'
        "* LIST (\\Noselect) NIL Public\r\n",
    )
    client = IMAPClient(sample_account, "secret")

    mailboxes = run(client, lambda c: c.list_mailboxes())

    assert [m.name for m in mailboxes] == ["INBOX", 'My "Box"', "Sent", "Public"]
    assert mailboxes[2].attributes == ["\\HasNoChildren", "\\Sent"]
    assert mailboxes[3].delimiter is None
    assert commands(server) == ['LIST "" *']


def test_list_asks_for_special_use_when_supported(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer("SPECIAL-USE", "LIST-EXTENDED"))
    client = IMAPClient(sample_account, "secret")

    run(client, lambda c: c.list_mailboxes())

    assert commands(server) == ['LIST "" * RETURN (SPECIAL-USE)']


def test_status_and_sync_token(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer("CONDSTORE"))
    server.on(
        "STATUS INBOX",
        "* STATUS INBOX (MESSAGES 3 UNSEEN 1 UIDNEXT 4 UIDVALIDITY 7 HIGHESTMODSEQ 12)\r\n",
    )
    server.on("STATUS Gone", status="NO Mailbox doesn't exist")
    client = IMAPClient(sample_account, "secret")

    async def scenario(c):
        return await c.status(["INBOX", "Gone"]), await c.get_sync_token("INBOX"), await c.get_sync_token("Gone")

    status, token, missing = run(client, scenario)

    assert status == {
        "INBOX": {"MESSAGES": 3, "UNSEEN": 1, "UIDNEXT": 4, "UIDVALIDITY": 7, "HIGHESTMODSEQ": 12}
    }
    assert SyncToken.decode(token) == SyncToken(uidvalidity=7, highest_modseq=12, max_uid=3)
    assert missing is None
    assert commands(server)[0] == "STATUS INBOX (MESSAGES UNSEEN UIDNEXT UIDVALIDITY HIGHESTMODSEQ)"


# =============================================================================
# Mailbox operations
# =============================================================================

def test_create_requests_the_special_use_role(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer("CREATE-SPECIAL-USE"))
    client = IMAPClient(sample_account, "secret")

    run(client, lambda c: c.create_mailbox("Sent", SpecialUse.SENT))

    assert commands(server) == ["CREATE Sent (USE (\\Sent))"]


def test_create_without_special_use_support(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    client = IMAPClient(sample_account, "secret")

    run(client, lambda c: c.create_mailbox("Sent Items", SpecialUse.SENT))

    assert commands(server) == ['CREATE "Sent Items"']


def test_refused_create_carries_the_reason(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    server.on("CREATE", status="NO [ALREADYEXISTS] Mailbox exists")
    client = IMAPClient(sample_account, "secret")

    with pytest.raises(FolderOperationError, match="ALREADYEXISTS"):
        run(client, lambda c: c.create_mailbox("Sent"))


def test_selected_mailbox_is_closed_before_delete(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    client = IMAPClient(sample_account, "secret")

    async def scenario(c):
        await c.select_folder("Archive")
        await c.delete_mailbox("Archive")

    run(client, scenario)

    assert commands(server) == ["SELECT Archive", "CLOSE", "DELETE Archive"]


# =============================================================================
# FETCH
# =============================================================================

def test_reads_select_the_mailbox(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer("CONDSTORE"))
    server.on("UID FETCH", "* 1 FETCH (UID 1 FLAGS (\\Seen) MODSEQ (5))\r\n")
    client = IMAPClient(sample_account, "secret")

    messages = run(client, lambda c: c.fetch_flags("INBOX"))

    assert commands(server) == ["SELECT INBOX", "UID FETCH 1:* (UID FLAGS MODSEQ)"]
    assert [(m.uid, m.flags, m.modseq) for m in messages] == [(1, MessageFlags.SEEN, 5)]
    assert client.state.uidvalidity == 7


def test_fetch_flags_drops_the_star_quirk(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    server.on("UID FETCH", "* 3 FETCH (UID 3 FLAGS (\\Seen))\r\n")
    client = IMAPClient(sample_account, "secret")

    assert run(client, lambda c: c.fetch_flags("INBOX", since_uid=3)) == []
    assert "UID FETCH 4:* (UID FLAGS)" in server.sent


def test_changedsince_reaches_the_server(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer("CONDSTORE"))
    server.on("UID FETCH", "* 2 FETCH (UID 5 FLAGS (\\Seen $Forwarded) MODSEQ (20))\r\n")
    client = IMAPClient(sample_account, "secret")

    changed, vanished = run(client, lambda c: c.fetch_changed_since("INBOX", 10))

    assert commands(server)[-1] == "UID FETCH 1:* (UID FLAGS MODSEQ) (CHANGEDSINCE 10)"
    assert [(m.uid, m.flags, m.keywords) for m in changed] == [
        (5, MessageFlags.SEEN, frozenset({"$Forwarded"}))
    ]
    assert vanished is None


def test_vanished_report_is_collected(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer("ENABLE", "QRESYNC"))
    server.on("ENABLE QRESYNC", "* ENABLED QRESYNC\r\n")
    server.on(
        "UID FETCH",
        "* VANISHED (EARLIER) 2:3,7\r\n"
        "* 2 FETCH (UID 5 FLAGS (\\Flagged \\Seen) MODSEQ (20))\r\n",
    )
    client = IMAPClient(sample_account, "secret")

    changed, vanished = run(client, lambda c: c.fetch_changed_since("INBOX", 10, vanished=True))

    assert commands(server)[-1] == "UID FETCH 1:* (UID FLAGS MODSEQ) (CHANGEDSINCE 10 VANISHED)"
    assert [(m.uid, m.flags, m.modseq) for m in changed] == [
        (5, MessageFlags.FLAGGED | MessageFlags.SEEN, 20)
    ]
    assert vanished == [2, 3, 7]
    assert "VANISHED" not in client._client.protocol.pending_async_commands


def test_search_uids(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    server.on("UID SEARCH", "* SEARCH 9 2 5\r\n")
    client = IMAPClient(sample_account, "secret")

    assert run(client, lambda c: c.search_uids("INBOX", "FLAGGED")) == [2, 5, 9]
    assert commands(server)[-1] == "UID SEARCH FLAGGED"


ENVELOPE_REPLY = (
    '* 1 FETCH (UID 5 FLAGS (\\Seen) ENVELOPE ("Mon, 15 Jan 2024 10:30:00 +0100" '
    '"=?utf-8?q?Gr=C3=BC=C3=9Fe?=" (("Alice" NIL "alice" "example.com")) '
    'NIL NIL NIL NIL NIL NIL "<id@example.com>"))\r\n'
)


def test_envelope_fields_are_parsed(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    server.on("UID FETCH", ENVELOPE_REPLY)
    client = IMAPClient(sample_account, "secret")

    [summary] = run(client, lambda c: c.fetch_summaries("INBOX", [5]))

    assert summary.subject == "Grüße"
    assert summary.sender == "alice@example.com"
    assert summary.sender_name == "Alice"
    assert summary.message_id == "<id@example.com>"
    assert summary.date_sent == datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)


def test_literal_subject_is_inlined(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    server.on(
        "UID FETCH",
        '* 1 FETCH (UID 7 FLAGS () ENVELOPE (NIL {5}\r\nHi "x NIL NIL NIL NIL NIL NIL NIL NIL))\r\n',
    )
    client = IMAPClient(sample_account, "secret")

    [summary] = run(client, lambda c: c.fetch_summaries("INBOX", [7]))

    assert summary.subject == 'Hi "x'
    assert summary.flags == MessageFlags.NONE


def test_envelopes_come_from_the_cache_the_second_time(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    server.on("UID FETCH", ENVELOPE_REPLY)
    client = IMAPClient(sample_account, "secret", cache=ResponseCache(DictBackend()))

    async def scenario(c):
        return await c.fetch_summaries("INBOX", [5]), await c.fetch_summaries("INBOX", [5])

    first, second = run(client, scenario)

    assert [c for c in server.sent if c.startswith("UID FETCH")] == ["UID FETCH 5 (UID FLAGS ENVELOPE)"]
    assert second[0].subject == first[0].subject
    assert second[0].message_id == "<id@example.com>"


# =============================================================================
# Message operations
# =============================================================================

def test_move_uses_move_when_supported(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer("MOVE"))
    client = IMAPClient(sample_account, "secret")

    run(client, lambda c: c.copy("INBOX", "Sent Items", [1, 2], move=True))

    assert commands(server) == ["SELECT INBOX", 'UID MOVE 1:2 "Sent Items"']


def test_move_falls_back_to_copy_and_expunge(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer("UIDPLUS"))
    client = IMAPClient(sample_account, "secret")

    run(client, lambda c: c.copy("INBOX", "Trash", [1, 2], move=True))

    assert commands(server) == [
        "SELECT INBOX",
        "UID COPY 1:2 Trash",
        "UID STORE 1:2 +FLAGS.SILENT (\\Deleted)",
        "UID EXPUNGE 1:2",
    ]


def test_expunge_without_uidplus(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    client = IMAPClient(sample_account, "secret")

    run(client, lambda c: c.expunge("Trash", [4], delete=True))

    assert commands(server) == ["SELECT Trash", "UID STORE 4 +FLAGS.SILENT (\\Deleted)", "EXPUNGE"]


def test_refused_copy_raises(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer())
    server.on("UID COPY", status="NO [TRYCREATE] No such mailbox")
    client = IMAPClient(sample_account, "secret")

    with pytest.raises(IMAPError, match="TRYCREATE"):
        run(client, lambda c: c.copy("INBOX", "Nowhere", [1]))


# =============================================================================
# Incremental sync over the wire
# =============================================================================

def test_qresync_incremental_sync(monkeypatch, sample_account) -> None:
    server = serve(monkeypatch, ScriptedServer("ENABLE", "CONDSTORE", "QRESYNC"))
    server.on("ENABLE QRESYNC", "* ENABLED QRESYNC\r\n")
    server.on(
        "STATUS INBOX",
        "* STATUS INBOX (MESSAGES 3 UNSEEN 0 UIDNEXT 6 UIDVALIDITY 7 HIGHESTMODSEQ 20)\r\n",
    )
    server.on(
        "UID FETCH",
        "* VANISHED (EARLIER) 2:3\r\n"
        "* 1 FETCH (UID 5 FLAGS (\\Seen $Forwarded) MODSEQ (20))\r\n",
    )
    client = IMAPClient(sample_account, "secret")
    token = SyncToken(uidvalidity=7, highest_modseq=10, max_uid=5).encode()
    request = SyncRequest("INBOX", sync_token=token)

    response = run(
        client, lambda c: Synchronizer().sync(c, Folder(mailbox="INBOX", account_id=1), request)
    )

    assert commands(server) == [
        "ENABLE QRESYNC",
        "STATUS INBOX (MESSAGES UNSEEN UIDNEXT UIDVALIDITY HIGHESTMODSEQ)",
        "SELECT INBOX",
        "UID FETCH 1:* (UID FLAGS MODSEQ) (CHANGEDSINCE 10 VANISHED)",
    ]
    assert not response.full_resync
    assert response.changed_messages == {5: MessageFlags.SEEN}
    assert response.changed_keywords == {5: frozenset({"$Forwarded"})}
    assert response.vanished_messages == [2, 3]
    assert SyncToken.decode(response.sync_token).highest_modseq == 20
