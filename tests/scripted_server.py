# =============================================================================
# Scripted IMAP Server
# =============================================================================
# The server end of one connection, fed to aioimaplib's real protocol object
# in place of a socket. Client tests go through aioimaplib's command
# encoding, state checks and untagged response routing, and assert on the
# exact command lines that reached the wire.
# =============================================================================

import asyncio

from aioimaplib import aioimaplib

GREETING = "* OK IMAP4rev1 Service Ready"

SELECT_INBOX = (
    "* FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)\r\n"
    "* 3 EXISTS\r\n"
    "* OK [UIDVALIDITY 7] UIDs valid\r\n"
    "* OK [UIDNEXT 4] Predicted next UID\r\n"
)


class ScriptedServer:
    """
    Canned replies keyed by command prefix.

    A command line (without its tag) is answered by the reply registered
    with on() for the longest matching prefix, compared case-insensitively.
    Several replies for one prefix are used in turn and the last one
    sticks. Untagged output is given verbatim: "* " prefixes, CRLF line
    ends and literals included.

    Attributes:
        sent: Command lines received, tags stripped.
        closed: True once the client closed the transport.
    """

    def __init__(self, *capabilities: str, greeting: str = GREETING) -> None:
        self.capabilities = " ".join(("IMAP4rev1", *capabilities))
        self.greeting = greeting
        self.sent: list[str] = []
        self.closed = False
        self.protocol: aioimaplib.IMAP4ClientProtocol | None = None
        self._replies: dict[str, list[tuple[str, str]]] = {}
        self._resets: set[str] = set()
        self._defaults = {
            "CAPABILITY": (f"* CAPABILITY {self.capabilities}\r\n", "OK CAPABILITY completed"),
            "LOGIN": ("", "OK LOGIN completed"),
            "LOGOUT": ("* BYE Logging out\r\n", "OK LOGOUT completed"),
            "SELECT": (SELECT_INBOX, "OK [READ-WRITE] SELECT completed"),
        }

    def on(self, prefix: str, untagged: str = "", status: str = "OK completed") -> "ScriptedServer":
        self._replies.setdefault(prefix.upper(), []).append((untagged, status))
        return self

    def reset_on(self, prefix: str) -> None:
        """Drop the connection when a command with this prefix is sent."""
        self._resets.add(prefix.upper())

    def _reply_for(self, command: str) -> tuple[str, str]:
        key = command.upper()
        for table in (self._replies, self._defaults):
            matches = [prefix for prefix in table if key.startswith(prefix)]
            if not matches:
                continue
            entry = table[max(matches, key=len)]
            if isinstance(entry, tuple):
                return entry
            return entry.pop(0) if len(entry) > 1 else entry[0]
        return "", "BAD Unknown command"

    def push(self, data: str) -> None:
        """Deliver server output on the next loop iteration."""
        self.protocol.loop.call_soon(self.protocol.data_received, data.encode())

    async def accept(self, protocol: aioimaplib.IMAP4ClientProtocol) -> None:
        self.protocol = protocol
        protocol.connection_made(self)
        self.push(f"{self.greeting}\r\n")

    # -------------------------------------------------------------------------
    # Transport interface used by aioimaplib
    # -------------------------------------------------------------------------

    def write(self, data: bytes) -> None:
        tag, _, command = data.decode().rstrip("\r\n").partition(" ")
        self.sent.append(command)
        if any(command.upper().startswith(prefix) for prefix in self._resets):
            raise ConnectionResetError("Connection reset by peer")
        untagged, status = self._reply_for(command)
        self.push(f"{untagged}{tag} {status}\r\n")

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True


class WiredIMAP4(aioimaplib.IMAP4):
    """aioimaplib's client with a ScriptedServer at the other end."""

    def __init__(self, server: ScriptedServer, **kwargs) -> None:
        self.server = server
        super().__init__(**kwargs)

    def create_client(self, host, port, loop, conn_lost_cb=None, ssl_context=None) -> None:
        local_loop = loop if loop is not None else asyncio.get_running_loop()
        self.protocol = aioimaplib.IMAP4ClientProtocol(local_loop, conn_lost_cb)
        self._client_task = local_loop.create_task(self.server.accept(self.protocol))


def serve(monkeypatch, server: ScriptedServer) -> ScriptedServer:
    """Route IMAPClient connections (TLS or plain) to ``server``."""

    def connect(**kwargs) -> WiredIMAP4:
        return WiredIMAP4(server, **kwargs)

    monkeypatch.setattr(aioimaplib, "IMAP4_SSL", connect)
    monkeypatch.setattr(aioimaplib, "IMAP4", connect)
    return server
