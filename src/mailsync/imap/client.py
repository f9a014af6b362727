# =============================================================================
# IMAP Client
# =============================================================================
# Provides an async IMAP client wrapper around aioimaplib.
#
# Key responsibilities:
#   - Connection management (connect, login, disconnect)
#   - Capability checks (CONDSTORE, QRESYNC, MOVE, UIDPLUS, SPECIAL-USE)
#   - Folder operations (list, status, create, delete)
#   - Message operations (copy, move, expunge)
#   - Sync helpers (flag listings, CHANGEDSINCE deltas, envelope summaries)
#
# Design notes:
#   - All methods are async; one command is in flight per connection, so
#     callers serialize per account.
#   - The timeout is connection level (aioimaplib's), there is no per-call
#     override.
#   - Server "NO"/"BAD" results become IMAPError subclasses; the client
#     never retries on its own.
#   - QRESYNC is enabled right after login: ENABLE is only legal before
#     the first SELECT.
#   - Mailboxes are always opened with SELECT; aioimaplib only tracks the
#     selected state for SELECT, and UID commands require it.
# =============================================================================

import asyncio
import email.errors
import email.header
import email.utils
import logging
import re
import ssl
from dataclasses import dataclass, field
from datetime import timezone
from typing import TYPE_CHECKING, Any

from aioimaplib import aioimaplib

from mailsync.core import MessageFlags, MessageSummary, SpecialUse, SyncToken
from mailsync.errors import (
    FolderOperationError,
    IMAPAuthenticationError,
    IMAPConnectionError,
    IMAPError,
)

if TYPE_CHECKING:
    from mailsync.core import Account
    from mailsync.storage.cache import ResponseCache

# Set up logging for this module
logger = logging.getLogger(__name__)

# Library errors that mean "the connection is unusable"
_NETWORK_ERRORS = (asyncio.TimeoutError, OSError, aioimaplib.Abort)

# LIST response: (attributes) "delimiter"|NIL name
_LIST_PATTERN = re.compile(r'^\(([^)]*)\)\s+(?:"((?:[^"\\]|\\.)*)"|NIL)\s+(.+)$', re.IGNORECASE)

_UID_PATTERN = re.compile(r"UID\s+(\d+)", re.IGNORECASE)
_FLAGS_PATTERN = re.compile(r"FLAGS\s*\(([^)]*)\)", re.IGNORECASE)
_MODSEQ_PATTERN = re.compile(r"MODSEQ\s*\((\d+)\)", re.IGNORECASE)
_VANISHED_PATTERN = re.compile(r"^(?:VANISHED\s+)?(?:\(EARLIER\)\s+)?([\d:,]+)\s*$", re.IGNORECASE)
_LITERAL_PATTERN = re.compile(r"\{(\d+)\}\s*$")


def _quote_folder_name(name: str) -> str:
    """
    Quote an IMAP folder name if it contains special characters.

    IMAP folder names with spaces or special characters must be quoted.
    This function wraps folder names in double quotes and escapes
    any internal quotes or backslashes.
    """
    if not name or any(c in name for c in ' "\\(){}[]%*'):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


def _unquote(value: str) -> str:
    """Strip surrounding quotes from an IMAP string and undo escaping."""
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1].replace('\\"', '"').replace('\\\\', '\\')
    return value


def _to_text(line: Any) -> str:
    """aioimaplib returns str, bytes or bytearray depending on the item."""
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


def build_uid_set(uids) -> str:
    """
    Compress UIDs into an IMAP sequence set.

    Example:
        >>> build_uid_set([5, 1, 2, 3, 9])
        '1:3,5,9'
    """
    ordered = sorted(set(uids))
    if not ordered:
        return ""

    ranges = []
    start = prev = ordered[0]
    for uid in ordered[1:]:
        if uid == prev + 1:
            prev = uid
            continue
        ranges.append(f"{start}:{prev}" if start != prev else str(start))
        start = prev = uid
    ranges.append(f"{start}:{prev}" if start != prev else str(start))
    return ",".join(ranges)


def parse_uid_set(uid_set: str) -> list[int]:
    """Expand an IMAP sequence set ("1:3,7") into a sorted UID list."""
    uids: set[int] = set()
    for part in uid_set.split(","):
        part = part.strip()
        if not part:
            continue
        if ":" in part:
            low, high = (int(x) for x in part.split(":", 1))
            if low > high:
                low, high = high, low
            uids.update(range(low, high + 1))
        else:
            uids.add(int(part))
    return sorted(uids)


@dataclass
class MailboxInfo:
    """
    One entry of a LIST response.

    Attributes:
        name: Full mailbox path.
        delimiter: Hierarchy delimiter, None on flat servers (NIL).
        attributes: Raw attributes (e.g. ["\\HasNoChildren", "\\Sent"]).
    """
    name: str
    delimiter: str | None
    attributes: list[str] = field(default_factory=list)


@dataclass
class ConnectionState:
    """
    Tracks the current state of an IMAP connection.

    Attributes:
        connected: Whether we have an active connection.
        authenticated: Whether we've successfully logged in.
        selected_folder: Currently selected folder, if any.
        capabilities: Server capabilities (from CAPABILITY response).
        enabled: Extensions turned on with ENABLE (e.g. QRESYNC).
        uidvalidity: UIDVALIDITY of currently selected folder.
    """
    connected: bool = False
    authenticated: bool = False
    selected_folder: str | None = None
    capabilities: set[str] = field(default_factory=set)
    enabled: set[str] = field(default_factory=set)
    uidvalidity: int | None = None


class IMAPClient:
    """
    Async IMAP client for mailsync.

    This class wraps aioimaplib and exposes the operations the folder
    mapper, synchronizer and mail manager need. Instances are normally
    created and cached by ConnectionProvider.

    Usage:
        >>> client = IMAPClient(account, password, security="ssl", timeout=20)
        >>> await client.connect()
        >>> mailboxes = await client.list_mailboxes()
        >>> await client.disconnect()

    Attributes:
        account: The Account this connection belongs to.
        security: "ssl" (implicit TLS), "starttls", or None (plain text).
        timeout: Connection-level timeout in seconds.
        cache: Optional envelope cache.
        batch_size: Maximum UIDs per FETCH/STORE command.
        state: Current connection state.
    """

    def __init__(
        self,
        account: "Account",
        password: str,
        *,
        security: str | None = "ssl",
        timeout: int = 20,
        cache: "ResponseCache | None" = None,
        batch_size: int = 100,
    ) -> None:
        self.account = account
        self.security = security
        self.timeout = timeout
        self.cache = cache
        self.batch_size = batch_size
        self.state = ConnectionState()
        self._password = password
        self._client: aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None = None

    @property
    def is_connected(self) -> bool:
        """Check if client is connected and authenticated."""
        return self.state.connected and self.state.authenticated and self._client is not None

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        """
        Establish connection to the IMAP server and log in.

        A failure at any step (greeting, STARTTLS, login) closes the socket
        before the error propagates.

        Raises:
            IMAPConnectionError: If unable to connect to server.
            IMAPAuthenticationError: If login fails.
        """
        host, port = self.account.imap_host, self.account.imap_port
        logger.info(f"Connecting to {host}:{port} ({self.security or 'plain'})")

        try:
            await self._open(host, port)
            await self.login()
            if self.supports_qresync:
                await self.enable("QRESYNC")
        except Exception:
            self._close_transport()
            raise

        logger.info(f"Successfully connected to {host}")

    async def _open(self, host: str, port: int) -> None:
        """Open the socket, read the greeting, upgrade with STARTTLS if asked."""
        try:
            if self.security == "ssl":
                # Direct TLS connection (usually port 993)
                self._client = aioimaplib.IMAP4_SSL(host=host, port=port, timeout=self.timeout)
            else:
                # Plain connection, upgraded with STARTTLS if requested (usually port 143)
                self._client = aioimaplib.IMAP4(host=host, port=port, timeout=self.timeout)

            await self._client.wait_hello_from_server()
            self.state.connected = True
            self._refresh_capabilities()

            if self.security == "starttls":
                if not self.has_capability("STARTTLS"):
                    raise IMAPConnectionError(f"{host} does not support STARTTLS")
                await self._starttls(host)

        except _NETWORK_ERRORS as e:
            self.state.connected = False
            raise IMAPConnectionError(f"Failed to connect to {host}:{port}: {e}") from e

    async def _starttls(self, host: str) -> None:
        """
        Upgrade the plain connection to TLS.

        aioimaplib has no STARTTLS command (its command table rejects the
        name), so the command is sent as the pending synchronous command
        and the transport is upgraded in place once the server says OK.
        """
        logger.debug("Upgrading to TLS via STARTTLS")
        protocol = self._imap.protocol
        command = aioimaplib.Command("STARTTLS", protocol.new_tag(), loop=protocol.loop)
        protocol.pending_sync_command = command
        protocol.send(str(command))
        await asyncio.wait_for(command.wait(), self.timeout)

        response = command.response
        if response.result != "OK":
            detail = _to_text(response.lines[-1]) if response.lines else response.result
            raise IMAPConnectionError(f"STARTTLS refused by {host}: {detail}")

        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        protocol.transport = await protocol.loop.start_tls(
            protocol.transport, protocol, context, server_hostname=host
        )
        # Capabilities announced before the upgrade must be discarded
        await asyncio.wait_for(protocol.capability(), self.timeout)
        self._refresh_capabilities()

    def _refresh_capabilities(self) -> None:
        # aioimaplib keeps the capabilities of the last CAPABILITY
        # response in protocol.capabilities
        self.state.capabilities = {c.upper() for c in self._client.protocol.capabilities}
        logger.debug(f"Server capabilities: {sorted(self.state.capabilities)}")

    def _close_transport(self) -> None:
        """Drop the aioimaplib client and close its socket."""
        client, self._client = self._client, None
        self.state = ConnectionState()
        if client is None:
            return

        # A connect attempt that timed out may still be in progress
        if not client._client_task.done():
            client._client_task.cancel()
        transport = client.protocol.transport
        if transport is not None and not transport.is_closing():
            transport.close()

    async def login(self) -> None:
        """
        Authenticate with the decrypted account password.

        Raises:
            IMAPAuthenticationError: If the server rejects the credentials.
            IMAPConnectionError: If the connection drops during login.
        """
        user = self.account.imap_user or self.account.email
        logger.debug(f"Authenticating as {user}")

        try:
            response = await self._imap.login(user, self._password)
        except _NETWORK_ERRORS as e:
            raise IMAPConnectionError(f"Connection lost during login: {e}") from e

        if response.result != "OK":
            raise IMAPAuthenticationError(
                f"Authentication failed for {user}: {_to_text(response.lines[-1]) if response.lines else ''}"
            )

        self.state.authenticated = True
        # Servers announce more capabilities once authenticated
        await self._run(asyncio.wait_for(self._imap.protocol.capability(), self.timeout))
        self._refresh_capabilities()
        logger.debug("Authentication successful")

    async def disconnect(self) -> None:
        """
        Gracefully disconnect from the IMAP server.

        Sends LOGOUT command and closes the connection.
        """
        if self._client is None:
            return
        try:
            if self.state.connected:
                logger.debug("Sending LOGOUT")
                await self._client.logout()
        except (*_NETWORK_ERRORS, aioimaplib.Error) as e:
            logger.warning(f"Error during logout: {e}")
        finally:
            self._close_transport()

    async def noop(self) -> None:
        """Round-trip a NOOP, raising IMAPConnectionError if the link is dead."""
        response = await self._run(self._imap.noop())
        self._check(response, "NOOP")

    @property
    def _imap(self) -> aioimaplib.IMAP4:
        """The underlying aioimaplib client, which must be connected."""
        if self._client is None:
            raise IMAPConnectionError("Not connected")
        return self._client

    async def _run(self, awaitable):
        """Await an aioimaplib command, mapping transport failures."""
        try:
            return await awaitable
        except _NETWORK_ERRORS as e:
            self.state.connected = False
            raise IMAPConnectionError(f"Connection to {self.account.imap_host} failed: {e}") from e

    async def _execute(self, name: str, *args: str):
        """Send a raw command aioimaplib has no dedicated method for."""
        protocol = self._imap.protocol
        return await self._run(
            protocol.execute(aioimaplib.Command(name, protocol.new_tag(), *args, loop=protocol.loop))
        )

    @staticmethod
    def _check(response, what: str) -> None:
        if response.result != "OK":
            detail = _to_text(response.lines[-1]) if response.lines else response.result
            raise IMAPError(f"{what} failed: {detail}")

    # =========================================================================
    # Capabilities
    # =========================================================================

    def has_capability(self, name: str) -> bool:
        """Check a capability as advertised by the server."""
        return name.upper() in self.state.capabilities

    @property
    def supports_condstore(self) -> bool:
        """CONDSTORE (RFC 7162). QRESYNC implies it."""
        return self.has_capability("CONDSTORE") or self.has_capability("QRESYNC")

    @property
    def supports_qresync(self) -> bool:
        return self.has_capability("QRESYNC")

    @property
    def qresync_enabled(self) -> bool:
        return "QRESYNC" in self.state.enabled

    async def enable(self, extension: str) -> bool:
        """
        Turn on an extension with ENABLE (RFC 5161).

        Only possible between login and the first SELECT; connect() does
        it for QRESYNC.

        Returns:
            True if the server confirmed the extension.
        """
        extension = extension.upper()
        if extension in self.state.enabled:
            return True
        if not self.has_capability("ENABLE") or not self.has_capability(extension):
            return False
        if self._imap.get_state() != aioimaplib.AUTH:
            logger.debug(f"Cannot enable {extension} once a mailbox is selected")
            return False

        response = await self._execute("ENABLE", extension)
        if response.result != "OK":
            logger.warning(f"ENABLE {extension} refused: {response.lines}")
            return False

        for line in response.lines:
            text = _to_text(line).upper()
            if text.startswith("ENABLED") and extension in text.split():
                self.state.enabled.add(extension)
                logger.debug(f"Enabled {extension}")
                return True
        return False

    # =========================================================================
    # Folder Operations
    # =========================================================================

    async def list_mailboxes(self, pattern: str = "*") -> list[MailboxInfo]:
        """
        List mailboxes matching a LIST pattern.

        Asks for SPECIAL-USE attributes with LIST-EXTENDED when the server
        advertises SPECIAL-USE (RFC 6154).

        Returns:
            Mailboxes in server order.
        """
        if self.has_capability("SPECIAL-USE") and self.has_capability("LIST-EXTENDED"):
            response = await self._run(self._imap.list('""', f"{pattern} RETURN (SPECIAL-USE)"))
        else:
            response = await self._run(self._imap.list('""', pattern))
        self._check(response, "LIST")

        mailboxes = []
        lines = [_to_text(line) for line in response.lines]
        i = 0
        while i < len(lines):
            line = lines[i]
            literal = _LITERAL_PATTERN.search(line)
            if literal and i + 1 < len(lines):
                # Mailbox name sent as a literal on the next item
                line = line[:literal.start()] + '"' + lines[i + 1].replace("\\", "\\\\").replace('"', '\\"') + '"'
                i += 1
            i += 1

            info = self._parse_list_line(line)
            if info:
                mailboxes.append(info)

        logger.debug(f"Found {len(mailboxes)} mailboxes")
        return mailboxes

    def _parse_list_line(self, line: str) -> MailboxInfo | None:
        """
        Parse a single LIST response line.

        LIST response format:
            (\\HasNoChildren) "/" "INBOX"
            (\\HasNoChildren \\Sent) "/" Sent
            (\\Noselect) NIL Public
        """
        line = line.strip()
        if not line or not line.startswith("("):
            # Completion line ("LIST completed") or something we don't use
            return None

        match = _LIST_PATTERN.match(line)
        if not match:
            logger.warning(f"Could not parse LIST line: {line}")
            return None

        attrs_str, delimiter, name = match.groups()
        if delimiter is not None:
            delimiter = delimiter.replace('\\\\', '\\')
        return MailboxInfo(
            name=_unquote(name),
            delimiter=delimiter or None,
            attributes=attrs_str.split() if attrs_str else [],
        )

    async def status(self, mailboxes: list[str]) -> dict[str, dict[str, int]]:
        """
        Get STATUS of several mailboxes without selecting them.

        A mailbox whose STATUS fails is logged and left out of the result;
        the rest of the batch still runs.

        Returns:
            Mailbox -> {"MESSAGES", "UNSEEN", "UIDNEXT", "UIDVALIDITY",
            and "HIGHESTMODSEQ" on CONDSTORE servers}.
        """
        items = "MESSAGES UNSEEN UIDNEXT UIDVALIDITY"
        if self.supports_condstore:
            items += " HIGHESTMODSEQ"

        result: dict[str, dict[str, int]] = {}
        for mailbox in mailboxes:
            response = await self._run(self._imap.status(_quote_folder_name(mailbox), f"({items})"))
            if response.result != "OK":
                logger.warning(f"STATUS failed for {mailbox}: {response.lines}")
                continue
            result[mailbox] = self._parse_status(response.lines)
        return result

    @staticmethod
    def _parse_status(lines) -> dict[str, int]:
        status: dict[str, int] = {}
        for line in lines:
            # Values sit in the last parenthesized group: "INBOX" (MESSAGES 3 ...)
            match = re.search(r"\(([^()]*)\)\s*$", _to_text(line))
            if not match:
                continue
            items = match.group(1).split()
            for i in range(0, len(items) - 1, 2):
                try:
                    status[items[i].upper()] = int(items[i + 1])
                except ValueError:
                    continue
        return status

    async def get_sync_token(self, mailbox: str) -> str | None:
        """
        Build the current sync token of a mailbox from its STATUS.

        Returns:
            The encoded token, or None if the server reports no UIDVALIDITY.
        """
        token = SyncToken.from_status((await self.status([mailbox])).get(mailbox, {}))
        return token.encode() if token is not None else None

    async def select_folder(self, mailbox: str) -> dict[str, int]:
        """
        Select a folder for subsequent operations.

        Args:
            mailbox: Name of the folder to select.

        Returns:
            Dictionary with EXISTS, UIDVALIDITY, UIDNEXT, HIGHESTMODSEQ...

        Raises:
            IMAPError: If folder selection fails.
        """
        if self.state.selected_folder == mailbox:
            return {"UIDVALIDITY": self.state.uidvalidity} if self.state.uidvalidity else {}

        logger.debug(f"Selecting folder: {mailbox}")
        response = await self._run(self._imap.select(_quote_folder_name(mailbox)))
        if response.result != "OK":
            self.state.selected_folder = None
            raise IMAPError(f"Failed to select folder '{mailbox}': {response.lines}")

        status: dict[str, int] = {}
        for line in response.lines:
            text = _to_text(line)
            for key in ("UIDVALIDITY", "UIDNEXT", "HIGHESTMODSEQ"):
                match = re.search(rf"{key}\s+(\d+)", text, re.IGNORECASE)
                if match:
                    status[key] = int(match.group(1))
            match = re.search(r"(\d+)\s+EXISTS", text, re.IGNORECASE)
            if match:
                status["EXISTS"] = int(match.group(1))

        self.state.selected_folder = mailbox
        self.state.uidvalidity = status.get("UIDVALIDITY")
        return status

    async def create_mailbox(self, name: str, special_use: SpecialUse | None = None) -> None:
        """
        Create a mailbox, requesting a special-use role when possible.

        The role is only sent when the server advertises CREATE-SPECIAL-USE
        (RFC 6154); otherwise a plain CREATE is issued.

        Raises:
            FolderOperationError: If the server refuses, with its reason.
        """
        quoted = _quote_folder_name(name)
        if special_use is not None and self.has_capability("CREATE-SPECIAL-USE"):
            attr = "\\" + special_use.value.capitalize()
            response = await self._execute("CREATE", quoted, f"(USE ({attr}))")
        else:
            response = await self._run(self._imap.create(quoted))

        if response.result != "OK":
            reason = _to_text(response.lines[-1]) if response.lines else response.result
            raise FolderOperationError(name, reason)
        logger.info(f"Created mailbox {name}")

    async def delete_mailbox(self, name: str) -> None:
        """
        Delete a mailbox.

        Raises:
            FolderOperationError: If the server refuses, with its reason.
        """
        if self.state.selected_folder == name:
            # A selected mailbox can't be deleted on every server
            await self._run(self._imap.close())
            self.state.selected_folder = None

        response = await self._run(self._imap.delete(_quote_folder_name(name)))
        if response.result != "OK":
            reason = _to_text(response.lines[-1]) if response.lines else response.result
            raise FolderOperationError(name, reason)
        logger.info(f"Deleted mailbox {name}")

    async def _mailbox_exists(self, name: str) -> bool:
        return any(m.name == name for m in await self.list_mailboxes(name))

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def copy(
        self,
        source: str,
        dest: str,
        uids: list[int],
        *,
        move: bool = False,
        create: bool = False,
    ) -> None:
        """
        Copy or move messages to another folder.

        Moves use MOVE if supported, otherwise COPY + \\Deleted + EXPUNGE.
        Processes in batches to avoid command size limits.

        Args:
            source: Source folder name.
            dest: Destination folder name.
            uids: UIDs of messages to copy.
            move: Remove the messages from the source afterwards.
            create: Create the destination first if it doesn't exist.
        """
        if not uids:
            return

        if create and not await self._mailbox_exists(dest):
            await self.create_mailbox(dest)

        await self.select_folder(source)
        quoted_dest = _quote_folder_name(dest)
        use_move = move and self.has_capability("MOVE")

        for i in range(0, len(uids), self.batch_size):
            batch = uids[i:i + self.batch_size]
            uid_set = build_uid_set(batch)

            if use_move:
                logger.debug(f"Moving {len(batch)} messages to {dest} using MOVE")
                response = await self._run(self._imap.uid("MOVE", uid_set, quoted_dest))
                self._check(response, f"Move to {dest}")
                continue

            response = await self._run(self._imap.uid("COPY", uid_set, quoted_dest))
            self._check(response, f"Copy to {dest}")
            if move:
                logger.debug(f"Moved {len(batch)} messages to {dest} using COPY+DELETE")
                await self.expunge(source, batch, delete=True)

    async def expunge(self, mailbox: str, uids: list[int] | None = None, *, delete: bool = True) -> None:
        """
        Permanently remove messages.

        Args:
            mailbox: Folder containing the messages.
            uids: Messages to remove. None expunges everything already
                  marked \\Deleted.
            delete: Mark the messages \\Deleted before expunging.

        With UIDPLUS only the given UIDs are expunged; without it a plain
        EXPUNGE also removes other messages already marked \\Deleted.
        """
        await self.select_folder(mailbox)

        if uids and delete:
            for i in range(0, len(uids), self.batch_size):
                batch = uids[i:i + self.batch_size]
                response = await self._run(
                    self._imap.uid("STORE", build_uid_set(batch), "+FLAGS.SILENT (\\Deleted)")
                )
                self._check(response, "STORE \\Deleted")

        if uids and self.has_capability("UIDPLUS"):
            response = await self._run(self._imap.uid("EXPUNGE", build_uid_set(uids)))
        else:
            response = await self._run(self._imap.expunge())
        self._check(response, "EXPUNGE")
        logger.debug(f"Expunged {len(uids) if uids else 'all deleted'} messages in {mailbox}")

    # =========================================================================
    # Sync Helpers
    # =========================================================================

    async def fetch_flags(
        self,
        mailbox: str,
        since_uid: int = 0,
        uids: list[int] | None = None,
    ) -> list[MessageSummary]:
        """
        List UIDs and flags of messages.

        Args:
            mailbox: Folder to query.
            since_uid: Only messages with UID > since_uid.
            uids: Only these messages (batched). Overrides since_uid.

        "n:*" always matches the last message even when its UID is below n,
        so results are filtered on the UID.

        Returns:
            Summaries (uid, flags, modseq) sorted by UID.
        """
        await self.select_folder(mailbox)
        items = "(UID FLAGS MODSEQ)" if self.supports_condstore else "(UID FLAGS)"

        if uids is None:
            response = await self._run(self._imap.uid("FETCH", f"{since_uid + 1}:*", items))
            self._check(response, "FETCH")
            summaries = [s for s in self._parse_fetch_response(response.lines) if s.uid > since_uid]
            return sorted(summaries, key=lambda s: s.uid)

        wanted = set(uids)
        ordered = sorted(wanted)
        summaries = []
        for i in range(0, len(ordered), self.batch_size):
            batch = ordered[i:i + self.batch_size]
            response = await self._run(self._imap.uid("FETCH", build_uid_set(batch), items))
            self._check(response, "FETCH")
            summaries.extend(s for s in self._parse_fetch_response(response.lines) if s.uid in wanted)
        return sorted(summaries, key=lambda s: s.uid)

    async def fetch_changed_since(
        self,
        mailbox: str,
        modseq: int,
        *,
        vanished: bool = False,
    ) -> tuple[list[MessageSummary], list[int] | None]:
        """
        Fetch messages whose MODSEQ is above the given one (CONDSTORE).

        Args:
            mailbox: Folder to query.
            modseq: HIGHESTMODSEQ from the previous sync.
            vanished: Also ask for expunged UIDs (requires QRESYNC enabled).

        Returns:
            (changed summaries sorted by UID, vanished UIDs or None when
            the server was not asked for them).
        """
        await self.select_folder(mailbox)
        modifier = f"(CHANGEDSINCE {modseq} VANISHED)" if vanished else f"(CHANGEDSINCE {modseq})"
        # aioimaplib sends exactly two FETCH arguments, the modifier rides
        # along with the item list
        parts = f"(UID FLAGS MODSEQ) {modifier}"

        if not vanished:
            response = await self._run(self._imap.uid("FETCH", "1:*", parts))
            self._check(response, "FETCH CHANGEDSINCE")
            return sorted(self._parse_fetch_response(response.lines), key=lambda s: s.uid), None

        # aioimaplib hands untagged responses to the pending command of the
        # same name and drops the rest, so VANISHED needs a collector
        protocol = self._imap.protocol
        collector = aioimaplib.Command("VANISHED", protocol.new_tag(), loop=protocol.loop)
        protocol.pending_async_commands["VANISHED"] = collector
        try:
            response = await self._run(self._imap.uid("FETCH", "1:*", parts))
        finally:
            protocol.pending_async_commands.pop("VANISHED", None)
        self._check(response, "FETCH CHANGEDSINCE")

        vanished_uids: set[int] = set()
        for line in collector.response.lines:
            match = _VANISHED_PATTERN.match(_to_text(line).strip())
            if match:
                vanished_uids.update(parse_uid_set(match.group(1)))

        changed = sorted(self._parse_fetch_response(response.lines), key=lambda s: s.uid)
        return changed, sorted(vanished_uids)

    async def search_uids(self, mailbox: str, criteria: str = "ALL") -> list[int]:
        """Run UID SEARCH and return the matching UIDs, sorted."""
        await self.select_folder(mailbox)
        response = await self._run(self._imap.uid_search(criteria, charset=None))
        self._check(response, f"SEARCH {criteria}")

        uids: list[int] = []
        for line in response.lines:
            text = _to_text(line).strip()
            if text.upper().startswith("SEARCH"):
                uids.extend(int(tok) for tok in text.split()[1:] if tok.isdigit())
            elif text and all(tok.isdigit() for tok in text.split()):
                uids.extend(int(tok) for tok in text.split())
        return sorted(set(uids))

    async def fetch_summaries(self, mailbox: str, uids: list[int]) -> list[MessageSummary]:
        """
        Fetch envelope details of messages, using the response cache.

        Returns:
            Summaries with subject/sender/date filled, sorted by UID.
        """
        if not uids:
            return []

        status = await self.select_folder(mailbox)
        uidvalidity = status.get("UIDVALIDITY") or self.state.uidvalidity

        summaries: dict[int, MessageSummary] = {}
        missing = list(uids)
        if self.cache is not None and uidvalidity is not None:
            missing = []
            for uid in uids:
                cached = await self.cache.get_summary(mailbox, uidvalidity, uid)
                if cached is None:
                    missing.append(uid)
                else:
                    summaries[uid] = cached

        wanted = set(missing)
        for i in range(0, len(missing), self.batch_size):
            batch = missing[i:i + self.batch_size]
            response = await self._run(
                self._imap.uid("FETCH", build_uid_set(batch), "(UID FLAGS ENVELOPE)")
            )
            self._check(response, "FETCH ENVELOPE")
            for summary in self._parse_fetch_response(response.lines):
                if summary.uid not in wanted:
                    continue
                summaries[summary.uid] = summary
                if self.cache is not None and uidvalidity is not None:
                    await self.cache.put_summary(mailbox, uidvalidity, summary)

        return [summaries[uid] for uid in sorted(summaries)]

    # =========================================================================
    # FETCH Response Parsing
    # =========================================================================

    def _group_fetch_lines(self, lines) -> list[str]:
        """
        Join the items of a FETCH response into one string per message.

        aioimaplib returns each "N FETCH (...)" line separately, with
        literals ({N} markers) as separate byte items. Literals are inlined
        as quoted strings so the envelope tokenizer sees one flat line.
        """
        groups: list[str] = []
        current = ""
        # True while the rest of a message continues after an inlined literal
        continued = False
        for item in lines:
            line = _to_text(item)
            if re.match(r"^\d+\s+FETCH\s*\(", line, re.IGNORECASE):
                if current:
                    groups.append(current)
                current = line
                continued = False
            elif current and _LITERAL_PATTERN.search(current):
                quoted = '"' + line.replace('\\', '\\\\').replace('"', '\\"') + '"'
                current = _LITERAL_PATTERN.sub(lambda _m: quoted, current)
                continued = True
            elif current and continued:
                current += " " + line.strip()
                continued = bool(_LITERAL_PATTERN.search(current))
        if current:
            groups.append(current)
        return groups

    def _parse_fetch_response(self, lines) -> list[MessageSummary]:
        """Parse FETCH response items into MessageSummary objects."""
        summaries = []
        for text in self._group_fetch_lines(lines):
            uid_match = _UID_PATTERN.search(text)
            if not uid_match:
                continue

            summary = MessageSummary(uid=int(uid_match.group(1)))

            flags_match = _FLAGS_PATTERN.search(text)
            if flags_match:
                summary.flags = MessageFlags.from_imap(flags_match.group(1))
                summary.keywords = MessageFlags.keywords_from_imap(flags_match.group(1))

            modseq_match = _MODSEQ_PATTERN.search(text)
            if modseq_match:
                summary.modseq = int(modseq_match.group(1))

            envelope = self._extract_envelope(text)
            if envelope is not None:
                self._apply_envelope(summary, envelope)

            summaries.append(summary)
        return summaries

    def _extract_envelope(self, text: str) -> str | None:
        """Contents of the parenthesized ENVELOPE item, or None if absent."""
        match = re.search(r"ENVELOPE\s*\(", text, re.IGNORECASE)
        if not match:
            return None

        depth = 0
        in_quote = False
        escaped = False
        start = match.end() - 1
        for i in range(start, len(text)):
            char = text[i]
            if escaped:
                escaped = False
            elif char == "\\" and in_quote:
                escaped = True
            elif char == '"':
                in_quote = not in_quote
            elif char == "(" and not in_quote:
                depth += 1
            elif char == ")" and not in_quote:
                depth -= 1
                if depth == 0:
                    return text[start + 1:i]
        return None

    def _apply_envelope(self, summary: MessageSummary, envelope_str: str) -> None:
        """
        Parse IMAP ENVELOPE structure into the summary.

        Format: (date subject ((from-name NIL from-user from-host))
                 sender reply-to to cc bcc in-reply-to message-id)
        """
        parts = self._tokenize_envelope(envelope_str)

        if len(parts) >= 2:
            date_str = self._clean_envelope_string(parts[0])
            if date_str:
                try:
                    date_sent = email.utils.parsedate_to_datetime(date_str)
                    # Normalize to UTC, assume UTC when no timezone given
                    if date_sent.tzinfo is not None:
                        date_sent = date_sent.astimezone(timezone.utc)
                    summary.date_sent = date_sent
                except (TypeError, ValueError):
                    logger.debug(f"Unparseable date for UID {summary.uid}: {date_str}")
            summary.subject = self._decode_header(self._clean_envelope_string(parts[1]))

        if len(parts) >= 3:
            senders = self._parse_address_list(parts[2])
            if senders:
                summary.sender = senders[0]["email"]
                summary.sender_name = senders[0]["name"]

        if len(parts) >= 10:
            summary.message_id = self._clean_envelope_string(parts[9])

    def _tokenize_envelope(self, s: str) -> list[str]:
        """
        Tokenize an envelope string, handling nested parentheses and quotes.
        """
        tokens = []
        current = ""
        depth = 0
        in_quote = False
        escaped = False

        for char in s:
            if escaped:
                current += char
                escaped = False
            elif char == "\\" and in_quote:
                current += char
                escaped = True
            elif char == '"':
                in_quote = not in_quote
                current += char
            elif char == "(" and not in_quote:
                depth += 1
                current += char
            elif char == ")" and not in_quote:
                depth -= 1
                current += char
            elif char == " " and depth == 0 and not in_quote:
                if current:
                    tokens.append(current)
                    current = ""
            else:
                current += char

        if current:
            tokens.append(current)

        return tokens

    def _clean_envelope_string(self, s: str) -> str:
        """Clean up an envelope string value."""
        if not s or s.upper() == "NIL":
            return ""
        return _unquote(s)

    def _parse_address_list(self, addr_str: str) -> list[dict[str, str]]:
        """Parse an address list from envelope."""
        if not addr_str or addr_str.upper() == "NIL":
            return []

        addresses = []

        # Address format: ((name NIL user host)(name NIL user host)...)
        for inner in re.findall(r'\(((?:[^()"]|"(?:[^"\\]|\\.)*")*)\)', addr_str):
            fields = self._tokenize_envelope(inner)
            if len(fields) != 4:
                continue
            name, _route, user, host = (self._clean_envelope_string(f) for f in fields)
            if user and host:
                addresses.append({"name": self._decode_header(name), "email": f"{user}@{host}"})

        return addresses

    def _decode_header(self, value: str) -> str:
        """Decode RFC 2047 encoded header value."""
        if not value:
            return ""
        try:
            decoded_parts = email.header.decode_header(value)
        except email.errors.HeaderParseError:
            return value

        result = ""
        for part, charset in decoded_parts:
            if isinstance(part, bytes):
                try:
                    result += part.decode(charset or "utf-8", errors="replace")
                except LookupError:
                    result += part.decode("utf-8", errors="replace")
            else:
                result += part
        return result
