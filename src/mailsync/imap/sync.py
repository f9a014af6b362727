# =============================================================================
# IMAP Synchronizer
# =============================================================================
# Computes the delta of one folder since a caller-held sync token.
#
# Sync strategy (two states per call):
#   1. NoPriorState: no token, an undecodable token, or a token from another
#      UIDVALIDITY epoch. Every message is reported as new and the caller
#      replaces its message list (full_resync=True).
#   2. Incremental: the token's HIGHESTMODSEQ drives a CHANGEDSINCE fetch
#      (CONDSTORE). Messages above the token's max UID are new, the rest
#      changed. Without a modseq only new messages can be detected.
#
# Vanished (expunged) messages come from, in order of preference:
#   - the server's VANISHED report (QRESYNC)
#   - the caller's known_uids minus the current UID listing
#   - nothing (the response then never reports vanished messages)
#
# Key concepts:
#   - UIDVALIDITY: If this changes, all cached UIDs are invalid
#   - HIGHESTMODSEQ: Read before fetching, so a change racing with the
#     fetch is reported again next time rather than lost
#
# The synchronizer holds no state and no locks; callers serialize calls
# per folder and token.
# =============================================================================

import logging
from enum import Enum, auto
from typing import TYPE_CHECKING

from mailsync.core import (
    Folder,
    FolderKind,
    MessageFlags,
    MessageSummary,
    SyncRequest,
    SyncResponse,
    SyncToken,
)
from mailsync.errors import IMAPError, MailboxNotFoundError, SyncError

if TYPE_CHECKING:
    from mailsync.imap.client import IMAPClient


logger = logging.getLogger(__name__)


class SyncState(Enum):
    """Which path a sync call takes."""
    NO_PRIOR_STATE = auto()     # Report everything, issue a fresh token
    INCREMENTAL = auto()        # Report the delta since the token


class Synchronizer:
    """
    Two-state incremental sync protocol for one folder at a time.

    Usage:
        >>> synchronizer = Synchronizer()
        >>> response = await synchronizer.sync(client, folder, SyncRequest("INBOX"))
        >>> later = await synchronizer.sync(
        ...     client, folder, SyncRequest("INBOX", sync_token=response.sync_token)
        ... )

    Attributes:
        use_qresync: Ask for VANISHED reports on connections that enabled
                     QRESYNC.
    """

    def __init__(self, *, use_qresync: bool = True) -> None:
        self.use_qresync = use_qresync

    async def sync(self, client: "IMAPClient", folder: Folder, request: SyncRequest) -> SyncResponse:
        """
        Synchronize one folder.

        Args:
            client: Connected client of the folder's account.
            folder: The folder to sync (regular or virtual search folder).
            request: Token and options from the caller.

        Returns:
            The delta since the request's token.

        Raises:
            MailboxNotFoundError: If the folder's mailbox doesn't exist.
            IMAPError: If the server can't be queried at all.
        """
        status = await self._current_status(client, folder)
        prior = self._prior_state(folder, request.sync_token, status["UIDVALIDITY"])
        state = SyncState.NO_PRIOR_STATE if prior is None else SyncState.INCREMENTAL

        if state is SyncState.INCREMENTAL:
            try:
                return await self._incremental_sync(client, folder, request, prior, status)
            except SyncError as e:
                logger.warning(f"Incremental sync of {folder.folder_id} failed, resyncing: {e}")

        return await self._full_sync(client, folder, request, status)

    async def _current_status(self, client: "IMAPClient", folder: Folder) -> dict[str, int]:
        """STATUS of the folder's mailbox, taken before any fetch."""
        status = (await client.status([folder.mailbox])).get(folder.mailbox)
        if status is None:
            raise MailboxNotFoundError(folder.mailbox)
        if status.get("UIDVALIDITY") is None:
            raise IMAPError(f"No UIDVALIDITY reported for {folder.mailbox}")
        return status

    def _prior_state(self, folder: Folder, token: str | None, uidvalidity: int) -> SyncToken | None:
        """Decode the caller's token; None means NoPriorState."""
        if not token:
            return None

        try:
            prior = SyncToken.decode(token)
        except SyncError as e:
            logger.warning(f"Ignoring sync token for {folder.folder_id}: {e}")
            return None

        if prior.uidvalidity != uidvalidity:
            logger.warning(
                f"UIDVALIDITY changed for {folder.folder_id}: "
                f"{prior.uidvalidity} -> {uidvalidity}"
            )
            return None

        return prior

    # =========================================================================
    # NoPriorState
    # =========================================================================

    async def _full_sync(
        self,
        client: "IMAPClient",
        folder: Folder,
        request: SyncRequest,
        status: dict[str, int],
    ) -> SyncResponse:
        """Report every message of the folder as new."""
        logger.info(f"Full sync of {folder.folder_id}")

        if folder.kind is FolderKind.VIRTUAL_SEARCH:
            uids = await client.search_uids(folder.mailbox, "FLAGGED")
            messages = await client.fetch_flags(folder.mailbox, uids=uids)
            # A message can be unflagged between SEARCH and FETCH
            messages = [m for m in messages if m.is_flagged]
        else:
            messages = await client.fetch_flags(folder.mailbox)

        if request.with_details:
            await self._add_details(client, folder, messages)

        token = SyncToken(
            uidvalidity=status["UIDVALIDITY"],
            highest_modseq=status.get("HIGHESTMODSEQ"),
            max_uid=max((m.uid for m in messages), default=0),
        )
        return SyncResponse(
            sync_token=token.encode(),
            new_messages=messages,
            full_resync=True,
        )

    # =========================================================================
    # Incremental
    # =========================================================================

    async def _incremental_sync(
        self,
        client: "IMAPClient",
        folder: Folder,
        request: SyncRequest,
        prior: SyncToken,
        status: dict[str, int],
    ) -> SyncResponse:
        """
        Report what changed since the prior token.

        Raises:
            SyncError: If the server's state can't be reconciled with the
                       token (modseq gone or moved backwards).
        """
        current_modseq = status.get("HIGHESTMODSEQ")
        reported: list[int] | None = None

        if prior.highest_modseq is not None:
            if current_modseq is None:
                raise SyncError(f"{folder.mailbox} no longer reports HIGHESTMODSEQ")
            if current_modseq < prior.highest_modseq:
                raise SyncError(
                    f"HIGHESTMODSEQ of {folder.mailbox} went backwards: "
                    f"{prior.highest_modseq} -> {current_modseq}"
                )
            # QRESYNC can only be enabled at connect time, before any SELECT
            use_vanished = self.use_qresync and client.qresync_enabled
            fetched, reported = await client.fetch_changed_since(
                folder.mailbox, prior.highest_modseq, vanished=use_vanished
            )
        else:
            # Without a modseq only UIDs above the high-water mark are visible
            fetched = await client.fetch_flags(folder.mailbox, since_uid=prior.max_uid)

        if folder.kind is FolderKind.VIRTUAL_SEARCH:
            new, changed, unflagged = self._classify_search(fetched, prior, request.known_uids)
        else:
            new = [m for m in fetched if m.uid > prior.max_uid]
            changed = {m.uid: m.flags for m in fetched if m.uid <= prior.max_uid}
            unflagged = set()

        keywords = {m.uid: m.keywords for m in fetched if m.uid in changed}

        vanished = await self._vanished(client, folder, request, reported)
        vanished |= unflagged
        # Only UIDs the caller could have been told about can vanish
        vanished = {uid for uid in vanished if uid <= prior.max_uid}
        vanished -= {m.uid for m in new}
        for uid in vanished:
            changed.pop(uid, None)
            keywords.pop(uid, None)

        if request.with_details and new:
            await self._add_details(client, folder, new)

        token = SyncToken(
            uidvalidity=prior.uidvalidity,
            highest_modseq=current_modseq,
            max_uid=max([prior.max_uid, *(m.uid for m in new)]),
        )
        logger.debug(
            f"Incremental sync of {folder.folder_id}: {len(new)} new, "
            f"{len(changed)} changed, {len(vanished)} vanished"
        )
        return SyncResponse(
            sync_token=token.encode(),
            new_messages=new,
            changed_messages=changed,
            changed_keywords=keywords,
            vanished_messages=sorted(vanished),
        )

    def _classify_search(
        self,
        fetched: list[MessageSummary],
        prior: SyncToken,
        known_uids: set[int] | None,
    ) -> tuple[list[MessageSummary], dict[int, MessageFlags], set[int]]:
        """
        Split a delta of the search folder's host mailbox.

        A flagged message is new if it is above the high-water mark or, when
        the caller listed its UIDs, missing from that list. A message that
        lost \\Flagged leaves the folder; without known_uids there is no
        telling whether it was ever in it, so nothing is reported.
        """
        new: list[MessageSummary] = []
        changed: dict[int, MessageFlags] = {}
        unflagged: set[int] = set()

        for message in fetched:
            known = known_uids is not None and message.uid in known_uids
            if message.is_flagged:
                if message.uid > prior.max_uid or (known_uids is not None and not known):
                    new.append(message)
                else:
                    changed[message.uid] = message.flags
            elif known:
                unflagged.add(message.uid)

        return new, changed, unflagged

    async def _vanished(
        self,
        client: "IMAPClient",
        folder: Folder,
        request: SyncRequest,
        reported: list[int] | None,
    ) -> set[int]:
        """Expunged UIDs, from the server's report or the caller's list."""
        if reported is not None:
            if request.known_uids is not None:
                return set(reported) & request.known_uids
            return set(reported)

        if request.known_uids is None:
            return set()

        criteria = "FLAGGED" if folder.kind is FolderKind.VIRTUAL_SEARCH else "ALL"
        current = set(await client.search_uids(folder.mailbox, criteria))
        return request.known_uids - current

    async def _add_details(
        self,
        client: "IMAPClient",
        folder: Folder,
        messages: list[MessageSummary],
    ) -> None:
        """Fill envelope fields of the messages in place, keeping their flags."""
        details = {
            d.uid: d for d in await client.fetch_summaries(folder.mailbox, [m.uid for m in messages])
        }
        for message in messages:
            detail = details.get(message.uid)
            if detail is None:
                continue
            message.subject = detail.subject
            message.sender = detail.sender
            message.sender_name = detail.sender_name
            message.date_sent = detail.date_sent
            message.message_id = detail.message_id
