# =============================================================================
# mailsync Command Line
# =============================================================================
# Small front end over MailManager, mostly for trying an account out:
#
#   mailsync folders [account]          print the folder tree
#   mailsync sync <account> <folder>    run one sync pass, store the token
#   mailsync encrypt-password           encrypt a password for config.toml
#
# Sync tokens and known UIDs are kept in the state database, so running
# "sync" twice reports only what changed in between.
# =============================================================================

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

from mailsync import __app_name__, __version__
from mailsync.config import Config, print_paths
from mailsync.core import Account, Folder, SyncRequest
from mailsync.credentials import FernetCredentialStore
from mailsync.errors import MailSyncError
from mailsync.imap import ConnectionProvider, Synchronizer
from mailsync.service import FolderMapper, FolderNameTranslator, MailManager
from mailsync.storage import Database, Repository, SqliteCacheFactory

logger = logging.getLogger(__name__)


# =============================================================================
# Commands
# =============================================================================

def _print_tree(folders: list[Folder], depth: int = 0) -> None:
    for folder in folders:
        roles = ",".join(role.value for role in folder.special_use)
        suffix = f"  [{roles}]" if roles else ""
        print(f"{'  ' * depth}{folder}{suffix}")
        _print_tree(folder.children, depth + 1)


def _select_accounts(config: Config, name: str | None) -> list[Account]:
    if name is None:
        return list(config.accounts.values())
    if name not in config.accounts:
        raise MailSyncError(f"Unknown account '{name}'")
    return [config.accounts[name]]


async def _folders(manager: MailManager, config: Config, args: argparse.Namespace) -> int:
    for account in _select_accounts(config, args.account):
        print(f"{account}")
        _print_tree(await manager.get_folders(account), depth=1)
    return 0


async def _sync(manager: MailManager, config: Config, args: argparse.Namespace) -> int:
    account = _select_accounts(config, args.account)[0]

    async with Database(Config.database_path()) as db:
        repo = Repository(db)
        token = await repo.get_sync_token(account.id, args.folder)
        known_uids = await repo.get_known_uids(account.id, args.folder) if token else None

        request = SyncRequest(
            folder_id=args.folder,
            sync_token=token,
            with_details=args.details,
            known_uids=known_uids,
        )
        response = await manager.sync_messages(account, request)
        await repo.apply_sync_response(account.id, args.folder, response)

    kind = "full" if response.full_resync else "incremental"
    print(
        f"{args.folder}: {kind} sync, {len(response.new_messages)} new, "
        f"{len(response.changed_messages)} changed, "
        f"{len(response.vanished_messages)} vanished"
    )
    for message in response.new_messages:
        if message.subject or message.sender:
            print(f"  {message.uid:>8}  {message.sender:<30.30}  {message.subject}")
    return 0


def _encrypt_password(config: Config) -> int:
    password = getpass.getpass("Password: ")
    if not password:
        print("No password given", file=sys.stderr)
        return 1
    store = FernetCredentialStore(service=config.credentials.keyring_service)
    print(store.encrypt(password))
    return 0


async def _run(command, config: Config, args: argparse.Namespace) -> int:
    """Wire the services together, run one command and tear down."""
    cache_db = Database(Config.cache_database_path())
    provider = ConnectionProvider(
        config,
        FernetCredentialStore(service=config.credentials.keyring_service),
        SqliteCacheFactory(cache_db),
    )
    manager = MailManager(
        provider,
        FolderMapper(config),
        Synchronizer(),
        FolderNameTranslator.for_locale(config.l10n.locale),
    )

    if config.imap.server_side_cache:
        await cache_db.connect()
    try:
        return await command(manager, config, args)
    finally:
        await provider.close()
        await cache_db.close()


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="mailsync: IMAP folder discovery and incremental sync",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    subparsers = parser.add_subparsers(dest="command")

    folders = subparsers.add_parser("folders", help="Print the folder tree")
    folders.add_argument("account", nargs="?", help="Account name (default: all)")

    sync = subparsers.add_parser("sync", help="Synchronize one folder")
    sync.add_argument("account", help="Account name")
    sync.add_argument("folder", help="Folder id, e.g. INBOX or INBOX/FLAGGED")
    sync.add_argument("--details", action="store_true", help="Fetch envelopes of new messages")

    subparsers.add_parser("encrypt-password", help="Encrypt a password for config.toml")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for mailsync.

    This function:
        1. Parses command-line arguments
        2. Handles special commands (--paths, --version)
        3. Loads configuration
        4. Runs the requested subcommand

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Handle --paths flag
    if args.paths:
        print_paths()
        return 0

    try:
        config = Config.load(args.config)

        if args.command == "encrypt-password":
            return _encrypt_password(config)
        if args.command == "folders":
            return asyncio.run(_run(_folders, config, args))
        if args.command == "sync":
            return asyncio.run(_run(_sync, config, args))
    except MailSyncError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"{__app_name__}: no command given, see --help", file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main())
