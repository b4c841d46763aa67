#!/usr/bin/env python3
"""CLI entry point for docsync."""

import argparse
import asyncio
import logging
import sys
import webbrowser
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.tree import Tree

from .core.auth import TokenLifecycle
from .core.client import RemoteDocumentClient
from .core.credentials import FileCredentialStore, default_config_dir
from .core.engine import SyncEngine, SyncOutcome
from .core.storage import create_storage
from .errors import AuthenticationRequired, ConfigurationError, DocSyncError
from .models.config import CONFLICT_POLICIES, DELETE_HANDLING, AppConfig
from .models.records import RemoteDocumentSummary

console = Console()


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )
    # requests/urllib3 debug output would echo authorization headers
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_config_path(args: argparse.Namespace) -> Path:
    """Config file from --config, else config.yaml in the config directory."""
    if args.config:
        return Path(args.config)
    return default_config_dir() / "config.yaml"


def load_config(args: argparse.Namespace) -> AppConfig:
    config = AppConfig.from_env(get_config_path(args))
    if getattr(args, "policy", None):
        config.sync.conflict_policy = args.policy
    if getattr(args, "delete_handling", None):
        config.sync.delete_handling = args.delete_handling
    return config


def build_auth(config: AppConfig) -> TokenLifecycle:
    store = FileCredentialStore(config.oauth.profile)
    return TokenLifecycle(store, settings=config.oauth, network=config.network)


def build_engine(config: AppConfig) -> SyncEngine:
    client = RemoteDocumentClient(build_auth(config), network=config.network)
    storage = create_storage(Path(config.sync.local_root))
    return SyncEngine(config.sync, client, storage)


def _relative_paths(paths: list[str], local_root: str) -> list[str]:
    """Turn command-line paths into paths relative to the sync root."""
    root = Path(local_root).resolve()
    relative = []
    for p in paths:
        try:
            relative.append(Path(p).resolve().relative_to(root).as_posix())
        except ValueError:
            raise ConfigurationError(f"{p} is outside the sync root {root}", key="sync.local_root") from None
    return relative


def _print_outcomes(results: list[SyncOutcome], verb: str) -> int:
    """Print per-file results and a summary; return the exit code."""
    done_count = sum(1 for r in results if r.success and not r.skipped)
    skipped_count = sum(1 for r in results if r.skipped)
    conflict_count = sum(1 for r in results if r.conflict)
    failed_count = sum(1 for r in results if not r.success and not r.conflict)

    for result in results:
        if result.conflict:
            console.print(f"[red]CONFLICT: {result.filepath}")
            console.print(f"          {result.message}")
        elif not result.success:
            console.print(f"[red]FAILED: {result.filepath}")
            console.print(f"        {result.message}")
        elif result.skipped:
            console.print(f"[dim]{result.filepath}: {result.message}[/dim]")
        else:
            console.print(f"[green]{result.filepath}: {result.message}")

    console.print(
        f"\n[bold]Summary:[/bold] {done_count} {verb}, {skipped_count} skipped, "
        f"{conflict_count} conflicts, {failed_count} failed"
    )
    return 0 if all(r.success for r in results) else 1


def cmd_login(args: argparse.Namespace) -> int:
    """Authorize docsync against a Google account."""
    try:
        config = load_config(args)
    except DocSyncError as e:
        console.print(f"[red]Configuration error: {e}")
        return 1
    auth = build_auth(config)

    def show_url(url: str) -> None:
        console.print("Opening the browser for authorization. If it does not open, visit:")
        console.print(url, soft_wrap=True)
        webbrowser.open(url)

    async def prompt_code(url: str) -> str:
        console.print("Visit this URL, approve access, then paste the code shown:")
        console.print(url, soft_wrap=True)
        return await asyncio.to_thread(console.input, "Authorization code: ")

    try:
        if args.manual:
            asyncio.run(auth.start_auth_flow(mode="manual", code_prompt=prompt_code))
        else:
            asyncio.run(auth.start_auth_flow(mode="loopback", open_browser=show_url))
    except DocSyncError as e:
        console.print(f"[red]Login failed: {e}")
        return 1

    console.print(f"[green]Signed in (profile '{config.oauth.profile}')")
    return 0


def cmd_logout(args: argparse.Namespace) -> int:
    """Remove the stored credential."""
    try:
        config = load_config(args)
        asyncio.run(build_auth(config).sign_out())
    except DocSyncError as e:
        console.print(f"[red]Logout failed: {e}")
        return 1
    console.print(f"[green]Signed out (profile '{config.oauth.profile}')")
    return 0


def cmd_verify_auth(args: argparse.Namespace) -> int:
    """Verify API authentication."""
    console.print("Verifying Google credentials...", style="blue")

    try:
        config = load_config(args)
        client = RemoteDocumentClient(build_auth(config), network=config.network)
        user = asyncio.run(client.verify_connection())
    except AuthenticationRequired as e:
        console.print(f"[red]Authentication failed: {e}")
        console.print("Run 'docsync login' first.")
        return 1
    except DocSyncError as e:
        console.print(f"[red]Verification failed: {e}")
        return 1

    console.print(f"[green]Authentication successful! Signed in as {user.get('emailAddress', 'unknown')}")
    return 0


def cmd_tree(args: argparse.Namespace) -> int:
    """Show the remote document tree under the sync folder."""
    try:
        config = load_config(args)
        engine = build_engine(config)

        async def discover() -> list[RemoteDocumentSummary]:
            engine.begin_run()
            root_id = await engine.root_folder_id()
            return await engine.client.list_documents(root_id, reconcile=config.sync.reconcile_root)

        documents = asyncio.run(discover())
    except DocSyncError as e:
        console.print(f"[red]Failed to fetch folder: {e}")
        return 1

    _render_tree(documents, config.sync.drive_folder)
    return 0


def _render_tree(documents: list[RemoteDocumentSummary], root_name: str) -> None:
    """Render discovered documents as a Rich tree."""
    tree = Tree(f"[bold blue]{root_name}[/bold blue]")
    folders: dict[str, Tree] = {"": tree}

    def folder_node(path: str) -> Tree:
        if path not in folders:
            parent, _, name = path.rpartition("/")
            folders[path] = folder_node(parent).add(f"[blue]{name}/[/blue]")
        return folders[path]

    for doc in documents:
        label = f"[green]{doc.name}[/green]"
        if doc.via_shortcut:
            label += " [dim](shortcut)[/dim]"
        folder_node(doc.relative_path).add(label)
    console.print(tree)


def cmd_sync(args: argparse.Namespace) -> int:
    """Sync local files with their Google Docs."""
    try:
        config = load_config(args)
        engine = build_engine(config)
        paths = _relative_paths(args.paths, config.sync.local_root) if args.paths else None
    except DocSyncError as e:
        console.print(f"[red]Configuration error: {e}")
        return 1

    console.print(f"Syncing with policy '{config.sync.conflict_policy}'...", style="blue")
    if args.dry_run:
        console.print("[yellow](DRY RUN - no changes will be made)")

    try:
        if paths is None and not args.no_pull:
            results = asyncio.run(engine.sync_folder(dry_run=args.dry_run))
        else:
            results = asyncio.run(engine.sync_all(paths, dry_run=args.dry_run))
    except DocSyncError as e:
        console.print(f"[red]Sync failed: {e}")
        return 1

    return _print_outcomes(results, "synced")


def cmd_pull(args: argparse.Namespace) -> int:
    """Pull remote documents that have no local file yet."""
    try:
        config = load_config(args)
        engine = build_engine(config)
    except DocSyncError as e:
        console.print(f"[red]Configuration error: {e}")
        return 1

    console.print("Pulling new documents from Google Drive...", style="blue")
    if args.dry_run:
        console.print("[yellow](DRY RUN - no changes will be made)")

    try:
        results = asyncio.run(engine.pull_new_documents(dry_run=args.dry_run))
    except DocSyncError as e:
        console.print(f"[red]Pull failed: {e}")
        return 1

    return _print_outcomes(results, "pulled")


def cmd_status(args: argparse.Namespace) -> int:
    """Show the change state of every local file without changing anything."""
    try:
        config = load_config(args)
        engine = build_engine(config)
        results = asyncio.run(engine.sync_all(dry_run=True))
    except DocSyncError as e:
        console.print(f"[red]Status failed: {e}")
        return 1

    console.print(f"\n[bold]Sync Root:[/bold] {Path(config.sync.local_root).resolve()}")
    console.print(f"[bold]Drive Folder:[/bold] {config.sync.drive_folder or '[dim]Not set'}")
    console.print(f"[bold]Conflict Policy:[/bold] {config.sync.conflict_policy}")
    console.print(f"[bold]Delete Handling:[/bold] {config.sync.delete_handling}")

    if not results:
        console.print(f"[dim]No {config.sync.file_extension} files found.[/dim]")
        return 0

    table = Table(title="\nLocal Files")
    table.add_column("Path")
    table.add_column("State")
    table.add_column("Document")
    table.add_column("Details")

    styles = {
        "unchanged": "[dim]unchanged",
        "local_only": "[yellow]local changes",
        "remote_only": "[cyan]remote changes",
        "both_changed": "[red]both changed",
    }
    for r in results:
        if r.change_state is not None:
            state = styles.get(r.change_state.value, r.change_state.value)
        elif r.success:
            state = "[green]new"
        else:
            state = "[red]error"
        table.add_row(r.filepath, state, r.remote_id[:12] or "-", r.message.removeprefix("[DRY RUN] "))

    console.print(table)
    return 0 if all(r.success for r in results) else 1


def main() -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="docsync",
        description="Sync Markdown files between a local folder and Google Docs",
    )
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # login command
    login_parser = subparsers.add_parser("login", help="Authorize access to Google Drive")
    login_parser.add_argument("--manual", action="store_true", help="Paste the code instead of using a local callback")

    # logout command
    subparsers.add_parser("logout", help="Remove the stored credential")

    # verify-auth command
    subparsers.add_parser("verify-auth", help="Verify API authentication")

    # tree command
    subparsers.add_parser("tree", help="Show the document tree in Google Drive")

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Sync local files with Google Docs")
    sync_parser.add_argument("paths", nargs="*", help="Specific files to sync (default: all)")
    sync_parser.add_argument("--policy", choices=CONFLICT_POLICIES, help="Conflict policy for this run")
    sync_parser.add_argument(
        "--delete-handling", choices=DELETE_HANDLING, help="What to do when a linked Google Doc was deleted"
    )
    sync_parser.add_argument("--no-pull", action="store_true", help="Do not pull documents missing locally")
    sync_parser.add_argument("--dry-run", action="store_true", help="Show what would happen")

    # pull command
    pull_parser = subparsers.add_parser("pull", help="Pull Google Docs that have no local file")
    pull_parser.add_argument("--dry-run", action="store_true", help="Show what would happen")

    # status command
    subparsers.add_parser("status", help="Show sync status")

    args = parser.parse_args()
    setup_logging(args.verbose)

    if args.command == "login":
        return cmd_login(args)
    elif args.command == "logout":
        return cmd_logout(args)
    elif args.command == "verify-auth":
        return cmd_verify_auth(args)
    elif args.command == "tree":
        return cmd_tree(args)
    elif args.command == "sync":
        return cmd_sync(args)
    elif args.command == "pull":
        return cmd_pull(args)
    elif args.command == "status":
        return cmd_status(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
