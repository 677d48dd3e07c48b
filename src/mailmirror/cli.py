"""Thin command-line entry point: credential reset, sign-in, one-shot sync, status."""

import argparse
import asyncio
from pathlib import Path
from typing import Optional, Sequence

from rich.console import Console
from rich.table import Table

from mailmirror.core.mailbox import MailboxService
from mailmirror.core.sync.engine import CycleOutcome
from mailmirror.security.credentials import AuthStatus
from mailmirror.utils.config import ConfigManager
from mailmirror.utils.errors import ErrorHandler, MailMirrorError, format_error_message
from mailmirror.utils.logging import async_log_call, configure_logging, get_logger

logger = get_logger(__name__)


def setup_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailmirror",
        description="Offline-first mirror of a Gmail mailbox",
    )
    parser.add_argument(
        "--clear-keyring",
        action="store_true",
        help="Delete every stored credential and exit",
    )

    subparsers = parser.add_subparsers(dest="command")

    login_parser = subparsers.add_parser(
        "login",
        help="Sign in through the browser",
        description="Run the OAuth flow and store the granted tokens",
    )
    login_parser.add_argument(
        "--client-secret",
        type=Path,
        default=None,
        help="Path to client_secret.json (default: from configuration)",
    )

    subparsers.add_parser(
        "sync",
        help="Run one sync cycle",
        description="Push queued changes and pull remote changes once",
    )

    status_parser = subparsers.add_parser(
        "status",
        help="Show sign-in and cache status",
        description="Report authentication, pending changes and unread counts",
    )
    status_parser.add_argument(
        "--label",
        default=None,
        help="Restrict unread counts to one label id",
    )

    return parser


## Commands


async def clear_keyring(service: MailboxService, console: Console) -> int:
    await service.reset_credentials()
    console.print("[green]Stored credentials cleared.[/green]")
    return 0


async def login(service: MailboxService, console: Console, client_secret: Optional[Path]) -> int:
    path = client_secret or Path(ConfigManager().config.account.client_secret_path)

    if client_secret is not None or path.exists():
        await service.import_client_secret(path)
        console.print(f"Client secret imported from [cyan]{path}[/cyan]")

    await service.authorize()
    console.print("[green]Signed in.[/green]")
    return 0


async def sync(service: MailboxService, console: Console) -> int:
    with console.status("Syncing..."):
        report = await service.sync_once()

    if report.outcome is CycleOutcome.OK:
        console.print(
            f"[green]Sync complete[/green]: {len(report.confirmed)} change(s) pushed, "
            f"{report.deltas_merged} merged"
            + (" (full resync)" if report.full_resync else "")
        )
        for change in report.rejected:
            console.print(f"[yellow]Rejected:[/yellow] {change.describe()} ({change.last_error})")
        return 0

    if report.outcome is CycleOutcome.AUTH_REQUIRED:
        console.print("[red]Sign-in required.[/red] Run [bold]mailmirror login[/bold].")
        return 1

    console.print(f"[red]Sync failed:[/red] {format_error_message(report.error)}")
    return 1


async def status(service: MailboxService, console: Console, label: Optional[str]) -> int:
    auth = await service.auth_status()
    view = await service.read_mailbox_snapshot(label)
    pending = await service.pending_count()
    failures = await service.failures()

    colour = "green" if auth is AuthStatus.AUTHENTICATED else "red"
    console.print(f"Authentication: [{colour}]{auth.value}[/{colour}]")
    console.print(f"Cached messages: {len(view.messages)}")
    console.print(f"Pending changes: {pending}")
    console.print(f"Cursor: {view.cursor or '-'}")
    console.print(
        f"Last sync: {view.last_sync.isoformat(timespec='seconds') if view.last_sync else 'never'}"
    )

    if view.unread_counts:
        names = {item.id: item.name for item in view.labels}
        table = Table(title="Unread")
        table.add_column("Label")
        table.add_column("Unread", justify="right")
        for label_id, count in sorted(view.unread_counts.items()):
            if label is None or label_id == label:
                table.add_row(names.get(label_id, label_id), str(count))
        console.print(table)

    for change in failures:
        console.print(f"[yellow]Failed:[/yellow] {change.describe()}: {change.last_error}")

    return 0


@async_log_call
async def dispatch_command(args, console: Console) -> int:
    service = MailboxService.from_config()
    try:
        if args.clear_keyring:
            return await clear_keyring(service, console)
        if args.command == "login":
            return await login(service, console, args.client_secret)
        if args.command == "sync":
            return await sync(service, console)
        if args.command == "status":
            return await status(service, console, args.label)

        console.print("[yellow]No command given.[/yellow] See [bold]mailmirror --help[/bold].")
        return 2

    except MailMirrorError as e:
        ErrorHandler.handle(e, context=f"mailmirror {args.command or ''}".strip(), log_traceback=False)
        console.print(f"[red]Error: {format_error_message(e)}[/red]")
        return 1

    finally:
        await service.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code
    """
    console = Console()

    try:
        parser = setup_argument_parser()
        args = parser.parse_args(argv)

        try:
            config = ConfigManager().config
        except MailMirrorError as e:
            logger.error(f"Configuration error: {e}")
            console.print(f"[red]Configuration error: {e.message}[/red]")
            return 1

        configure_logging(config.logging)
        return asyncio.run(dispatch_command(args, console))

    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
