"""Resync, live session and local cache commands."""
import asyncio
import sys
import time
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from config import CASES_STORAGE_KEY
from errors import CourtAPIError
from sync import CourtSync, RESYNC_ENTITIES

console = Console()


@click.command("sync")
@click.option("--entity", "-e", multiple=True, type=click.Choice(RESYNC_ENTITIES),
              help="Resync specific entities only")
def sync_data(entity: tuple):
    """Fetch cases, motions and orders once and report what changed."""
    console.print("\n[bold]Resyncing court data[/bold]\n")

    async def run():
        sync = CourtSync()
        try:
            if not await sync.init(go_live=False):
                return None
            return await sync.resync_all(list(entity) or None)
        finally:
            await sync.teardown()

    results = asyncio.run(run())
    if results is None:
        console.print("[red]Not authenticated. Run 'courtsync auth login' first.[/red]")
        sys.exit(1)

    table = Table(title="Sync Results")
    table.add_column("Entity")
    table.add_column("Rows", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Gone", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Error")

    failed = 0
    for entity_type, result in results.items():
        table.add_row(
            entity_type,
            str(result.total),
            str(result.added),
            str(result.removed),
            f"{result.duration_seconds:.1f}s",
            f"[red]{result.error}[/red]" if result.error else "",
        )
        failed += 0 if result.ok else 1

    console.print(table)
    if failed:
        console.print(f"\n[yellow]{failed} entity type(s) failed[/yellow]")
        sys.exit(1)
    console.print("\n[green]Sync complete[/green]")


@click.command("watch")
@click.option("--case", "cases", multiple=True, help="Join a case room for live case updates")
def watch(cases: tuple):
    """Run a live session: seed, connect push, poll; print push events until interrupted."""
    async def run():
        sync = CourtSync()

        def show(event: str, payload: Any):
            stamp = time.strftime("%H:%M:%S")
            console.print(f"[dim]{stamp}[/dim] [cyan]{event}[/cyan] {payload}")

        sync.channel.on_event(show)
        try:
            if not await sync.init():
                console.print("[red]Not authenticated. Run 'courtsync auth login' first.[/red]")
                return False
            for case_id in cases:
                sync.channel.join_case(case_id)
            console.print(
                f"[green]Watching as {sync.session.user.staff_id}[/green] "
                f"(push: {sync.channel.status.value}). Ctrl+C to stop."
            )
            while sync.is_authenticated:
                await asyncio.sleep(1)
            console.print("[yellow]Session ended[/yellow]")
            return True
        finally:
            await sync.teardown()

    try:
        ok = asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped[/dim]")
        return
    except CourtAPIError as e:
        console.print(f"[red]{e.message} ({e.code})[/red]")
        sys.exit(1)
    if not ok:
        sys.exit(1)


@click.command("cache")
def cache_status():
    """Show the locally persisted case list."""
    sync = CourtSync()
    rows = sync.mirror.load()
    asyncio.run(sync.client.aclose())

    if not rows:
        console.print(f"[yellow]No cases stored under '{CASES_STORAGE_KEY}'[/yellow]")
        return

    by_status = {}
    for row in rows:
        status = row.get("status") or "Unknown"
        by_status[status] = by_status.get(status, 0) + 1

    table = Table(title=f"Stored cases ({len(rows)})")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status, count in sorted(by_status.items(), key=lambda item: -item[1]):
        table.add_row(status, str(count))
    console.print(table)

    local_only = [row for row in rows if str(row.get("id", "")).startswith("TEMP-")]
    if local_only:
        console.print(f"[yellow]{len(local_only)} case(s) not yet confirmed by the server[/yellow]")
