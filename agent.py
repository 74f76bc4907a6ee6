#!/usr/bin/env python3
"""
Court Sync Agent

Command-line entry point for the court case data-sync layer.
Provides commands for:
- Authentication (login, logout, status)
- One-shot resync of cases, motions and orders
- Live sessions with push events and polling fallback
- Inspecting the locally persisted case list
"""
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from commands.auth import auth
from commands.sync import cache_status, sync_data, watch

console = Console()


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
    )
    # Transport internals are noisy at DEBUG
    for name in ("httpx", "httpcore", "socketio", "engineio"):
        logging.getLogger(name).setLevel(logging.WARNING)


# ============================================================================
# CLI Group
# ============================================================================

@click.group()
@click.version_option(version="1.0.0")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool):
    """
    Court Sync Agent

    Keep a local, optimistic cache of court cases, motions, orders,
    documents, notifications and chat in sync with the court backend.
    """
    configure_logging(verbose)


cli.add_command(auth)
cli.add_command(sync_data)
cli.add_command(watch)
cli.add_command(cache_status)


def main():
    cli()


if __name__ == "__main__":
    main()
