"""
Authentication commands for the court backend.

Handles login, logout, and session status checks.
"""
import asyncio
import sys

import click
from rich.console import Console

from errors import CourtAPIError
from session import USER_ROLES
from sync import CourtSync

console = Console()


@click.group()
def auth():
    """Authentication commands."""
    pass


@auth.command("login")
@click.option("--username", "-u", prompt="Staff ID or email", help="Staff ID or email")
@click.option("--password", "-p", prompt=True, hide_input=True, help="Password")
@click.option("--role", "-r", type=click.Choice(USER_ROLES), prompt=True, help="Role to sign in as")
def auth_login(username: str, password: str, role: str):
    """Sign in and store the session locally."""
    async def run():
        sync = CourtSync()
        sync.session.load()
        try:
            return await sync.login(username, password, role, go_live=False)
        finally:
            await sync.teardown()

    try:
        user = asyncio.run(run())
    except CourtAPIError as e:
        console.print(f"\n[red]Login failed: {e.message} ({e.code})[/red]")
        sys.exit(1)

    console.print(f"\n[green]Signed in as {user.name or user.staff_id}[/green]")
    console.print(f"Role: {user.role}")
    if user.department:
        console.print(f"Department: {user.department}")


@auth.command("status")
def auth_status():
    """Check authentication status."""
    sync = CourtSync()
    session = sync.session.load()

    if session.is_authenticated:
        console.print("[green]Authenticated[/green]")
        console.print(f"User: {session.user.name} ({session.user.staff_id})")
        console.print(f"Role: {session.user.role}")
        console.print(f"Refresh token: {'yes' if session.refresh_token else 'no'}")
    else:
        console.print("[yellow]Not authenticated[/yellow]")
        console.print("Run: courtsync auth login")

    asyncio.run(sync.client.aclose())


@auth.command("logout")
def auth_logout():
    """Sign out and clear stored credentials."""
    async def run():
        sync = CourtSync()
        sync.session.load()
        try:
            await sync.logout()
        finally:
            await sync.teardown()

    asyncio.run(run())
    console.print("[green]Logged out successfully[/green]")
