#!/usr/bin/env python3
"""
Main CLI for Pastr - snippet manager.

Usage:
    pastr add "text"                - Save text as a snippet
    pastr list                      - List snippets
    pastr edit <id> -c "text"       - Edit a snippet (also --tag, --clear-tags)
    pastr fav <id>                  - Toggle favorite
    pastr delete <id>               - Delete a snippet
    pastr sync interval 5           - Auto-sync every 5 minutes (0 disables)
    pastr sync now                  - Sync immediately
    pastr capture enable|disable    - Toggle the clipboard monitor
    pastr pending                   - Show capture prompts waiting for an answer
    pastr resolve <id> save|ignore  - Answer a capture prompt
    pastr auth login|logout         - Authorize or revoke remote sync
    pastr daemon start|stop|status  - Manage the daemon
"""

import asyncio
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import click
import httpx
from loguru import logger
from rich.console import Console
from rich.table import Table

console = Console()

DAEMON_URL = os.environ.get("PASTR_URL", "http://localhost:8766")


class DaemonUnavailable(Exception):
    pass


async def call_daemon(
    method: str,
    path: str,
    json: Optional[Dict[str, Any]] = None,
    timeout: float = 5.0
) -> httpx.Response:
    """Send one request to the daemon's HTTP API."""
    try:
        async with httpx.AsyncClient() as client:
            return await client.request(method, f"{DAEMON_URL}{path}", json=json, timeout=timeout)
    except httpx.ConnectError as e:
        raise DaemonUnavailable(str(e)) from e


def run(coro) -> None:
    """Run a CLI coroutine, reporting a missing daemon the same way everywhere."""
    try:
        asyncio.run(coro)
    except DaemonUnavailable:
        console.print("[red]Cannot connect to daemon. Is it running?[/red]")
        console.print("Start with: [cyan]pastr daemon start[/cyan]")
    except httpx.HTTPError as e:
        console.print(f"[red]Error:[/red] {e}")


def print_error(response: httpx.Response, action: str) -> None:
    try:
        message = response.json().get("error", {}).get("message") or response.text
    except ValueError:
        message = response.text
    console.print(f"[red]{action} failed:[/red] {message}")


def format_timestamp(ms: Any) -> str:
    try:
        return datetime.fromtimestamp(int(ms) / 1000).strftime("%Y-%m-%d %H:%M")
    except (TypeError, ValueError, OSError):
        return "?"


def format_sync_status(value: Any) -> str:
    if not value:
        return "[dim]never[/dim]"
    if isinstance(value, str) and value.startswith("failed:"):
        return f"[red]{value}[/red]"
    if value == "disabled":
        return "[yellow]disabled[/yellow]"
    return f"[green]{value}[/green]"


@click.group()
def cli():
    """Pastr - snippet manager CLI."""


@cli.command()
@click.argument("text")
def add(text: str):
    """Save TEXT as a snippet (same as the context-menu action)."""
    run(add_snippet(text))


async def add_snippet(text: str):
    response = await call_daemon("POST", "/snippets/selection", json={"text": text})
    if response.status_code == 201:
        console.print(f"[green]✓[/green] Saved: {response.json().get('id', 'unknown')}")
    else:
        print_error(response, "Save")


@cli.command(name="list")
@click.option("--limit", "-l", default=20, help="Max snippets to show")
def list_snippets(limit: int):
    """List snippets, newest first."""
    run(show_snippets(limit))


async def show_snippets(limit: int):
    response = await call_daemon("GET", "/snippets")
    if response.status_code != 200:
        print_error(response, "List")
        return

    snippets = response.json().get("snippets", [])
    if not snippets:
        console.print("[yellow]No snippets yet[/yellow]")
        return

    table = Table(title=f"Snippets ({len(snippets)})")
    table.add_column("ID", style="dim")
    table.add_column("Content", no_wrap=False)
    table.add_column("Tags", style="magenta")
    table.add_column("★", justify="center")
    table.add_column("Updated")

    for s in snippets[:limit]:
        content = s.get("content", "")
        table.add_row(
            s.get("id", ""),
            content[:80] + ("..." if len(content) > 80 else ""),
            " ".join(f"{t.get('emoji', '')}{t.get('name', '')}" for t in s.get("tags", [])),
            "★" if s.get("isFavorite") else "",
            format_timestamp(s.get("updatedAt"))
        )
    console.print(table)


@cli.command()
@click.argument("snippet_id")
@click.option("--content", "-c", help="New snippet text")
@click.option("--tag", "-t", "tags", multiple=True, help="Replace tags (repeatable, NAME or EMOJI:NAME)")
@click.option("--clear-tags", is_flag=True, help="Remove all tags")
def edit(snippet_id: str, content: Optional[str], tags: tuple, clear_tags: bool):
    """Edit a snippet's text or tags."""
    changes: Dict[str, Any] = {}
    if content is not None:
        changes["content"] = content
    if tags or clear_tags:
        changes["tags"] = [parse_tag(t) for t in tags]
    if not changes:
        raise click.UsageError("Nothing to change; pass --content, --tag or --clear-tags")
    run(snippet_command("PATCH", f"/snippets/{snippet_id}", changes, "Updated"))


def parse_tag(value: str) -> Dict[str, str]:
    emoji, sep, name = value.partition(":")
    return {"name": name, "emoji": emoji} if sep else {"name": value, "emoji": ""}


@cli.command()
@click.argument("snippet_id")
def fav(snippet_id: str):
    """Toggle a snippet's favorite mark."""
    run(snippet_command("POST", f"/snippets/{snippet_id}/favorite", None, "Favorite toggled"))


@cli.command()
@click.argument("snippet_id")
@click.confirmation_option(prompt="Are you sure you want to delete this snippet?")
def delete(snippet_id: str):
    """Delete a snippet."""
    run(snippet_command("DELETE", f"/snippets/{snippet_id}", None, "Deleted"))


async def snippet_command(method: str, path: str, payload: Optional[Dict[str, Any]], action: str):
    response = await call_daemon(method, path, json=payload)
    if response.status_code != 200:
        print_error(response, action)
        return
    data = response.json()
    star = " ★" if data.get("isFavorite") else ""
    console.print(f"[green]✓[/green] {action}: {path.split('/')[2]}{star}")


@cli.group()
def sync():
    """Remote sync controls."""


@sync.command()
@click.argument("minutes", type=click.IntRange(min=0))
def interval(minutes: int):
    """Auto-sync every MINUTES minutes; 0 disables."""
    run(post_command("/sync/interval", {"minutes": minutes}, "Set interval"))


@sync.command()
@click.option("--interactive", "-i", is_flag=True, help="Allow an authorization prompt")
def now(interactive: bool):
    """Upload the snippet collection now."""
    run(sync_now(interactive))


async def sync_now(interactive: bool):
    console.print("Initiating manual sync...")
    response = await call_daemon(
        "POST", "/sync/now", json={"interactive": interactive}, timeout=120.0
    )
    data = response.json()
    if response.status_code == 202:
        # Not authorized yet: the daemon syncs once the user approves
        if await wait_for_authorization(600):
            console.print("Sync started in the background; check [cyan]pastr daemon status[/cyan]")
        return
    if data.get("success"):
        console.print(f"[green]✓ Synced {data.get('snippet_count', 0)} snippets[/green]")
    elif data.get("status") == "failed:no_auth":
        console.print("[red]Manual sync failed: Authorization required.[/red]")
        console.print("Authorize with: [cyan]pastr auth login[/cyan]")
    else:
        console.print(f"[red]Sync failed:[/red] {data.get('status')}")


@sync.command()
@click.confirmation_option(prompt="Restoring replaces all local snippets. Continue?")
def restore():
    """Replace local snippets with the remote snapshot."""
    run(restore_remote())


async def restore_remote():
    response = await call_daemon("POST", "/sync/restore", timeout=60.0)
    if response.status_code == 200:
        console.print(f"[green]✓ Restored {response.json().get('restored', 0)} snippets[/green]")
    else:
        print_error(response, "Restore")


async def post_command(path: str, payload: Dict[str, Any], action: str):
    response = await call_daemon("POST", path, json=payload)
    if response.status_code == 200:
        console.print(f"[green]✓[/green] {response.json().get('message', 'Done')}")
    else:
        print_error(response, action)


@cli.command()
@click.argument("state", type=click.Choice(["enable", "disable"]))
def capture(state: str):
    """Enable or disable the clipboard monitor."""
    run(post_command("/capture", {"enabled": state == "enable"}, "Clipboard monitor"))


@cli.command()
def pending():
    """Show notifications waiting for an answer."""
    run(show_pending())


async def show_pending():
    response = await call_daemon("GET", "/notifications")
    notifications = response.json().get("notifications", [])
    actionable = [n for n in notifications if n.get("buttons")]

    if not actionable:
        console.print("[green]Nothing waiting[/green]")
        return

    for n in actionable:
        console.print(f"[bold]{n['title']}[/bold] [dim]{n['id']}[/dim]")
        console.print(f"  {n['message']}")
        buttons = ", ".join(f"{i}={label}" for i, label in enumerate(n["buttons"]))
        console.print(f"  [dim]{buttons}[/dim]")
    console.print("\n[dim]Use 'pastr resolve <id> save' or 'ignore' to answer[/dim]")


@cli.command()
@click.argument("notification_id")
@click.argument("action", type=click.Choice(["save", "ignore"]))
def resolve(notification_id: str, action: str):
    """Answer a clipboard capture prompt."""
    run(resolve_notification(notification_id, 0 if action == "save" else 1))


async def resolve_notification(notification_id: str, index: int):
    response = await call_daemon("POST", f"/notifications/{notification_id}/buttons/{index}")
    if response.status_code != 200:
        print_error(response, "Resolve")
        return
    data = response.json()
    if data.get("state") == "saved":
        console.print("[green]✓ Clipboard content saved as snippet[/green]")
    else:
        console.print("[yellow]Discarded[/yellow]")


@cli.group()
def auth():
    """Authorize or revoke remote sync."""


@auth.command()
@click.option("--wait", default=600, help="Seconds to wait for approval")
def login(wait: int):
    """Authorize remote sync (device code flow)."""
    run(auth_login(wait))


async def auth_login(wait: int):
    response = await call_daemon("POST", "/auth/authorize")
    if response.status_code != 202:
        print_error(response, "Authorization")
        return
    await wait_for_authorization(wait)


async def wait_for_authorization(wait: int) -> bool:
    """Poll the daemon until authorized, showing the device code once."""
    shown = False
    deadline = time.monotonic() + wait
    while time.monotonic() < deadline:
        state = (await call_daemon("GET", "/auth")).json()
        if state.get("authorized"):
            console.print("[green]✓ Authorized[/green]")
            return True
        prompt = state.get("prompt")
        if prompt and not shown:
            console.print(f"Visit [cyan]{prompt['verification_url']}[/cyan] and enter code [bold]{prompt['user_code']}[/bold]")
            shown = True
        await asyncio.sleep(2)
    console.print("[yellow]Still not authorized; check the daemon log[/yellow]")
    return False


@auth.command()
@click.confirmation_option(prompt="Deauthorize remote sync? This stops all automatic syncing.")
def logout():
    """Revoke the credential and disable auto-sync."""
    run(post_command("/auth/revoke", {}, "Deauthorize"))


@cli.command(name="export")
@click.argument("path", type=click.Path(dir_okay=False), required=False)
def export_cmd(path: Optional[str]):
    """Export snippets to a JSON backup."""
    path = path or f"pastr_backup_{datetime.now().strftime('%Y-%m-%d')}.json"
    run(post_command_count("/snippets/export", str(Path(path).resolve()), "exported", "Export"))


@cli.command(name="import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.confirmation_option(prompt="Importing will overwrite your current snippets. Continue?")
def import_cmd(path: str):
    """Replace snippets with a JSON backup."""
    run(post_command_count("/snippets/import", str(Path(path).resolve()), "imported", "Import"))


async def post_command_count(endpoint: str, path: str, key: str, action: str):
    response = await call_daemon("POST", endpoint, json={"path": path})
    if response.status_code == 200:
        console.print(f"[green]✓[/green] {action}: {response.json().get(key, 0)} snippets ({path})")
    else:
        print_error(response, action)


@cli.group()
def daemon():
    """Manage the Pastr daemon."""


@daemon.command()
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
def start(config: Optional[str]):
    """Start the Pastr daemon."""
    console.print("[cyan]Starting Pastr daemon...[/cyan]")

    from ..daemon.main import main as daemon_main

    try:
        asyncio.run(daemon_main(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
    except Exception as e:
        console.print(f"[red]Daemon error:[/red] {e}")
        logger.exception("Daemon crashed")


@daemon.command()
def stop():
    """Stop the Pastr daemon."""
    asyncio.run(stop_daemon())


async def stop_daemon():
    try:
        response = await call_daemon("POST", "/shutdown")
    except DaemonUnavailable:
        console.print("[yellow]Daemon not running[/yellow]")
        return
    if response.status_code == 200:
        console.print("[green]Daemon stopped[/green]")
    else:
        console.print(f"[red]Failed to stop daemon:[/red] {response.text}")


@daemon.command()
def status():
    """Check daemon status."""
    run(check_status())


async def check_status():
    response = await call_daemon("GET", "/status", timeout=2.0)
    if response.status_code != 200:
        console.print("[red]Daemon error[/red]")
        return

    data = response.json()
    console.print(f"[green]✓ Daemon is running[/green] (v{data.get('version')}, up {data.get('uptime')})")

    schedule = data.get("schedule", {})
    minutes = schedule.get("sync_interval_minutes", 0)
    console.print(f"\nAuto-sync: {'every %d min' % minutes if minutes else 'off'}")
    console.print(f"Last sync: {format_sync_status(data.get('sync', {}).get('last_status'))}")
    console.print(f"Clipboard monitor: {'on' if schedule.get('capture_enabled') else 'off'}")
    console.print(f"Pending captures: {data.get('capture', {}).get('pending', 0)}")

    stats = data.get("stats", {})
    console.print(f"Snippets: {stats.get('snippet_count', 0)}")
    console.print(f"Memory: {stats.get('memory_mb', 0):.1f} MB")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
