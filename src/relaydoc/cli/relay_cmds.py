"""CLI commands for the relay list."""

from __future__ import annotations

import click

from relaydoc.cli.helpers import get_store, json_option, output_error, output_result
from relaydoc.cli.main import cli


@cli.group()
def relays() -> None:
    """Manage the relays documents are synced through."""


@relays.command("list")
@json_option
def relays_list(as_json: bool) -> None:
    """List configured relays and their last known status."""
    entries = get_store().relays()
    if as_json:
        output_result(data=entries, human_message="", is_json=True)
        return
    if not entries:
        click.echo("No relays configured.")
        return
    for entry in entries:
        click.echo(f"{entry['url']}  [{entry.get('status', 'disconnected')}]")


@relays.command("add")
@click.argument("url")
@json_option
def relays_add(url: str, as_json: bool) -> None:
    """Add a relay (ws:// or wss://)."""
    try:
        added = get_store().add_relay(url)
    except ValueError as exc:
        output_error(str(exc), "INVALID_URL", as_json)
    message = f"Added {url}" if added else f"{url} is already configured"
    output_result(data={"url": url, "added": added}, human_message=message, is_json=as_json)


@relays.command("remove")
@click.argument("url")
@json_option
def relays_remove(url: str, as_json: bool) -> None:
    """Remove a relay."""
    if not get_store().remove_relay(url):
        output_error(f"{url} is not configured", "NOT_FOUND", as_json)
    output_result(data={"url": url}, human_message=f"Removed {url}", is_json=as_json)
