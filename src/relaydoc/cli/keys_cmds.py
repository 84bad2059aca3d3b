"""CLI commands for signing keys."""

from __future__ import annotations

import click

from relaydoc.cli.helpers import get_store, json_option, output_error, output_result
from relaydoc.cli.main import cli
from relaydoc.core.errors import KeyFormatError


@cli.group()
def keys() -> None:
    """Manage the Nostr key used to sign document events."""


@keys.command("generate")
@click.option("--force", is_flag=True, help="Replace an existing key.")
@json_option
def keys_generate(force: bool, as_json: bool) -> None:
    """Generate and store a new key."""
    store = get_store()
    if store.keys() is not None and not force:
        output_error("A key is already stored (use --force to replace it).", "KEY_EXISTS", as_json)
    stored = store.generate_keys()
    output_result(
        data={"public_key": stored["public_key"]},
        human_message=f"Generated key {stored['public_key']}",
        is_json=as_json,
    )


@keys.command("import")
@click.argument("secret")
@json_option
def keys_import(secret: str, as_json: bool) -> None:
    """Import a secret key (hex or nsec)."""
    try:
        stored = get_store().import_keys(secret)
    except KeyFormatError as exc:
        output_error(str(exc), "INVALID_KEY", as_json)
    output_result(
        data={"public_key": stored["public_key"]},
        human_message=f"Imported key {stored['public_key']}",
        is_json=as_json,
    )


@keys.command("show")
@json_option
def keys_show(as_json: bool) -> None:
    """Show the stored public key."""
    stored = get_store().keys()
    if stored is None:
        output_error("No key stored. Run 'relaydoc keys generate'.", "NO_KEY", as_json)
    output_result(
        data={"public_key": stored["public_key"]},
        human_message=stored["public_key"],
        is_json=as_json,
    )


@cli.command("name")
@click.argument("name")
def set_name(name: str) -> None:
    """Set the display name broadcast with presence."""
    get_store().set_user_name(name)
    click.echo(f"Name set to {name.strip()!r}")
