"""CLI entry point and command groups."""

from __future__ import annotations

import logging

import click


@click.group()
@click.option("-v", "--verbose", count=True, help="Log more (repeat for debug output).")
def cli(verbose: int) -> None:
    """relaydoc: collaborative documents synced over Nostr relays."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s: %(name)s: %(message)s")


# Register command modules (must be after cli is defined)
from relaydoc.cli import doc_cmds as _doc_cmds  # noqa: E402, F401
from relaydoc.cli import keys_cmds as _keys_cmds  # noqa: E402, F401
from relaydoc.cli import relay_cmds as _relay_cmds  # noqa: E402, F401
from relaydoc.cli import session_cmds as _session_cmds  # noqa: E402, F401


if __name__ == "__main__":
    cli()
