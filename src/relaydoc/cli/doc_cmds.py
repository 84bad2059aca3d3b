"""CLI commands for the recent-document list."""

from __future__ import annotations

import time

import click

from relaydoc.cli.helpers import get_store, json_option, output_error, output_result
from relaydoc.cli.main import cli


@cli.group()
def docs() -> None:
    """Recently opened documents."""


@docs.command("list")
@json_option
def docs_list(as_json: bool) -> None:
    """List recently opened documents, most recent first."""
    documents = get_store().documents()
    if as_json:
        output_result(data=documents, human_message="", is_json=True)
        return
    if not documents:
        click.echo("No documents yet.")
        return
    for doc in documents:
        opened = time.strftime("%Y-%m-%d %H:%M", time.localtime(doc["last_opened"] / 1000))
        click.echo(f"{doc['id']}  {doc['title']}  (opened {opened})")


@docs.command("forget")
@click.argument("doc_id")
@json_option
def docs_forget(doc_id: str, as_json: bool) -> None:
    """Remove a document from the recent list."""
    if not get_store().remove_document(doc_id):
        output_error(f"{doc_id} is not in the recent list", "NOT_FOUND", as_json)
    output_result(data={"id": doc_id}, human_message=f"Forgot {doc_id}", is_json=as_json)
