"""Shared CLI helpers: output formatting and profile access."""

from __future__ import annotations

import json
from typing import NoReturn

import click

from relaydoc.storage.profile import ProfileStore


def get_store() -> ProfileStore:
    """Profile store rooted at ``$RELAYDOC_HOME`` (default ``~/.relaydoc``)."""
    return ProfileStore()


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def json_envelope(ok: bool, *, data: object = None, error: object = None) -> str:
    """Build a structured JSON output envelope."""
    result: dict = {"ok": ok}
    if data is not None:
        result["data"] = data
    if error is not None:
        result["error"] = error
    return json.dumps(result, sort_keys=True, indent=2) + "\n"


def json_error_obj(code: str, message: str) -> dict:
    """Build an error object for the JSON envelope."""
    return {"code": code, "message": message}


def output_error(message: str, code: str, is_json: bool, exit_code: int = 1) -> NoReturn:
    """Print error and exit. JSON errors go to stdout; human errors to stderr."""
    if is_json:
        click.echo(json_envelope(False, error=json_error_obj(code, message)))
    else:
        click.echo(f"Error: {message}", err=True)
    raise SystemExit(exit_code)


def output_result(*, data: object, human_message: str, is_json: bool) -> None:
    """Print success result in the appropriate format."""
    if is_json:
        click.echo(json_envelope(True, data=data))
    else:
        click.echo(human_message)


def json_option(f):  # noqa: ANN001, ANN201
    return click.option("--json", "as_json", is_flag=True, help="Output as JSON.")(f)
