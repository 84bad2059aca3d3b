"""CLI commands that open a live room session."""

from __future__ import annotations

import asyncio
import json

import click

from relaydoc.cli.helpers import get_store, json_option, output_error, output_result
from relaydoc.cli.main import cli
from relaydoc.core.config import SyncOptions
from relaydoc.core.errors import ConnectError, KeyFormatError
from relaydoc.core.ids import generate_room_id
from relaydoc.storage.profile import ProfileStore
from relaydoc.sync.engine import SyncEngine


def build_engine(store: ProfileStore, room_id: str, document, pool, **overrides) -> SyncEngine:
    """Engine for *room_id* using the profile's key and relays."""
    stored = store.keys()
    if stored is None:
        stored = store.generate_keys()
    options = SyncOptions(
        room_id=room_id,
        relays=tuple(store.relay_urls()),
        private_key=stored["private_key"],
        **overrides,
    )
    engine = SyncEngine(document, options, pool=pool)
    engine.events.relay_status.connect(
        lambda notice: store.update_relay_status(notice.relay, notice.status)
    )
    return engine


def _echo_event(name: str, payload: dict, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps({"event": name, **payload}, sort_keys=True))
    else:
        details = " ".join(f"{k}={v}" for k, v in payload.items())
        click.echo(f"[{name}] {details}".rstrip())


async def _run_join(room_id: str, append: str | None, as_json: bool) -> None:
    from relaydoc.nostr import NostrRelayPool
    from relaydoc.sync.automerge_doc import AutomergeDocument

    store = get_store()
    document = AutomergeDocument()
    pool = NostrRelayPool()
    engine = build_engine(store, room_id, document, pool)
    store.add_document(room_id)

    events = engine.events
    events.connected.connect(lambda n: _echo_event("connected", {"relays": ",".join(n.relays)}, as_json))
    events.sync.connect(
        lambda n: _echo_event("sync", {"status": n.status, "snapshot": n.snapshot}, as_json)
    )
    events.update.connect(
        lambda n: _echo_event("update", {"author": n.author[:12], "text": document.get_text()}, as_json)
    )
    events.awareness.connect(
        lambda n: _echo_event(
            "awareness",
            {"participants": ",".join(p.display_name or p.identity[:8] for p in n.participants)},
            as_json,
        )
    )
    events.error.connect(lambda n: _echo_event("error", {"message": n.message}, as_json))

    try:
        await engine.connect()
        _echo_event("text", {"content": document.get_text()}, as_json)
        name = store.user_name() or None
        await engine.update_presence(name=name)
        if append:
            document.insert_text(len(document.get_text()), append)
            await engine.flush()
        await asyncio.Event().wait()
    finally:
        await engine.destroy()
        await pool.aclose()


@cli.command("join")
@click.argument("room_id", required=False)
@click.option("--append", default=None, help="Append text to the document after syncing.")
@click.option("--json", "as_json", is_flag=True, help="Print events as JSON lines.")
def join(room_id: str | None, append: str | None, as_json: bool) -> None:
    """Join ROOM_ID and stream document events until interrupted.

    Without ROOM_ID a new document id is generated and printed.
    """
    if room_id is None:
        room_id = generate_room_id()
        _echo_event("created", {"room": room_id}, as_json)
    try:
        asyncio.run(_run_join(room_id, append, as_json))
    except KeyboardInterrupt:
        click.echo(f"Left {room_id}", err=True)
    except (ConnectError, KeyFormatError) as exc:
        output_error(str(exc), "CONNECT_FAILED", as_json)


async def _run_ping(room_id: str, count: int, interval: float, wait: float) -> dict:
    from relaydoc.nostr import NostrRelayPool
    from relaydoc.sync.automerge_doc import AutomergeDocument

    store = get_store()
    pool = NostrRelayPool()
    engine = build_engine(store, room_id, AutomergeDocument(), pool, sync_on_connect=False)
    try:
        await engine.connect()
        for i in range(count):
            if i:
                await asyncio.sleep(interval)
            await engine.ping()
        await asyncio.sleep(wait)
        return engine.metrics().as_dict()
    finally:
        await engine.destroy()
        await pool.aclose()


@cli.command("ping")
@click.argument("room_id")
@click.option("--count", "-c", default=3, show_default=True, type=click.IntRange(min=1))
@click.option("--interval", default=1.0, show_default=True, help="Seconds between pings.")
@click.option("--wait", default=3.0, show_default=True, help="Seconds to wait for the last reply.")
@json_option
def ping(room_id: str, count: int, interval: float, wait: float, as_json: bool) -> None:
    """Measure relay round-trip latency in ROOM_ID."""
    try:
        stats = asyncio.run(_run_ping(room_id, count, interval, wait))
    except (ConnectError, KeyFormatError) as exc:
        output_error(str(exc), "CONNECT_FAILED", as_json)

    if stats["lastLatency"] is None:
        human = f"No replies to {count} ping(s)."
    else:
        human = (
            f"{stats['samples']}/{count} replies: "
            f"min {stats['minLatency']} ms, avg {stats['avgLatency']} ms, "
            f"max {stats['maxLatency']} ms"
        )
    output_result(data=stats, human_message=human, is_json=as_json)
