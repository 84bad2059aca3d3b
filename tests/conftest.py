"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner
from fakes import RELAYS, ROOM, FakeDocument, FakeSigner, MemoryRelayPool

from relaydoc.core.config import SyncOptions
from relaydoc.storage.profile import ProfileStore
from relaydoc.sync.engine import SyncEngine


@pytest.fixture()
def pool() -> MemoryRelayPool:
    return MemoryRelayPool()


@pytest.fixture()
def document() -> FakeDocument:
    return FakeDocument()


@pytest.fixture()
def alice() -> FakeSigner:
    return FakeSigner("alice")


@pytest.fixture()
def bob() -> FakeSigner:
    return FakeSigner("bob")


@pytest.fixture()
def make_engine(pool, document, alice):
    """Factory fixture: build an engine over the in-memory pool.

    Usage::

        engine = make_engine(sync_on_connect=False)
    """

    def _make(**overrides) -> SyncEngine:
        options = SyncOptions(room_id=ROOM, relays=RELAYS, **overrides)
        return SyncEngine(document, options, pool=pool, signer=alice)

    return _make


@pytest.fixture()
def profile_home(tmp_path: Path) -> Path:
    return tmp_path / "profile"


@pytest.fixture()
def store(profile_home: Path) -> ProfileStore:
    return ProfileStore(profile_home)


@pytest.fixture()
def cli_runner() -> CliRunner:
    """Return a Click CliRunner for invoking CLI commands."""
    return CliRunner()


@pytest.fixture()
def invoke(cli_runner: CliRunner, profile_home: Path):
    """Return a helper that invokes CLI commands against a temporary profile.

    Usage::

        result = invoke("relays", "add", "wss://relay.example")
    """
    from relaydoc.cli.main import cli

    def _invoke(*args: str, **kwargs):
        return cli_runner.invoke(cli, list(args), env={"RELAYDOC_HOME": str(profile_home)}, **kwargs)

    return _invoke
