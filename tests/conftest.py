"""
Pytest configuration and fixtures for SOTE tests.

Provides temporary directories, a fast CryptoProvider, an in-memory
loopback transport that routes node-to-node requests between in-process
NodeServers, and ready-made alice/bob nodes.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest
import pytest_asyncio

from helpers import FAST_ARGON2, LoopbackNetwork, make_node
from sote.crypto import CryptoProvider
from sote.server import NodeServer
from sote.storage import SQLiteStore


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path
    """
    tmp = Path(tempfile.mkdtemp(prefix="sote_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def fast_crypto() -> CryptoProvider:
    return CryptoProvider(**FAST_ARGON2)


@pytest.fixture
def store() -> Generator[SQLiteStore, None, None]:
    """In-memory record store."""
    db = SQLiteStore(":memory:")
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def network() -> LoopbackNetwork:
    return LoopbackNetwork()


@pytest_asyncio.fixture
async def alice_node(temp_dir: Path, network: LoopbackNetwork):
    node = make_node(temp_dir / "alice", network, "alice")
    yield node
    await node.stop()


@pytest_asyncio.fixture
async def bob_node(temp_dir: Path, network: LoopbackNetwork):
    node = make_node(temp_dir / "bob", network, "bob")
    yield node
    await node.stop()


@pytest_asyncio.fixture
async def alice(alice_node: NodeServer, network: LoopbackNetwork):
    """alice registered and logged in on the alice node; returns the session."""
    identity = await alice_node.identities.create_identity("alice", "pw1")
    network.attach(identity.network_address, alice_node)
    return await alice_node.identities.open_session("alice", "pw1")


@pytest_asyncio.fixture
async def bob(bob_node: NodeServer, network: LoopbackNetwork):
    """bob registered and logged in on the bob node; returns the session."""
    identity = await bob_node.identities.create_identity("bob", "pw-bob")
    network.attach(identity.network_address, bob_node)
    return await bob_node.identities.open_session("bob", "pw-bob")
