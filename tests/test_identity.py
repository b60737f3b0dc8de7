"""
SOTE - Identity management tests.

Covers identity creation (all-or-nothing), authentication without
username enumeration, and the single-session holder.
"""

import pytest

from helpers import FAST_ARGON2, LoopbackNetwork, LoopbackTransport
from sote import crypto
from sote.crypto import CryptoProvider
from sote.errors import ErrorCode, IdentityError, PersistenceError, TransportError
from sote.identity import IdentityManager, SessionContext, SessionHolder


@pytest.fixture
def transport() -> LoopbackTransport:
    return LoopbackTransport(LoopbackNetwork(), "alice")


@pytest.fixture
def manager(store, transport) -> IdentityManager:
    return IdentityManager(store, transport, CryptoProvider(**FAST_ARGON2))


@pytest.mark.asyncio
async def test_create_identity(manager, store, transport):
    identity = await manager.create_identity("alice", "pw1")

    assert identity.username == "alice"
    assert identity.network_address == "alice.loop:18080"
    assert identity.transport_config_ref == "loop://alice"
    assert identity.password_verifier == crypto.hash_for_authentication("pw1")
    assert store.get_identity("alice").public_key == identity.public_key
    assert transport.provisioned == 1


@pytest.mark.asyncio
async def test_private_key_is_stored_encrypted(manager, store):
    identity = await manager.create_identity("alice", "pw1")
    stored = store.get_identity("alice")

    assert b"PRIVATE KEY" not in stored.encrypted_private_key
    private_key = manager.crypto.symmetric_decrypt(
        stored.encrypted_private_key, manager.crypto.derive_symmetric_key("pw1")
    )
    transit = crypto.asymmetric_encrypt("hi", identity.public_key)
    assert crypto.asymmetric_decrypt(transit, private_key) == b"hi"


@pytest.mark.asyncio
async def test_create_identity_duplicate_username(manager, transport):
    await manager.create_identity("alice", "pw1")

    with pytest.raises(IdentityError) as exc_info:
        await manager.create_identity("alice", "other")

    assert exc_info.value.code == ErrorCode.E302_IDENTITY_ALREADY_EXISTS
    assert exc_info.value.details["username"] == "alice"
    assert transport.provisioned == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("username", ["", "a b", "x" * 65, "semi;colon"])
async def test_create_identity_rejects_invalid_username(manager, store, username):
    with pytest.raises(IdentityError) as exc_info:
        await manager.create_identity(username, "pw1")

    assert exc_info.value.code == ErrorCode.E305_INVALID_IDENTITY


@pytest.mark.asyncio
async def test_create_identity_rejects_empty_password(manager, store):
    with pytest.raises(IdentityError) as exc_info:
        await manager.create_identity("alice", "")

    assert exc_info.value.code == ErrorCode.E305_INVALID_IDENTITY
    assert not store.has_identity("alice")


@pytest.mark.asyncio
async def test_create_identity_is_all_or_nothing(manager, store, transport):
    """A transport bootstrap failure leaves nothing behind."""
    transport.fail_provisioning = True

    with pytest.raises(TransportError) as exc_info:
        await manager.create_identity("alice", "pw1")

    assert exc_info.value.code == ErrorCode.E210_TRANSPORT_BOOTSTRAP_FAILED
    assert not store.has_identity("alice")

    transport.fail_provisioning = False
    identity = await manager.create_identity("alice", "pw1")
    assert identity.username == "alice"


@pytest.mark.asyncio
async def test_authenticate(manager):
    """The correct password succeeds, any other fails with the same error."""
    await manager.create_identity("alice", "pw1")

    session = manager.authenticate("alice", "pw1")
    assert session.identity.username == "alice"
    assert session.raw_password == "pw1"
    assert session.token

    for password in ["pw2", "", "PW1", "pw1 "]:
        with pytest.raises(IdentityError) as exc_info:
            manager.authenticate("alice", password)
        assert exc_info.value.code == ErrorCode.E307_INVALID_CREDENTIALS


@pytest.mark.asyncio
async def test_authenticate_does_not_reveal_unknown_users(manager):
    await manager.create_identity("alice", "pw1")

    with pytest.raises(IdentityError) as unknown:
        manager.authenticate("mallory", "pw1")
    with pytest.raises(IdentityError) as wrong:
        manager.authenticate("alice", "pw2")

    assert unknown.value.to_dict() == wrong.value.to_dict()
    assert unknown.value.details == {}


@pytest.mark.asyncio
async def test_open_session_starts_endpoint_and_replaces_previous(manager, transport):
    await manager.create_identity("alice", "pw1")
    await manager.create_identity("carol", "pw3")

    first = await manager.open_session("alice", "pw1")
    assert manager.sessions.current() is first
    assert transport.started == ["loop://alice"]

    second = await manager.open_session("carol", "pw3")
    assert manager.sessions.current() is second
    assert manager.sessions.current().username == "carol"

    with pytest.raises(IdentityError) as exc_info:
        manager.sessions.require(first.token)
    assert exc_info.value.code == ErrorCode.E306_NOT_AUTHENTICATED


@pytest.mark.asyncio
async def test_logout(manager):
    await manager.create_identity("alice", "pw1")
    session = await manager.open_session("alice", "pw1")

    with pytest.raises(IdentityError):
        manager.logout("not-the-token")

    manager.logout(session.token)
    assert not manager.sessions.active

    with pytest.raises(IdentityError) as exc_info:
        manager.sessions.current()
    assert exc_info.value.code == ErrorCode.E306_NOT_AUTHENTICATED


@pytest.mark.asyncio
async def test_get_public_identity(manager):
    identity = await manager.create_identity("alice", "pw1")

    info = manager.get_public_identity("alice")

    assert info["network_address"] == identity.network_address
    assert info["fingerprint"] == identity.fingerprint
    assert "password_verifier" not in info
    assert "encrypted_private_key" not in info

    with pytest.raises(PersistenceError) as exc_info:
        manager.get_public_identity("nobody")
    assert exc_info.value.code == ErrorCode.E901_NOT_FOUND


@pytest.mark.asyncio
async def test_session_repr_masks_password(manager):
    identity = await manager.create_identity("alice", "hunter2")
    session = SessionContext(identity, "hunter2")

    assert "hunter2" not in repr(session)
    assert session.token not in repr(session)


def test_session_holder_without_session():
    holder = SessionHolder()

    assert not holder.active
    with pytest.raises(IdentityError):
        holder.require("anything")
