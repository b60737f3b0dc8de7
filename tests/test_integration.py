"""
SOTE - Integration tests.

End-to-end scenarios through the node's request dispatcher, with nodes
linked by the loopback transport, plus one run over real TCP sockets
using NodeClient and TcpTransport.
"""

import asyncio
import logging

import pytest

from helpers import FAST_ARGON2, befriend, make_config, wait_for_pending
from sote.client import NodeClient
from sote.contact import Introduction
from sote.crypto import CryptoProvider
from sote.errors import ErrorCode, IdentityError
from sote.protocol import (
    AddContactRequest,
    AuthenticateRequest,
    CreateIdentityRequest,
    FetchMessagesRequest,
    PingRequest,
    ReceiveMessageRequest,
    RequestType,
    ResolveIntroductionRequest,
    SaveContactRequest,
    SendMessageRequest,
    SessionRequest,
    encode_request,
)
from sote.server import NodeServer


async def call(node: NodeServer, request, request_type: RequestType = None):
    return await node.handle_request(*encode_request(request, request_type))


@pytest.mark.asyncio
async def test_ping(alice_node):
    response = await call(alice_node, PingRequest())

    assert response["success"] is True
    assert response["message"] == "pong"


@pytest.mark.asyncio
async def test_scenario_create_and_authenticate(alice_node):
    """create alice/pw1; pw1 logs in, pw2 is refused as invalid credentials."""
    created = await call(alice_node, CreateIdentityRequest("alice", "pw1"))
    assert created["success"] is True
    assert created["identity"]["username"] == "alice"
    assert "password_verifier" not in created["identity"]

    ok = await call(alice_node, AuthenticateRequest("alice", "pw1"))
    assert ok["success"] is True
    assert ok["token"]

    refused = await call(alice_node, AuthenticateRequest("alice", "pw2"))
    assert refused["success"] is False
    assert refused["error"]["code"] == ErrorCode.E307_INVALID_CREDENTIALS.value

    duplicate = await call(alice_node, CreateIdentityRequest("alice", "pw1"))
    assert duplicate["error"]["code"] == ErrorCode.E302_IDENTITY_ALREADY_EXISTS.value


@pytest.mark.asyncio
async def test_scenario_handshake_accepted(alice_node, alice, bob_node, bob):
    """Both sides end with exactly one contact holding the right key and address."""
    task = asyncio.create_task(
        call(alice_node, AddContactRequest(alice.token, bob.identity.network_address))
    )
    pending = await wait_for_pending(bob_node)

    listed = await call(bob_node, SessionRequest(bob.token), RequestType.LIST_PENDING_INTRODUCTIONS)
    assert [p["username"] for p in listed["pending"]] == ["alice"]

    resolved = await call(bob_node, ResolveIntroductionRequest(bob.token, pending[0].handshake_id, True))
    assert resolved["success"] is True

    response = await task
    assert response["success"] is True
    assert response["state"] == "reciprocated"
    assert response["result"] == "saved"

    alice_contacts = alice_node.store.list_contacts("alice")
    bob_contacts = bob_node.store.list_contacts("bob")
    assert len(alice_contacts) == 1
    assert len(bob_contacts) == 1
    assert alice_contacts[0].contact_username == "bob"
    assert alice_contacts[0].contact_public_key == bob.identity.public_key
    assert alice_contacts[0].contact_network_address == bob.identity.network_address
    assert bob_contacts[0].contact_username == "alice"
    assert bob_contacts[0].contact_public_key == alice.identity.public_key
    assert bob_contacts[0].contact_network_address == alice.identity.network_address


@pytest.mark.asyncio
async def test_scenario_handshake_rejected(alice_node, alice, bob_node, bob):
    """A rejection is a normal outcome: no contacts, no error."""
    task = asyncio.create_task(
        call(alice_node, AddContactRequest(alice.token, bob.identity.network_address))
    )
    pending = await wait_for_pending(bob_node)
    await call(bob_node, ResolveIntroductionRequest(bob.token, pending[0].handshake_id, False))

    response = await task

    assert response["success"] is True
    assert response["state"] == "rejected"
    assert response["contact"] is None
    assert alice_node.store.list_contacts("alice") == []
    assert bob_node.store.list_contacts("bob") == []


@pytest.mark.asyncio
async def test_repeated_handshake_keeps_one_contact(alice_node, alice, bob_node, bob):
    await befriend(alice_node, alice, bob_node, bob)
    outcome = await befriend(alice_node, alice, bob_node, bob)

    assert outcome.result.value == "duplicate_contact"
    assert len(alice_node.store.list_contacts("alice")) == 1
    assert len(bob_node.store.list_contacts("bob")) == 1


@pytest.mark.asyncio
async def test_scenario_message_exchange(alice_node, alice, bob_node, bob):
    """alice sends "hi"; both sides read it back through their own paths."""
    await befriend(alice_node, alice, bob_node, bob)

    sent = await call(alice_node, SendMessageRequest(alice.token, "bob", "hi"))
    assert sent["success"] is True
    assert sent["message_id"] >= 1

    alice_view = await call(alice_node, FetchMessagesRequest(alice.token, "bob"))
    assert [(m["sender"], m["plaintext"]) for m in alice_view["messages"]] == [("alice", "hi")]

    # bob logs in again with bob's own password before reading
    relogin = await call(bob_node, AuthenticateRequest("bob", "pw-bob"))
    bob_view = await call(bob_node, FetchMessagesRequest(relogin["token"], "alice"))
    assert [(m["sender"], m["plaintext"]) for m in bob_view["messages"]] == [("alice", "hi")]


@pytest.mark.asyncio
async def test_send_to_non_contact(alice_node, alice):
    response = await call(alice_node, SendMessageRequest(alice.token, "bob", "hi"))

    assert response["success"] is False
    assert response["error"]["code"] == ErrorCode.E405_CONTACT_NOT_FOUND.value
    assert response["error"]["details"]["receiver"] == "bob"


@pytest.mark.asyncio
async def test_save_contact_endpoint(alice_node, alice, bob):
    public_key = bob.identity.public_key.decode("utf-8")
    request = SaveContactRequest(alice.token, "bob", bob.identity.network_address, public_key)

    assert (await call(alice_node, request))["result"] == "saved"
    assert (await call(alice_node, request))["result"] == "duplicate_contact"

    own = SaveContactRequest(
        alice.token, "alice", alice.identity.network_address, alice.identity.public_key.decode("utf-8")
    )
    assert (await call(alice_node, own))["result"] == "self_contact"

    contacts = await call(alice_node, SessionRequest(alice.token), RequestType.LIST_CONTACTS)
    assert [c["contact_username"] for c in contacts["contacts"]] == ["bob"]


@pytest.mark.asyncio
async def test_requests_need_current_token(alice_node, alice):
    stale = await call(alice_node, SessionRequest("stale-token"), RequestType.LIST_CONTACTS)
    assert stale["error"]["code"] == ErrorCode.E306_NOT_AUTHENTICATED.value

    logout = await call(alice_node, SessionRequest(alice.token), RequestType.LOGOUT)
    assert logout["success"] is True

    after = await call(alice_node, FetchMessagesRequest(alice.token, "bob"))
    assert after["error"]["code"] == ErrorCode.E306_NOT_AUTHENTICATED.value


@pytest.mark.asyncio
async def test_pending_introduction_belongs_to_its_owner(alice_node, alice, bob_node, bob):
    task = asyncio.create_task(
        call(alice_node, AddContactRequest(alice.token, bob.identity.network_address))
    )
    pending = await wait_for_pending(bob_node)

    await bob_node.identities.create_identity("carol", "pw-carol")
    carol = await bob_node.identities.open_session("carol", "pw-carol")

    listed = await call(bob_node, SessionRequest(carol.token), RequestType.LIST_PENDING_INTRODUCTIONS)
    assert listed["pending"] == []

    response = await call(bob_node, ResolveIntroductionRequest(carol.token, pending[0].handshake_id, True))
    assert response["error"]["code"] == ErrorCode.E212_UNKNOWN_HANDSHAKE.value

    bob_node.approvals.resolve(pending[0].handshake_id, False)
    assert (await task)["state"] == "rejected"


@pytest.mark.asyncio
async def test_invalid_payload_is_rejected_before_dispatch(alice_node):
    response = await alice_node.handle_request(RequestType.CREATE_IDENTITY, {"username": "alice"})

    assert response["success"] is False
    assert response["error"]["code"] == ErrorCode.E206_INVALID_MESSAGE.value
    assert not alice_node.store.has_identity("alice")


@pytest.mark.asyncio
async def test_unexpected_error_is_reported_as_internal(alice_node, alice, monkeypatch):
    async def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(alice_node.codec, "fetch_messages", explode)

    response = await call(alice_node, FetchMessagesRequest(alice.token, "bob"))

    assert response["error"]["code"] == ErrorCode.E001_UNKNOWN_ERROR.value
    assert "boom" not in response["error"]["message"]


@pytest.mark.asyncio
async def test_round_trip_over_tcp(temp_dir, unused_tcp_port_factory):
    """Two nodes on real sockets, driven through NodeClient."""
    alice_port, bob_port = unused_tcp_port_factory(), unused_tcp_port_factory()
    alice_node = NodeServer(
        temp_dir / "alice",
        config=make_config(temp_dir / "alice"),
        crypto=CryptoProvider(**FAST_ARGON2),
        host="127.0.0.1",
        port=alice_port,
    )
    bob_node = NodeServer(
        temp_dir / "bob",
        config=make_config(temp_dir / "bob"),
        crypto=CryptoProvider(**FAST_ARGON2),
        host="127.0.0.1",
        port=bob_port,
    )
    await alice_node.start()
    await bob_node.start()

    alice_client = NodeClient("127.0.0.1", alice_port, timeout=10)
    bob_client = NodeClient("127.0.0.1", bob_port, timeout=10)
    try:
        assert await alice_client.ping()

        alice_identity = await alice_client.create_identity("alice", "pw1")
        bob_identity = await bob_client.create_identity("bob", "pw-bob")
        assert alice_identity["network_address"] == f"127.0.0.1:{alice_port}"
        assert await bob_client.get_network_address("bob") == f"127.0.0.1:{bob_port}"

        with pytest.raises(IdentityError) as exc_info:
            await alice_client.authenticate("alice", "wrong")
        assert exc_info.value.code == ErrorCode.E307_INVALID_CREDENTIALS

        await alice_client.authenticate("alice", "pw1")
        await bob_client.authenticate("bob", "pw-bob")

        add = asyncio.create_task(alice_client.add_contact(bob_identity["network_address"]))
        pending = []
        for _ in range(500):
            pending = await bob_client.list_pending_introductions()
            if pending:
                break
            await asyncio.sleep(0.01)
        assert [p["username"] for p in pending] == ["alice"]
        await bob_client.resolve_introduction(pending[0]["handshake_id"], True)

        outcome = await add
        assert outcome["state"] == "reciprocated"
        assert outcome["contact"]["contact_username"] == "bob"
        assert [c["contact_username"] for c in await bob_client.list_contacts()] == ["alice"]

        await alice_client.send_message("bob", "hi over tcp")
        await bob_client.send_message("alice", "hello back")

        alice_view = await alice_client.fetch_messages("bob")
        bob_view = await bob_client.fetch_messages("alice")
        expected = [("alice", "hi over tcp"), ("bob", "hello back")]
        assert [(m["sender"], m["plaintext"]) for m in alice_view] == expected
        assert [(m["sender"], m["plaintext"]) for m in bob_view] == expected

        await alice_client.logout()
        assert alice_client.token is None
    finally:
        await alice_client.disconnect()
        await bob_client.disconnect()
        await alice_node.stop()
        await bob_node.stop()


@pytest.mark.asyncio
async def test_receive_message_for_unknown_receiver(alice_node, alice):
    response = await call(alice_node, ReceiveMessageRequest("bob", "nobody", b"\x00\x01"))

    assert response["success"] is False
    assert response["error"]["code"] == ErrorCode.E901_NOT_FOUND.value
    assert response["error"]["details"]["receiver"] == "nobody"
    assert alice_node.store.list_conversation("nobody", "bob") == []


@pytest.mark.asyncio
async def test_pending_introduction_is_announced_in_the_log(bob_node, bob, caplog):
    introduction = Introduction("alice", "alice.loop:18080", b"key")

    with caplog.at_level(logging.INFO, logger="sote.server"):
        pending = bob_node.approvals.register("bob", introduction)

    assert pending.handshake_id in caplog.text
    assert "Pending introductions" in caplog.text
    assert "sote approve" not in caplog.text


@pytest.mark.asyncio
async def test_client_survives_idle_disconnect(temp_dir, unused_tcp_port):
    """A front-end left idle past the node's idle timeout keeps working."""
    node = NodeServer(
        temp_dir / "alice",
        config=make_config(temp_dir / "alice"),
        crypto=CryptoProvider(**FAST_ARGON2),
        host="127.0.0.1",
        port=unused_tcp_port,
    )
    node.idle_timeout = 0.2
    await node.start()

    client = NodeClient("127.0.0.1", unused_tcp_port, timeout=10)
    try:
        await client.create_identity("alice", "pw1")
        await client.authenticate("alice", "pw1")

        await asyncio.sleep(0.5)
        assert await client.list_contacts() == []

        await asyncio.sleep(0.5)
        await client.logout()
        assert client.token is None
        assert not node.sessions.active
    finally:
        await client.disconnect()
        await node.stop()
