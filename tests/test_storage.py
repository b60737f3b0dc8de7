"""
SOTE - Record store tests.
"""

import pytest

from sote import crypto
from sote.contact import Contact
from sote.errors import ErrorCode, IdentityError, PersistenceError
from sote.identity import Identity
from sote.storage import SQLiteStore


def _identity(username: str) -> Identity:
    return Identity(
        username=username,
        password_verifier=crypto.hash_for_authentication("pw"),
        encrypted_private_key=b"\x01" * 60,
        public_key=crypto.generate_keypair(username).public_key,
        network_address=f"{username}.loop:18080",
        transport_config_ref=f"loop://{username}",
    )


def _contact(owner: str, username: str) -> Contact:
    return Contact(
        owner_username=owner,
        contact_username=username,
        contact_network_address=f"{username}.loop:18080",
        contact_public_key=crypto.generate_keypair(username).public_key,
    )


class TestIdentities:
    def test_save_and_get(self, store):
        identity = _identity("alice")
        store.save_identity(identity)

        loaded = store.get_identity("alice")

        assert loaded.public_key == identity.public_key
        assert loaded.encrypted_private_key == identity.encrypted_private_key
        assert loaded.created_at == identity.created_at
        assert store.has_identity("alice")
        assert not store.has_identity("bob")

    def test_duplicate_username(self, store):
        store.save_identity(_identity("alice"))

        with pytest.raises(IdentityError) as exc_info:
            store.save_identity(_identity("alice"))

        assert exc_info.value.code == ErrorCode.E302_IDENTITY_ALREADY_EXISTS

    def test_get_unknown(self, store):
        with pytest.raises(PersistenceError) as exc_info:
            store.get_identity("nobody")

        assert exc_info.value.code == ErrorCode.E901_NOT_FOUND


class TestContacts:
    def test_insert_is_unique_per_pair(self, store):
        assert store.insert_contact(_contact("alice", "bob")) is True
        assert store.insert_contact(_contact("alice", "bob")) is False
        assert store.insert_contact(_contact("carol", "bob")) is True

        assert [c.contact_username for c in store.list_contacts("alice")] == ["bob"]
        assert len(store.list_contacts("carol")) == 1

    def test_first_key_wins(self, store):
        first = _contact("alice", "bob")
        store.insert_contact(first)
        store.insert_contact(_contact("alice", "bob"))

        assert store.find_contact("alice", "bob").contact_public_key == first.contact_public_key

    def test_get_contact_unknown(self, store):
        assert store.find_contact("alice", "bob") is None

        with pytest.raises(PersistenceError) as exc_info:
            store.get_contact("alice", "bob")
        assert exc_info.value.code == ErrorCode.E901_NOT_FOUND


class TestMessages:
    def test_conversation_covers_both_directions(self, store):
        store.append_message("alice", "bob", b"1")
        store.append_message("bob", "alice", b"2")
        store.append_message("alice", "carol", b"x")
        store.append_message("bob", "alice", b"3")

        rows = store.list_conversation("alice", "bob")

        assert [m.ciphertext for m in rows] == [b"1", b"2", b"3"]
        assert [m.ciphertext for m in store.list_conversation("bob", "alice")] == [b"1", b"2", b"3"]

    def test_timestamps_are_non_decreasing(self, store):
        messages = [store.append_message("alice", "bob", bytes([i])) for i in range(50)]

        timestamps = [m.timestamp for m in messages]
        assert timestamps == sorted(timestamps)
        assert [m.ciphertext for m in store.list_conversation("alice", "bob")] == [
            bytes([i]) for i in range(50)
        ]

    def test_timestamps_survive_reopen(self, temp_dir):
        db_path = temp_dir / "sote.db"
        with SQLiteStore(db_path) as first:
            before = first.append_message("alice", "bob", b"1")

        with SQLiteStore(db_path) as second:
            after = second.append_message("alice", "bob", b"2")
            rows = second.list_conversation("alice", "bob")

        assert after.timestamp >= before.timestamp
        assert [m.ciphertext for m in rows] == [b"1", b"2"]
