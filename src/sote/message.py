"""
SOTE - Message encryption and storage.

Each message is encrypted twice:
- Transit copy: sealed to the receiver's public key and delivered to the
  receiver's node, which stores it untouched
- Archival copy: encrypted under the sender's password-derived key and
  stored locally after a successful delivery

Fetching picks the decryption path per row from the reader's role.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .crypto import CryptoProvider
from .errors import ContactError, CryptoError, ErrorCode, PersistenceError, SoteError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Message:
    """A stored message row. Immutable once written."""

    message_id: int
    sender: str
    receiver: str
    ciphertext: bytes
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "sender": self.sender,
            "receiver": self.receiver,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class FetchedMessage:
    """Result of decrypting one row; exactly one of plaintext and error is set."""

    message_id: int
    timestamp: str
    sender: str
    plaintext: Optional[str] = None
    error: Optional[SoteError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.message_id,
            "timestamp": self.timestamp,
            "sender": self.sender,
        }
        if self.error is not None:
            data["error"] = self.error.to_dict()
        else:
            data["plaintext"] = self.plaintext
        return data


class MessageCodec:
    """Dual-encryption send path, verbatim receive path and per-row fetch."""

    def __init__(self, store, transport, crypto: Optional[CryptoProvider] = None):
        """
        Args:
            store: PersistenceGateway for contacts and messages
            transport: TransportGateway delivering transit ciphertexts
            crypto: CryptoProvider (default parameters if omitted)
        """
        self.store = store
        self.transport = transport
        self.crypto = crypto if crypto is not None else CryptoProvider()

    async def send_message(self, session, contact_username: str, plaintext: str) -> Message:
        """
        Encrypt, deliver and archive a message.

        Nothing is stored unless delivery succeeds.

        Raises:
            ContactError: E405 if the receiver is not a contact
            CryptoError: E101 if the transit encryption fails
            TransportError: E204 if delivery fails
            PersistenceError: E902 if the archival copy cannot be written
        """
        owner = session.identity.username
        try:
            contact = self.store.get_contact(owner, contact_username)
        except PersistenceError as e:
            if e.code != ErrorCode.E901_NOT_FOUND:
                raise
            raise ContactError(
                ErrorCode.E405_CONTACT_NOT_FOUND,
                f"Receiver unknown: {contact_username}",
                {"operation": "send_message", "sender": owner, "receiver": contact_username},
            ) from e

        try:
            transit = self.crypto.asymmetric_encrypt(plaintext, contact.contact_public_key)
        except CryptoError as e:
            raise CryptoError(
                ErrorCode.E101_ENCRYPTION_FAILED,
                f"Failed to encrypt message for {contact_username}: {e.message}",
                {"operation": "send_message", "sender": owner, "receiver": contact_username},
            ) from e

        await self.transport.deliver_message(
            contact.contact_network_address, owner, contact_username, transit
        )

        archival_key = await self.crypto.derive_symmetric_key_async(session.raw_password)
        archival = self.crypto.symmetric_encrypt(plaintext, archival_key)
        message = self.store.append_message(owner, contact_username, archival)

        logger.info(f"Sent message {message.message_id} from {owner} to {contact_username}")
        return message

    def receive_message(self, sender: str, receiver: str, transit_ciphertext: bytes) -> Message:
        """Store an incoming transit ciphertext as-is; no decryption here."""
        message = self.store.append_message(sender, receiver, transit_ciphertext)
        logger.info(f"Received message {message.message_id} from {sender} for {receiver}")
        return message

    async def fetch_messages(self, session, contact_username: str) -> List[FetchedMessage]:
        """
        Decrypt the conversation with ``contact_username``, oldest first.

        Own rows use the archival key. Other rows need the private key,
        which is decrypted at most once per call and only if such a row
        exists. A row that cannot be decrypted is reported with its error;
        the remaining rows are still returned.

        Raises:
            PersistenceError: If the rows cannot be read
        """
        owner = session.identity.username
        rows = self.store.list_conversation(owner, contact_username)
        if not rows:
            return []

        symmetric_key = await self.crypto.derive_symmetric_key_async(session.raw_password)
        private_key: Optional[bytes] = None
        private_key_error: Optional[CryptoError] = None
        results: List[FetchedMessage] = []

        for row in rows:
            try:
                if row.sender == owner:
                    plaintext = self.crypto.symmetric_decrypt(row.ciphertext, symmetric_key)
                else:
                    if private_key_error is not None:
                        raise private_key_error
                    if private_key is None:
                        try:
                            private_key = self.crypto.symmetric_decrypt(
                                session.identity.encrypted_private_key, symmetric_key
                            )
                        except CryptoError as e:
                            private_key_error = e
                            raise
                    plaintext = self.crypto.asymmetric_decrypt(row.ciphertext, private_key)
            except CryptoError as e:
                logger.warning(
                    f"Cannot decrypt message {row.message_id} ({row.sender} -> {row.receiver}): "
                    f"[{e.code.value}] {e.message}"
                )
                error = CryptoError(
                    e.code,
                    e.message,
                    {"operation": "fetch_messages", "message_id": row.message_id, "contact": contact_username},
                )
                results.append(FetchedMessage(row.message_id, row.timestamp, row.sender, error=error))
                continue

            results.append(
                FetchedMessage(
                    row.message_id,
                    row.timestamp,
                    row.sender,
                    plaintext=plaintext.decode("utf-8", errors="replace"),
                )
            )

        return results
