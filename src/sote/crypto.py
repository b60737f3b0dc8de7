"""
SOTE - Cryptographic primitives.

This module is the only place that touches cryptographic libraries. Every
function is pure and stateless so callers may use them concurrently.

- Password verifier: SHA-256 applied AUTH_HASH_ROUNDS times, hex encoded
- Symmetric key: Argon2id over the password with a fixed application salt
- Symmetric encryption: AES-256-GCM, nonce prepended to the ciphertext
- Keypairs: X25519, exchanged as PEM (SubjectPublicKeyInfo / PKCS#8)
- Public-key encryption: sealed box (ephemeral X25519 ECDH, HKDF-SHA256,
  ChaCha20-Poly1305)

All cryptographic operations use well-tested, open-source libraries:
- cryptography library (Apache 2.0/BSD License)
- argon2-cffi (MIT License)
"""

import asyncio
import hashlib
import os
import secrets
from dataclasses import dataclass
from typing import Union

from argon2.exceptions import Argon2Error
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    AUTH_HASH_ROUNDS,
    KEY_SIZE,
    NONCE_SIZE,
    SEALED_BOX_VERSION,
    SYMMETRIC_KEY_SALT,
    TAG_SIZE,
    TRANSIT_KEY_INFO,
)
from .errors import CryptoError, ErrorCode

# version(1) || ephemeral public key(32) || nonce(12)
SEALED_BOX_HEADER_SIZE = 1 + KEY_SIZE + NONCE_SIZE


@dataclass(frozen=True)
class KeyPair:
    """A freshly generated X25519 keypair in PEM form.

    ``private_key`` is raw key material and must be wrapped with
    :func:`symmetric_encrypt` before it leaves the caller.
    """

    owner_label: str
    public_key: bytes
    private_key: bytes

    def __repr__(self) -> str:
        return f"KeyPair(owner_label={self.owner_label!r}, public_key=<{len(self.public_key)} bytes>)"


def _to_bytes(data: Union[str, bytes]) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def derive_symmetric_key(
    password: str,
    time_cost: int = ARGON2_TIME_COST,
    memory_cost: int = ARGON2_MEMORY_COST,
    parallelism: int = ARGON2_PARALLELISM,
) -> bytes:
    """
    Derive the 32-byte symmetric key protecting the private key and the
    sender's archival copies.

    Argon2id with a fixed salt keeps the derivation deterministic: the same
    password always yields the same key, so nothing besides the password is
    needed to recover archived messages.

    Parameters (defaults):
        - Time cost: 3 iterations
        - Memory cost: 65536 KB (64 MB)
        - Parallelism: 1 thread
        - Output: 32 bytes (256 bits)

    Raises:
        CryptoError: If the Argon2 parameters are rejected
    """
    try:
        return hash_secret_raw(
            secret=_to_bytes(password),
            salt=SYMMETRIC_KEY_SALT,
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=KEY_SIZE,
            type=Type.ID,
        )
    except Argon2Error as e:
        raise CryptoError(
            ErrorCode.E108_KEY_DERIVATION_FAILED,
            f"Symmetric key derivation failed: {e}",
            {"operation": "derive_symmetric_key"},
        ) from e


def hash_for_authentication(password: str, rounds: int = AUTH_HASH_ROUNDS) -> str:
    """
    Compute the password verifier stored with an identity.

    SHA-256 is applied ``rounds`` times to the raw password and the final
    digest is hex encoded. The verifier is only ever compared, never used
    as key material.
    """
    digest = _to_bytes(password)
    for _ in range(rounds):
        digest = hashlib.sha256(digest).digest()
    return digest.hex()


def symmetric_encrypt(plaintext: Union[str, bytes], key: bytes) -> bytes:
    """
    Encrypt with AES-256-GCM.

    Returns ``nonce || ciphertext || tag`` so the blob is self-contained.
    """
    if len(key) != KEY_SIZE:
        raise CryptoError(
            ErrorCode.E103_INVALID_KEY,
            f"Symmetric key must be {KEY_SIZE} bytes",
            {"operation": "symmetric_encrypt", "key_length": len(key)},
        )
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, _to_bytes(plaintext), None)


def symmetric_decrypt(blob: bytes, key: bytes) -> bytes:
    """
    Decrypt a blob produced by :func:`symmetric_encrypt`.

    Raises:
        CryptoError: E102 if the blob is undersized or authentication fails
            (wrong key, corrupted or tampered data)
    """
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise CryptoError(
            ErrorCode.E102_DECRYPTION_FAILED,
            "Ciphertext too short",
            {"operation": "symmetric_decrypt", "length": len(blob)},
        )
    if len(key) != KEY_SIZE:
        raise CryptoError(
            ErrorCode.E102_DECRYPTION_FAILED,
            "Decryption failed. Incorrect key or corrupted data.",
            {"operation": "symmetric_decrypt"},
        )

    nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise CryptoError(
            ErrorCode.E102_DECRYPTION_FAILED,
            "Decryption failed. Incorrect key or corrupted data.",
            {"operation": "symmetric_decrypt"},
        ) from e


def generate_keypair(owner_label: str) -> KeyPair:
    """
    Generate an X25519 keypair for ``owner_label``.

    X25519 provides:
    - 128-bit security level
    - Small key size (32 bytes)
    - Resistance to timing attacks
    """
    private_key = x25519.X25519PrivateKey.generate()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return KeyPair(owner_label=owner_label, public_key=public_pem, private_key=private_pem)


def load_public_key(public_key_pem: Union[str, bytes]) -> x25519.X25519PublicKey:
    """
    Parse a PEM public key.

    Raises:
        CryptoError: E103 if the data is not an X25519 public key
    """
    try:
        key = serialization.load_pem_public_key(_to_bytes(public_key_pem))
    except (ValueError, TypeError) as e:
        raise CryptoError(
            ErrorCode.E103_INVALID_KEY, f"Malformed public key: {e}", {"operation": "load_public_key"}
        ) from e
    if not isinstance(key, x25519.X25519PublicKey):
        raise CryptoError(
            ErrorCode.E103_INVALID_KEY,
            "Public key is not an X25519 key",
            {"operation": "load_public_key", "type": type(key).__name__},
        )
    return key


def load_private_key(private_key_pem: Union[str, bytes]) -> x25519.X25519PrivateKey:
    """
    Parse a PEM private key.

    Raises:
        CryptoError: E103 if the data is not an unencrypted X25519 private key
    """
    try:
        key = serialization.load_pem_private_key(_to_bytes(private_key_pem), password=None)
    except (ValueError, TypeError) as e:
        raise CryptoError(
            ErrorCode.E103_INVALID_KEY, f"Malformed private key: {e}", {"operation": "load_private_key"}
        ) from e
    if not isinstance(key, x25519.X25519PrivateKey):
        raise CryptoError(
            ErrorCode.E103_INVALID_KEY,
            "Private key is not an X25519 key",
            {"operation": "load_private_key", "type": type(key).__name__},
        )
    return key


def _raw_public_bytes(public_key: x25519.X25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
    )


def _derive_transit_key(shared_secret: bytes, ephemeral_public: bytes, recipient_public: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=ephemeral_public + recipient_public,
        info=TRANSIT_KEY_INFO,
    )
    return hkdf.derive(shared_secret)


def asymmetric_encrypt(plaintext: Union[str, bytes], public_key_pem: Union[str, bytes]) -> bytes:
    """
    Encrypt for the holder of ``public_key_pem``.

    A fresh ephemeral X25519 key is generated per message; its public half
    travels in the header and is authenticated as associated data.

    Blob layout: ``version(1) || ephemeral_pub(32) || nonce(12) || ciphertext``

    Raises:
        CryptoError: E103 for a malformed public key, E101 otherwise
    """
    recipient = load_public_key(public_key_pem)

    try:
        ephemeral = x25519.X25519PrivateKey.generate()
        ephemeral_public = _raw_public_bytes(ephemeral.public_key())
        shared_secret = ephemeral.exchange(recipient)
        key = _derive_transit_key(shared_secret, ephemeral_public, _raw_public_bytes(recipient))

        header = bytes([SEALED_BOX_VERSION]) + ephemeral_public
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = ChaCha20Poly1305(key).encrypt(nonce, _to_bytes(plaintext), header)
    except ValueError as e:
        raise CryptoError(
            ErrorCode.E101_ENCRYPTION_FAILED,
            f"Encryption failed: {e}",
            {"operation": "asymmetric_encrypt"},
        ) from e

    return header + nonce + ciphertext


def asymmetric_decrypt(blob: bytes, private_key_pem: Union[str, bytes]) -> bytes:
    """
    Decrypt a blob produced by :func:`asymmetric_encrypt`.

    Raises:
        CryptoError: E103 (KeyParseError) if the private key material is
            malformed, E102 for every other failure
    """
    private_key = load_private_key(private_key_pem)

    if len(blob) < SEALED_BOX_HEADER_SIZE + TAG_SIZE:
        raise CryptoError(
            ErrorCode.E102_DECRYPTION_FAILED,
            "Ciphertext too short",
            {"operation": "asymmetric_decrypt", "length": len(blob)},
        )
    if blob[0] != SEALED_BOX_VERSION:
        raise CryptoError(
            ErrorCode.E102_DECRYPTION_FAILED,
            f"Unsupported ciphertext version: {blob[0]}",
            {"operation": "asymmetric_decrypt", "version": blob[0]},
        )

    header = blob[: 1 + KEY_SIZE]
    ephemeral_public = blob[1 : 1 + KEY_SIZE]
    nonce = blob[1 + KEY_SIZE : SEALED_BOX_HEADER_SIZE]
    ciphertext = blob[SEALED_BOX_HEADER_SIZE:]

    try:
        ephemeral = x25519.X25519PublicKey.from_public_bytes(ephemeral_public)
        shared_secret = private_key.exchange(ephemeral)
        key = _derive_transit_key(
            shared_secret, ephemeral_public, _raw_public_bytes(private_key.public_key())
        )
        return ChaCha20Poly1305(key).decrypt(nonce, ciphertext, header)
    except (InvalidTag, ValueError) as e:
        raise CryptoError(
            ErrorCode.E102_DECRYPTION_FAILED,
            "Decryption failed. Wrong key or corrupted data.",
            {"operation": "asymmetric_decrypt"},
        ) from e


def generate_fingerprint(public_key_pem: Union[str, bytes]) -> str:
    """
    Generate a human-readable fingerprint from a PEM public key using SHA-256.

    Users compare fingerprints out-of-band before approving an
    introduction. Returns a 64-character hexadecimal fingerprint.
    """
    public_key = load_public_key(public_key_pem)
    digest = hashes.Hash(hashes.SHA256())
    digest.update(_raw_public_bytes(public_key))
    return digest.finalize().hex()


def constant_time_equals(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """Compare two secrets without leaking timing information."""
    return secrets.compare_digest(_to_bytes(a), _to_bytes(b))


def generate_secure_token(length: int = 32) -> str:
    """
    Generate a cryptographically secure random token.

    Used for session tokens and handshake ids.
    """
    return secrets.token_hex(length)


class CryptoProvider:
    """
    Narrow interface over the primitives in this module.

    Holds only the Argon2 cost parameters, so one instance may be shared
    between components and tasks.
    """

    def __init__(
        self,
        time_cost: int = ARGON2_TIME_COST,
        memory_cost: int = ARGON2_MEMORY_COST,
        parallelism: int = ARGON2_PARALLELISM,
    ):
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism

    @classmethod
    def from_config(cls, config) -> "CryptoProvider":
        """Build a provider from the ``[crypto]`` config section."""
        return cls(
            time_cost=config.get("crypto", "argon2_time_cost", ARGON2_TIME_COST),
            memory_cost=config.get("crypto", "argon2_memory_cost", ARGON2_MEMORY_COST),
            parallelism=config.get("crypto", "argon2_parallelism", ARGON2_PARALLELISM),
        )

    def derive_symmetric_key(self, password: str) -> bytes:
        return derive_symmetric_key(password, self.time_cost, self.memory_cost, self.parallelism)

    async def derive_symmetric_key_async(self, password: str) -> bytes:
        """Argon2 derivation in a worker thread."""
        return await asyncio.to_thread(self.derive_symmetric_key, password)

    def hash_for_authentication(self, password: str) -> str:
        return hash_for_authentication(password)

    def symmetric_encrypt(self, plaintext: Union[str, bytes], key: bytes) -> bytes:
        return symmetric_encrypt(plaintext, key)

    def symmetric_decrypt(self, blob: bytes, key: bytes) -> bytes:
        return symmetric_decrypt(blob, key)

    def generate_keypair(self, owner_label: str) -> KeyPair:
        return generate_keypair(owner_label)

    def asymmetric_encrypt(self, plaintext: Union[str, bytes], public_key_pem: Union[str, bytes]) -> bytes:
        return asymmetric_encrypt(plaintext, public_key_pem)

    def asymmetric_decrypt(self, blob: bytes, private_key_pem: Union[str, bytes]) -> bytes:
        return asymmetric_decrypt(blob, private_key_pem)

    def fingerprint(self, public_key_pem: Union[str, bytes]) -> str:
        return generate_fingerprint(public_key_pem)
