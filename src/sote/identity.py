"""
SOTE - Identity management.

Creates and authenticates local identities. The private key only ever
leaves this module encrypted under the password-derived key; the raw
password lives in a SessionContext for the duration of a login.
"""

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, Optional

from .constants import MAX_USERNAME_LENGTH, MIN_PASSWORD_LENGTH
from .crypto import CryptoProvider, constant_time_equals, generate_fingerprint, generate_secure_token
from .errors import ErrorCode, IdentityError, PersistenceError
from .utils import utc_now_iso, validate_username

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid username or password"


@dataclass
class Identity:
    """A local user identity as stored by the node."""

    username: str
    password_verifier: str
    encrypted_private_key: bytes
    public_key: bytes
    network_address: str
    transport_config_ref: str
    created_at: str = field(default_factory=utc_now_iso)

    @property
    def fingerprint(self) -> str:
        return generate_fingerprint(self.public_key)

    def public_info(self) -> Dict[str, Any]:
        """Fields that may be shared with clients and peers."""
        return {
            "username": self.username,
            "network_address": self.network_address,
            "public_key": self.public_key.decode("utf-8"),
            "fingerprint": self.fingerprint,
            "created_at": self.created_at,
        }

    def __repr__(self) -> str:
        return f"Identity(username={self.username!r}, network_address={self.network_address!r})"


class SessionContext:
    """An authenticated login.

    Holds the raw password in memory so symmetric keys can be re-derived on
    demand. Never serialized; the repr masks the secrets.
    """

    def __init__(self, identity: Identity, raw_password: str, token: Optional[str] = None):
        self.identity = identity
        self.raw_password = raw_password
        self.token = token or generate_secure_token()
        self.created_at = utc_now_iso()

    @property
    def username(self) -> str:
        return self.identity.username

    def __repr__(self) -> str:
        return f"SessionContext(username={self.identity.username!r}, created_at={self.created_at!r})"


class SessionHolder:
    """The single active session of a node process.

    A new login replaces the previous session; sessions never stack.
    """

    def __init__(self):
        self._lock = Lock()
        self._session: Optional[SessionContext] = None

    @property
    def active(self) -> bool:
        with self._lock:
            return self._session is not None

    def replace(self, session: SessionContext) -> Optional[SessionContext]:
        """Install ``session`` and return the one it replaced, if any."""
        with self._lock:
            previous, self._session = self._session, session
        if previous is not None:
            logger.info(f"Session for {previous.username} replaced by {session.username}")
        return previous

    def current(self) -> SessionContext:
        """
        Return the active session.

        Raises:
            IdentityError: E306 if nobody is logged in
        """
        with self._lock:
            session = self._session
        if session is None:
            raise IdentityError(
                ErrorCode.E306_NOT_AUTHENTICATED, "Not logged in", {"operation": "session"}
            )
        return session

    def require(self, token: str) -> SessionContext:
        """
        Return the active session if ``token`` belongs to it.

        Raises:
            IdentityError: E306 if nobody is logged in or the token is stale
        """
        session = self.current()
        if not constant_time_equals(session.token, token or ""):
            raise IdentityError(
                ErrorCode.E306_NOT_AUTHENTICATED,
                "Session token is not valid",
                {"operation": "session"},
            )
        return session

    def clear(self) -> None:
        with self._lock:
            self._session = None


class IdentityManager:
    """Creates, stores and authenticates local identities."""

    def __init__(
        self,
        store,
        transport,
        crypto: Optional[CryptoProvider] = None,
        sessions: Optional[SessionHolder] = None,
    ):
        """
        Args:
            store: PersistenceGateway holding the identities
            transport: TransportGateway assigning network addresses
            crypto: CryptoProvider (default parameters if omitted)
            sessions: SessionHolder updated by open_session and logout
        """
        self.store = store
        self.transport = transport
        self.crypto = crypto if crypto is not None else CryptoProvider()
        self.sessions = sessions if sessions is not None else SessionHolder()

    async def create_identity(self, username: str, password: str) -> Identity:
        """
        Create and persist a new identity.

        All-or-nothing: if any step fails, nothing is stored.

        Raises:
            IdentityError: E305 for an invalid username or password,
                E302 if the username is taken
            CryptoError: If key generation or protection fails
            TransportError: E210 if no network address can be assigned
        """
        if not validate_username(username):
            raise IdentityError(
                ErrorCode.E305_INVALID_IDENTITY,
                f"Invalid username (1-{MAX_USERNAME_LENGTH} letters, digits, '.', '-' or '_')",
                {"operation": "create_identity", "username": username},
            )
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
            raise IdentityError(
                ErrorCode.E305_INVALID_IDENTITY,
                "Password must not be empty",
                {"operation": "create_identity", "username": username},
            )
        if self.store.has_identity(username):
            raise IdentityError(
                ErrorCode.E302_IDENTITY_ALREADY_EXISTS,
                f"Username already exists: {username}",
                {"operation": "create_identity", "username": username},
            )

        verifier = self.crypto.hash_for_authentication(password)
        keypair = self.crypto.generate_keypair(username)
        symmetric_key = await self.crypto.derive_symmetric_key_async(password)
        encrypted_private_key = self.crypto.symmetric_encrypt(keypair.private_key, symmetric_key)

        assignment = await self.transport.provision_address()

        identity = Identity(
            username=username,
            password_verifier=verifier,
            encrypted_private_key=encrypted_private_key,
            public_key=keypair.public_key,
            network_address=assignment.network_address,
            transport_config_ref=assignment.config_ref,
        )
        self.store.save_identity(identity)

        logger.info(f"Created identity {username} at {identity.network_address}")
        return identity

    def authenticate(self, username: str, password: str) -> SessionContext:
        """
        Check credentials and return a new session.

        Raises:
            IdentityError: E307 for an unknown user or a wrong password; the
                two cases are indistinguishable to the caller
        """
        verifier = self.crypto.hash_for_authentication(password or "")
        try:
            identity = self.store.get_identity(username)
        except PersistenceError as e:
            if e.code != ErrorCode.E901_NOT_FOUND:
                raise
            logger.info("Login failed")
            raise IdentityError(ErrorCode.E307_INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE) from None

        if not constant_time_equals(verifier, identity.password_verifier):
            logger.info("Login failed")
            raise IdentityError(ErrorCode.E307_INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE)

        logger.info(f"Authenticated {username}")
        return SessionContext(identity, password)

    async def open_session(self, username: str, password: str) -> SessionContext:
        """
        Log in: authenticate, bring the identity's endpoint up and make the
        session the node's active one.
        """
        session = self.authenticate(username, password)
        await self.transport.start_endpoint(session.identity.transport_config_ref)
        self.sessions.replace(session)
        return session

    def logout(self, token: str) -> None:
        session = self.sessions.require(token)
        self.sessions.clear()
        logger.info(f"Logged out {session.username}")

    def get_public_identity(self, username: str) -> Dict[str, Any]:
        """
        Public fields of a local identity.

        Raises:
            PersistenceError: E901 if the identity does not exist
        """
        return self.store.get_identity(username).public_info()
