"""
SOTE - Contact exchange.

Two nodes become mutual contacts through a handshake:

    INITIATED -> AWAITING_REMOTE_APPROVAL -> ACCEPTED -> RECIPROCATED
                                          -> REJECTED

The initiator sends its introduction and suspends until the remote answers.
The remote parks the introduction in a pending-approval table until a
human accepts or rejects it through a separate channel, or until the
approval timeout turns it into a rejection. Both sides save a Contact for
the other; nothing secret is negotiated.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Set

from . import crypto
from .constants import APPROVAL_TIMEOUT, MAX_PENDING_INTRODUCTIONS
from .contact import Contact, Introduction, IntroductionReply
from .errors import ErrorCode, ProtocolError, TransportError
from .utils import normalize_network_address, utc_now_iso

logger = logging.getLogger(__name__)


class HandshakeState(Enum):
    """States of one handshake attempt."""

    INITIATED = auto()  # Introduction built, not yet sent
    AWAITING_REMOTE_APPROVAL = auto()  # Waiting for the remote human
    ACCEPTED = auto()  # Remote accepted, saving the contact
    RECIPROCATED = auto()  # Both sides hold a contact
    REJECTED = auto()  # Remote rejected or did not answer in time


class SaveContactResult(Enum):
    """Outcome of saving a contact. None of these is an error."""

    SAVED = "saved"
    SELF_CONTACT = "self_contact"
    DUPLICATE_CONTACT = "duplicate_contact"


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: HandshakeState
    to_state: HandshakeState
    timestamp: float = field(default_factory=time.time)


class Handshake:
    """
    Finite state machine for one handshake attempt.

    Enforces valid transitions and keeps the transition history.
    """

    TRANSITIONS: Dict[HandshakeState, Set[HandshakeState]] = {
        HandshakeState.INITIATED: {HandshakeState.AWAITING_REMOTE_APPROVAL},
        HandshakeState.AWAITING_REMOTE_APPROVAL: {HandshakeState.ACCEPTED, HandshakeState.REJECTED},
        HandshakeState.ACCEPTED: {HandshakeState.RECIPROCATED},
        HandshakeState.RECIPROCATED: set(),
        HandshakeState.REJECTED: set(),
    }

    TERMINAL_STATES = {HandshakeState.RECIPROCATED, HandshakeState.REJECTED}

    def __init__(
        self,
        peer: str,
        initial_state: HandshakeState = HandshakeState.INITIATED,
        handshake_id: Optional[str] = None,
    ):
        """
        Args:
            peer: Network address or username of the other side
            initial_state: INITIATED for the initiator, AWAITING_REMOTE_APPROVAL
                for the receiving side
            handshake_id: Identifier (generated if omitted)
        """
        self.handshake_id = handshake_id or crypto.generate_secure_token(16)
        self.peer = peer
        self.state = initial_state
        self.history: List[StateTransition] = []

    @property
    def terminal(self) -> bool:
        return self.state in self.TERMINAL_STATES

    def can_transition(self, new_state: HandshakeState) -> bool:
        return new_state in self.TRANSITIONS[self.state]

    def transition(self, new_state: HandshakeState) -> bool:
        """
        Move to ``new_state``.

        Returns:
            True if the transition was valid and applied, False otherwise
        """
        if not self.can_transition(new_state):
            logger.warning(
                f"Invalid handshake transition {self.state.name} -> {new_state.name} "
                f"(handshake {self.handshake_id})"
            )
            return False

        old_state = self.state
        self.state = new_state
        self.history.append(StateTransition(old_state, new_state))
        logger.debug(f"Handshake {self.handshake_id}: {old_state.name} -> {new_state.name}")
        return True


@dataclass
class HandshakeOutcome:
    """What the initiator observes once its handshake has finished."""

    handshake_id: str
    state: HandshakeState
    result: Optional[SaveContactResult] = None
    contact: Optional[Contact] = None

    @property
    def rejected(self) -> bool:
        return self.state == HandshakeState.REJECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handshake_id": self.handshake_id,
            "state": self.state.name.lower(),
            "result": self.result.value if self.result else None,
            "contact": self.contact.to_dict() if self.contact else None,
        }


@dataclass
class PendingIntroduction:
    """An introduction waiting for the local human's decision."""

    owner_username: str
    introduction: Introduction
    handshake: Handshake
    future: "asyncio.Future[bool]"
    received_at: str = field(default_factory=utc_now_iso)

    @property
    def handshake_id(self) -> str:
        return self.handshake.handshake_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handshake_id": self.handshake_id,
            "owner": self.owner_username,
            "username": self.introduction.username,
            "network_address": self.introduction.network_address,
            "fingerprint": crypto.generate_fingerprint(self.introduction.public_key),
            "received_at": self.received_at,
        }


class PendingApprovals:
    """Pending introductions keyed by handshake id.

    Each entry holds a future that the approval channel resolves with
    :meth:`resolve`.
    """

    def __init__(self, max_pending: int = MAX_PENDING_INTRODUCTIONS):
        self.max_pending = max_pending
        self._pending: Dict[str, PendingIntroduction] = {}
        self._listeners: List[Callable[[PendingIntroduction], None]] = []

    def __len__(self) -> int:
        return len(self._pending)

    def add_listener(self, callback: Callable[[PendingIntroduction], None]) -> None:
        """Call ``callback`` whenever a new introduction is registered."""
        self._listeners.append(callback)

    def register(self, owner_username: str, introduction: Introduction) -> PendingIntroduction:
        """
        Park an introduction until it is resolved.

        Raises:
            ProtocolError: E209 if the table is full
        """
        if len(self._pending) >= self.max_pending:
            raise ProtocolError(
                ErrorCode.E209_HANDSHAKE_FAILED,
                "Too many pending introductions",
                {"operation": "receive_introduction", "from": introduction.username},
            )

        future = asyncio.get_running_loop().create_future()
        pending = PendingIntroduction(
            owner_username=owner_username,
            introduction=introduction,
            handshake=Handshake(introduction.username, HandshakeState.AWAITING_REMOTE_APPROVAL),
            future=future,
        )
        self._pending[pending.handshake_id] = pending

        for callback in self._listeners:
            callback(pending)

        return pending

    def resolve(self, handshake_id: str, accept: bool) -> bool:
        """
        Deliver the human decision for a pending introduction.

        Returns:
            The decision

        Raises:
            ProtocolError: E212 if the id is unknown or already resolved
        """
        pending = self._pending.get(handshake_id)
        if pending is None or pending.future.done():
            raise ProtocolError(
                ErrorCode.E212_UNKNOWN_HANDSHAKE,
                f"No pending introduction with id {handshake_id}",
                {"operation": "resolve_introduction", "handshake_id": handshake_id},
            )
        pending.future.set_result(accept)
        return accept

    def get(self, handshake_id: str) -> Optional[PendingIntroduction]:
        return self._pending.get(handshake_id)

    def list(self, owner_username: Optional[str] = None) -> List[PendingIntroduction]:
        """Unresolved introductions, oldest first."""
        return [
            pending
            for pending in self._pending.values()
            if not pending.future.done()
            and (owner_username is None or pending.owner_username == owner_username)
        ]

    def discard(self, handshake_id: str) -> None:
        pending = self._pending.pop(handshake_id, None)
        if pending is not None and not pending.future.done():
            pending.future.cancel()


class ContactExchange:
    """Drives both sides of the handshake and saves the resulting contacts."""

    def __init__(
        self,
        store,
        transport,
        approvals: Optional[PendingApprovals] = None,
        approval_timeout: float = APPROVAL_TIMEOUT,
    ):
        """
        Args:
            store: PersistenceGateway for contacts
            transport: TransportGateway carrying introductions
            approvals: Pending-approval table shared with the approval channel
            approval_timeout: Seconds an introduction may wait for a decision
        """
        self.store = store
        self.transport = transport
        self.approvals = approvals if approvals is not None else PendingApprovals()
        self.approval_timeout = approval_timeout

    def save_contact(self, owner_username: str, introduction: Introduction) -> SaveContactResult:
        """
        Save ``introduction`` as a contact of ``owner_username``.

        Self-introductions and already known contacts are no-ops. A known
        contact's public key is never replaced.

        Raises:
            CryptoError: E103 if the offered public key cannot be parsed
            PersistenceError: E902 if the row cannot be written
        """
        if introduction.username == owner_username:
            logger.info(f"Ignoring self-introduction for {owner_username}")
            return SaveContactResult.SELF_CONTACT

        crypto.load_public_key(introduction.public_key)

        existing = self.store.find_contact(owner_username, introduction.username)
        if existing is None:
            if self.store.insert_contact(Contact.from_introduction(owner_username, introduction)):
                logger.info(f"Saved contact {introduction.username} for {owner_username}")
                return SaveContactResult.SAVED
            existing = self.store.find_contact(owner_username, introduction.username)

        if existing is not None and existing.contact_public_key != introduction.public_key:
            logger.warning(
                f"Contact {introduction.username} of {owner_username} offered a different "
                f"public key; keeping the saved one"
            )
        else:
            logger.info(f"Contact {introduction.username} already known to {owner_username}")
        return SaveContactResult.DUPLICATE_CONTACT

    async def initiate(self, session, target_address: str) -> HandshakeOutcome:
        """
        Introduce the session identity to the node at ``target_address``.

        Returns:
            The outcome; a rejection is an outcome, not an exception

        Raises:
            TransportError: E205 for an unusable address, E204 if the
                introduction cannot be delivered
        """
        identity = session.identity
        handshake = Handshake(peer=target_address)

        try:
            is_self = normalize_network_address(target_address) == normalize_network_address(
                identity.network_address
            )
        except ValueError as e:
            raise TransportError(
                ErrorCode.E205_ADDRESS_RESOLUTION_FAILED,
                f"Invalid network address: {target_address}",
                {"operation": "add_contact", "username": identity.username, "address": target_address},
            ) from e

        if is_self:
            logger.info(f"{identity.username} tried to add its own address; nothing to do")
            return HandshakeOutcome(handshake.handshake_id, handshake.state, SaveContactResult.SELF_CONTACT)

        introduction = Introduction(
            username=identity.username,
            network_address=identity.network_address,
            public_key=identity.public_key,
        )

        handshake.transition(HandshakeState.AWAITING_REMOTE_APPROVAL)
        logger.info(f"Handshake {handshake.handshake_id}: introducing {identity.username} to {target_address}")
        reply = await self.transport.send_introduction(target_address, introduction)

        if not reply.accepted:
            handshake.transition(HandshakeState.REJECTED)
            logger.info(f"Handshake {handshake.handshake_id}: rejected by {target_address}")
            return HandshakeOutcome(handshake.handshake_id, handshake.state)

        handshake.transition(HandshakeState.ACCEPTED)
        result = self.save_contact(identity.username, reply.introduction)
        contact = self.store.find_contact(identity.username, reply.introduction.username)
        handshake.transition(HandshakeState.RECIPROCATED)

        logger.info(
            f"Handshake {handshake.handshake_id}: {identity.username} <-> "
            f"{reply.introduction.username} ({result.value})"
        )
        return HandshakeOutcome(handshake.handshake_id, handshake.state, result, contact)

    async def receive_introduction(self, session, introduction: Introduction) -> IntroductionReply:
        """
        Handle an introduction from another node.

        Suspends until the approval channel decides or the approval timeout
        expires; the timeout counts as a rejection.

        Raises:
            CryptoError: E103 if the introduction carries an unusable key
            ProtocolError: E209 if too many introductions are pending
        """
        identity = session.identity
        crypto.load_public_key(introduction.public_key)

        pending = self.approvals.register(identity.username, introduction)
        handshake = pending.handshake
        logger.info(
            f"Introduction from {introduction.username} ({introduction.network_address}) "
            f"awaiting approval as handshake {handshake.handshake_id}"
        )

        try:
            accepted = await asyncio.wait_for(pending.future, timeout=self.approval_timeout)
        except asyncio.TimeoutError:
            timeout_error = ProtocolError(
                ErrorCode.E213_HANDSHAKE_TIMEOUT,
                f"No decision within {self.approval_timeout}s",
                {
                    "operation": "receive_introduction",
                    "handshake_id": handshake.handshake_id,
                    "from": introduction.username,
                },
            )
            logger.warning(f"{timeout_error}; rejecting")
            accepted = False
        finally:
            self.approvals.discard(handshake.handshake_id)

        if not accepted:
            handshake.transition(HandshakeState.REJECTED)
            logger.info(f"Handshake {handshake.handshake_id}: rejected introduction from {introduction.username}")
            return IntroductionReply(accepted=False)

        handshake.transition(HandshakeState.ACCEPTED)
        self.save_contact(identity.username, introduction)
        handshake.transition(HandshakeState.RECIPROCATED)

        return IntroductionReply(
            accepted=True,
            introduction=Introduction(
                username=identity.username,
                network_address=identity.network_address,
                public_key=identity.public_key,
            ),
        )
