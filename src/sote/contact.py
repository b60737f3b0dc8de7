"""
SOTE - Contact records and introduction payloads.

A Contact is created only by the contact exchange. Its public key is fixed
once saved; a changed key means the relationship has to be re-established.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from . import crypto
from .errors import ErrorCode, NetworkError
from .utils import utc_now_iso


@dataclass(frozen=True)
class Introduction:
    """Public identity exchanged by both sides of a handshake."""

    username: str
    network_address: str
    public_key: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "network_address": self.network_address,
            "public_key": self.public_key.decode("utf-8"),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Introduction":
        """Build an introduction from a wire payload.

        Raises:
            NetworkError: If a field is missing or has the wrong type
        """
        for name in ("username", "network_address", "public_key"):
            value = data.get(name) if isinstance(data, dict) else None
            if not isinstance(value, str) or not value:
                raise NetworkError(
                    ErrorCode.E206_INVALID_MESSAGE,
                    f"Introduction field missing or invalid: {name}",
                    {"field": name},
                )
        return Introduction(
            username=data["username"],
            network_address=data["network_address"],
            public_key=data["public_key"].encode("utf-8"),
        )


@dataclass(frozen=True)
class IntroductionReply:
    """Answer of the remote node to an introduction.

    ``introduction`` carries the remote's own public identity and is only
    present when the introduction was accepted.
    """

    accepted: bool
    introduction: Optional[Introduction] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"accepted": self.accepted}
        if self.introduction is not None:
            data["introduction"] = self.introduction.to_dict()
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "IntroductionReply":
        accepted = data.get("accepted")
        if not isinstance(accepted, bool):
            raise NetworkError(
                ErrorCode.E206_INVALID_MESSAGE,
                "Introduction reply missing 'accepted'",
                {"field": "accepted"},
            )
        if not accepted:
            return IntroductionReply(accepted=False)
        return IntroductionReply(
            accepted=True, introduction=Introduction.from_dict(data.get("introduction") or {})
        )


@dataclass
class Contact:
    """A peer known to a local identity."""

    owner_username: str
    contact_username: str
    contact_network_address: str
    contact_public_key: bytes
    added_at: str = field(default_factory=utc_now_iso)

    @property
    def fingerprint(self) -> str:
        return crypto.generate_fingerprint(self.contact_public_key)

    @classmethod
    def from_introduction(cls, owner_username: str, introduction: Introduction) -> "Contact":
        return cls(
            owner_username=owner_username,
            contact_username=introduction.username,
            contact_network_address=introduction.network_address,
            contact_public_key=introduction.public_key,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_username": self.owner_username,
            "contact_username": self.contact_username,
            "contact_network_address": self.contact_network_address,
            "contact_public_key": self.contact_public_key.decode("utf-8"),
            "fingerprint": self.fingerprint,
            "added_at": self.added_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Contact":
        return Contact(
            owner_username=data["owner_username"],
            contact_username=data["contact_username"],
            contact_network_address=data["contact_network_address"],
            contact_public_key=data["contact_public_key"].encode("utf-8"),
            added_at=data.get("added_at") or utc_now_iso(),
        )
