"""
SOTE - Wire protocol definitions.

Every request and response is one frame prefixed with a header:
- Protocol version (1 byte)
- Request type (2 bytes)
- Payload length (4 bytes)

Total header size: 7 bytes. The payload is UTF-8 JSON; binary fields are
base64 encoded.

Each endpoint has a typed request record. Incoming payloads are validated
into these records by :func:`parse_request` before any core component sees
them.
"""

import asyncio
import base64
import binascii
import json
import struct
from dataclasses import dataclass, field, fields
from enum import IntEnum
from typing import Any, ClassVar, Dict, Optional, Tuple

from .constants import MAX_MESSAGE_SIZE, MAX_TEXT_MESSAGE_SIZE, PROTOCOL_VERSION
from .errors import ErrorCode, NetworkError, SoteError


class RequestType(IntEnum):
    """Request type definitions."""

    # Control
    PING = 1
    RESPONSE = 2

    # Identity
    CREATE_IDENTITY = 10
    AUTHENTICATE = 11
    LOGOUT = 12
    GET_NETWORK_ADDRESS = 13

    # Contact exchange
    ADD_CONTACT = 20
    SEND_INTRODUCTION = 21
    LIST_PENDING_INTRODUCTIONS = 22
    RESOLVE_INTRODUCTION = 23
    SAVE_CONTACT = 24
    LIST_CONTACTS = 25

    # Messaging
    SEND_MESSAGE = 30
    RECEIVE_MESSAGE = 31
    FETCH_MESSAGES = 32


@dataclass(frozen=True)
class PingRequest:
    REQUEST_TYPE: ClassVar[RequestType] = RequestType.PING


@dataclass(frozen=True)
class CreateIdentityRequest:
    REQUEST_TYPE: ClassVar[RequestType] = RequestType.CREATE_IDENTITY

    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class AuthenticateRequest:
    REQUEST_TYPE: ClassVar[RequestType] = RequestType.AUTHENTICATE

    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class SessionRequest:
    """Request carrying only a session token (logout, listings)."""

    REQUEST_TYPE: ClassVar[RequestType] = RequestType.LOGOUT

    token: str = field(repr=False)


@dataclass(frozen=True)
class AddressRequest:
    REQUEST_TYPE: ClassVar[RequestType] = RequestType.GET_NETWORK_ADDRESS

    username: str


@dataclass(frozen=True)
class AddContactRequest:
    REQUEST_TYPE: ClassVar[RequestType] = RequestType.ADD_CONTACT

    token: str = field(repr=False)
    network_address: str


@dataclass(frozen=True)
class IntroductionRequest:
    """Node-to-node introduction of the sender's public identity."""

    REQUEST_TYPE: ClassVar[RequestType] = RequestType.SEND_INTRODUCTION

    username: str
    network_address: str
    public_key: str


@dataclass(frozen=True)
class SaveContactRequest:
    REQUEST_TYPE: ClassVar[RequestType] = RequestType.SAVE_CONTACT

    token: str = field(repr=False)
    username: str
    network_address: str
    public_key: str


@dataclass(frozen=True)
class ResolveIntroductionRequest:
    REQUEST_TYPE: ClassVar[RequestType] = RequestType.RESOLVE_INTRODUCTION

    token: str = field(repr=False)
    handshake_id: str
    accept: bool


@dataclass(frozen=True)
class SendMessageRequest:
    REQUEST_TYPE: ClassVar[RequestType] = RequestType.SEND_MESSAGE

    token: str = field(repr=False)
    receiver: str
    plaintext: str = field(repr=False)


@dataclass(frozen=True)
class ReceiveMessageRequest:
    """Node-to-node delivery of a transit ciphertext."""

    REQUEST_TYPE: ClassVar[RequestType] = RequestType.RECEIVE_MESSAGE

    sender: str
    receiver: str
    ciphertext: bytes = field(repr=False)


@dataclass(frozen=True)
class FetchMessagesRequest:
    REQUEST_TYPE: ClassVar[RequestType] = RequestType.FETCH_MESSAGES

    token: str = field(repr=False)
    contact: str


# Request type -> record. Session-only endpoints share SessionRequest.
REQUEST_RECORDS: Dict[RequestType, type] = {
    RequestType.PING: PingRequest,
    RequestType.CREATE_IDENTITY: CreateIdentityRequest,
    RequestType.AUTHENTICATE: AuthenticateRequest,
    RequestType.LOGOUT: SessionRequest,
    RequestType.GET_NETWORK_ADDRESS: AddressRequest,
    RequestType.ADD_CONTACT: AddContactRequest,
    RequestType.SEND_INTRODUCTION: IntroductionRequest,
    RequestType.LIST_PENDING_INTRODUCTIONS: SessionRequest,
    RequestType.RESOLVE_INTRODUCTION: ResolveIntroductionRequest,
    RequestType.SAVE_CONTACT: SaveContactRequest,
    RequestType.LIST_CONTACTS: SessionRequest,
    RequestType.SEND_MESSAGE: SendMessageRequest,
    RequestType.RECEIVE_MESSAGE: ReceiveMessageRequest,
    RequestType.FETCH_MESSAGES: FetchMessagesRequest,
}

# String fields that may legitimately be empty
_OPTIONAL_TEXT_FIELDS = {"plaintext"}


def _invalid(request_type: RequestType, name: str, reason: str) -> NetworkError:
    return NetworkError(
        ErrorCode.E206_INVALID_MESSAGE,
        f"Invalid field '{name}': {reason}",
        {"request_type": request_type.name, "field": name},
    )


def parse_request(request_type: RequestType, payload: Dict[str, Any]) -> Any:
    """
    Validate a payload into the typed record for ``request_type``.

    Raises:
        NetworkError: E206 if a field is missing or has the wrong type,
            E207 if a plaintext exceeds MAX_TEXT_MESSAGE_SIZE
    """
    record_class = REQUEST_RECORDS.get(request_type)
    if record_class is None or request_type == RequestType.RESPONSE:
        raise NetworkError(
            ErrorCode.E206_INVALID_MESSAGE,
            f"Not a request type: {request_type!r}",
            {"request_type": int(request_type)},
        )
    if not isinstance(payload, dict):
        raise NetworkError(
            ErrorCode.E206_INVALID_MESSAGE,
            "Request payload must be a JSON object",
            {"request_type": request_type.name},
        )

    values: Dict[str, Any] = {}
    for spec in fields(record_class):
        if spec.name not in payload:
            raise _invalid(request_type, spec.name, "missing")
        value = payload[spec.name]

        if spec.type is bool:
            if not isinstance(value, bool):
                raise _invalid(request_type, spec.name, "expected boolean")
        elif spec.type is bytes:
            if not isinstance(value, str):
                raise _invalid(request_type, spec.name, "expected base64 string")
            try:
                value = base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError):
                raise _invalid(request_type, spec.name, "invalid base64") from None
            if not value:
                raise _invalid(request_type, spec.name, "empty")
        else:
            if not isinstance(value, str):
                raise _invalid(request_type, spec.name, "expected string")
            if not value and spec.name not in _OPTIONAL_TEXT_FIELDS:
                raise _invalid(request_type, spec.name, "empty")

        values[spec.name] = value

    plaintext = values.get("plaintext")
    if plaintext is not None and len(plaintext.encode("utf-8")) > MAX_TEXT_MESSAGE_SIZE:
        raise NetworkError(
            ErrorCode.E207_MESSAGE_TOO_LARGE,
            f"Text message too large: {len(plaintext)} > {MAX_TEXT_MESSAGE_SIZE}",
            {"request_type": request_type.name, "max_size": MAX_TEXT_MESSAGE_SIZE},
        )

    return record_class(**values)


def encode_request(request: Any, request_type: Optional[RequestType] = None) -> Tuple[RequestType, Dict]:
    """Turn a typed request record into a frame type and JSON payload."""
    payload: Dict[str, Any] = {}
    for spec in fields(request):
        value = getattr(request, spec.name)
        if isinstance(value, bytes):
            value = base64.b64encode(value).decode("ascii")
        payload[spec.name] = value
    return request_type or request.REQUEST_TYPE, payload


class Protocol:
    """Frame codec for node requests and responses."""

    VERSION = PROTOCOL_VERSION
    HEADER_FORMAT = "!BHI"
    HEADER_SIZE = 7
    MAX_PAYLOAD_SIZE = MAX_MESSAGE_SIZE

    @staticmethod
    def pack_message(request_type: RequestType, payload: Dict) -> bytes:
        """
        Pack a payload with protocol header.

        Format:
        - Version: 1 byte (unsigned char)
        - Request Type: 2 bytes (unsigned short, big-endian)
        - Payload Length: 4 bytes (unsigned int, big-endian)
        - Payload: variable length (JSON)

        Raises:
            NetworkError: If the payload is too large
        """
        payload_bytes = json.dumps(payload).encode("utf-8")

        if len(payload_bytes) > Protocol.MAX_PAYLOAD_SIZE:
            raise NetworkError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                f"Payload too large: {len(payload_bytes)} bytes",
                {"size": len(payload_bytes), "max_size": Protocol.MAX_PAYLOAD_SIZE},
            )

        header = struct.pack(Protocol.HEADER_FORMAT, Protocol.VERSION, int(request_type), len(payload_bytes))
        return header + payload_bytes

    @staticmethod
    def unpack_header(header: bytes) -> Tuple[RequestType, int]:
        """
        Decode a 7-byte header into request type and payload length.

        Raises:
            NetworkError: On version mismatch, unknown type or oversized payload
        """
        version, type_int, length = struct.unpack(Protocol.HEADER_FORMAT, header)

        if version != Protocol.VERSION:
            raise NetworkError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Unsupported protocol version: {version}",
                {"version": version, "expected": Protocol.VERSION},
            )

        if length > Protocol.MAX_PAYLOAD_SIZE:
            raise NetworkError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                f"Payload too large: {length} bytes",
                {"size": length, "max_size": Protocol.MAX_PAYLOAD_SIZE},
            )

        try:
            request_type = RequestType(type_int)
        except ValueError:
            raise NetworkError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Invalid request type: {type_int}",
                {"type": type_int},
            ) from None

        return request_type, length

    @staticmethod
    def unpack_message(data: bytes) -> Optional[Tuple[RequestType, Dict, int]]:
        """
        Unpack a frame from received data.

        Returns:
        - Request type
        - Payload dictionary
        - Total bytes consumed (header + payload)

        Returns None if the data does not yet hold a complete frame.

        Raises:
            NetworkError: If the frame is invalid
        """
        if len(data) < Protocol.HEADER_SIZE:
            return None

        request_type, length = Protocol.unpack_header(data[: Protocol.HEADER_SIZE])

        if len(data) < Protocol.HEADER_SIZE + length:
            return None

        payload = Protocol.decode_payload(data[Protocol.HEADER_SIZE : Protocol.HEADER_SIZE + length])
        return request_type, payload, Protocol.HEADER_SIZE + length

    @staticmethod
    def decode_payload(payload_bytes: bytes) -> Dict:
        try:
            payload = json.loads(payload_bytes.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise NetworkError(
                ErrorCode.E206_INVALID_MESSAGE, f"Failed to parse message: {e}", {"error": str(e)}
            ) from e
        if not isinstance(payload, dict):
            raise NetworkError(
                ErrorCode.E206_INVALID_MESSAGE, "Payload must be a JSON object", {}
            )
        return payload

    @staticmethod
    async def read_frame(reader: asyncio.StreamReader, timeout: float) -> Tuple[RequestType, Dict]:
        """
        Read exactly one frame from a stream.

        Raises:
            asyncio.TimeoutError: If the frame does not arrive in time
            asyncio.IncompleteReadError: If the peer closes mid-frame
            NetworkError: If the frame is invalid
        """
        header = await asyncio.wait_for(reader.readexactly(Protocol.HEADER_SIZE), timeout=timeout)
        request_type, length = Protocol.unpack_header(header)
        payload_bytes = await asyncio.wait_for(reader.readexactly(length), timeout=timeout)
        return request_type, Protocol.decode_payload(payload_bytes)

    @staticmethod
    async def write_frame(writer: asyncio.StreamWriter, request_type: RequestType, payload: Dict) -> None:
        writer.write(Protocol.pack_message(request_type, payload))
        await writer.drain()

    @staticmethod
    def success(**data: Any) -> Dict[str, Any]:
        """Build a successful response payload."""
        return {"success": True, **data}

    @staticmethod
    def failure(error: SoteError) -> Dict[str, Any]:
        """Build a failed response payload from a coded error."""
        return {"success": False, "error": error.to_dict()}
