"""
SOTE - Async client for node endpoints.

Used by the CLI to talk to the local node and by the transports to talk to
remote nodes. One request frame is answered by one response frame; several
requests may share a connection.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .constants import DEFAULT_NODE_PORT, LOCALHOST, REQUEST_TIMEOUT
from .errors import ErrorCode, NetworkError, SoteError, TransportError
from .protocol import (
    AddContactRequest,
    AddressRequest,
    AuthenticateRequest,
    CreateIdentityRequest,
    FetchMessagesRequest,
    IntroductionRequest,
    PingRequest,
    Protocol,
    ReceiveMessageRequest,
    RequestType,
    ResolveIntroductionRequest,
    SaveContactRequest,
    SendMessageRequest,
    SessionRequest,
    encode_request,
)

logger = logging.getLogger(__name__)

Connector = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class NodeClient:
    """Async client for a SOTE node."""

    def __init__(
        self,
        host: str = LOCALHOST,
        port: int = DEFAULT_NODE_PORT,
        timeout: float = REQUEST_TIMEOUT,
        connector: Optional[Connector] = None,
    ):
        """
        Initialize client.

        Args:
            host: Node host
            port: Node port
            timeout: Seconds to wait for connect and for each response
            connector: Coroutine opening the stream (default: direct TCP)
        """
        self.host = host
        self.port = port
        self.timeout = timeout
        self.connector = connector or asyncio.open_connection
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.token: Optional[str] = None
        self.lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self.writer is not None

    async def connect(self) -> None:
        """
        Open the connection.

        Raises:
            TransportError: E201 if the node cannot be reached, E202 on timeout
        """
        try:
            self.reader, self.writer = await asyncio.wait_for(
                self.connector(self.host, self.port), timeout=self.timeout
            )
        except SoteError:
            raise
        except asyncio.TimeoutError as e:
            raise TransportError(
                ErrorCode.E202_CONNECTION_TIMEOUT,
                f"Timed out connecting to {self.host}:{self.port}",
                {"operation": "connect", "host": self.host, "port": self.port},
            ) from e
        except OSError as e:
            raise TransportError(
                ErrorCode.E201_CONNECTION_FAILED,
                f"Cannot connect to {self.host}:{self.port}: {e}",
                {"operation": "connect", "host": self.host, "port": self.port},
            ) from e

        logger.debug(f"Connected to node at {self.host}:{self.port}")

    async def disconnect(self) -> None:
        """Close the connection."""
        writer, self.reader, self.writer = self.writer, None, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error closing writer: {e}")

    async def __aenter__(self) -> "NodeClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def request(
        self,
        request: Any,
        request_type: Optional[RequestType] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Send a typed request and wait for its response.

        A kept-open connection the node has since dropped (idle timeout) is
        reopened and the request sent once more.

        Returns:
            Response payload (``success`` is always True)

        Raises:
            SoteError: The error reported by the node, rebuilt from its code
            TransportError: If the connection fails or times out
        """
        frame_type, payload = encode_request(request, request_type)
        wait = timeout if timeout is not None else self.timeout

        async with self.lock:
            reused = self.connected
            if not reused:
                await self.connect()
            try:
                response_type, response = await self._exchange(frame_type, payload, wait)
            except TransportError as e:
                if not reused or e.code != ErrorCode.E203_CONNECTION_CLOSED:
                    raise
                logger.debug(f"Connection to {self.host}:{self.port} went stale, reconnecting")
                await self.connect()
                response_type, response = await self._exchange(frame_type, payload, wait)

        if response_type != RequestType.RESPONSE:
            raise NetworkError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Unexpected frame type in response: {response_type.name}",
                {"operation": frame_type.name},
            )

        if not response.get("success"):
            raise SoteError.from_dict(response.get("error") or {})

        return response

    async def _exchange(
        self, frame_type: RequestType, payload: Dict[str, Any], wait: float
    ) -> Tuple[RequestType, Dict[str, Any]]:
        try:
            await Protocol.write_frame(self.writer, frame_type, payload)
            return await Protocol.read_frame(self.reader, wait)
        except asyncio.TimeoutError as e:
            await self.disconnect()
            raise TransportError(
                ErrorCode.E202_CONNECTION_TIMEOUT,
                f"No response from {self.host}:{self.port} within {wait}s",
                {"operation": frame_type.name, "host": self.host},
            ) from e
        except (asyncio.IncompleteReadError, ConnectionError) as e:
            await self.disconnect()
            raise TransportError(
                ErrorCode.E203_CONNECTION_CLOSED,
                f"Connection to {self.host}:{self.port} closed",
                {"operation": frame_type.name, "host": self.host},
            ) from e

    def _require_token(self) -> str:
        if not self.token:
            raise NetworkError(
                ErrorCode.E002_INVALID_ARGUMENT, "Not logged in", {"operation": "client"}
            )
        return self.token

    # Local front-end endpoints

    async def ping(self) -> bool:
        response = await self.request(PingRequest())
        return response.get("message") == "pong"

    async def create_identity(self, username: str, password: str) -> Dict[str, Any]:
        response = await self.request(CreateIdentityRequest(username, password))
        return response["identity"]

    async def authenticate(self, username: str, password: str) -> Dict[str, Any]:
        """Log in; the returned token is kept for later calls."""
        response = await self.request(AuthenticateRequest(username, password))
        self.token = response["token"]
        return response["identity"]

    async def logout(self) -> None:
        await self.request(SessionRequest(self._require_token()), RequestType.LOGOUT)
        self.token = None

    async def get_network_address(self, username: str) -> str:
        response = await self.request(AddressRequest(username))
        return response["network_address"]

    async def add_contact(self, network_address: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Start a handshake; blocks until the remote human decides."""
        return await self.request(
            AddContactRequest(self._require_token(), network_address), timeout=timeout
        )

    async def list_pending_introductions(self) -> List[Dict[str, Any]]:
        response = await self.request(
            SessionRequest(self._require_token()), RequestType.LIST_PENDING_INTRODUCTIONS
        )
        return response["pending"]

    async def resolve_introduction(self, handshake_id: str, accept: bool) -> None:
        await self.request(ResolveIntroductionRequest(self._require_token(), handshake_id, accept))

    async def save_contact(self, username: str, network_address: str, public_key: str) -> str:
        response = await self.request(
            SaveContactRequest(self._require_token(), username, network_address, public_key)
        )
        return response["result"]

    async def list_contacts(self) -> List[Dict[str, Any]]:
        response = await self.request(
            SessionRequest(self._require_token()), RequestType.LIST_CONTACTS
        )
        return response["contacts"]

    async def send_message(self, receiver: str, plaintext: str) -> Dict[str, Any]:
        return await self.request(SendMessageRequest(self._require_token(), receiver, plaintext))

    async def fetch_messages(self, contact: str) -> List[Dict[str, Any]]:
        response = await self.request(FetchMessagesRequest(self._require_token(), contact))
        return response["messages"]

    # Node-to-node endpoints

    async def send_introduction(
        self, username: str, network_address: str, public_key: str, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        return await self.request(
            IntroductionRequest(username, network_address, public_key), timeout=timeout
        )

    async def receive_message(self, sender: str, receiver: str, ciphertext: bytes) -> None:
        await self.request(ReceiveMessageRequest(sender, receiver, ciphertext))
