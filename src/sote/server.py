"""
SOTE - Node server using asyncio.

One process serves both the local front-end (create-identity, login,
messaging commands) and other nodes (send-introduction, receive-message).
Every request is validated into a typed record before it reaches the
identity, contact exchange or message components.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import Config
from .constants import (
    APPROVAL_TIMEOUT,
    CLIENT_IDLE_TIMEOUT,
    CONFIG_FILENAME,
    CONNECTION_TIMEOUT,
    DATABASE_FILENAME,
    DEFAULT_DATA_DIR,
    DEFAULT_HOST,
    DEFAULT_NODE_PORT,
    VERSION,
)
from .contact import Introduction
from .crypto import CryptoProvider
from .errors import ConfigError, ErrorCode, PersistenceError, ProtocolError, ServerError, SoteError
from .handshake import ContactExchange, PendingApprovals, PendingIntroduction
from .identity import IdentityManager, SessionHolder
from .message import MessageCodec
from .protocol import Protocol, RequestType, parse_request
from .storage import PersistenceGateway, SQLiteStore
from .transport import TcpTransport, TorTransport, TransportGateway
from .utils import setup_logging, validate_port

logger = logging.getLogger(__name__)


class NodeServer:
    """A SOTE node: endpoint server plus the core components it wires together."""

    def __init__(
        self,
        data_dir: Path,
        config: Optional[Config] = None,
        transport: Optional[TransportGateway] = None,
        store: Optional[PersistenceGateway] = None,
        crypto: Optional[CryptoProvider] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ):
        """
        Initialize the node.

        Args:
            data_dir: Directory holding the database, config and logs
            config: Configuration (loaded from data_dir if omitted)
            transport: Routing overlay (built from config if omitted)
            store: Record store (SQLite in data_dir if omitted)
            crypto: CryptoProvider (built from config if omitted)
            host: Listen host (overrides config)
            port: Listen port (overrides config)
        """
        self.data_dir = Path(data_dir)
        self.config = config if config is not None else Config(self.data_dir / CONFIG_FILENAME)
        self.host = host or self.config.get("node", "host", DEFAULT_HOST)
        self.port = port if port is not None else self.config.get("node", "port", DEFAULT_NODE_PORT)
        self.idle_timeout = self.config.get("node", "idle_timeout", CLIENT_IDLE_TIMEOUT)
        self.running = False
        self.server: Optional[asyncio.Server] = None

        self.crypto = crypto if crypto is not None else CryptoProvider.from_config(self.config)
        self.store = store if store is not None else SQLiteStore(self.data_dir / DATABASE_FILENAME)
        self.transport = transport if transport is not None else self._build_transport()

        self.sessions = SessionHolder()
        self.approvals = PendingApprovals()
        self.approvals.add_listener(self._on_introduction)

        self.identities = IdentityManager(self.store, self.transport, self.crypto, self.sessions)
        self.exchange = ContactExchange(
            self.store,
            self.transport,
            self.approvals,
            self.config.get("handshake", "approval_timeout", APPROVAL_TIMEOUT),
        )
        self.codec = MessageCodec(self.store, self.transport, self.crypto)

        self._handlers: Dict[RequestType, Callable[[Any], Awaitable[Dict[str, Any]]]] = {
            RequestType.PING: self._handle_ping,
            RequestType.CREATE_IDENTITY: self._handle_create_identity,
            RequestType.AUTHENTICATE: self._handle_authenticate,
            RequestType.LOGOUT: self._handle_logout,
            RequestType.GET_NETWORK_ADDRESS: self._handle_get_network_address,
            RequestType.ADD_CONTACT: self._handle_add_contact,
            RequestType.SEND_INTRODUCTION: self._handle_send_introduction,
            RequestType.LIST_PENDING_INTRODUCTIONS: self._handle_list_pending_introductions,
            RequestType.RESOLVE_INTRODUCTION: self._handle_resolve_introduction,
            RequestType.SAVE_CONTACT: self._handle_save_contact,
            RequestType.LIST_CONTACTS: self._handle_list_contacts,
            RequestType.SEND_MESSAGE: self._handle_send_message,
            RequestType.RECEIVE_MESSAGE: self._handle_receive_message,
            RequestType.FETCH_MESSAGES: self._handle_fetch_messages,
        }

    def _build_transport(self) -> TransportGateway:
        kind = self.config.get("network", "transport", "tor")
        timeout = self.config.get("network", "timeout", CONNECTION_TIMEOUT)

        if kind == "tor":
            return TorTransport.from_config(self.config, self.data_dir, self.port)
        if kind == "tcp":
            return TcpTransport(
                self.host,
                self.port,
                timeout=timeout,
                introduction_timeout=self.config.get("handshake", "approval_timeout", APPROVAL_TIMEOUT)
                + timeout,
            )
        raise ConfigError(
            ErrorCode.E700_CONFIG_ERROR,
            f"Unknown transport: {kind!r} (expected 'tor' or 'tcp')",
            {"section": "network", "key": "transport"},
        )

    async def start(self) -> None:
        """
        Start listening.

        Raises:
            ServerError: E801 if the listening socket cannot be opened
        """
        try:
            self.server = await asyncio.start_server(self._handle_client, self.host, self.port)
        except OSError as e:
            raise ServerError(
                ErrorCode.E801_SERVER_START_FAILED,
                f"Cannot listen on {self.host}:{self.port}: {e}",
                {"host": self.host, "port": self.port},
            ) from e

        self.running = True
        logger.info(f"SOTE node {VERSION} listening on {self.host}:{self.port}")
        logger.info(f"Data directory: {self.data_dir}")

    async def stop(self) -> None:
        """Stop listening and release the transport and the store."""
        logger.info("Stopping node...")
        self.running = False

        for pending in self.approvals.list():
            self.approvals.discard(pending.handshake_id)

        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

        await self.transport.close()
        self.store.close()
        self.sessions.clear()
        logger.info("Node stopped")

    async def run(self) -> None:
        """Serve until cancelled or interrupted."""
        try:
            await self.server.serve_forever()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    def _on_introduction(self, pending: PendingIntroduction) -> None:
        logger.info(
            f"Pending introduction {pending.handshake_id} from {pending.introduction.username} "
            f"for {pending.owner_username}; review it under 'Pending introductions' in 'sote start'"
        )

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Serve frames on one connection until the peer closes it or goes idle."""
        address = writer.get_extra_info("peername")
        logger.debug(f"Connection from {address}")

        try:
            while self.running:
                try:
                    request_type, payload = await Protocol.read_frame(reader, self.idle_timeout)
                except (asyncio.IncompleteReadError, asyncio.TimeoutError, ConnectionError):
                    break
                except SoteError as e:
                    logger.warning(f"Invalid frame from {address}: {e}")
                    await Protocol.write_frame(writer, RequestType.RESPONSE, Protocol.failure(e))
                    break

                response = await self.handle_request(request_type, payload)
                await Protocol.write_frame(writer, RequestType.RESPONSE, response)
        except ConnectionError as e:
            logger.debug(f"Connection to {address} lost: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError as e:
                logger.debug(f"Error closing writer: {e}")

    async def handle_request(self, request_type: RequestType, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate and dispatch one request.

        Returns:
            Response payload; errors are reported as
            ``{"success": False, "error": {...}}``
        """
        try:
            request = parse_request(request_type, payload)
            return await self._handlers[request_type](request)
        except SoteError as e:
            logger.info(f"{request_type.name} failed: {e}")
            return Protocol.failure(e)
        except Exception as e:
            logger.error(f"Unexpected error handling {request_type.name}: {e}", exc_info=True)
            return Protocol.failure(
                SoteError(
                    ErrorCode.E001_UNKNOWN_ERROR,
                    "Internal error",
                    {"operation": request_type.name.lower()},
                )
            )

    async def _handle_ping(self, request) -> Dict[str, Any]:
        return Protocol.success(message="pong", version=VERSION)

    async def _handle_create_identity(self, request) -> Dict[str, Any]:
        identity = await self.identities.create_identity(request.username, request.password)
        return Protocol.success(identity=identity.public_info())

    async def _handle_authenticate(self, request) -> Dict[str, Any]:
        session = await self.identities.open_session(request.username, request.password)
        return Protocol.success(token=session.token, identity=session.identity.public_info())

    async def _handle_logout(self, request) -> Dict[str, Any]:
        self.identities.logout(request.token)
        return Protocol.success()

    async def _handle_get_network_address(self, request) -> Dict[str, Any]:
        info = self.identities.get_public_identity(request.username)
        return Protocol.success(username=info["username"], network_address=info["network_address"])

    async def _handle_add_contact(self, request) -> Dict[str, Any]:
        session = self.sessions.require(request.token)
        outcome = await self.exchange.initiate(session, request.network_address)
        return Protocol.success(**outcome.to_dict())

    async def _handle_send_introduction(self, request) -> Dict[str, Any]:
        session = self.sessions.current()
        introduction = Introduction(
            username=request.username,
            network_address=request.network_address,
            public_key=request.public_key.encode("utf-8"),
        )
        reply = await self.exchange.receive_introduction(session, introduction)
        return Protocol.success(**reply.to_dict())

    async def _handle_list_pending_introductions(self, request) -> Dict[str, Any]:
        session = self.sessions.require(request.token)
        pending = self.approvals.list(session.username)
        return Protocol.success(pending=[item.to_dict() for item in pending])

    async def _handle_resolve_introduction(self, request) -> Dict[str, Any]:
        session = self.sessions.require(request.token)
        pending = self.approvals.get(request.handshake_id)
        if pending is not None and pending.owner_username != session.username:
            raise ProtocolError(
                ErrorCode.E212_UNKNOWN_HANDSHAKE,
                f"No pending introduction with id {request.handshake_id}",
                {"operation": "resolve_introduction", "handshake_id": request.handshake_id},
            )
        accepted = self.approvals.resolve(request.handshake_id, request.accept)
        return Protocol.success(handshake_id=request.handshake_id, accepted=accepted)

    async def _handle_save_contact(self, request) -> Dict[str, Any]:
        session = self.sessions.require(request.token)
        introduction = Introduction(
            username=request.username,
            network_address=request.network_address,
            public_key=request.public_key.encode("utf-8"),
        )
        result = self.exchange.save_contact(session.username, introduction)
        return Protocol.success(result=result.value)

    async def _handle_list_contacts(self, request) -> Dict[str, Any]:
        session = self.sessions.require(request.token)
        contacts = self.store.list_contacts(session.username)
        return Protocol.success(contacts=[contact.to_dict() for contact in contacts])

    async def _handle_send_message(self, request) -> Dict[str, Any]:
        session = self.sessions.require(request.token)
        message = await self.codec.send_message(session, request.receiver, request.plaintext)
        return Protocol.success(message_id=message.message_id, timestamp=message.timestamp)

    async def _handle_receive_message(self, request) -> Dict[str, Any]:
        if not self.store.has_identity(request.receiver):
            raise PersistenceError(
                ErrorCode.E901_NOT_FOUND,
                f"No local identity named {request.receiver}",
                {"operation": "receive_message", "receiver": request.receiver},
            )
        message = self.codec.receive_message(request.sender, request.receiver, request.ciphertext)
        return Protocol.success(message_id=message.message_id)

    async def _handle_fetch_messages(self, request) -> Dict[str, Any]:
        session = self.sessions.require(request.token)
        messages = await self.codec.fetch_messages(session, request.contact)
        return Protocol.success(messages=[message.to_dict() for message in messages])


async def async_main(argv=None) -> int:
    """Async main entry point for the node."""
    parser = argparse.ArgumentParser(description="SOTE node - peer-to-peer encrypted messaging")
    parser.add_argument(
        "--data-dir",
        type=str,
        default=DEFAULT_DATA_DIR,
        help=f"Data directory for the database, config and logs (default: {DEFAULT_DATA_DIR})",
    )
    parser.add_argument("--host", type=str, default=None, help="Listen host (default: from config)")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: from config)")
    parser.add_argument(
        "--transport",
        choices=("tor", "tcp"),
        default=None,
        help="Routing overlay (default: from config)",
    )
    parser.add_argument("--log-level", type=str, default=None, help="Logging level (default: from config)")
    args = parser.parse_args(argv)

    if args.port is not None and not validate_port(args.port):
        parser.error(f"Invalid port: {args.port}")

    data_dir = Path(args.data_dir).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)

    config = Config(data_dir / CONFIG_FILENAME)
    if args.transport:
        config.set("network", "transport", args.transport)

    setup_logging(
        level=args.log_level or config.get("logging", "level", "INFO"),
        data_dir=data_dir,
        console_logging=config.get("logging", "console_logging", True),
        file_logging=config.get("logging", "file_logging", True),
    )

    try:
        node = NodeServer(data_dir, config=config, host=args.host, port=args.port)
        await node.start()
    except SoteError as e:
        logger.error(f"Failed to start node: {e}")
        return 1

    await node.run()
    return 0


def main():
    """Main entry point - runs async_main."""
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
