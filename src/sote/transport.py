"""
SOTE - Routing overlay gateways.

The core never opens sockets itself. It asks a TransportGateway to assign
network addresses, to restart an identity's listening endpoint and to move
introductions and transit ciphertexts to other nodes.

Shipped implementations:
- TcpTransport: peers are plain ``host:port`` addresses
- TorTransport: each identity gets an onion service; peers are reached
  through the local Tor SOCKS5 proxy
"""

import asyncio
import logging
import secrets
import socket
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import aiofiles

from .client import NodeClient
from .constants import (
    APPROVAL_TIMEOUT,
    CONNECTION_TIMEOUT,
    DEFAULT_NODE_PORT,
    HIDDEN_SERVICE_DIR,
    LOCALHOST,
    ONION_SUFFIX,
    PROVISION_TORRC_FILENAME,
    TOR_BINARY,
    TOR_BOOTSTRAP_TIMEOUT,
    TOR_CONTROL_PORT,
    TOR_HOSTNAME_FILENAME,
    TOR_POLL_INTERVAL,
    TOR_SOCKS_HOST,
    TOR_SOCKS_PORT,
    TORRC_FILENAME,
)
from .contact import Introduction, IntroductionReply
from .errors import ErrorCode, SoteError, TransportError
from .protocol import IntroductionRequest, ReceiveMessageRequest
from .utils import parse_network_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AddressAssignment:
    """Network address handed to a new identity.

    ``config_ref`` is opaque to the core; the transport uses it to bring the
    identity's endpoint back up at login.
    """

    network_address: str
    config_ref: str


class TransportGateway(ABC):
    """Interface between the core components and the routing overlay."""

    @abstractmethod
    async def provision_address(self) -> AddressAssignment:
        """Assign a new network address; raises TransportError(E210) on failure."""

    @abstractmethod
    async def start_endpoint(self, config_ref: str) -> None:
        """Re-establish the listening endpoint described by ``config_ref``."""

    @abstractmethod
    async def send_introduction(self, address: str, introduction: Introduction) -> IntroductionReply:
        """Deliver an introduction and wait for the remote decision."""

    @abstractmethod
    async def deliver_message(self, address: str, sender: str, receiver: str, ciphertext: bytes) -> None:
        """Deliver a transit ciphertext to the node at ``address``."""

    async def close(self) -> None:
        """Release overlay resources."""


class StreamTransport(TransportGateway):
    """Request path shared by transports that reach peers over byte streams."""

    def __init__(
        self,
        timeout: float = CONNECTION_TIMEOUT,
        introduction_timeout: Optional[float] = None,
    ):
        """
        Args:
            timeout: Seconds allowed for connecting and for a delivery reply
            introduction_timeout: Seconds to wait for an introduction reply;
                covers the remote approval window (default: approval timeout
                plus ``timeout``)
        """
        self.timeout = timeout
        self.introduction_timeout = (
            introduction_timeout
            if introduction_timeout is not None
            else APPROVAL_TIMEOUT + timeout
        )

    @abstractmethod
    async def open_connection(self, host: str, port: int) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open a stream to ``host:port`` through the overlay."""

    async def _request(
        self, operation: str, address: str, request: Any, timeout: float
    ) -> Dict[str, Any]:
        try:
            host, port = parse_network_address(address)
        except ValueError as e:
            raise TransportError(
                ErrorCode.E205_ADDRESS_RESOLUTION_FAILED,
                f"Cannot resolve network address: {e}",
                {"operation": operation, "address": address},
            ) from e

        client = NodeClient(host, port, timeout=self.timeout, connector=self.open_connection)
        try:
            async with client:
                return await client.request(request, timeout=timeout)
        except TransportError as e:
            if e.code == ErrorCode.E205_ADDRESS_RESOLUTION_FAILED:
                raise
            raise TransportError(
                ErrorCode.E204_DELIVERY_FAILED,
                f"{operation} to {address} failed: {e.message}",
                {"operation": operation, "address": address, "reason": e.code.value},
            ) from e
        except SoteError as e:
            raise TransportError(
                ErrorCode.E204_DELIVERY_FAILED,
                f"{operation} refused by {address}: {e.message}",
                {"operation": operation, "address": address, "remote_error": e.to_dict()},
            ) from e

    async def send_introduction(self, address: str, introduction: Introduction) -> IntroductionReply:
        request = IntroductionRequest(
            username=introduction.username,
            network_address=introduction.network_address,
            public_key=introduction.public_key.decode("utf-8"),
        )
        response = await self._request("send-introduction", address, request, self.introduction_timeout)
        return IntroductionReply.from_dict(response)

    async def deliver_message(self, address: str, sender: str, receiver: str, ciphertext: bytes) -> None:
        request = ReceiveMessageRequest(sender=sender, receiver=receiver, ciphertext=ciphertext)
        await self._request("receive-message", address, request, self.timeout)
        logger.debug(f"Delivered message {sender} -> {receiver} via {address}")


class TcpTransport(StreamTransport):
    """Direct TCP transport; the network address is the node's own ``host:port``."""

    def __init__(
        self,
        host: str = LOCALHOST,
        port: int = DEFAULT_NODE_PORT,
        timeout: float = CONNECTION_TIMEOUT,
        introduction_timeout: Optional[float] = None,
    ):
        super().__init__(timeout, introduction_timeout)
        self.host = host
        self.port = port

    async def provision_address(self) -> AddressAssignment:
        address = f"{self.host}:{self.port}"
        return AddressAssignment(network_address=address, config_ref=f"tcp://{address}")

    async def start_endpoint(self, config_ref: str) -> None:
        # The node server is the endpoint and is already listening.
        logger.debug(f"TCP endpoint active for {config_ref}")

    async def open_connection(self, host: str, port: int) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await asyncio.open_connection(host, port)


class Socks5Connection:
    """Minimal SOCKS5 CONNECT client over asyncio streams (no authentication)."""

    ERROR_MAP = {
        0x01: "General SOCKS server failure",
        0x02: "Connection not allowed by ruleset",
        0x03: "Network unreachable",
        0x04: "Host unreachable",
        0x05: "Connection refused by destination",
        0x06: "TTL expired",
        0x07: "Command not supported",
        0x08: "Address type not supported",
    }

    # Replies meaning the destination could not be found
    UNREACHABLE = {0x03, 0x04}

    @staticmethod
    async def open_connection(
        host: str,
        port: int,
        proxy_host: str = TOR_SOCKS_HOST,
        proxy_port: int = TOR_SOCKS_PORT,
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        Connect to ``host:port`` through a SOCKS5 proxy.

        Raises:
            TransportError: E205 if the proxy reports the host unreachable,
                E201 for any other negotiation failure
            OSError: If the proxy itself cannot be reached
        """
        reader, writer = await asyncio.open_connection(proxy_host, proxy_port)

        try:
            writer.write(b"\x05\x01\x00")  # VER=5, NMETHODS=1, METHODS=[no auth]
            await writer.drain()
            if await reader.readexactly(2) != b"\x05\x00":
                raise Socks5Connection._failure(host, port, "SOCKS5 negotiation failed (auth)")

            try:
                host_bytes = socket.inet_aton(host)
                atyp = 0x01
            except OSError:
                host_bytes = host.encode("idna")
                atyp = 0x03
                if len(host_bytes) > 255:
                    raise Socks5Connection._failure(host, port, "Hostname too long for SOCKS5")

            request = bytearray([0x05, 0x01, 0x00, atyp])  # VER, CMD=CONNECT, RSV
            if atyp == 0x03:
                request.append(len(host_bytes))
            request.extend(host_bytes)
            request.extend(struct.pack(">H", port))
            writer.write(request)
            await writer.drain()

            ver, rep, _, rep_atyp = await reader.readexactly(4)
            if ver != 0x05:
                raise Socks5Connection._failure(host, port, "Invalid SOCKS5 version in reply")

            if rep != 0x00:
                reason = Socks5Connection.ERROR_MAP.get(rep, f"Unknown error 0x{rep:02x}")
                code = (
                    ErrorCode.E205_ADDRESS_RESOLUTION_FAILED
                    if rep in Socks5Connection.UNREACHABLE
                    else ErrorCode.E201_CONNECTION_FAILED
                )
                raise Socks5Connection._failure(host, port, f"SOCKS5 connect failed: {reason}", code)

            if rep_atyp == 0x01:
                await reader.readexactly(4 + 2)
            elif rep_atyp == 0x04:
                await reader.readexactly(16 + 2)
            elif rep_atyp == 0x03:
                dom_len = await reader.readexactly(1)
                await reader.readexactly(dom_len[0] + 2)
            else:
                raise Socks5Connection._failure(host, port, "SOCKS5 gave unsupported ATYP")
        except (TransportError, asyncio.IncompleteReadError, OSError):
            writer.close()
            raise

        return reader, writer

    @staticmethod
    def _failure(
        host: str, port: int, message: str, code: ErrorCode = ErrorCode.E201_CONNECTION_FAILED
    ) -> TransportError:
        return TransportError(code, message, {"operation": "socks5_connect", "host": host, "port": port})


class TorTransport(StreamTransport):
    """
    Onion-service transport.

    Each identity gets its own hidden service directory under
    ``<data_dir>/<service_root>``. Provisioning starts tor once to create the
    service keys and read the hostname; login restarts tor from the stored
    torrc. Outbound connections go through the SOCKS5 port.
    """

    def __init__(
        self,
        data_dir: Path,
        local_port: int = DEFAULT_NODE_PORT,
        binary: str = TOR_BINARY,
        socks_host: str = TOR_SOCKS_HOST,
        socks_port: int = TOR_SOCKS_PORT,
        control_port: int = TOR_CONTROL_PORT,
        bootstrap_timeout: float = TOR_BOOTSTRAP_TIMEOUT,
        service_root: str = HIDDEN_SERVICE_DIR,
        timeout: float = CONNECTION_TIMEOUT,
        introduction_timeout: Optional[float] = None,
    ):
        super().__init__(timeout, introduction_timeout)
        self.local_port = local_port
        self.binary = binary
        self.socks_host = socks_host
        self.socks_port = socks_port
        self.control_port = control_port
        self.bootstrap_timeout = bootstrap_timeout
        self.service_root = Path(data_dir) / service_root
        self.process: Optional[asyncio.subprocess.Process] = None

    @classmethod
    def from_config(cls, config, data_dir: Path, local_port: int) -> "TorTransport":
        """Build the transport from the ``[tor]`` and ``[network]`` config sections."""
        return cls(
            data_dir=data_dir,
            local_port=local_port,
            binary=config.get("tor", "binary", TOR_BINARY),
            socks_host=config.get("tor", "socks_host", TOR_SOCKS_HOST),
            socks_port=config.get("tor", "socks_port", TOR_SOCKS_PORT),
            control_port=config.get("tor", "control_port", TOR_CONTROL_PORT),
            bootstrap_timeout=config.get("tor", "bootstrap_timeout", TOR_BOOTSTRAP_TIMEOUT),
            service_root=config.get("tor", "service_root", HIDDEN_SERVICE_DIR),
            timeout=config.get("network", "timeout", CONNECTION_TIMEOUT),
            introduction_timeout=config.get("handshake", "approval_timeout", APPROVAL_TIMEOUT)
            + config.get("network", "timeout", CONNECTION_TIMEOUT),
        )

    def _torrc(self, service_dir: Path, provisioning: bool = False) -> str:
        # Provisioning runs beside a logged-in tor and must not claim its ports
        if provisioning:
            ports = "SocksPort 0\n"
        else:
            ports = (
                f"SocksPort {self.socks_host}:{self.socks_port}\n"
                f"ControlPort {self.control_port}\n"
                "CookieAuthentication 1\n"
            )
        return (
            f"DataDirectory {service_dir / 'data'}\n"
            f"{ports}"
            f"HiddenServiceDir {service_dir}\n"
            f"HiddenServicePort {DEFAULT_NODE_PORT} 127.0.0.1:{self.local_port}\n"
        )

    async def provision_address(self) -> AddressAssignment:
        service_dir = self.service_root / secrets.token_hex(8)
        torrc_path = service_dir / TORRC_FILENAME
        provision_path = service_dir / PROVISION_TORRC_FILENAME
        try:
            service_dir.mkdir(parents=True, mode=0o700)
            async with aiofiles.open(torrc_path, "w", encoding="utf-8") as f:
                await f.write(self._torrc(service_dir))
            async with aiofiles.open(provision_path, "w", encoding="utf-8") as f:
                await f.write(self._torrc(service_dir, provisioning=True))
        except OSError as e:
            raise TransportError(
                ErrorCode.E210_TRANSPORT_BOOTSTRAP_FAILED,
                f"Failed to prepare hidden service directory: {e}",
                {"operation": "provision_address", "path": str(service_dir)},
            ) from e

        process = await self._launch(provision_path)
        try:
            onion = await self._wait_for_hostname(service_dir / TOR_HOSTNAME_FILENAME, process)
        finally:
            await self._terminate(process)

        address = f"{onion}:{DEFAULT_NODE_PORT}"
        logger.info(f"Onion service created: {onion}")
        return AddressAssignment(network_address=address, config_ref=str(torrc_path))

    async def start_endpoint(self, config_ref: str) -> None:
        torrc_path = Path(config_ref)
        if not torrc_path.is_file():
            raise TransportError(
                ErrorCode.E210_TRANSPORT_BOOTSTRAP_FAILED,
                "Hidden service configuration is missing",
                {"operation": "start_endpoint", "config_ref": config_ref},
            )

        if self.process is not None:
            await self._terminate(self.process)
            self.process = None

        self.process = await self._launch(torrc_path)
        logger.info(f"Tor started with {torrc_path}")

    async def open_connection(self, host: str, port: int) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await Socks5Connection.open_connection(host, port, self.socks_host, self.socks_port)

    async def close(self) -> None:
        if self.process is not None:
            await self._terminate(self.process)
            self.process = None

    async def _launch(self, torrc_path: Path) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                self.binary,
                "-f",
                str(torrc_path),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise TransportError(
                ErrorCode.E210_TRANSPORT_BOOTSTRAP_FAILED,
                f"Failed to start tor ({self.binary}): {e}",
                {"operation": "launch_tor", "binary": self.binary},
            ) from e

    async def _wait_for_hostname(self, hostname_path: Path, process: asyncio.subprocess.Process) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.bootstrap_timeout

        while loop.time() < deadline:
            if process.returncode is not None:
                raise TransportError(
                    ErrorCode.E210_TRANSPORT_BOOTSTRAP_FAILED,
                    f"tor exited with status {process.returncode} before publishing the service",
                    {"operation": "provision_address", "returncode": process.returncode},
                )
            if hostname_path.exists():
                async with aiofiles.open(hostname_path, "r", encoding="utf-8") as f:
                    onion = (await f.read()).strip()
                if onion.endswith(ONION_SUFFIX):
                    return onion
            logger.debug("Waiting for hidden service to be created...")
            await asyncio.sleep(TOR_POLL_INTERVAL)

        raise TransportError(
            ErrorCode.E210_TRANSPORT_BOOTSTRAP_FAILED,
            f"Hidden service not ready after {self.bootstrap_timeout}s",
            {"operation": "provision_address", "path": str(hostname_path)},
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
