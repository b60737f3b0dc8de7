"""
Test helpers shared by the SOTE test modules.

LoopbackTransport routes node-to-node requests straight into another
in-process NodeServer's request dispatcher, so handshakes and deliveries
exercise the same validation and handlers as the TCP path.
"""

import asyncio
from pathlib import Path
from typing import Dict, List

from sote.config import Config
from sote.contact import Introduction, IntroductionReply
from sote.crypto import CryptoProvider
from sote.errors import ErrorCode, SoteError, TransportError
from sote.protocol import IntroductionRequest, ReceiveMessageRequest, encode_request
from sote.server import NodeServer
from sote.transport import AddressAssignment, TransportGateway
from sote.utils import normalize_network_address

# Argon2 at its cheapest so key derivation does not dominate the run time
FAST_ARGON2 = {"time_cost": 1, "memory_cost": 1024, "parallelism": 1}


class LoopbackNetwork:
    """Address book of in-process nodes."""

    def __init__(self):
        self.nodes: Dict[str, NodeServer] = {}

    def attach(self, address: str, node: NodeServer) -> None:
        self.nodes[normalize_network_address(address)] = node

    def resolve(self, address: str) -> NodeServer:
        try:
            return self.nodes[normalize_network_address(address)]
        except (KeyError, ValueError):
            raise TransportError(
                ErrorCode.E205_ADDRESS_RESOLUTION_FAILED,
                f"No node at {address}",
                {"address": address},
            ) from None


class LoopbackTransport(TransportGateway):
    """Transport that hands requests straight to another NodeServer."""

    def __init__(self, network: LoopbackNetwork, hostname: str):
        self.network = network
        self.hostname = hostname
        self.provisioned = 0
        self.started: List[str] = []
        self.fail_delivery = False
        self.fail_provisioning = False

    async def provision_address(self) -> AddressAssignment:
        if self.fail_provisioning:
            raise TransportError(ErrorCode.E210_TRANSPORT_BOOTSTRAP_FAILED, "Overlay unavailable")
        self.provisioned += 1
        address = f"{self.hostname}.loop:18080"
        return AddressAssignment(network_address=address, config_ref=f"loop://{self.hostname}")

    async def start_endpoint(self, config_ref: str) -> None:
        self.started.append(config_ref)

    async def _call(self, operation: str, address: str, request) -> Dict:
        node = self.network.resolve(address)
        request_type, payload = encode_request(request)
        response = await node.handle_request(request_type, payload)
        if not response["success"]:
            remote = SoteError.from_dict(response["error"])
            raise TransportError(
                ErrorCode.E204_DELIVERY_FAILED,
                f"{operation} refused by {address}: {remote.message}",
                {"operation": operation, "address": address, "remote_error": remote.to_dict()},
            )
        return response

    async def send_introduction(self, address: str, introduction: Introduction) -> IntroductionReply:
        request = IntroductionRequest(
            username=introduction.username,
            network_address=introduction.network_address,
            public_key=introduction.public_key.decode("utf-8"),
        )
        return IntroductionReply.from_dict(await self._call("send-introduction", address, request))

    async def deliver_message(self, address: str, sender: str, receiver: str, ciphertext: bytes) -> None:
        if self.fail_delivery:
            raise TransportError(
                ErrorCode.E204_DELIVERY_FAILED,
                f"receive-message to {address} failed",
                {"operation": "receive-message", "address": address},
            )
        await self._call("receive-message", address, ReceiveMessageRequest(sender, receiver, ciphertext))


def make_config(data_dir: Path, approval_timeout: float = 5) -> Config:
    config = Config(data_dir / "config.toml")
    config.set("handshake", "approval_timeout", approval_timeout)
    config.set("network", "transport", "tcp")
    return config


def make_node(data_dir: Path, network: LoopbackNetwork, hostname: str, approval_timeout: float = 5) -> NodeServer:
    return NodeServer(
        data_dir,
        config=make_config(data_dir, approval_timeout),
        transport=LoopbackTransport(network, hostname),
        crypto=CryptoProvider(**FAST_ARGON2),
    )


async def wait_for_pending(node: NodeServer, count: int = 1, timeout: float = 5.0):
    """Wait until ``node`` has ``count`` pending introductions and return them."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        pending = node.approvals.list()
        if len(pending) >= count:
            return pending
        await asyncio.sleep(0.01)
    raise AssertionError(f"Expected {count} pending introduction(s) on {node.data_dir}")


async def befriend(initiator_node: NodeServer, initiator, target_node: NodeServer, target):
    """Run a handshake that the target accepts; returns the initiator's outcome."""
    task = asyncio.create_task(
        initiator_node.exchange.initiate(initiator, target.identity.network_address)
    )
    pending = await wait_for_pending(target_node)
    target_node.approvals.resolve(pending[0].handshake_id, True)
    return await task
