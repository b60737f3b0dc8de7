"""
SOTE - Transport tests.

Covers the TCP transport's error mapping, the SOCKS5 client against a
scripted proxy, and Tor hidden-service provisioning with a stand-in tor
binary.
"""

import asyncio
import stat
import sys
from pathlib import Path

import pytest

from sote.contact import Introduction
from sote.errors import ErrorCode, TransportError
from sote.transport import Socks5Connection, TcpTransport, TorTransport

ONION = "abcdefghijklmnopqrstuvwxyz234567abcdefghijklmnopqrstuvwx.onion"


@pytest.mark.asyncio
async def test_tcp_provision_address():
    transport = TcpTransport("127.0.0.1", 18081)

    assignment = await transport.provision_address()

    assert assignment.network_address == "127.0.0.1:18081"
    assert assignment.config_ref == "tcp://127.0.0.1:18081"
    await transport.start_endpoint(assignment.config_ref)


@pytest.mark.asyncio
async def test_tcp_delivery_to_closed_port(unused_tcp_port):
    transport = TcpTransport(timeout=2)

    with pytest.raises(TransportError) as exc_info:
        await transport.deliver_message(f"127.0.0.1:{unused_tcp_port}", "alice", "bob", b"x")

    assert exc_info.value.code == ErrorCode.E204_DELIVERY_FAILED
    assert exc_info.value.details["reason"] == ErrorCode.E201_CONNECTION_FAILED.value


@pytest.mark.asyncio
async def test_tcp_unusable_address():
    transport = TcpTransport(timeout=2)
    introduction = Introduction("alice", "127.0.0.1:18080", b"key")

    with pytest.raises(TransportError) as exc_info:
        await transport.send_introduction("no port here:", introduction)

    assert exc_info.value.code == ErrorCode.E205_ADDRESS_RESOLUTION_FAILED


async def _fake_socks_proxy(reply_code: int):
    """Start a one-shot SOCKS5 proxy that answers CONNECT with ``reply_code``."""
    requests = []

    async def handle(reader, writer):
        await reader.readexactly(3)
        writer.write(b"\x05\x00")
        await writer.drain()

        ver, cmd, _, atyp = await reader.readexactly(4)
        length = (await reader.readexactly(1))[0]
        host = (await reader.readexactly(length)).decode("idna")
        port = int.from_bytes(await reader.readexactly(2), "big")
        requests.append((cmd, atyp, host, port))

        writer.write(bytes([0x05, reply_code, 0x00, 0x01]) + b"\x00" * 6)
        if reply_code == 0x00:
            writer.write(b"hello")
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1], requests


@pytest.mark.asyncio
async def test_socks5_connect_success():
    server, port, requests = await _fake_socks_proxy(0x00)
    try:
        reader, writer = await Socks5Connection.open_connection(ONION, 18080, "127.0.0.1", port)
        assert await reader.readexactly(5) == b"hello"
        writer.close()
    finally:
        server.close()
        await server.wait_closed()

    assert requests == [(0x01, 0x03, ONION, 18080)]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply_code, expected",
    [
        (0x04, ErrorCode.E205_ADDRESS_RESOLUTION_FAILED),
        (0x05, ErrorCode.E201_CONNECTION_FAILED),
    ],
)
async def test_socks5_connect_failure(reply_code, expected):
    server, port, _ = await _fake_socks_proxy(reply_code)
    try:
        with pytest.raises(TransportError) as exc_info:
            await Socks5Connection.open_connection(ONION, 18080, "127.0.0.1", port)
    finally:
        server.close()
        await server.wait_closed()

    assert exc_info.value.code == expected


@pytest.fixture
def fake_tor(temp_dir):
    """A stand-in tor binary that publishes a fixed onion hostname.

    Like tor, it exits at once when its SOCKS port is already taken by
    another instance.
    """
    script = temp_dir / "fake-tor"
    lock = temp_dir / "socks-port.lock"
    script.write_text(
        "#!/bin/sh\n"
        f'lock="{lock}"\n'
        'if grep -q "^SocksPort [^0]" "$2"; then\n'
        '    [ -e "$lock" ] && exit 1\n'
        '    touch "$lock"\n'
        "    trap 'rm -f \"$lock\"; exit 0' TERM\n"
        "fi\n"
        'dir=$(grep "^HiddenServiceDir " "$2" | cut -d" " -f2-)\n'
        f'echo "{ONION}" > "$dir/hostname"\n'
        "sleep 30 &\n"
        "wait\n",
        encoding="utf-8",
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return script


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script as tor")
async def test_tor_provision_and_start(temp_dir, fake_tor):
    transport = TorTransport(temp_dir / "node", local_port=18081, binary=str(fake_tor), bootstrap_timeout=10)

    assignment = await transport.provision_address()

    assert assignment.network_address == f"{ONION}:18080"
    service_dir = next((temp_dir / "node").glob("hidden_services/*"))
    assert assignment.config_ref == str(service_dir / "torrc")

    torrc_text = (service_dir / "torrc").read_text(encoding="utf-8")
    assert "HiddenServicePort 18080 127.0.0.1:18081" in torrc_text
    assert "SocksPort 127.0.0.1:9060" in torrc_text
    assert "ControlPort 9061" in torrc_text

    await transport.start_endpoint(assignment.config_ref)
    assert transport.process is not None
    await transport.close()
    assert transport.process is None


@pytest.mark.asyncio
async def test_tor_missing_binary(temp_dir):
    transport = TorTransport(temp_dir, binary=str(temp_dir / "no-such-tor"))

    with pytest.raises(TransportError) as exc_info:
        await transport.provision_address()

    assert exc_info.value.code == ErrorCode.E210_TRANSPORT_BOOTSTRAP_FAILED


@pytest.mark.asyncio
async def test_tor_start_without_service(temp_dir):
    transport = TorTransport(temp_dir)

    with pytest.raises(TransportError) as exc_info:
        await transport.start_endpoint(str(temp_dir / "missing" / "torrc"))

    assert exc_info.value.code == ErrorCode.E210_TRANSPORT_BOOTSTRAP_FAILED


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script as tor")
async def test_tor_provisioning_leaves_running_ports_alone(temp_dir, fake_tor):
    """A second identity can be provisioned while a logged-in tor holds the ports."""
    transport = TorTransport(temp_dir / "node", binary=str(fake_tor), bootstrap_timeout=10)

    first = await transport.provision_address()
    await transport.start_endpoint(first.config_ref)
    running = transport.process
    try:
        second = await transport.provision_address()

        assert second.config_ref != first.config_ref
        assert transport.process is running
        assert running.returncode is None

        provision_text = (Path(second.config_ref).parent / "torrc.provision").read_text(encoding="utf-8")
        assert "SocksPort 0\n" in provision_text
        assert "ControlPort" not in provision_text
        assert f"HiddenServiceDir {Path(second.config_ref).parent}\n" in provision_text
    finally:
        await transport.close()
