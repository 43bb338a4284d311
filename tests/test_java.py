import asyncio
import socket
from time import perf_counter
from unittest.mock import MagicMock

import pytest
import ujson

from nonebot_plugin_mcstatus.data_source import (
    PING_PAYLOAD,
    JavaState,
    JavaStatus,
    JavaStatusProtocol,
    OneShotProbe,
    ReassemblyBuffer,
    encode_varint,
    java_status,
    pack_frame,
    resolve_address,
)
from nonebot_plugin_mcstatus.exception import (
    ConnStatus,
    ProbeTimeout,
    ProtocolError,
    ResolutionError,
    TransportError,
    classify_exception,
)

STATUS = {
    "version": {"name": "1.20.4", "protocol": 765},
    "players": {
        "max": 20,
        "online": 2,
        "sample": [{"name": "Steve", "id": "00000000-0000-0000-0000-000000000001"}],
    },
    "description": {"text": "Hello ", "extra": [{"text": "World", "bold": True}]},
    "favicon": "data:image/png;base64,iVBORw0KGgo=",
}


def status_frame(payload: dict = STATUS) -> bytes:
    raw = ujson.dumps(payload).encode("utf8")
    return pack_frame(0x00, encode_varint(len(raw)) + raw)


PONG = pack_frame(0x01, PING_PAYLOAD)


async def read_frames(reader: asyncio.StreamReader, count: int) -> list:
    buffer = ReassemblyBuffer()
    frames = []
    while len(frames) < count:
        data = await reader.read(1024)
        if not data:
            break
        buffer.feed(data)
        while (frame := buffer.next_frame()) is not None:
            frames.append(frame)
    return frames


def java_server(chunk_size: int | None = None, status: bytes | None = None):
    """一个只回答一次状态查询的假 Java 版服务器"""
    response = status or status_frame()
    received = []

    async def handle(reader, writer):
        received.extend(await read_frames(reader, 2))
        if chunk_size is None:
            writer.write(response)
        else:
            for i in range(0, len(response), chunk_size):
                writer.write(response[i : i + chunk_size])
                await writer.drain()
                await asyncio.sleep(0)
        await writer.drain()

        ping = await read_frames(reader, 1)
        if ping:
            received.extend(ping)
            writer.write(pack_frame(0x01, ping[0].payload))
            await writer.drain()
        writer.close()

    return handle, received


@pytest.mark.asyncio
async def test_java_status_single_chunk():
    handle, received = java_server()
    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    async with server:
        started = perf_counter()
        status = await java_status("127.0.0.1", port, refer="mc.example.com", timeout=2)
        elapsed = round((perf_counter() - started) * 1000)

    assert isinstance(status, JavaStatus)
    assert status.version == "1.20.4"
    assert status.protocol_version == 765
    assert status.max_players == 20
    assert status.online_players == 2
    assert status.player_list[0]["name"] == "Steve"
    assert status.description == "Hello §lWorld"
    assert status.description_clean == "Hello World"
    assert status.favicon == STATUS["favicon"]
    assert 0 <= status.latency <= elapsed + 1

    handshake, request, ping = received
    assert handshake.id == 0x00
    assert b"mc.example.com" in handshake.payload
    assert request == (0x00, b"")
    assert ping == (0x01, PING_PAYLOAD)


@pytest.mark.asyncio
async def test_java_status_byte_at_a_time():
    handle, _ = java_server(chunk_size=1)
    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    async with server:
        status = await java_status("127.0.0.1", port, timeout=2)

    assert status.version == "1.20.4"
    assert status.description_clean == "Hello World"


@pytest.mark.asyncio
async def test_java_status_timeout():
    async def handle(reader, writer):
        await reader.read()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    async with server:
        with pytest.raises(ProbeTimeout):
            await java_status("127.0.0.1", port, timeout=0.2)


def closed_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.mark.asyncio
async def test_java_status_connection_refused():
    with pytest.raises(ConnectionRefusedError):
        await java_status("127.0.0.1", closed_port(), timeout=2)


@pytest.mark.asyncio
async def test_java_status_unresolvable_host(monkeypatch: pytest.MonkeyPatch):
    async def getaddrinfo(*args, **kwargs):
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")

    monkeypatch.setattr(asyncio.get_running_loop(), "getaddrinfo", getaddrinfo)

    with pytest.raises(ResolutionError):
        await java_status("does-not-exist.invalid", 25565, timeout=2)


def multi_address_getaddrinfo(loop, host: str, addresses: list[str]):
    """让 `host` 解析出多个 IPv4 地址，其他主机照常解析"""
    real_getaddrinfo = loop.getaddrinfo

    async def getaddrinfo(name, port, *args, type=0, **kwargs):
        if name != host:
            return await real_getaddrinfo(name, port, *args, type=type, **kwargs)
        kind = type or socket.SOCK_STREAM
        return [
            (socket.AF_INET, kind, 0, "", (address, port)) for address in addresses
        ]

    return getaddrinfo


@pytest.mark.asyncio
async def test_resolve_address_takes_first_result(monkeypatch: pytest.MonkeyPatch):
    loop = asyncio.get_running_loop()
    monkeypatch.setattr(
        loop,
        "getaddrinfo",
        multi_address_getaddrinfo(loop, "mc.example.com", ["127.0.0.1", "127.0.0.2"]),
    )

    assert await resolve_address("mc.example.com", 25565) == (
        socket.AF_INET,
        "127.0.0.1",
    )


@pytest.mark.asyncio
async def test_resolve_address_empty_result(monkeypatch: pytest.MonkeyPatch):
    async def getaddrinfo(*args, **kwargs):
        return []

    monkeypatch.setattr(asyncio.get_running_loop(), "getaddrinfo", getaddrinfo)

    with pytest.raises(ResolutionError):
        await resolve_address("mc.example.com", 25565)


@pytest.mark.asyncio
async def test_java_status_refused_on_host_with_several_addresses(
    monkeypatch: pytest.MonkeyPatch,
):
    loop = asyncio.get_running_loop()
    monkeypatch.setattr(
        loop,
        "getaddrinfo",
        multi_address_getaddrinfo(loop, "mc.example.com", ["127.0.0.1", "127.0.0.2"]),
    )

    with pytest.raises(ConnectionRefusedError) as exc_info:
        await java_status("mc.example.com", closed_port(), timeout=2)

    assert classify_exception(exc_info.value) is ConnStatus.CONNECTION_REFUSED


def test_one_shot_probe_is_abstract():
    with pytest.raises(TypeError):
        OneShotProbe(timeout=1)


@pytest.mark.asyncio
async def test_java_status_closed_early():
    async def handle(reader, writer):
        await read_frames(reader, 2)
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    async with server:
        with pytest.raises(TransportError):
            await java_status("127.0.0.1", port, timeout=2)


def connected_protocol(timeout: float = 5) -> tuple[JavaStatusProtocol, MagicMock]:
    protocol = JavaStatusProtocol("localhost", 25565, timeout)
    transport = MagicMock()
    protocol.connection_made(transport)
    return protocol, transport


@pytest.mark.asyncio
async def test_protocol_sends_handshake_and_request_on_connect():
    protocol, transport = connected_protocol()

    sent = transport.write.call_args[0][0]
    buffer = ReassemblyBuffer()
    buffer.feed(sent)
    assert buffer.next_frame().id == 0x00
    assert buffer.next_frame() == (0x00, b"")
    assert protocol.state is JavaState.AWAITING_STATUS
    protocol.close()


@pytest.mark.asyncio
async def test_protocol_status_and_pong_in_one_chunk():
    protocol, transport = connected_protocol()

    protocol.data_received(status_frame() + PONG)

    status = await protocol.result
    assert status.version == "1.20.4"
    assert protocol.state is JavaState.DONE
    transport.write.assert_called_with(pack_frame(0x01, PING_PAYLOAD))
    transport.close.assert_called_once()


@pytest.mark.asyncio
async def test_protocol_unexpected_packet_id():
    protocol, transport = connected_protocol()

    protocol.data_received(pack_frame(0x05, b"\x00"))

    with pytest.raises(ProtocolError, match="unexpected packet"):
        await protocol.result
    transport.close.assert_called_once()


@pytest.mark.asyncio
async def test_protocol_second_status_frame_is_error():
    protocol, transport = connected_protocol()

    protocol.data_received(status_frame())
    protocol.data_received(status_frame())

    with pytest.raises(ProtocolError):
        await protocol.result
    transport.close.assert_called_once()


@pytest.mark.asyncio
async def test_protocol_late_pong_is_ignored():
    protocol, transport = connected_protocol()

    protocol.data_received(status_frame())
    protocol.data_received(PONG)
    status = await protocol.result

    protocol.data_received(PONG)
    protocol.data_received(pack_frame(0x05, b""))
    protocol.connection_lost(None)

    assert protocol.result.result() is status
    transport.close.assert_called_once()


@pytest.mark.asyncio
async def test_protocol_timeout_closes_once_and_ignores_late_data():
    protocol, transport = connected_protocol(timeout=0.05)

    with pytest.raises(ProbeTimeout):
        await protocol.result

    protocol.data_received(status_frame() + PONG)
    protocol.connection_lost(None)

    assert isinstance(protocol.result.exception(), ProbeTimeout)
    assert protocol.closed
    transport.close.assert_called_once()


@pytest.mark.asyncio
async def test_protocol_connected_after_deadline_is_closed():
    protocol = JavaStatusProtocol("localhost", 25565, timeout=0.01)
    with pytest.raises(ProbeTimeout):
        await protocol.result

    transport = MagicMock()
    protocol.connection_made(transport)

    transport.write.assert_not_called()
    transport.close.assert_called_once()
