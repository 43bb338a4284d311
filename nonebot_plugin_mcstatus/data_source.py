# minestat.py - A Minecraft server status checker
# Copyright (C) 2016-2023 Lloyd Dilley, Felix Ern (MindSolve)
# http://www.dilley.me/
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License along
# with this program; if not, write to the Free Software Foundation, Inc.,
# 51 Franklin Street, Fifth Floor, Boston, MA 02110-1301 USA.
#
# 由于 wiki.vg 站点已关闭，现在你可以在
# https://minecraft.wiki/w/Minecraft_Wiki:Projects/wiki.vg_merge#Project_pages
# 找到原始内容的副本

from abc import ABC, abstractmethod
import asyncio
from collections.abc import Coroutine
from enum import Enum
import random
import socket
import struct
from time import perf_counter, time
from typing import Any, NamedTuple

from pydantic import BaseModel, Field
import ujson

from .exception import (
    ConnStatus,
    ProbeTimeout,
    ProtocolError,
    ResolutionError,
    TransportError,
)
from .motd import flatten_motd, strip_motd

DEFAULT_TIMEOUT = 7
"""单次探测的默认截止时间（秒）"""

RAKNET_MAGIC = bytes(
    [
        0x00,
        0xFF,
        0xFF,
        0x00,
        0xFE,
        0xFE,
        0xFE,
        0xFE,
        0xFD,
        0xFD,
        0xFD,
        0xFD,
        0x12,
        0x34,
        0x56,
        0x78,
    ]
)
"""RakNet 离线消息的固定魔数"""

PING_PAYLOAD = bytes([0x01, 0x02, 0x03, 0x04, 0x05, 0x06, 0x07, 0x08])
"""Java 版 Ping 包携带的固定 8 字节负载"""

# id (1) + timestamp (8) + server guid (8) + magic (16) + string length (2)
PONG_PAYLOAD_OFFSET = 35


class SlpProtocols(Enum):
    """
    支持的 SLP（服务器列表 Ping）协议。

    - `JSON`：Java 版 1.7+ 的 TCP 状态查询，负载为（包装的）JSON。
    - `BEDROCK_RAKNET`：基岩版/教育版的 UDP Unconnected Ping。
    """

    def __str__(self) -> str:
        return str(self.name)

    JSON = 3
    """
    最新且当前支持的 SLP 协议。

    使用（包装的）JSON 作为负载，详见 `JavaStatusProtocol` 的协议实现。

    *自 Minecraft 1.7 起可用*
    """

    BEDROCK_RAKNET = 4
    """
    Minecraft 基岩版/教育版协议。

    基于 RakNet 的 Unconnected Ping / Pong。
    """


class Endpoint(NamedTuple):
    """探测目标，SRV 解析至多改写一次"""

    host: str
    port: int
    family: SlpProtocols


class Frame(NamedTuple):
    """Java 版协议中带长度前缀的数据包"""

    id: int
    payload: bytes


class JavaStatus(BaseModel):
    """Java 版服务器状态"""

    version: str | None = None
    """服务器版本号"""
    protocol_version: int = -1
    """服务器协议版本"""
    max_players: int = -1
    """最大玩家容量"""
    online_players: int = -1
    """当前在线玩家人数"""
    player_list: list[dict] = Field(default_factory=list)
    """在线玩家样本，即使在线人数大于0，也可能为空"""
    description_raw: Any = ""
    """服务器返回的原始描述（字符串或 JSON 文本组件）"""
    description: str = ""
    """展开后的描述，保留 § 格式代码"""
    description_clean: str = ""
    """去除所有格式代码的描述（人类可读）"""
    favicon: str | None = None
    """data URI 形式的服务器图标"""
    latency: int = 0
    """Ping/Pong 往返延迟（毫秒）"""


class BedrockStatus(BaseModel):
    """基岩版服务器状态"""

    edition: str
    """服务器类型（MCPE/MCEE）"""
    motd: str
    motd_clean: str
    protocol_version: int
    version: str
    online_players: int
    max_players: int
    server_id: str | None = None
    world_name: str | None = None
    """旧版 Bedrock 服务器不会返回第二条 MOTD（世界名）"""
    gamemode: str | None = None
    nintendo_limited: bool | None = None
    port_ipv4: int | None = None
    port_ipv6: int | None = None
    latency: int = 0
    """到服务器的延迟时间（毫秒）"""


class ProbeOutcome(NamedTuple):
    """单次探测的最终结果，成功时 `record` 不为空"""

    record: JavaStatus | BedrockStatus | None
    status: ConnStatus
    detail: str | None = None


def encode_varint(value: int) -> bytes:
    """
    将整数打包为 VarInt。

    数值按无符号 32 位处理，因此 -1 会编码为 `ff ff ff ff 0f`。
    """
    data = value & 0xFFFFFFFF
    ordinal = b""

    while True:
        byte = data & 0x7F
        data >>= 7
        ordinal += struct.pack("B", byte | (0x80 if data > 0 else 0))

        if data == 0:
            break

    return ordinal


def decode_varint(buffer: bytes | bytearray, offset: int = 0) -> tuple[int, int]:
    """
    从缓冲区的 `offset` 处解出一个 VarInt。

    :param buffer: 数据缓冲区
    :param offset: 起始位置
    :return: (数值, 新的偏移量)
    :raises IndexError: 缓冲区在 VarInt 中途结束
    :raises ProtocolError: VarInt 超过 5 字节
    """
    data = 0
    for i in range(5):
        byte = buffer[offset + i]
        data |= (byte & 0x7F) << 7 * i

        if not byte & 0x80:
            return data & 0xFFFFFFFF, offset + i + 1

    raise ProtocolError("varint too long")


def pack_frame(packet_id: int, payload: bytes = b"") -> bytes:
    """在负载前加上包 id 和总长度前缀"""
    body = encode_varint(packet_id) + payload
    return encode_varint(len(body)) + body


def build_handshake(host: str, port: int, protocol_version: int = -1) -> bytes:
    """
    构造 Java 版握手包（id 0x00），下一状态固定为 1（status）。

    协议版本为 -1 表示仅查询状态，而非真实客户端。
    """
    host_bytes = host.encode("utf8")
    req_data = encode_varint(protocol_version)
    req_data += encode_varint(len(host_bytes))
    req_data += host_bytes
    req_data += struct.pack(">H", port)
    req_data += encode_varint(1)
    return pack_frame(0x00, req_data)


class ReassemblyBuffer:
    """
    单次 Java 版探测独占的接收缓冲区。

    数据可能以任意大小的分片到达；`next_frame()` 只在缓冲区中已有完整的数据包时
    才会取出并丢弃对应前缀，否则保持缓冲区不变并返回 None。
    """

    def __init__(self) -> None:
        self._data = bytearray()

    def __len__(self) -> int:
        return len(self._data)

    def feed(self, data: bytes) -> None:
        self._data += data

    def next_frame(self) -> Frame | None:
        try:
            length, offset = decode_varint(self._data)
        except IndexError:
            return None

        end = offset + length
        if len(self._data) < end:
            return None
        if length == 0:
            raise ProtocolError("empty packet")

        try:
            packet_id, body = decode_varint(self._data[:end], offset)
        except IndexError:
            raise ProtocolError("truncated packet id") from None

        frame = Frame(packet_id, bytes(self._data[body:end]))
        del self._data[:end]
        return frame


def parse_status_frame(payload: bytes) -> dict:
    """解析状态响应包的负载：VarInt 长度 + UTF-8 JSON"""
    try:
        content_len, offset = decode_varint(payload)
    except IndexError:
        raise ProtocolError("truncated status response") from None

    payload_raw = payload[offset : offset + content_len]
    if len(payload_raw) < content_len:
        raise ProtocolError("truncated status response")

    try:
        payload_obj = ujson.loads(payload_raw.decode("utf8"))
    except (UnicodeDecodeError, ujson.JSONDecodeError) as e:
        raise ProtocolError("malformed status json") from e

    if not isinstance(payload_obj, dict):
        raise ProtocolError("malformed status json")
    return payload_obj


def parse_java_payload(payload_obj: dict, latency: int) -> JavaStatus:
    """
    Helper method for parsing the modern JSON-based SLP payload.

    :param payload_obj: 解码后的状态 JSON
    :param latency: Ping/Pong 往返延迟（毫秒）
    """
    try:
        version = payload_obj.get("version") or {}
        players = payload_obj.get("players") or {}
        description = payload_obj.get("description", "")

        flattened = flatten_motd(description)
        return JavaStatus(
            version=version.get("name"),
            protocol_version=version.get("protocol", -1),
            max_players=players.get("max", -1),
            online_players=players.get("online", -1),
            # There may be a "sample" field in the "players" object
            player_list=players.get("sample") or [],
            description_raw=description,
            description=flattened,
            description_clean=strip_motd(flattened),
            favicon=payload_obj.get("favicon"),
            latency=latency,
        )
    except (AttributeError, TypeError, ValueError) as e:
        raise ProtocolError("malformed status payload") from e


def build_unconnected_ping(
    timestamp: int | None = None, client_guid: int | None = None
) -> bytes:
    """
    构造 RakNet `Unconnected_Ping` 数据包。

    :param timestamp: 毫秒时间戳，默认为当前时间
    :param client_guid: 客户端 GUID，默认为随机值
    """
    if timestamp is None:
        timestamp = int(time() * 1000)
    if client_guid is None:
        client_guid = random.getrandbits(64)

    # Packet ID - 0x01
    req_data = bytearray([0x01])
    # current unix timestamp in ms, big-endian
    req_data += struct.pack(">Q", timestamp)
    # RakNet MAGIC (0x00ffff00fefefefefdfdfdfd12345678)
    req_data += RAKNET_MAGIC
    # Client GUID
    req_data += struct.pack(">Q", client_guid)
    return bytes(req_data)


def parse_unconnected_pong(data: bytes, received_at: int | None = None) -> BedrockStatus:
    """
    解析 `Unconnected_Pong` 数据包。

    response packet:
    byte - 0x1C - Unconnected Pong
    long - timestamp (echoed)
    long - server GUID
    16 byte - magic
    short - Server ID string length
    string - Server ID string

    :param data: 收到的数据报
    :param received_at: 收到数据报时的毫秒时间戳，默认为当前时间
    """
    if received_at is None:
        received_at = int(time() * 1000)

    # Response packet ID should always be 0x1c
    if not data or data[0] != 0x1C:
        raise ProtocolError("unexpected packet id")
    if len(data) < PONG_PAYLOAD_OFFSET:
        raise ProtocolError("truncated pong")

    (echoed_timestamp,) = struct.unpack(">Q", data[1:9])
    latency = max(0, received_at - echoed_timestamp)

    try:
        payload_str = data[PONG_PAYLOAD_OFFSET:].decode("utf8")
    except UnicodeDecodeError as e:
        raise ProtocolError("malformed pong payload") from e

    return parse_bedrock_payload(payload_str, latency)


def parse_bedrock_payload(payload_str: str, latency: int = 0) -> BedrockStatus:
    motd_index = [
        "edition",
        "motd",
        "protocol_version",
        "version",
        "online_players",
        "max_players",
        "server_id",
        "world_name",
        "gamemode",
        "nintendo_limited",
        "port_ipv4",
        "port_ipv6",
    ]
    fields = payload_str.split(";")
    if len(fields) < 6:
        raise ProtocolError("malformed pong payload")
    payload = dict(zip(motd_index, fields))

    try:
        protocol_version = int(payload["protocol_version"])
        online_players = int(payload["online_players"])
        max_players = int(payload["max_players"])
    except ValueError as e:
        raise ProtocolError("malformed pong payload") from e

    # 旧版 Bedrock 服务器不会返回末尾的字段，缺失即为 None
    return BedrockStatus(
        edition=payload["edition"],
        motd=payload["motd"],
        motd_clean=strip_motd(payload["motd"]),
        protocol_version=protocol_version,
        version=payload["version"],
        online_players=online_players,
        max_players=max_players,
        server_id=payload.get("server_id") or None,
        world_name=payload.get("world_name") or None,
        gamemode=payload.get("gamemode") or None,
        nintendo_limited={"0": False, "1": True}.get(
            payload.get("nintendo_limited", "")
        ),
        port_ipv4=_optional_port(payload.get("port_ipv4")),
        port_ipv6=_optional_port(payload.get("port_ipv6")),
        latency=latency,
    )


def _optional_port(value: str | None) -> int | None:
    if value and value.isdigit() and int(value) <= 65535:
        return int(value)
    return None


async def resolve_address(
    host: str, port: int, kind: int = socket.SOCK_STREAM
) -> tuple[int, str]:
    """
    解析连接地址，只取第一个结果。

    拥有多个地址的主机（如同时有 A 和 AAAA 记录）只连接其中一个，
    连接被拒绝时得到的是单个 `ConnectionRefusedError`。

    :param host: 域名或 IP 地址
    :param port: 连接端口
    :param kind: `SOCK_STREAM` 或 `SOCK_DGRAM`
    :return: (地址族, IP 地址)
    :raises socket.gaierror: 域名无法解析
    """
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=kind)
    if not infos:
        raise ResolutionError(f"could not resolve address: {host}")
    family, _, _, _, sockaddr = infos[0]
    return family, sockaddr[0]


class OneShotProbe(ABC):
    """
    单次探测的公共部分：截止时间、只结算一次的结果、只关闭一次的套接字。

    截止定时器与 I/O 回调并发竞争 `result`，先到者结算，后到者不产生任何效果。
    无论从哪条路径结束，传输都只会被关闭一次。
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.loop = asyncio.get_running_loop()
        self.result: asyncio.Future = self.loop.create_future()
        self.transport: Any = None
        self.timeout = timeout
        self._closed = False
        self._deadline = self.loop.call_later(timeout, self.expire)

    @property
    def closed(self) -> bool:
        return self._closed

    def expire(self) -> None:
        self.settle(exc=ProbeTimeout(self.timeout))

    def settle(self, record: Any = None, exc: BaseException | None = None) -> bool:
        """结算结果；已结算时返回 False 且不做任何事"""
        if self.result.done():
            return False
        if exc is not None:
            self.result.set_exception(exc)
        else:
            self.result.set_result(record)
        self.close()
        return True

    def close(self) -> None:
        self._deadline.cancel()
        if self._closed or self.transport is None:
            return
        self._closed = True
        self.transport.close()

    def connect_done(self, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        if (exc := task.exception()) is None:
            return
        if isinstance(exc, socket.gaierror):
            exc = ResolutionError(f"could not resolve address: {exc}")
        self.settle(exc=exc)

    def connection_made(self, transport) -> None:
        self.transport = transport
        # 截止时间可能早于连接建立
        if self.result.done():
            self.close()
            return
        self.on_connected()

    @abstractmethod
    def on_connected(self) -> None:
        """连接建立后发送首个请求，由子类实现"""

    def connection_lost(self, exc: Exception | None) -> None:
        self.settle(exc=exc or TransportError("connection closed before response"))

    async def run(self, connect: Coroutine) -> Any:
        connector = asyncio.ensure_future(connect)
        connector.add_done_callback(self.connect_done)
        try:
            return await self.result
        finally:
            connector.cancel()
            self.close()


class JavaState(Enum):
    CONNECTING = 0
    AWAITING_STATUS = 1
    AWAITING_PONG = 2
    DONE = 3


class JavaStatusProtocol(OneShotProbe, asyncio.Protocol):
    """
    Java 版（>= 1.7）SLP 状态查询。

    See https://wiki.vg/Server_List_Ping#Current
    """

    def __init__(self, refer: str, port: int, timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(timeout)
        self.refer = refer
        """握手包中发送的服务器地址"""
        self.port = port
        self.state = JavaState.CONNECTING
        self.buffer = ReassemblyBuffer()
        self.status: dict | None = None
        self._ping_sent_at = 0.0

    def on_connected(self) -> None:
        # Handshake, immediately followed by the empty "Request" packet
        self.transport.write(
            build_handshake(self.refer, self.port) + pack_frame(0x00, b"")
        )
        self.state = JavaState.AWAITING_STATUS

    def data_received(self, data: bytes) -> None:
        if self.result.done():
            return
        self.buffer.feed(data)
        try:
            while not self.result.done():
                frame = self.buffer.next_frame()
                if frame is None:
                    break
                self._handle_frame(frame)
        except ProtocolError as e:
            self.settle(exc=e)

    def _handle_frame(self, frame: Frame) -> None:
        if frame.id == 0x00 and self.state is JavaState.AWAITING_STATUS:
            self.status = parse_status_frame(frame.payload)
            self._ping_sent_at = perf_counter()
            self.transport.write(pack_frame(0x01, PING_PAYLOAD))
            self.state = JavaState.AWAITING_PONG
        elif frame.id == 0x01 and self.state is JavaState.AWAITING_PONG:
            latency = max(0, round((perf_counter() - self._ping_sent_at) * 1000))
            record = parse_java_payload(self.status or {}, latency)
            self.state = JavaState.DONE
            self.settle(record)
        else:
            raise ProtocolError("unexpected packet")


class BedrockPingProtocol(OneShotProbe, asyncio.DatagramProtocol):
    """
    基岩版服务器（Minecraft PE、Windows 10 或教育版）查询。

    详见 https://wiki.vg/Raknet_Protocol#Unconnected_Ping
    """

    def on_connected(self) -> None:
        self.transport.sendto(build_unconnected_ping())

    def datagram_received(self, data: bytes, addr) -> None:
        if self.result.done():
            return
        try:
            record = parse_unconnected_pong(data)
        except ProtocolError as e:
            self.settle(exc=e)
            return
        self.settle(record)

    def error_received(self, exc: Exception) -> None:
        self.settle(exc=exc)


async def java_status(
    address: str,
    port: int,
    refer: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> JavaStatus:
    """
    查询 Java 版服务器状态。

    :param address: 连接地址
    :param port: 连接端口
    :param refer: 握手包中发送的地址，默认使用 address
    :param timeout: 截止时间（秒），覆盖连接和整个查询过程
    """
    loop = asyncio.get_running_loop()
    protocol = JavaStatusProtocol(refer or address, port, timeout)

    async def connect():
        family, host = await resolve_address(address, port)
        return await loop.create_connection(
            lambda: protocol, host, port, family=family
        )

    return await protocol.run(connect())


async def bedrock_status(
    address: str, port: int, timeout: float = DEFAULT_TIMEOUT
) -> BedrockStatus:
    """
    查询基岩版服务器状态，使用临时本地端口发送一次 Unconnected Ping。

    :param address: 连接地址
    :param port: 连接端口
    :param timeout: 截止时间（秒）
    """
    loop = asyncio.get_running_loop()
    protocol = BedrockPingProtocol(timeout)

    async def connect():
        family, host = await resolve_address(address, port, socket.SOCK_DGRAM)
        return await loop.create_datagram_endpoint(
            lambda: protocol, remote_addr=(host, port), family=family
        )

    return await protocol.run(connect())
