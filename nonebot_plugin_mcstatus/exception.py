import asyncio
from enum import Enum
import socket


class ConnStatus(Enum):
    """
    探测结果状态，值即为返回给 HTTP 调用方的错误代码
    - `SUCCESS`：探测成功
    - `TIMEOUT`：在截止时间内没有收到最终响应
    - `INVALID_DOMAIN`：目标地址无法解析
    - `CONNECTION_REFUSED`：服务器主动拒绝连接
    - `OFFLINE`：其他传输层或协议错误
    """

    def __str__(self) -> str:
        return str(self.value)

    SUCCESS = "success"
    """探测成功"""

    TIMEOUT = "timeout"
    """连接超时。（服务器负载过高？防火墙规则是否正确？）"""

    INVALID_DOMAIN = "invalid_domain"
    """地址无法解析（与 SRV 解析失败不同，后者不会导致探测失败）"""

    CONNECTION_REFUSED = "connection_refused"
    """服务器拒绝了连接（端口未开放？）"""

    OFFLINE = "offline"
    """服务器离线或不可达，或返回了无法识别的数据"""


class ProbeError(Exception):
    """探测过程中的所有错误的基类"""


class ProtocolError(ProbeError):
    """收到格式错误或顺序错误的数据包"""


class ProbeTimeout(ProbeError, TimeoutError):
    """截止时间已过，仍未收到最终响应"""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"no response within {timeout}s")
        self.timeout = timeout


class ResolutionError(ProbeError):
    """最终连接目标的地址解析失败"""


class TransportError(ProbeError, OSError):
    """其他传输层错误，例如连接在响应完成前被关闭"""


def classify_exception(e: BaseException) -> ConnStatus:
    """
    将探测中抛出的异常映射为稳定的错误状态。

    :params e: 探测过程中抛出的异常。

    :returns: 对应的 `ConnStatus`，不会返回 `SUCCESS`。
    """
    if isinstance(e, (TimeoutError, asyncio.TimeoutError)):
        return ConnStatus.TIMEOUT
    if isinstance(e, (ResolutionError, socket.gaierror)):
        return ConnStatus.INVALID_DOMAIN
    if isinstance(e, ConnectionRefusedError):
        return ConnStatus.CONNECTION_REFUSED
    return ConnStatus.OFFLINE
