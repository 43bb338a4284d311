import base64
import binascii
import contextlib
import re
import traceback

import dns.asyncresolver
import dns.exception
import idna
from nonebot import logger

from .configs import bedrock_port, java_port, messages, srv_timeout, timeout
from .data_source import (
    BedrockStatus,
    Endpoint,
    JavaStatus,
    ProbeOutcome,
    SlpProtocols,
    bedrock_status,
    java_status,
)
from .exception import ConnStatus, classify_exception

FAVICON_PREFIX = "data:image/png;base64,"


def error_body(code: ConnStatus | str, message: str | None = None) -> dict:
    """
    构造失败时返回给 HTTP 调用方的响应体。

    :params code: 错误代码。
    :params message: 错误信息，默认取 messages.json 中对应的文本。
    """
    code = str(code)
    if message is None:
        message = messages.get(code, messages["unknown_error"])
    return {"success": False, "error": {"code": code, "message": message}}


def handle_exception(e: BaseException) -> dict:
    logger.error(traceback.format_exc())
    return error_body(classify_exception(e))


def parse_host(host_name: str) -> tuple[str, int]:
    """
    解析主机名（可选端口）。

    该函数尝试从主机名中提取IP地址和端口号。如果主机名中未指定端口，
    则默认端口号为0。

    :params host_name: 主机名，可能包含端口。

    :returns: 一个元组，包含两个元素：
    - 第一个元素是主机的地址
    - 第二个元素是主机的端口号，如果主机名中未指定端口，则为0。
    """
    pattern = r"(?:\[(.+?)\]|(.+?))(?:[:：](\d+))?$"
    if not (match := re.match(pattern, host_name)):
        return host_name, 0

    address = match[1] or match[2]
    port = int(match[3]) if match[3] else 0

    return address, port


def is_validity_address(address: str) -> bool:
    """
    判断给定的地址是否为有效的域名或IP地址。

    :params address: 需要验证的地址，可以是域名地址或IP地址。

    :returns: 如果地址有效则返回True，否则返回False。
    """

    return (is_domain(address)) or (is_ipv4(address)) or (is_ipv6(address))


def is_domain(address: str) -> bool:
    """
    判断给定的地址是否为域名。

    :params address: 需要验证的地址。

    :returns: 如果地址为域名则返回True，否则返回False。
    """
    try:
        punycode_address = idna.encode(address).decode("utf-8")
    except idna.IDNAError:
        return False

    domain_pattern = re.compile(
        r"^(?!-)(?:[A-Za-z0-9-]{1,63}\.)+(?:[A-Za-z]{2,}|xn--[A-Za-z0-9-]{2,})$|^(localhost)$"
    )
    return bool(domain_pattern.match(punycode_address))


def is_ipv4(address: str) -> bool:
    """
    判断给定的地址是否为IPv4地址。

    :params address: 需要验证的地址。

    :returns: 如果地址为IPv4地址则返回True，否则返回False。
    """
    ipv4_pattern = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")
    if not ipv4_pattern.match(address):
        return False

    parts = address.split(".")
    return all(0 <= int(part) <= 255 for part in parts)


def is_ipv6(address: str) -> bool:
    """
    判断给定的地址是否为IPv6地址。

    :params address: 需要验证的地址。

    :returns: 如果地址为IPv6地址则返回True，否则返回False。
    """
    ipv6_pattern = re.compile(
        r"^\s*((([0-9A-Fa-f]{1,4}:){7}([0-9A-Fa-f]{1,4}|:))|(([0-9A-Fa-f]{1,4}:){6}(:[0-9A-Fa-f]{1,4}|((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3})|:))|(([0-9A-Fa-f]{1,4}:){5}(((:[0-9A-Fa-f]{1,4}){1,2})|:((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3})|:))|(([0-9A-Fa-f]{1,4}:){4}(((:[0-9A-Fa-f]{1,4}){1,3})|((:[0-9A-Fa-f]{1,4})?:((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3}))|:))|(([0-9A-Fa-f]{1,4}:){3}(((:[0-9A-Fa-f]{1,4}){1,4})|((:[0-9A-Fa-f]{1,4}){0,2}:((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3}))|:))|(([0-9A-Fa-f]{1,4}:){2}(((:[0-9A-Fa-f]{1,4}){1,5})|((:[0-9A-Fa-f]{1,4}){0,3}:((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3}))|:))|(([0-9A-Fa-f]{1,4}:){1}(((:[0-9A-Fa-f]{1,4}){1,6})|((:[0-9A-Fa-f]{1,4}){0,4}:((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3}))|:))|(:(((:[0-9A-Fa-f]{1,4}){1,7})|((:[0-9A-Fa-f]{1,4}){0,5}:((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3}))|:)))(%.+)?\s*$"
    )
    return bool(ipv6_pattern.match(address))


def to_punycode(address: str) -> str:
    try:
        return idna.encode(address).decode("utf-8")
    except idna.IDNAError:
        return address


async def resolve_endpoint(
    host: str, port: int, family: SlpProtocols = SlpProtocols.JSON
) -> Endpoint:
    """
    解析 `_minecraft._tcp.<host>` SRV 记录，存在可用记录时用其目标地址和端口
    替换原地址。

    无论探测哪种协议都使用 Java 版的 SRV 约定。SRV 解析只是优化：
    任何解析失败（不存在、超时、结果为空）都会静默回退到原地址，
    不会导致探测失败。

    :params host: 用户提供的地址。
    :params port: 用户提供的端口。
    :params family: 探测协议。

    :returns: 最终的探测目标。
    """
    endpoint = Endpoint(host, port, family)
    if is_ipv4(host) or is_ipv6(host):
        return endpoint

    with contextlib.suppress(dns.exception.DNSException, IndexError):
        resolver = dns.asyncresolver.Resolver()
        resolver.timeout = srv_timeout
        resolver.lifetime = srv_timeout

        srv_response = await resolver.resolve(
            f"_minecraft._tcp.{to_punycode(host)}", "SRV"
        )
        for rdata in srv_response:
            srv_address = str(rdata.target).rstrip(".")  # type: ignore
            if not srv_address:
                continue
            srv_port = rdata.port  # type: ignore
            logger.info(f"SRV record found: {host} -> {srv_address}:{srv_port}")
            return Endpoint(srv_address, srv_port, family)

    return endpoint


def decode_favicon(favicon: str | None) -> bytes | None:
    """
    从 `data:image/png;base64,...` 形式的 data URI 中取出 PNG 数据。

    :params favicon: 服务器返回的图标。

    :returns: PNG 字节，格式不符或解码失败时返回 None。
    """
    if not favicon or not favicon.startswith(FAVICON_PREFIX):
        return None
    try:
        return base64.b64decode(favicon[len(FAVICON_PREFIX) :])
    except binascii.Error:
        return None


def default_port(family: SlpProtocols) -> int:
    if family is SlpProtocols.BEDROCK_RAKNET:
        return bedrock_port
    return java_port


async def probe(
    host: str,
    port: int = 0,
    family: SlpProtocols = SlpProtocols.JSON,
) -> ProbeOutcome:
    """
    对服务器进行一次独立的状态探测，不重试。

    :params host: 服务器的主机名或IP地址。
    :params port: 服务器的端口号，为0时使用协议的默认端口。
    :params family: 探测协议。

    :returns: `ProbeOutcome`，失败时包含分类后的状态和错误详情。
    """
    endpoint = await resolve_endpoint(host, port or default_port(family), family)

    record: JavaStatus | BedrockStatus
    try:
        if family is SlpProtocols.BEDROCK_RAKNET:
            record = await bedrock_status(endpoint.host, endpoint.port, timeout)
        else:
            record = await java_status(
                endpoint.host,
                endpoint.port,
                refer=to_punycode(endpoint.host),
                timeout=timeout,
            )
    except Exception as e:
        status = classify_exception(e)
        logger.warning(
            f"{family} probe of {endpoint.host}:{endpoint.port} failed: "
            f"{status} ({e!r})"
        )
        return ProbeOutcome(None, status, str(e) or e.__class__.__name__)

    return ProbeOutcome(record, ConnStatus.SUCCESS)
