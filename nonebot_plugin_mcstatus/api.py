from fastapi import APIRouter, Response
from fastapi.responses import UJSONResponse

from .configs import api_prefix
from .data_source import BedrockStatus, JavaStatus, ProbeOutcome, SlpProtocols
from .utils import (
    decode_favicon,
    error_body,
    handle_exception,
    is_validity_address,
    parse_host,
    probe,
)

router = APIRouter(prefix=api_prefix, default_response_class=UJSONResponse)


def java_body(status: JavaStatus) -> dict:
    return {
        "success": True,
        "version": status.version,
        "protocol": status.protocol_version,
        "players": {
            "max": status.max_players,
            "online": status.online_players,
            "list": status.player_list,
        },
        "description": status.description,
        "description_clean": status.description_clean,
        "latency": status.latency,
        "favicon": status.favicon,
    }


def bedrock_body(status: BedrockStatus) -> dict:
    return {
        "success": True,
        "edition": status.edition,
        "motd": status.motd,
        "motd_clean": status.motd_clean,
        "levelName": status.world_name,
        "playersOnline": status.online_players,
        "playersMax": status.max_players,
        "gamemode": status.gamemode,
        "serverId": status.server_id,
        "protocol": status.protocol_version,
        "version": status.version,
        "nintendoLimited": status.nintendo_limited,
        "portIPv4": status.port_ipv4,
        "portIPv6": status.port_ipv6,
        "latency": status.latency,
    }


async def run_probe(address: str, family: SlpProtocols) -> ProbeOutcome | Response:
    """
    解析地址并探测，地址无效时直接返回 400 响应。

    :params address: `host`、`host:port` 或 `[IPv6]:port`。
    :params family: 探测协议。
    """
    address = address.strip()
    if not address:
        return UJSONResponse(error_body("missing_parameter"), status_code=400)

    host, port = parse_host(address)
    if not is_validity_address(host) or not 0 <= port <= 65535:
        return UJSONResponse(error_body("invalid_address"), status_code=400)

    try:
        return await probe(host, port, family)
    except Exception as e:
        return UJSONResponse(handle_exception(e))


@router.get("/status/bedrock/{address}")
async def bedrock_status_route(address: str):
    outcome = await run_probe(address, SlpProtocols.BEDROCK_RAKNET)
    if isinstance(outcome, Response):
        return outcome
    if not isinstance(outcome.record, BedrockStatus):
        return error_body(outcome.status)
    return bedrock_body(outcome.record)


@router.get("/status/{address}")
async def java_status_route(address: str):
    outcome = await run_probe(address, SlpProtocols.JSON)
    if isinstance(outcome, Response):
        return outcome
    if not isinstance(outcome.record, JavaStatus):
        return error_body(outcome.status)
    return java_body(outcome.record)


@router.get("/png/{address}")
async def favicon_route(address: str):
    outcome = await run_probe(address, SlpProtocols.JSON)
    if isinstance(outcome, Response):
        return outcome
    if not isinstance(outcome.record, JavaStatus):
        return error_body(outcome.status)

    if (favicon := decode_favicon(outcome.record.favicon)) is None:
        return error_body("no_favicon")
    return Response(content=favicon, media_type="image/png")
