from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from nonebot import get_app
from nonebot.plugin import PluginMetadata

from .api import router
from .config import Config
from .configs import VERSION, api_prefix, cors_origins
from .data_source import BedrockStatus, JavaStatus, ProbeOutcome, SlpProtocols
from .exception import ConnStatus
from .utils import probe

__plugin_meta__ = PluginMetadata(
    name="Minecraft服务器状态API",
    description="通过 HTTP 查询 Minecraft Java/基岩版服务器状态/Minecraft server status over HTTP",  # noqa: E501
    type="application",
    config=Config,
    usage=f"""
    Minecraft服务器状态查询接口，支持SRV记录与IPv6
    用法：
        GET {api_prefix}/status/[ip]:[端口]          Java版状态
        GET {api_prefix}/status/bedrock/[ip]:[端口]  基岩版状态
        GET {api_prefix}/png/[ip]:[端口]             Java版服务器图标
    usage:
        GET {api_prefix}/status/ip:port
        GET {api_prefix}/status/bedrock/ip:port
        GET {api_prefix}/png/ip:port
    """.strip(),
    extra={"version": VERSION},
)

app: FastAPI = get_app()

if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
app.include_router(router)

__all__ = [
    "BedrockStatus",
    "ConnStatus",
    "JavaStatus",
    "ProbeOutcome",
    "SlpProtocols",
    "probe",
]
