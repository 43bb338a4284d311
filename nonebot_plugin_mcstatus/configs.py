import os

import ujson

from .config import config as plugin_config


def readInfo(file: str) -> dict:
    with open(
        os.path.join(os.path.dirname(__file__), file), encoding="utf-8"
    ) as f:
        return ujson.loads((f.read()).strip())


timeout = plugin_config.timeout
srv_timeout = plugin_config.srv_timeout
java_port = plugin_config.java_port
bedrock_port = plugin_config.bedrock_port
api_prefix = plugin_config.api_prefix.rstrip("/")
cors_origins = plugin_config.cors_origins
messages = readInfo("messages.json")
VERSION = "0.1.0"
