from nonebot.plugin import get_plugin_config
from pydantic import BaseModel, Field


class ScopedConfig(BaseModel):
    timeout: float = Field(default=7)
    """单次探测的截止时间（秒）"""
    srv_timeout: float = Field(default=2)
    """SRV 记录查询的超时时间（秒），超时后使用原地址"""
    java_port: int = Field(default=25565)
    """Java 版默认端口"""
    bedrock_port: int = Field(default=19132)
    """基岩版默认端口"""
    api_prefix: str = Field(default="/api")
    """HTTP 接口路径前缀"""
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    """允许跨域访问的来源，留空则不启用 CORS"""


class Config(BaseModel):
    mcstatus: ScopedConfig = Field(default_factory=ScopedConfig)
    """MCStatus Config"""


config: ScopedConfig = get_plugin_config(Config).mcstatus
