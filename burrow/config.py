"""
Burrow 配置
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class AgentConfig(BaseSettings):
    """客户端配置"""

    # 服务端连接
    server_url: str = Field(
        default="ws://localhost:8080", description="隧道服务端 WebSocket URL"
    )
    auth_server_url: str = Field(
        default="http://localhost:3000", description="认证服务 URL"
    )
    ping_interval: float = Field(default=30.0, description="WebSocket 心跳间隔（秒）")
    ping_timeout: float = Field(default=10.0, description="WebSocket 心跳超时（秒）")

    # 本地服务
    local_host: str = Field(default="localhost", description="本地服务主机（回环地址）")
    request_timeout: float = Field(default=30.0, description="本地请求超时（秒）")

    # 认证
    token_path: Path = Field(
        default_factory=lambda: Path.home() / ".burrow_token.json",
        description="令牌保存路径",
    )
    token_max_age: float = Field(
        default=29 * 24 * 60 * 60, description="令牌有效期（秒）"
    )
    poll_max_attempts: int = Field(default=30, description="设备码最大轮询次数")
    poll_interval: float = Field(default=2.0, description="设备码轮询间隔（秒）")
    rate_limit_wait: float = Field(default=5.0, description="被限流时额外等待（秒）")

    # 隧道
    default_description: str = Field(
        default="Tunnel created via CLI", description="默认隧道描述"
    )

    model_config = {
        "env_prefix": "BURROW_",
        "env_file": ".env",
        "extra": "ignore",
    }


def to_http_url(url: str) -> str:
    """将 ws:// / wss:// 地址转换为 http:// / https://"""
    if url.startswith("ws://"):
        return "http://" + url[len("ws://"):]
    if url.startswith("wss://"):
        return "https://" + url[len("wss://"):]
    return url
