"""
Burrow 认证

通过设备码流程获取 Bearer 令牌，并保存在本地文件中：

1. POST /api/auth/request-device-code 获取设备码和验证地址
2. 用户在浏览器中打开地址并输入设备码
3. 轮询 GET /api/device/poll?code=... 直到返回令牌
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import httpx

from .config import AgentConfig, to_http_url
from .errors import AuthenticationError

logger = logging.getLogger(__name__)


@dataclass
class DeviceCode:
    """设备码信息"""

    code: str
    url: str
    expires_in: int = 0


@dataclass
class StoredToken:
    """本地保存的令牌"""

    token: str
    timestamp: float
    server_url: str | None = None

    @property
    def age(self) -> float:
        """令牌年龄（秒）"""
        return time.time() - self.timestamp


class TokenStore:
    """令牌文件（JSON，权限 0600）"""

    def __init__(self, path: Path, max_age: float):
        self.path = Path(path)
        self.max_age = max_age

    def load(self) -> StoredToken | None:
        """读取令牌，文件不存在或无法解析时返回 None"""
        if not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return StoredToken(
                token=data["token"],
                timestamp=float(data.get("timestamp") or 0),
                server_url=data.get("serverUrl"),
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"读取令牌失败: {e}")
            return None

    def is_expired(self, stored: StoredToken) -> bool:
        return not stored.token or stored.age >= self.max_age

    def save(self, token: str, server_url: str) -> StoredToken:
        stored = StoredToken(token=token, timestamp=time.time(), server_url=server_url)
        data = {
            "token": stored.token,
            "timestamp": stored.timestamp,
            "serverUrl": stored.server_url,
        }
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        return stored

    def clear(self) -> bool:
        """删除令牌文件，返回是否存在过"""
        if not self.path.exists():
            return False
        self.path.unlink()
        return True


def _token_store(config: AgentConfig) -> TokenStore:
    return TokenStore(config.token_path, config.token_max_age)


async def request_device_code(server_url: str) -> DeviceCode:
    """请求设备码"""
    api_url = to_http_url(server_url).rstrip("/")

    async with httpx.AsyncClient() as client:
        try:
            response = await client.post(
                f"{api_url}/api/auth/request-device-code",
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Failed to request device code: {e}") from e

    if not response.is_success:
        raise AuthenticationError(
            f"Failed to request device code: {response.status_code} {response.text}"
        )

    try:
        data = response.json()
    except ValueError as e:
        raise AuthenticationError("Invalid response from server - not JSON") from e

    if not isinstance(data, dict) or not data.get("code") or not data.get("url"):
        raise AuthenticationError("Invalid response from server - missing code or url")

    return DeviceCode(
        code=data["code"],
        url=data["url"],
        expires_in=int(data.get("expiresIn") or 0),
    )


async def poll_for_token(
    server_url: str,
    code: str,
    max_attempts: int = 30,
    interval: float = 2.0,
    rate_limit_wait: float = 5.0,
) -> str:
    """
    轮询认证结果

    404 表示设备码无效或已过期，立即失败；429 表示被限流，额外等待后继续；
    其他错误在最后一次尝试前只记录日志。
    """
    api_url = to_http_url(server_url).rstrip("/")
    logger.info("等待认证...")

    async with httpx.AsyncClient() as client:
        for attempt in range(max_attempts):
            await asyncio.sleep(interval)

            try:
                response = await client.get(
                    f"{api_url}/api/device/poll", params={"code": code}
                )
            except httpx.HTTPError as e:
                if attempt == max_attempts - 1:
                    raise AuthenticationError(f"Polling failed: {e}") from e
                logger.warning(f"第 {attempt + 1} 次轮询失败: {e}")
                continue

            if response.status_code == 404:
                raise AuthenticationError("Device code not found or expired")

            if response.status_code == 429:
                logger.info("被限流，延长等待...")
                await asyncio.sleep(rate_limit_wait)
            elif response.is_success:
                try:
                    token = response.json().get("token")
                except (ValueError, AttributeError):
                    token = None
                if token:
                    logger.info("认证成功")
                    return token

            if attempt % 5 == 0 and attempt > 0:
                logger.info(f"仍在等待... ({attempt}/{max_attempts})")

    raise AuthenticationError("Authentication timed out. Please try again.")


async def authenticate(
    server_url: str,
    config: AgentConfig | None = None,
    on_device_code: Callable[[DeviceCode], None] | None = None,
) -> str:
    """
    完整的设备码认证流程，成功后保存令牌

    Args:
        server_url: 认证服务 URL
        config: 客户端配置
        on_device_code: 获取到设备码后的回调（用于向用户展示操作说明）
    """
    config = config or AgentConfig()
    logger.info(f"开始认证: {server_url}")

    device_code = await request_device_code(server_url)
    if on_device_code:
        on_device_code(device_code)

    token = await poll_for_token(
        server_url,
        device_code.code,
        max_attempts=config.poll_max_attempts,
        interval=config.poll_interval,
        rate_limit_wait=config.rate_limit_wait,
    )

    _token_store(config).save(token, to_http_url(server_url))
    logger.info(f"令牌已保存: {config.token_path}")
    return token


async def get_token(
    server_url: str,
    config: AgentConfig | None = None,
    on_device_code: Callable[[DeviceCode], None] | None = None,
) -> str:
    """返回有效令牌，本地令牌不存在或已过期时重新认证"""
    config = config or AgentConfig()
    store = _token_store(config)
    stored = store.load()

    if stored is None:
        logger.info("未找到令牌，开始认证...")
    elif store.is_expired(stored):
        logger.info("令牌已过期，重新认证...")
    else:
        logger.info("使用已保存的令牌")
        return stored.token

    return await authenticate(server_url, config=config, on_device_code=on_device_code)


def logout(config: AgentConfig | None = None) -> bool:
    """清除本地令牌，返回是否存在过令牌"""
    config = config or AgentConfig()
    return _token_store(config).clear()


def token_status(config: AgentConfig | None = None) -> StoredToken | None:
    """返回本地令牌（不检查是否过期）"""
    config = config or AgentConfig()
    return _token_store(config).load()
