"""
测试配置和 Fixtures
"""

import asyncio
import json
from typing import AsyncGenerator, Awaitable, Callable

import httpx
import pytest
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from burrow.config import AgentConfig
from burrow.forwarder import RequestForwarder

REGISTERED = {
    "type": "registered",
    "tunnel": {"id": "t1", "url": "https://t1.example"},
}


async def accept_registration(websocket, message: dict) -> None:
    await websocket.send(json.dumps(REGISTERED))


class FakeRelay:
    """模拟隧道服务端，记录收到的消息"""

    def __init__(self):
        self.port: int | None = None
        self.connection = None
        self.connected = asyncio.Event()
        self.received: asyncio.Queue = asyncio.Queue()
        self.on_register: Callable[..., Awaitable[None]] = accept_registration

    @property
    def url(self) -> str:
        return f"ws://127.0.0.1:{self.port}"

    async def handler(self, websocket) -> None:
        self.connection = websocket
        self.connected.set()
        try:
            async for raw_message in websocket:
                message = json.loads(raw_message)
                await self.received.put(message)
                if message.get("type") == "register":
                    await self.on_register(websocket, message)
        except ConnectionClosed:
            pass

    async def send(self, message: dict | str) -> None:
        if not isinstance(message, str):
            message = json.dumps(message)
        await self.connection.send(message)

    async def next_message(self, timeout: float = 5.0) -> dict:
        return await asyncio.wait_for(self.received.get(), timeout=timeout)


@pytest.fixture
async def relay() -> AsyncGenerator[FakeRelay, None]:
    """在随机端口上启动模拟服务端"""
    fake = FakeRelay()
    async with serve(fake.handler, "127.0.0.1", 0) as server:
        fake.port = next(iter(server.sockets)).getsockname()[1]
        yield fake


@pytest.fixture
def agent_config(relay: FakeRelay, tmp_path) -> AgentConfig:
    return AgentConfig(
        server_url=relay.url,
        token_path=tmp_path / "token.json",
        request_timeout=5.0,
    )


def json_service(payload=None, status_code: int = 200) -> httpx.MockTransport:
    """返回固定 JSON 的本地服务"""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload if payload is not None else {"ok": True})

    return httpx.MockTransport(handler)


@pytest.fixture
def forwarder() -> RequestForwarder:
    return RequestForwarder(local_port=3000, transport=json_service())
