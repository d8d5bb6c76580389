"""
Burrow 连接管理

维护与隧道服务端的唯一 WebSocket 连接，完成注册握手，
并按消息类型分发服务端发来的消息。

使用示例:
    from burrow import ConnectionManager

    manager = ConnectionManager()

    # 等待注册完成，返回分配的隧道信息
    tunnel = await manager.start(port=3000, agent_name="my-app", token=token)
    print(tunnel.url)

    # 等待连接结束
    await manager.wait_closed()
"""

import asyncio
import json
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

import websockets
from pydantic import BaseModel, ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import AgentConfig
from .errors import (
    RegistrationRejected,
    ShutdownRequested,
    TransportClosed,
    TransportFailure,
)
from .forwarder import RequestForwarder
from .protocol import (
    ErrorMessage,
    RegisteredMessage,
    RegisterMessage,
    TunnelInfo,
    TunnelRequest,
    encode_message,
    parse_message,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """会话状态"""

    CONNECTING = "connecting"
    OPEN = "open"
    REGISTERED = "registered"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class TunnelSession:
    """一次进程运行对应的隧道会话"""

    port: int
    agent_name: str
    token: str
    description: str = ""
    state: SessionState = SessionState.CONNECTING
    tunnel: TunnelInfo | None = None
    websocket: Any = None
    created_at: datetime = field(default_factory=datetime.now)


class ConnectionManager:
    """
    连接管理器

    一个实例管理一个隧道会话：
    connecting → open → registered → closed / failed
    """

    def __init__(
        self,
        config: AgentConfig | None = None,
        forwarder: RequestForwarder | None = None,
    ):
        """
        初始化连接管理器

        Args:
            config: 客户端配置
            forwarder: 请求转发器（可选，默认按会话端口创建）
        """
        self.config = config or AgentConfig()
        self._forwarder = forwarder

        self._session: TunnelSession | None = None
        self._registered: asyncio.Future | None = None
        self._receive_task: asyncio.Task | None = None
        self._close_task: asyncio.Task | None = None
        self._request_tasks: set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()
        self._shutdown = False
        self._signals: list[signal.Signals] = []

    @property
    def session(self) -> TunnelSession | None:
        """当前会话"""
        return self._session

    @property
    def state(self) -> SessionState | None:
        """会话状态"""
        return self._session.state if self._session else None

    @property
    def tunnel(self) -> TunnelInfo | None:
        """服务端分配的隧道信息"""
        return self._session.tunnel if self._session else None

    @property
    def shutdown_requested(self) -> bool:
        """是否因中断信号关闭"""
        return self._shutdown

    @property
    def pending_requests(self) -> int:
        """正在转发的请求数"""
        return len(self._request_tasks)

    async def start(
        self,
        port: int,
        agent_name: str,
        token: str,
        description: str = "",
        install_signal_handlers: bool = True,
    ) -> TunnelInfo:
        """
        连接服务端并注册隧道

        注册成功后返回隧道信息，连接在后台继续处理请求。

        Raises:
            RegistrationRejected: 服务端返回 error 消息
            TransportClosed: 注册完成前连接被关闭
            TransportFailure: 注册完成前发生传输层错误
            ShutdownRequested: 注册完成前收到中断信号
        """
        if self._session is not None:
            raise RuntimeError("ConnectionManager already started")

        token = token.strip()
        if not token:
            raise ValueError("token must be a non-empty string")
        if not agent_name:
            raise ValueError("agent_name must be a non-empty string")
        if not 0 < port < 65536:
            raise ValueError(f"invalid port: {port}")

        loop = asyncio.get_running_loop()
        self._session = TunnelSession(
            port=port,
            agent_name=agent_name,
            token=token,
            description=description,
        )
        if self._forwarder is None:
            self._forwarder = RequestForwarder(
                local_port=port,
                local_host=self.config.local_host,
                timeout=self.config.request_timeout,
            )

        self._registered = loop.create_future()
        if install_signal_handlers:
            self._install_signal_handlers(loop)

        self._receive_task = asyncio.create_task(self._run())
        return await self._registered

    async def send(self, message: BaseModel) -> None:
        """
        发送一条消息

        每条消息在锁内整体写出，并发的响应不会交错。
        """
        websocket = self._session.websocket if self._session else None
        if websocket is None:
            raise ConnectionClosed(None, None)

        payload = encode_message(message)
        async with self._send_lock:
            await websocket.send(payload)

    async def close(self) -> None:
        """关闭连接（可重复调用）"""
        if self._session is None:
            return

        websocket = self._session.websocket
        if websocket is not None:
            await websocket.close()
        elif self._receive_task is not None and not self._receive_task.done():
            # 仍在建立连接
            self._receive_task.cancel()

    async def wait_closed(self) -> None:
        """
        等待会话结束

        连接断开后仍在执行的本地调用会运行到完成或超时；
        因中断信号关闭时则直接取消。
        """
        if self._receive_task is None:
            return

        await asyncio.wait({self._receive_task})

        pending = list(self._request_tasks)
        if pending:
            if self._shutdown:
                for task in pending:
                    task.cancel()
            else:
                logger.info(f"等待 {len(pending)} 个进行中的请求结束...")
            await asyncio.gather(*pending, return_exceptions=True)

        if not self._receive_task.cancelled():
            error = self._receive_task.exception()
            if error is not None:
                raise error

    # ============== 连接生命周期 ==============

    async def _run(self) -> None:
        """连接并运行消息循环"""
        session = self._session
        logger.info(f"正在连接到 {self.config.server_url}...")

        try:
            async with websockets.connect(
                self.config.server_url,
                ping_interval=self.config.ping_interval,
                ping_timeout=self.config.ping_timeout,
            ) as websocket:
                session.websocket = websocket
                session.state = SessionState.OPEN
                logger.info(f"已连接到隧道服务端: {self.config.server_url}")

                try:
                    await self.send(
                        RegisterMessage(
                            name=session.agent_name,
                            token=session.token,
                            port=session.port,
                            description=session.description,
                        )
                    )
                    logger.info(f"已发送注册请求: name={session.agent_name}")

                    async for raw_message in websocket:
                        await self._dispatch(raw_message)
                except ConnectionClosed:
                    pass

            self._on_transport_closed(websocket.close_code, websocket.close_reason)

        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            self._on_transport_error(e)
        finally:
            self._remove_signal_handlers()
            if session.state in (SessionState.CONNECTING, SessionState.OPEN):
                session.state = SessionState.CLOSED
            if not self._registered.done():
                if self._shutdown:
                    self._registered.set_exception(
                        ShutdownRequested("Interrupted before registration")
                    )
                else:
                    self._registered.set_exception(TransportClosed(None))

    def _on_transport_closed(self, code: int | None, reason: str | None) -> None:
        session = self._session
        if session.state != SessionState.FAILED:
            session.state = SessionState.CLOSED

        if self._registered.done():
            logger.warning(f"与隧道服务端的连接已断开: code={code}, reason={reason or '-'}")
            return

        if self._shutdown:
            logger.info("注册完成前已停止")
            self._registered.set_exception(ShutdownRequested("Interrupted before registration"))
        else:
            logger.error(f"注册完成前连接被关闭: code={code}, reason={reason or '-'}")
            self._registered.set_exception(TransportClosed(code, reason or ""))

    def _on_transport_error(self, error: Exception) -> None:
        self._session.state = SessionState.FAILED

        if self._registered.done():
            logger.error(f"WebSocket 错误: {error}")
            return

        if self._shutdown:
            self._registered.set_exception(ShutdownRequested("Interrupted before registration"))
            return

        logger.error(f"连接隧道服务端失败: {error}")
        failure = TransportFailure(str(error) or type(error).__name__)
        failure.__cause__ = error
        self._registered.set_exception(failure)

    # ============== 消息分发 ==============

    async def _dispatch(self, raw_message: str | bytes) -> None:
        """按 type 分发一条消息，格式错误的消息记录后丢弃"""
        try:
            data = json.loads(raw_message)
        except ValueError as e:
            logger.error(f"JSON 解析错误，丢弃消息: {e}")
            return

        if not isinstance(data, dict):
            logger.error(f"消息不是 JSON 对象，丢弃: {type(data).__name__}")
            return

        try:
            message = parse_message(data)
        except ValidationError as e:
            logger.error(f"消息格式错误，丢弃: type={data.get('type')}: {e}")
            return
        except ValueError:
            logger.warning(f"未知消息类型，忽略: {data.get('type')}")
            return

        if isinstance(message, RegisteredMessage):
            self._handle_registered(message)
        elif isinstance(message, ErrorMessage):
            await self._handle_error(message)
        elif isinstance(message, TunnelRequest):
            self._handle_request(message)
        else:
            logger.warning(f"客户端不处理的消息类型，忽略: {message.type.value}")

    def _handle_registered(self, message: RegisteredMessage) -> None:
        if self._registered.done():
            logger.warning(f"重复的注册成功消息，忽略: tunnel={message.tunnel.id}")
            return

        self._session.tunnel = message.tunnel
        self._session.state = SessionState.REGISTERED
        logger.info(f"隧道已注册: id={message.tunnel.id}, url={message.tunnel.url}")
        self._registered.set_result(message.tunnel)

    async def _handle_error(self, message: ErrorMessage) -> None:
        if not self._registered.done():
            logger.error(f"注册失败: {message.message}")
            self._session.state = SessionState.FAILED
            self._registered.set_exception(
                RegistrationRejected(message.message, fatal=message.fatal)
            )
            await self.close()
            return

        if message.fatal:
            logger.error(f"服务端致命错误，关闭隧道: {message.message}")
            self._session.state = SessionState.FAILED
            await self.close()
        else:
            logger.error(f"服务端错误: {message.message}")

    def _handle_request(self, message: TunnelRequest) -> None:
        logger.debug(f"收到请求: id={message.id} {message.method} {message.path}")
        task = asyncio.create_task(
            self._forwarder.handle_request(message, self.send),
            name=f"forward-{message.id}",
        )
        self._request_tasks.add(task)
        task.add_done_callback(self._on_request_done)

    def _on_request_done(self, task: asyncio.Task) -> None:
        self._request_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"请求处理错误: {error}", exc_info=error)

    # ============== 信号处理 ==============

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows 或非主线程
                logger.debug(f"无法注册信号处理: {sig.name}")
                continue
            self._signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        if not self._signals:
            return
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"收到 {sig.name}，正在关闭隧道...")
        self._shutdown = True
        self._close_task = asyncio.create_task(self.close())


async def run_agent(
    port: int,
    agent_name: str,
    token: str,
    description: str = "",
    config: AgentConfig | None = None,
    on_registered: Callable[[TunnelInfo], None] | None = None,
) -> TunnelSession:
    """
    运行隧道客户端

    便捷函数：注册隧道，然后一直运行到连接结束

    Args:
        port: 本地服务端口
        agent_name: 隧道名称
        token: Bearer 令牌
        description: 隧道描述
        config: 客户端配置
        on_registered: 注册成功回调
    """
    manager = ConnectionManager(config=config)
    tunnel = await manager.start(port, agent_name, token, description)

    if on_registered:
        on_registered(tunnel)

    await manager.wait_closed()
    return manager.session
