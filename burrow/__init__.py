"""
Burrow - 基于 WebSocket 的本地服务暴露工具

客户端与隧道服务端保持一条 WebSocket 连接，注册命名隧道后：
- 接收服务端转发的 HTTP 请求
- 并发地重放到本地服务
- 通过同一连接返回响应
"""

__version__ = "0.1.0"

from .protocol import (
    MessageType,
    RegisterMessage,
    RegisteredMessage,
    ErrorMessage,
    TunnelInfo,
    TunnelRequest,
    TunnelResponse,
    parse_message,
    encode_message,
)
from .errors import (
    TunnelError,
    HandshakeError,
    RegistrationRejected,
    TransportClosed,
    TransportFailure,
    ShutdownRequested,
    AuthenticationError,
)
from .config import AgentConfig
from .forwarder import LocalCall, RequestForwarder, build_local_call
from .connection import ConnectionManager, SessionState, TunnelSession, run_agent
from .auth import get_token

__all__ = [
    # 版本
    "__version__",
    # 协议
    "MessageType",
    "RegisterMessage",
    "RegisteredMessage",
    "ErrorMessage",
    "TunnelInfo",
    "TunnelRequest",
    "TunnelResponse",
    "parse_message",
    "encode_message",
    # 错误
    "TunnelError",
    "HandshakeError",
    "RegistrationRejected",
    "TransportClosed",
    "TransportFailure",
    "ShutdownRequested",
    "AuthenticationError",
    # 配置
    "AgentConfig",
    # 转发
    "LocalCall",
    "RequestForwarder",
    "build_local_call",
    # 连接
    "ConnectionManager",
    "SessionState",
    "TunnelSession",
    "run_agent",
    # 认证
    "get_token",
]
