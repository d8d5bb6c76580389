"""
Burrow 隧道协议定义

每条 WebSocket 文本消息是一个 JSON 对象（帧），以 ``type`` 字段区分类型。

消息类型:
- register: 客户端注册隧道（客户端 → 服务端）
- registered: 注册成功（服务端 → 客户端）
- error: 服务端错误，可带 fatal 标记（服务端 → 客户端）
- request: 服务端转发的 HTTP 请求（服务端 → 客户端）
- response: 本地服务的 HTTP 响应（客户端 → 服务端）

未在模型中声明的字段在解析时被忽略，以兼容服务端的新版本。
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# 请求头值为字符串，重复请求头可能以列表形式出现
HeaderValue = Any

# 服务端可能使用字符串或数字 ID，原样回传
RequestId = str | int


class MessageType(str, Enum):
    """消息类型"""

    # 注册握手
    REGISTER = "register"
    REGISTERED = "registered"
    ERROR = "error"

    # 请求-响应
    REQUEST = "request"
    RESPONSE = "response"


# ============== 注册消息 ==============


class RegisterMessage(BaseModel):
    """客户端注册请求"""

    type: MessageType = MessageType.REGISTER
    name: str = Field(..., description="请求的隧道名称")
    token: str = Field(..., description="Bearer 令牌（已去除首尾空白）")
    port: int = Field(..., description="本地服务端口")
    description: str = Field(default="", description="隧道描述")


class TunnelInfo(BaseModel):
    """服务端分配的隧道信息"""

    id: RequestId = Field(..., description="隧道 ID")
    url: str = Field(..., description="公网访问地址")


class RegisteredMessage(BaseModel):
    """注册成功响应"""

    type: MessageType = MessageType.REGISTERED
    tunnel: TunnelInfo


class ErrorMessage(BaseModel):
    """服务端错误"""

    type: MessageType = MessageType.ERROR
    message: str = Field(..., description="错误信息")
    fatal: bool = Field(default=False, description="是否为不可恢复错误")


# ============== 请求-响应消息 ==============


class TunnelRequest(BaseModel):
    """
    HTTP 请求（服务端 → 客户端）

    服务端将公网收到的 HTTP 请求序列化后通过 WebSocket 发送给客户端
    """

    type: MessageType = MessageType.REQUEST
    id: RequestId = Field(..., description="请求唯一 ID，用于匹配响应")
    method: str = Field(..., description="HTTP 方法: GET, POST, PUT, DELETE 等")
    path: str = Field(..., description="请求路径（含查询字符串），如 /api/chat?x=1")
    headers: dict[str, HeaderValue] = Field(default_factory=dict, description="HTTP 请求头")
    body: Any = Field(default=None, description="请求体（字符串、JSON 值或 null）")


class TunnelResponse(BaseModel):
    """
    HTTP 响应（客户端 → 服务端）

    线上字段名为 statusCode，Python 侧使用 status_code
    """

    model_config = ConfigDict(populate_by_name=True)

    type: MessageType = MessageType.RESPONSE
    id: RequestId = Field(..., description="请求 ID，与 TunnelRequest.id 对应")
    status_code: int = Field(..., alias="statusCode", description="HTTP 状态码")
    headers: dict[str, HeaderValue] = Field(default_factory=dict, description="HTTP 响应头")
    body: Any = Field(default=None, description="响应体")


# ============== 消息解析 ==============

_MESSAGE_CLASSES: dict[MessageType, type[BaseModel]] = {
    MessageType.REGISTER: RegisterMessage,
    MessageType.REGISTERED: RegisteredMessage,
    MessageType.ERROR: ErrorMessage,
    MessageType.REQUEST: TunnelRequest,
    MessageType.RESPONSE: TunnelResponse,
}


def parse_message(data: dict[str, Any]) -> BaseModel:
    """
    解析消息

    Args:
        data: JSON 解析后的字典

    Returns:
        对应类型的消息对象

    Raises:
        ValueError: 未知消息类型
        pydantic.ValidationError: 字段缺失或类型错误
    """
    msg_type = data.get("type")

    try:
        message_class = _MESSAGE_CLASSES[MessageType(msg_type)]
    except ValueError:
        raise ValueError(f"Unknown message type: {msg_type}") from None

    return message_class.model_validate(data)


def encode_message(message: BaseModel) -> str:
    """序列化消息为线上 JSON 文本（使用线上字段名）"""
    return message.model_dump_json(by_alias=True)
