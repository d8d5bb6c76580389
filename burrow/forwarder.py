"""
请求转发

将服务端发来的 TunnelRequest 重放到本地服务，并把结果（或失败原因）
转换为一条 TunnelResponse 交给连接管理器发送。

每个请求独立处理，除发送函数外不共享任何可变状态。
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
from websockets.exceptions import ConnectionClosed

from .protocol import RequestId, TunnelRequest, TunnelResponse

logger = logging.getLogger(__name__)

# 连接级请求头，重放到另一条本地连接上没有意义
HOP_BY_HOP_HEADERS = frozenset({"host", "connection", "upgrade"})

# 请求体会被重新编码，由 httpx 重新计算分帧
FRAMING_HEADERS = frozenset({"content-length", "transfer-encoding"})

# httpx 已解压响应体，原始的编码和长度不再适用
DECODED_RESPONSE_HEADERS = FRAMING_HEADERS | {"content-encoding"}

DEFAULT_TIMEOUT = 30.0

SendFunc = Callable[[TunnelResponse], Awaitable[None]]


@dataclass
class LocalCall:
    """一次本地 HTTP 调用的描述"""

    request_id: RequestId
    method: str
    url: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: Any = None
    timeout: float = DEFAULT_TIMEOUT


def build_local_call(
    request: TunnelRequest,
    local_port: int,
    local_host: str = "localhost",
    timeout: float = DEFAULT_TIMEOUT,
) -> LocalCall:
    """
    根据 TunnelRequest 构建本地调用

    路径和查询字符串原样拼接，不做校验或重新编码。
    列表形式的请求头值展开为多个同名请求头。
    """
    headers: list[tuple[str, str]] = []
    for name, value in request.headers.items():
        lowered = name.lower()
        if lowered in HOP_BY_HOP_HEADERS or lowered in FRAMING_HEADERS:
            continue
        values = value if isinstance(value, list) else [value]
        headers.extend((name, str(item)) for item in values)

    return LocalCall(
        request_id=request.id,
        method=request.method.upper(),
        url=f"http://{local_host}:{local_port}{request.path}",
        headers=headers,
        body=request.body,
        timeout=timeout,
    )


def error_response(request_id: RequestId, reason: str) -> TunnelResponse:
    """转发失败时返回给服务端的 500 响应"""
    return TunnelResponse(
        id=request_id,
        status_code=500,
        headers={"content-type": "text/plain"},
        body=reason,
    )


def _request_content(body: Any) -> dict[str, Any]:
    if body is None:
        return {}
    if isinstance(body, (str, bytes)):
        return {"content": body}
    return {"json": body}


def _response_headers(response: httpx.Response) -> dict[str, str]:
    return {
        key: value
        for key, value in response.headers.items()
        if key.lower() not in DECODED_RESPONSE_HEADERS
    }


def _response_body(response: httpx.Response) -> Any:
    # JSON 响应以解析后的值返回，其余按文本返回
    content_type = response.headers.get("content-type", "").lower()
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            pass
    return response.text


class RequestForwarder:
    """
    请求转发器

    把一条 request 消息转换为一次本地 HTTP 调用和恰好一条 response 消息
    """

    def __init__(
        self,
        local_port: int,
        local_host: str = "localhost",
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        初始化转发器

        Args:
            local_port: 本地服务端口
            local_host: 本地服务主机
            timeout: 单次本地调用的超时时间（秒）
            transport: 自定义 httpx 传输层（测试时注入）
        """
        self.local_port = local_port
        self.local_host = local_host
        self.timeout = timeout
        self._transport = transport

    async def handle_request(self, request: TunnelRequest, send: SendFunc) -> TunnelResponse:
        """
        处理一条请求并发送对应的响应

        无论本地调用成功、失败还是超时，都会发送恰好一条 id 相同的响应。
        连接已关闭导致无法送达时只记录日志。
        """
        call = build_local_call(
            request,
            local_port=self.local_port,
            local_host=self.local_host,
            timeout=self.timeout,
        )
        response = await self.execute(call)

        try:
            await send(response)
        except ConnectionClosed:
            logger.warning(f"连接已关闭，响应无法送达: id={request.id}")

        return response

    async def execute(self, call: LocalCall) -> TunnelResponse:
        """
        执行本地调用

        任何 HTTP 状态码都视为成功；只有传输层错误才转换为 500 响应
        """
        start_time = time.time()

        try:
            async with httpx.AsyncClient(
                timeout=call.timeout,
                transport=self._transport,
                trust_env=False,
            ) as client:
                response = await asyncio.wait_for(
                    client.request(
                        call.method,
                        call.url,
                        headers=call.headers,
                        **_request_content(call.body),
                    ),
                    timeout=call.timeout,
                )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            reason = f"Local service timeout after {call.timeout:g}s"
        except httpx.ConnectError as e:
            reason = f"Local service unavailable: {str(e) or type(e).__name__}"
        except Exception as e:
            logger.debug("本地调用异常", exc_info=True)
            reason = f"Request forwarding failed: {str(e) or type(e).__name__}"
        else:
            duration_ms = int((time.time() - start_time) * 1000)
            logger.info(
                f"{call.method} {call.url} -> {response.status_code} ({duration_ms}ms)"
            )
            return TunnelResponse(
                id=call.request_id,
                status_code=response.status_code,
                headers=_response_headers(response),
                body=_response_body(response),
            )

        duration_ms = int((time.time() - start_time) * 1000)
        logger.error(f"转发失败: {call.method} {call.url} ({duration_ms}ms): {reason}")
        return error_response(call.request_id, reason)
