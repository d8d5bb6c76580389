"""
请求转发测试
"""

import asyncio
import gzip
import json
import time
from unittest.mock import AsyncMock

import httpx
import pytest
from websockets.exceptions import ConnectionClosed

from burrow.forwarder import RequestForwarder, build_local_call, error_response
from burrow.protocol import TunnelRequest, TunnelResponse


def make_request(**kwargs) -> TunnelRequest:
    data = {"id": "r1", "method": "GET", "path": "/", "headers": {}}
    data.update(kwargs)
    return TunnelRequest(**data)


class RecordingService:
    """记录收到的请求的本地服务"""

    def __init__(self, response: httpx.Response | None = None):
        self.requests: list[httpx.Request] = []
        self.response = response or httpx.Response(200, text="ok")

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


class TestBuildLocalCall:
    """测试本地调用构建"""

    def test_url_from_port_and_path(self):
        """目标 URL 由回环地址、端口和路径拼接"""
        call = build_local_call(make_request(path="/search?q=a%20b&page=2"), local_port=3000)
        assert call.url == "http://localhost:3000/search?q=a%20b&page=2"
        assert call.request_id == "r1"
        assert call.timeout == 30.0

    def test_hop_by_hop_headers_removed(self):
        """host / connection / upgrade 不区分大小写地被移除"""
        request = make_request(
            headers={
                "Host": "t1.example",
                "connection": "Upgrade",
                "UPGRADE": "websocket",
                "content-type": "application/json",
                "x-request-id": "abc",
            }
        )
        call = build_local_call(request, local_port=3000)
        names = [name.lower() for name, _ in call.headers]

        assert "host" not in names
        assert "connection" not in names
        assert "upgrade" not in names
        assert ("content-type", "application/json") in call.headers
        assert ("x-request-id", "abc") in call.headers

    def test_content_length_removed(self):
        """请求体会重新编码，content-length 由 httpx 计算"""
        call = build_local_call(make_request(headers={"Content-Length": "999"}), local_port=3000)
        assert call.headers == []

    def test_list_header_values_expanded(self):
        """列表形式的请求头展开为多个同名请求头"""
        call = build_local_call(make_request(headers={"accept": ["text/html", "application/json"]}), local_port=3000)
        assert call.headers == [("accept", "text/html"), ("accept", "application/json")]

    def test_method_uppercased(self):
        call = build_local_call(make_request(method="post"), local_port=3000)
        assert call.method == "POST"


class TestRequestForwarder:
    """测试请求转发"""

    @pytest.mark.asyncio
    async def test_success_response(self):
        """成功时返回本地服务的状态码、响应头和响应体"""
        service = RecordingService(httpx.Response(200, json={"ok": True}, headers={"x-served-by": "local"}))
        forwarder = RequestForwarder(local_port=3000, transport=service.transport)
        send = AsyncMock()

        response = await forwarder.handle_request(make_request(path="/health"), send)

        send.assert_awaited_once_with(response)
        assert response.id == "r1"
        assert response.status_code == 200
        assert response.body == {"ok": True}
        assert response.headers["x-served-by"] == "local"
        assert str(service.requests[0].url) == "http://localhost:3000/health"

    @pytest.mark.asyncio
    async def test_compressed_response_headers_dropped(self):
        """httpx 解压后不再声明 gzip 编码和原始长度"""
        compressed = gzip.compress(b'{"ok":true}')
        service = RecordingService(
            httpx.Response(
                200,
                content=compressed,
                headers={
                    "content-encoding": "gzip",
                    "content-type": "application/json",
                    "content-length": str(len(compressed)),
                },
            )
        )
        forwarder = RequestForwarder(local_port=3000, transport=service.transport)

        response = await forwarder.handle_request(make_request(), AsyncMock())

        assert response.body == {"ok": True}
        assert response.headers["content-type"] == "application/json"
        assert "content-encoding" not in response.headers
        assert "content-length" not in response.headers

    @pytest.mark.asyncio
    async def test_non_2xx_is_not_a_failure(self):
        """非 2xx 状态码原样返回"""
        service = RecordingService(httpx.Response(404, text="not found"))
        forwarder = RequestForwarder(local_port=3000, transport=service.transport)

        response = await forwarder.handle_request(make_request(), AsyncMock())

        assert response.status_code == 404
        assert response.body == "not found"

    @pytest.mark.asyncio
    async def test_inbound_connection_headers_not_replayed(self):
        """入站的 host / connection / upgrade 不会发送到本地服务"""
        service = RecordingService()
        forwarder = RequestForwarder(local_port=3000, transport=service.transport)
        request = make_request(
            headers={"host": "t1.example", "connection": "close", "upgrade": "h2c", "x-trace": "1"}
        )

        await forwarder.handle_request(request, AsyncMock())

        sent = service.requests[0].headers
        assert sent["host"] == "localhost:3000"
        assert sent.get("connection") != "close"
        assert "upgrade" not in sent
        assert sent["x-trace"] == "1"

    @pytest.mark.asyncio
    async def test_json_body_encoded(self):
        """JSON 值请求体按 JSON 编码"""
        service = RecordingService()
        forwarder = RequestForwarder(local_port=3000, transport=service.transport)

        await forwarder.handle_request(make_request(method="POST", body={"message": "hello"}), AsyncMock())

        sent = service.requests[0]
        assert sent.method == "POST"
        assert json.loads(sent.content) == {"message": "hello"}

    @pytest.mark.asyncio
    async def test_string_body_sent_verbatim(self):
        """字符串请求体原样发送"""
        service = RecordingService()
        forwarder = RequestForwarder(local_port=3000, transport=service.transport)

        await forwarder.handle_request(
            make_request(method="PUT", body="a=1&b=2", headers={"content-type": "application/x-www-form-urlencoded"}),
            AsyncMock(),
        )

        sent = service.requests[0]
        assert sent.content == b"a=1&b=2"
        assert sent.headers["content-type"] == "application/x-www-form-urlencoded"

    @pytest.mark.asyncio
    async def test_connect_error_returns_500(self):
        """本地服务不可达时返回 500"""

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        forwarder = RequestForwarder(local_port=3000, transport=httpx.MockTransport(refuse))
        send = AsyncMock()

        response = await forwarder.handle_request(make_request(), send)

        send.assert_awaited_once()
        assert response.id == "r1"
        assert response.status_code == 500
        assert response.headers == {"content-type": "text/plain"}
        assert "Connection refused" in response.body

    @pytest.mark.asyncio
    async def test_transport_timeout_returns_500(self):
        """httpx 超时返回 500"""

        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        forwarder = RequestForwarder(local_port=3000, transport=httpx.MockTransport(slow))
        response = await forwarder.handle_request(make_request(), AsyncMock())

        assert response.status_code == 500
        assert "timeout" in response.body

    @pytest.mark.asyncio
    async def test_hanging_service_times_out(self):
        """本地服务无响应时在超时后返回 500，不会无限等待"""

        async def hang(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(60)
            return httpx.Response(200)

        forwarder = RequestForwarder(local_port=3000, timeout=0.2, transport=httpx.MockTransport(hang))
        start_time = time.monotonic()

        response = await forwarder.handle_request(make_request(), AsyncMock())

        assert time.monotonic() - start_time < 2.0
        assert response.status_code == 500
        assert response.body == "Local service timeout after 0.2s"

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_500(self):
        """其他异常同样转换为 500"""

        def broken(request: httpx.Request) -> httpx.Response:
            raise httpx.RemoteProtocolError("malformed response", request=request)

        forwarder = RequestForwarder(local_port=3000, transport=httpx.MockTransport(broken))
        response = await forwarder.handle_request(make_request(), AsyncMock())

        assert response.status_code == 500
        assert "malformed response" in response.body

    @pytest.mark.asyncio
    async def test_undeliverable_response_logged(self):
        """连接已关闭时不抛出异常"""
        forwarder = RequestForwarder(local_port=3000, transport=RecordingService().transport)
        send = AsyncMock(side_effect=ConnectionClosed(None, None))

        response = await forwarder.handle_request(make_request(), send)

        assert response.status_code == 200
        send.assert_awaited_once()


def test_error_response():
    response = error_response("r9", "boom")
    assert isinstance(response, TunnelResponse)
    assert response.id == "r9"
    assert response.status_code == 500
    assert response.headers == {"content-type": "text/plain"}
    assert response.body == "boom"


def test_error_response_numeric_id():
    assert error_response(42, "boom").id == 42
