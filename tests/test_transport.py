"""
httpx 传输层测试（MockTransport，不访问网络）
"""

import json

import httpx
import pytest

from model_proxy.core.transport import HttpTransport, TransportRequest, TransportResponse
from model_proxy.models.errors import ProviderResponseError, TransportFailure


def make_transport(handler) -> HttpTransport:
    return HttpTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestHttpTransport:
    @pytest.mark.asyncio
    async def test_sends_json_and_returns_raw_response(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"ok": True}, headers={"x-upstream": "1"})

        transport = make_transport(handler)
        response = await transport.send(
            TransportRequest(
                url="https://upstream.test/chat/completions",
                json_body={"model": "glm-4.7"},
                headers={"Authorization": "Bearer k"},
                timeout=5.0,
            )
        )
        await transport.aclose()

        assert seen == {
            "method": "POST",
            "url": "https://upstream.test/chat/completions",
            "auth": "Bearer k",
            "body": {"model": "glm-4.7"},
        }
        assert response.status_code == 201
        assert response.ok
        assert response.headers["x-upstream"] == "1"
        assert response.json() == {"ok": True}

    @pytest.mark.asyncio
    async def test_error_status_is_not_raised(self):
        transport = make_transport(lambda request: httpx.Response(503, text="overloaded"))
        response = await transport.send(TransportRequest(url="https://upstream.test", json_body={}))
        assert response.status_code == 503
        assert response.ok is False
        assert response.body == "overloaded"

    @pytest.mark.asyncio
    async def test_connection_error_becomes_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        transport = make_transport(handler)
        with pytest.raises(TransportFailure) as exc_info:
            await transport.send(TransportRequest(url="https://upstream.test", json_body={}))
        assert exc_info.value.retryable is True
        assert exc_info.value.url == "https://upstream.test"

    @pytest.mark.asyncio
    async def test_timeout_becomes_transport_failure(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        transport = make_transport(handler)
        with pytest.raises(TransportFailure):
            await transport.send(TransportRequest(url="https://upstream.test", json_body={}, timeout=1.0))


class TestTransportResponse:
    def test_invalid_json_body(self):
        response = TransportResponse(status_code=200, headers={}, body="<html>")
        with pytest.raises(ProviderResponseError):
            response.json()

    def test_non_object_json_body(self):
        response = TransportResponse(status_code=200, headers={}, body="[1, 2]")
        with pytest.raises(ProviderResponseError):
            response.json()
