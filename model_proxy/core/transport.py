"""基于 httpx 的上游HTTP传输层

只负责"发送请求，返回状态码+响应头+响应体"，不做任何格式转换。
连接失败、中断与超时统一转换为可重试的 TransportFailure。
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from model_proxy.models.errors import ProviderResponseError, TransportFailure

DEFAULT_TIMEOUT = 120.0


@dataclass
class TransportRequest:
    """出站请求"""

    url: str
    json_body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    method: str = "POST"
    timeout: float = DEFAULT_TIMEOUT


@dataclass
class TransportResponse:
    """上游原始响应"""

    status_code: int
    headers: dict[str, str]
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> dict[str, Any]:
        try:
            data = json.loads(self.body)
        except json.JSONDecodeError as e:
            raise ProviderResponseError(f"上游响应不是有效的JSON: {e.msg}") from e
        if not isinstance(data, dict):
            raise ProviderResponseError("上游响应不是JSON对象")
        return data


class HttpTransport:
    """httpx.AsyncClient 封装

    每次调用都带有绝对超时，超时会中止调用。
    """

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(DEFAULT_TIMEOUT, connect=10.0)
        )

    async def send(self, request: TransportRequest) -> TransportResponse:
        try:
            response = await asyncio.wait_for(
                self._client.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    json=request.json_body,
                    timeout=request.timeout,
                ),
                timeout=request.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.warning(f"上游请求超时 - URL: {request.url}, Timeout: {request.timeout}s")
            raise TransportFailure(
                f"上游请求在 {request.timeout}s 内未完成", url=request.url
            ) from e
        except httpx.RequestError as e:
            logger.warning(f"上游连接失败 - URL: {request.url}, Error: {type(e).__name__}")
            raise TransportFailure(
                f"无法连接上游服务: {type(e).__name__}", url=request.url
            ) from e

        return TransportResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.text,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
