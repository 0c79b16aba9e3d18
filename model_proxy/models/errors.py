"""标准化错误响应模型与代理异常体系

所有内部失败最终都会转换为统一的错误载荷：
    {"type": "error", "error": {"type": ..., "message": ...}}
"""

import json
from typing import Any

from pydantic import BaseModel, Field


class ErrorTypes:
    """统一错误类型常量"""

    RATE_LIMIT = "rate_limit_error"
    AUTHENTICATION = "authentication_error"
    API = "api_error"
    INVALID_REQUEST = "invalid_request_error"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"


class ErrorDetail(BaseModel):
    """错误详细信息"""

    type: str = Field(description="错误类型")
    message: str = Field(description="错误消息")


class StandardErrorResponse(BaseModel):
    """标准化错误响应模型"""

    type: str = Field("error", description="响应类型")
    error: ErrorDetail = Field(description="错误详情")


# 错误类型到HTTP状态码的默认映射
ERROR_STATUS_MAPPING = {
    ErrorTypes.RATE_LIMIT: 429,
    ErrorTypes.AUTHENTICATION: 401,
    ErrorTypes.API: 500,
    ErrorTypes.INVALID_REQUEST: 400,
    ErrorTypes.CONTEXT_LENGTH_EXCEEDED: 400,
}


def get_error_response(error_type: str, message: str) -> StandardErrorResponse:
    """根据错误类型构建标准错误响应"""
    return StandardErrorResponse(error=ErrorDetail(type=error_type, message=message))


class ProxyError(Exception):
    """代理内部异常基类

    每个子类都固定了对外的错误类型与HTTP状态码。
    """

    error_type: str = ErrorTypes.API
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_response(self) -> StandardErrorResponse:
        return get_error_response(self.error_type, self.message)

    def headers(self) -> dict[str, str]:
        """错误响应附加的HTTP头"""
        return {}


class AdmissionTimeout(ProxyError):
    """在调用方截止时间内没有获得速率令牌"""

    error_type = ErrorTypes.RATE_LIMIT
    status_code = 429

    def __init__(self, provider: str, waited: float):
        super().__init__(
            f"速率限制：{provider} 服务商在 {waited:.1f}s 内没有可用令牌，请稍后重试"
        )
        self.provider = provider
        self.waited = waited


class AdmissionCancelled(ProxyError):
    """等待速率令牌期间请求被取消"""

    error_type = ErrorTypes.RATE_LIMIT
    status_code = 429

    def __init__(self, provider: str):
        super().__init__(f"等待 {provider} 速率令牌时请求已取消")
        self.provider = provider


class AuthenticationError(ProxyError):
    """缺少服务商凭证"""

    error_type = ErrorTypes.AUTHENTICATION
    status_code = 401


class InvalidRequestError(ProxyError):
    """入站请求格式错误"""

    error_type = ErrorTypes.INVALID_REQUEST
    status_code = 400


class TransportFailure(ProxyError):
    """连接失败、中断或超时，可重试"""

    error_type = ErrorTypes.API
    status_code = 502
    retryable = True

    def __init__(self, message: str, *, url: str | None = None):
        super().__init__(message)
        self.url = url


class ProviderResponseError(ProxyError):
    """上游返回了无法解析的响应体"""

    error_type = ErrorTypes.API
    status_code = 502


class UpstreamError(ProxyError):
    """上游非2xx响应，响应体原样透传"""

    error_type = ErrorTypes.API

    def __init__(
        self,
        status_code: int,
        body: str,
        headers: dict[str, str] | None = None,
        *,
        provider: str | None = None,
    ):
        super().__init__(
            f"上游服务返回错误状态码 {status_code}", status_code=status_code
        )
        self.body = body
        self.upstream_headers = headers or {}
        self.provider = provider
        self.retryable = is_retryable_status(status_code)


class ContextLengthExceeded(ProxyError):
    """压缩之后上下文仍然超出模型限制"""

    error_type = ErrorTypes.CONTEXT_LENGTH_EXCEEDED
    status_code = 400

    def __init__(
        self,
        model: str,
        estimated: int,
        limit: int,
        stats: dict[str, Any] | None = None,
    ):
        super().__init__(
            f"{model} 的上下文在压缩后仍然过长：估算约 {estimated} tokens，"
            f"但上限为 {limit}。请执行 /clear 清理对话，或切换到上下文更大的模型（如 glm/glm-4.7）。"
        )
        self.model = model
        self.estimated = estimated
        self.limit = limit
        self.stats = stats

    def headers(self) -> dict[str, str]:
        if self.stats is None:
            return {}
        return {
            "X-Proxy-Compaction-Attempted": "true",
            "X-Proxy-Compaction-Stats": json.dumps(self.stats),
        }


RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})


def is_retryable_status(status_code: int) -> bool:
    """判断上游状态码是否属于可重试的瞬时错误"""
    return status_code in RETRYABLE_STATUS_CODES


def is_client_error(status_code: int) -> bool:
    return 400 <= status_code < 500


def is_server_error(status_code: int) -> bool:
    return 500 <= status_code < 600
