"""请求计时与请求ID中间件"""

import time
from collections.abc import Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from model_proxy.common.logging import (
    REQUEST_ID_HEADER,
    generate_request_id,
    get_logger_with_request_id,
)
from model_proxy.models.errors import ErrorTypes, get_error_response


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """记录请求处理时间，并为每个请求分配请求ID"""

    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        request_id = generate_request_id()
        request.state.request_id = request_id

        # 获取绑定了请求ID的logger
        bound_logger = get_logger_with_request_id(request_id)

        try:
            response = await call_next(request)
        except Exception as exc:
            response_time_ms = round((time.time() - start_time) * 1000, 2)
            bound_logger.opt(exception=exc).error(
                f"请求处理错误 - {request.method} {request.url.path}, "
                f"Error: {type(exc).__name__}, Time: {response_time_ms}ms"
            )
            error_response = get_error_response(ErrorTypes.API, "服务器内部错误，请稍后重试")
            response = JSONResponse(status_code=500, content=error_response.model_dump())
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        response_time = time.time() - start_time
        response_time_ms = round(response_time * 1000, 2)

        bound_logger.info(
            f"请求完成 - {request.method} {request.url.path}, "
            f"Status: {response.status_code}, Time: {response_time_ms}ms"
        )

        response.headers["X-Process-Time"] = f"{response_time:.3f}s"
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def setup_middlewares(app: FastAPI) -> None:
    """设置所有中间件"""
    app.add_middleware(RequestTimingMiddleware)
