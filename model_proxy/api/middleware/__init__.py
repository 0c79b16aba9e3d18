"""
中间件模块

提供FastAPI应用的中间件实现。

主要功能:
- 请求计时中间件
- 请求ID追踪

使用示例:
    from model_proxy.api.middleware import setup_middlewares

    setup_middlewares(app)
"""

from .timing import RequestTimingMiddleware, setup_middlewares

__all__ = [
    "RequestTimingMiddleware",
    "setup_middlewares",
]
