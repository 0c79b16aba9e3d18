"""
API模块

提供FastAPI应用的路由、处理器和中间件。

主要功能:
- 消息代理与token计数接口
- 健康检查端点
- 中间件集成

子模块:
- handlers: API请求处理器
- routes: 健康检查路由
- middleware: 中间件实现
"""

from .handlers import MessagesHandler, messages_endpoint, render_result
from .handlers import router as handlers_router
from .middleware import RequestTimingMiddleware, setup_middlewares
from .routes import health_check
from .routes import router as routes_router

__all__ = [
    # 路由
    "routes_router",
    "handlers_router",
    "health_check",
    # 处理器
    "MessagesHandler",
    "messages_endpoint",
    "render_result",
    # 中间件
    "RequestTimingMiddleware",
    "setup_middlewares",
]
