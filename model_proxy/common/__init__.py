"""
通用工具模块

提供项目中共享的工具和实用功能。

主要功能:
- 日志配置和管理
- 请求ID生成和追踪
- 代理可观测事件
- Token计数功能

使用示例:
    from model_proxy.common import configure_logging, ProxyEventLogger

    configure_logging(config.logging)
    events = ProxyEventLogger(request_id)
"""

from .logging import (
    REQUEST_ID_HEADER,
    ProxyEventLogger,
    configure_logging,
    format_proxy_event,
    generate_request_id,
    get_logger_with_request_id,
    get_request_id_from_request,
)

__all__ = [
    # 日志功能
    "configure_logging",
    "generate_request_id",
    "get_request_id_from_request",
    "get_logger_with_request_id",
    "REQUEST_ID_HEADER",
    # 代理事件
    "ProxyEventLogger",
    "format_proxy_event",
]
