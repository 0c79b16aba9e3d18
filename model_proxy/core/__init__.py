"""
核心功能模块

提供代理服务的核心功能，包括：
- 模型标识解析与服务商分派
- 令牌桶速率限制
- 上下文压缩
- 工具调用模拟
- 请求/响应格式转换
- 带退避的重试与HTTP传输
- 请求处理流水线

子模块:
- dispatcher: 模型标识解析与能力表
- rate_limiter: 每个服务商的令牌桶
- compaction: 上下文压缩引擎
- tool_emulation: 文本工具调用协议
- converters: 统一格式与服务商格式的双向转换
- retry / transport: 出站调用
- pipeline: ProxyContext 与 ProxyPipeline
"""

from .pipeline import ProxyContext, ProxyPipeline, ProxyResult

__all__ = [
    "ProxyContext",
    "ProxyPipeline",
    "ProxyResult",
]
