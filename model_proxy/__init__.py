"""
Model Proxy

一个多服务商聊天代理服务，对外提供 Anthropic Messages 格式的接口。
根据模型标识把请求转发到 GLM、Featherless、Google Gemini 或 Anthropic。

主要功能:
- 统一消息格式与各服务商原生格式的双向转换
- 为不支持原生工具调用的模型模拟工具调用
- 每个服务商独立的令牌桶速率限制
- 长对话的上下文压缩
- 带退避与备用地址切换的重试
- 配置文件热重载

使用示例:
    from model_proxy.main import create_app

    app = create_app()
"""

__version__ = "0.1.0"
__description__ = "Multi-provider chat proxy speaking the Anthropic Messages API"

__all__ = [
    "__version__",
    "__description__",
]
