"""
转换器模块

提供统一消息格式与各服务商原生格式之间的双向转换，以及流式事件合成。
"""

from .request_converter import (
    TranslatedRequest,
    UnifiedToAnthropicConverter,
    UnifiedToGeminiConverter,
    UnifiedToOpenAIConverter,
    cap_max_tokens,
    should_emulate_tools,
    to_provider_request,
)
from .response_converter import (
    AnthropicToUnifiedConverter,
    GeminiToUnifiedConverter,
    OpenAIToUnifiedConverter,
    from_provider_response,
)
from .stream_converters import format_event, synthesize_stream

__all__ = [
    "TranslatedRequest",
    "UnifiedToOpenAIConverter",
    "UnifiedToGeminiConverter",
    "UnifiedToAnthropicConverter",
    "OpenAIToUnifiedConverter",
    "GeminiToUnifiedConverter",
    "AnthropicToUnifiedConverter",
    "cap_max_tokens",
    "should_emulate_tools",
    "to_provider_request",
    "from_provider_response",
    "format_event",
    "synthesize_stream",
]
