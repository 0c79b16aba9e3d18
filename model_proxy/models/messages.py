"""统一消息格式数据模型定义

入站请求与出站响应均采用 Anthropic Messages 的结构，作为所有上游服务商之间的统一格式。
"""

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, field_validator


class ContentTypes:
    """内容块类型常量"""

    TEXT = "text"
    IMAGE = "image"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    THINKING = "thinking"


class Roles:
    """消息角色常量"""

    USER = "user"
    ASSISTANT = "assistant"


class StopReasons:
    """统一停止原因常量"""

    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    ERROR = "error"


class StreamEventTypes:
    """流式事件类型常量"""

    MESSAGE_START = "message_start"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"
    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    CONTENT_BLOCK_STOP = "content_block_stop"
    PING = "ping"


class PassthroughModel(BaseModel):
    """保留未声明字段（如 cache_control、thinking），Anthropic 透传时原样转发"""

    model_config = ConfigDict(extra="allow")


class TextBlock(PassthroughModel):
    """文本内容块"""

    type: Literal["text"] = Field(default=ContentTypes.TEXT, description="内容类型")
    text: str = Field(description="文本内容")


class ImageSource(PassthroughModel):
    """图像来源：内联base64数据、远程URL或其他来源类型"""

    type: str = Field(description="来源类型，如 base64 或 url")
    media_type: str | None = Field(None, description="MIME类型，如image/png")
    data: str | None = Field(None, description="base64编码的图像数据")
    url: str | None = Field(None, description="远程图像URL")


class ImageBlock(PassthroughModel):
    """图像内容块"""

    type: Literal["image"] = Field(default=ContentTypes.IMAGE, description="内容类型")
    source: ImageSource = Field(description="图像来源")

    @property
    def is_inline(self) -> bool:
        return self.source.type == "base64" and bool(self.source.data)


class ToolUseBlock(PassthroughModel):
    """工具调用内容块"""

    type: Literal["tool_use"] = Field(
        default=ContentTypes.TOOL_USE, description="内容类型"
    )
    id: str = Field(description="工具调用ID")
    name: str = Field(description="工具名称")
    input: dict[str, Any] = Field(default_factory=dict, description="工具输入参数")


class ToolResultBlock(PassthroughModel):
    """工具结果内容块"""

    type: Literal["tool_result"] = Field(
        default=ContentTypes.TOOL_RESULT, description="内容类型"
    )
    tool_use_id: str = Field(description="对应的工具调用ID")
    name: str | None = Field(None, description="工具名称（可选）")
    content: str | list[dict[str, Any]] | None = Field(
        None, description="工具结果内容"
    )
    is_error: bool | None = Field(None, description="是否为错误结果")

    def content_text(self) -> str:
        """将工具结果内容展平为字符串"""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        texts = [
            item.get("text", "")
            for item in self.content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        if len(texts) == len(self.content):
            return "\n".join(texts)
        return json.dumps(self.content, ensure_ascii=False)


class ThinkingBlock(PassthroughModel):
    """思考内容块"""

    type: Literal["thinking"] = Field(
        default=ContentTypes.THINKING, description="内容类型"
    )
    thinking: str = Field(description="思考内容")
    signature: str | None = Field(None, description="思考内容签名")


class UnknownBlock(PassthroughModel):
    """未建模的内容块（如 redacted_thinking），转换时忽略，透传时原样保留"""

    type: str = Field(description="内容类型")


_KNOWN_BLOCK_TYPES = {
    ContentTypes.TEXT,
    ContentTypes.IMAGE,
    ContentTypes.TOOL_USE,
    ContentTypes.TOOL_RESULT,
    ContentTypes.THINKING,
}


def _block_type(value: Any) -> str:
    if isinstance(value, dict):
        block_type = value.get("type")
    else:
        block_type = getattr(value, "type", None)
    return block_type if block_type in _KNOWN_BLOCK_TYPES else "unknown"


ContentBlock = Annotated[
    Union[
        Annotated[TextBlock, Tag(ContentTypes.TEXT)],
        Annotated[ImageBlock, Tag(ContentTypes.IMAGE)],
        Annotated[ToolUseBlock, Tag(ContentTypes.TOOL_USE)],
        Annotated[ToolResultBlock, Tag(ContentTypes.TOOL_RESULT)],
        Annotated[ThinkingBlock, Tag(ContentTypes.THINKING)],
        Annotated[UnknownBlock, Tag("unknown")],
    ],
    Discriminator(_block_type),
]


class Message(PassthroughModel):
    """统一消息格式，字符串内容会被规范化为单个文本块"""

    role: Literal["user", "assistant"] = Field(description="消息角色")
    content: list[ContentBlock] = Field(description="消息内容块列表")

    @field_validator("content", mode="before")
    @classmethod
    def _normalize_content(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [{"type": ContentTypes.TEXT, "text": value}]
        return value

    def text(self) -> str:
        """拼接消息中的所有文本块"""
        return "\n".join(
            block.text for block in self.content if isinstance(block, TextBlock)
        )

    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [block for block in self.content if isinstance(block, ToolResultBlock)]


class SystemTextBlock(PassthroughModel):
    """系统提示文本块"""

    type: Literal["text"] = Field(default=ContentTypes.TEXT, description="固定为text")
    text: str = Field(description="系统提示文本内容")


class ToolSpec(PassthroughModel):
    """工具定义，input_schema 为与服务商无关的JSON Schema"""

    name: str = Field(description="工具名称")
    description: str | None = Field(None, description="工具描述")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON Schema格式的输入参数定义",
    )


class UnifiedRequest(PassthroughModel):
    """统一请求模型"""

    model: str = Field("", description="模型标识，如 featherless/org/model-name")
    messages: list[Message] = Field(description="有序的对话消息列表")
    system: str | list[SystemTextBlock] | None = Field(None, description="系统提示")
    max_tokens: int | None = Field(None, ge=1, description="最大输出token数量")
    temperature: float | None = Field(None, ge=0.0, le=2.0, description="采样温度")
    top_p: float | None = Field(None, ge=0.0, le=1.0, description="top-p采样参数")
    stop_sequences: list[str] | None = Field(None, description="停止序列")
    stream: bool | None = Field(False, description="是否使用流式响应")
    tools: list[ToolSpec] | None = Field(None, description="可用工具定义")
    tool_choice: dict[str, Any] | None = Field(None, description="工具选择配置")
    metadata: dict[str, Any] | None = Field(None, description="可选元数据")

    def system_text(self) -> str:
        """返回展平后的系统提示文本"""
        if not self.system:
            return ""
        if isinstance(self.system, str):
            return self.system
        return "\n\n".join(block.text for block in self.system)


class Usage(BaseModel):
    """使用统计"""

    input_tokens: int = Field(0, description="输入token数量")
    output_tokens: int = Field(0, description="输出token数量")


class UnifiedResponse(BaseModel):
    """统一响应模型"""

    id: str = Field(description="响应唯一ID")
    type: Literal["message"] = Field(default="message", description="响应类型")
    role: Literal["assistant"] = Field(default=Roles.ASSISTANT, description="消息角色")
    content: list[ContentBlock] = Field(description="消息内容块")
    model: str = Field(description="使用的模型ID")
    stop_reason: str | None = Field(None, description="停止原因")
    stop_sequence: str | None = Field(None, description="停止序列")
    usage: Usage = Field(default_factory=Usage, description="使用统计")

    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]
