"""
统一格式到各服务商原生格式的请求转换器

- OpenAI兼容格式（GLM、Featherless）：chat/completions
- Google Gemini：generateContent
- Anthropic：Messages API 透传
"""

import json
from dataclasses import dataclass
from typing import Any

from loguru import logger

from model_proxy.core.dispatcher import Provider, ProviderTarget
from model_proxy.core.tool_emulation import encode_tool_call, inject_tool_catalog
from model_proxy.models.gemini import (
    GeminiContent,
    GeminiFunctionCall,
    GeminiFunctionDeclaration,
    GeminiFunctionResponse,
    GeminiGenerationConfig,
    GeminiInlineData,
    GeminiPart,
    GeminiRequest,
    GeminiTool,
)
from model_proxy.models.messages import (
    ImageBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
    UnifiedRequest,
)
from model_proxy.models.openai import (
    OpenAIMessage,
    OpenAIMessageContent,
    OpenAIRequest,
    OpenAITool,
    OpenAIToolCall,
    OpenAIToolCallFunction,
    OpenAIToolFunction,
)

DEFAULT_MAX_TOKENS = 4096

# Gemini 不接受的 JSON Schema 关键字
_GEMINI_UNSUPPORTED_SCHEMA_KEYS = {"$schema", "additionalProperties"}


@dataclass
class TranslatedRequest:
    """转换后的服务商原生请求"""

    path: str
    body: dict[str, Any]
    max_tokens: int
    requested_max_tokens: int | None
    emulate_tools: bool

    @property
    def max_tokens_capped(self) -> bool:
        return (
            self.requested_max_tokens is not None
            and self.requested_max_tokens > self.max_tokens
        )


def cap_max_tokens(requested: int | None, limit: int) -> int:
    """把请求的输出上限限制在模型最大输出以内"""
    return min(requested or DEFAULT_MAX_TOKENS, limit)


def should_emulate_tools(request: UnifiedRequest, target: ProviderTarget) -> bool:
    return bool(request.tools) and not target.native_tools


def _tool_names_by_id(messages: list[Message]) -> dict[str, str]:
    names: dict[str, str] = {}
    for message in messages:
        for block in message.tool_uses():
            names[block.id] = block.name
    return names


def orphan_results_as_text(messages: list[Message]) -> list[Message]:
    """把前面找不到对应调用的工具结果改写为文本块

    压缩只移除整条消息，工具调用可能进入摘要而结果仍留在尾部；
    Gemini 与 Anthropic 都会拒绝这种孤立的结果。
    """
    seen: set[str] = set()
    repaired = []
    for message in messages:
        if message.role == "assistant":
            seen.update(block.id for block in message.tool_uses())
        if all(block.tool_use_id in seen for block in message.tool_results()):
            repaired.append(message)
            continue

        content = []
        for block in message.content:
            if isinstance(block, ToolResultBlock) and block.tool_use_id not in seen:
                logger.debug(f"工具结果缺少对应调用，改写为文本 - ID: {block.tool_use_id}")
                text = f"[Tool result {block.tool_use_id}]: {block.content_text()}"
                content.append(TextBlock(text=text))
            else:
                content.append(block)
        repaired.append(message.model_copy(update={"content": content}))
    return repaired


class UnifiedToOpenAIConverter:
    """将统一请求转换为OpenAI兼容格式"""

    @staticmethod
    def convert(
        request: UnifiedRequest,
        target: ProviderTarget,
        emulate_tools: bool,
        max_tokens: int,
    ) -> dict[str, Any]:
        messages = UnifiedToOpenAIConverter._convert_messages(request, emulate_tools)

        openai_request = OpenAIRequest(
            model=target.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=request.temperature,
            top_p=request.top_p,
            stream=False,
            stop=request.stop_sequences,
            tools=None if emulate_tools else UnifiedToOpenAIConverter._convert_tools(request.tools),
            tool_choice=(
                None
                if emulate_tools
                else UnifiedToOpenAIConverter._convert_tool_choice(request.tool_choice)
            ),
        )
        return openai_request.model_dump(exclude_none=True)

    @staticmethod
    def _convert_messages(
        request: UnifiedRequest, emulate_tools: bool
    ) -> list[OpenAIMessage]:
        """
        转换消息列表

        工具结果作为独立的 tool 消息，紧跟在产生对应调用的 assistant 消息之后。
        """
        messages = []

        system = request.system_text()
        if emulate_tools:
            system = inject_tool_catalog(system, request.tools)
        if system:
            messages.append(OpenAIMessage(role="system", content=system))

        tool_names = _tool_names_by_id(request.messages)
        for message in request.messages:
            messages.extend(
                UnifiedToOpenAIConverter._convert_single_message(
                    message, emulate_tools, tool_names
                )
            )

        if not emulate_tools:
            messages = UnifiedToOpenAIConverter._filter_incomplete_tool_calls(messages)
        return messages

    @staticmethod
    def _convert_single_message(
        message: Message, emulate_tools: bool, tool_names: dict[str, str]
    ) -> list[OpenAIMessage]:
        converted = []

        for result in message.tool_results():
            converted.append(
                OpenAIMessage(
                    role="tool",
                    content=result.content_text(),
                    tool_call_id=result.tool_use_id,
                    name=result.name or tool_names.get(result.tool_use_id),
                )
            )

        parts: list[OpenAIMessageContent] = []
        tool_calls: list[OpenAIToolCall] = []
        for block in message.content:
            if isinstance(block, TextBlock):
                if block.text:
                    parts.append(OpenAIMessageContent(type="text", text=block.text))
            elif isinstance(block, ImageBlock):
                parts.append(UnifiedToOpenAIConverter._convert_image(block))
            elif isinstance(block, ToolUseBlock):
                if emulate_tools:
                    parts.append(
                        OpenAIMessageContent(type="text", text=encode_tool_call(block))
                    )
                else:
                    tool_calls.append(
                        OpenAIToolCall(
                            id=block.id,
                            function=OpenAIToolCallFunction(
                                name=block.name,
                                arguments=json.dumps(block.input, ensure_ascii=False),
                            ),
                        )
                    )

        if not parts and not tool_calls:
            return converted

        content: str | list[OpenAIMessageContent] | None
        if all(part.type == "text" for part in parts):
            content = "\n".join(part.text for part in parts) if parts else None
        else:
            content = parts

        converted.append(
            OpenAIMessage(
                role=message.role,
                content=content,
                tool_calls=tool_calls or None,
            )
        )
        return converted

    @staticmethod
    def _convert_image(block: ImageBlock) -> OpenAIMessageContent:
        if block.is_inline:
            media_type = block.source.media_type or "image/png"
            url = f"data:{media_type};base64,{block.source.data}"
        else:
            url = block.source.url or ""
        return OpenAIMessageContent(type="image_url", image_url={"url": url})

    @staticmethod
    def _convert_tools(tools: list[ToolSpec] | None) -> list[OpenAITool] | None:
        if not tools:
            return None
        return [
            OpenAITool(
                function=OpenAIToolFunction(
                    name=tool.name,
                    description=tool.description,
                    parameters=tool.input_schema,
                )
            )
            for tool in tools
        ]

    @staticmethod
    def _convert_tool_choice(
        tool_choice: dict[str, Any] | None,
    ) -> str | dict[str, Any] | None:
        """
        转换tool_choice

        auto -> auto, any -> required, none -> none, tool -> 指定函数
        """
        if tool_choice is None:
            return None

        choice_type = tool_choice.get("type")
        if choice_type == "any":
            return "required"
        if choice_type in ("auto", "none"):
            return choice_type
        if choice_type == "tool" and tool_choice.get("name"):
            return {"type": "function", "function": {"name": tool_choice["name"]}}
        return None

    @staticmethod
    def _filter_incomplete_tool_calls(
        messages: list[OpenAIMessage],
    ) -> list[OpenAIMessage]:
        """过滤不完整的tool_calls序列

        OpenAI要求每个带有tool_calls的assistant消息后面必须跟对应的tool消息。
        没有对应tool消息的tool_calls序列会被移除，独立的tool消息也会被移除。
        """
        if not messages:
            return messages

        filtered_messages = []
        i = 0

        while i < len(messages):
            current_msg = messages[i]

            if current_msg.role == "assistant" and current_msg.tool_calls:
                tool_call_ids = {call.id for call in current_msg.tool_calls}
                found_tool_ids = set()

                j = i + 1
                while j < len(messages) and messages[j].role == "tool":
                    if messages[j].tool_call_id in tool_call_ids:
                        found_tool_ids.add(messages[j].tool_call_id)
                    j += 1

                if found_tool_ids == tool_call_ids:
                    filtered_messages.extend(messages[i:j])
                else:
                    logger.debug(
                        f"过滤不完整的tool_calls序列: 期望{len(tool_call_ids)}个tool消息，实际找到{len(found_tool_ids)}个"
                    )
                    # 保留assistant的文本部分
                    if current_msg.content:
                        filtered_messages.append(
                            current_msg.model_copy(update={"tool_calls": None})
                        )
                i = j
            elif current_msg.role == "tool":
                logger.debug(
                    f"过滤没有对应assistant消息的独立tool消息: {current_msg.tool_call_id}"
                )
                i += 1
            else:
                filtered_messages.append(current_msg)
                i += 1

        return filtered_messages


class UnifiedToGeminiConverter:
    """将统一请求转换为Gemini generateContent格式"""

    @staticmethod
    def convert(
        request: UnifiedRequest,
        target: ProviderTarget,
        emulate_tools: bool,
        max_tokens: int,
    ) -> dict[str, Any]:
        system = request.system_text()
        if emulate_tools:
            system = inject_tool_catalog(system, request.tools)

        tool_names = _tool_names_by_id(request.messages)
        contents: list[GeminiContent] = []
        for message in orphan_results_as_text(request.messages):
            contents.extend(
                UnifiedToGeminiConverter._convert_single_message(
                    message, emulate_tools, tool_names
                )
            )

        gemini_request = GeminiRequest(
            contents=contents,
            systemInstruction=(
                GeminiContent(parts=[GeminiPart(text=system)]) if system else None
            ),
            tools=None if emulate_tools else UnifiedToGeminiConverter._convert_tools(request.tools),
            generationConfig=GeminiGenerationConfig(
                maxOutputTokens=max_tokens,
                temperature=request.temperature,
                topP=request.top_p,
                stopSequences=request.stop_sequences,
            ),
        )
        return gemini_request.model_dump(exclude_none=True)

    @staticmethod
    def _convert_single_message(
        message: Message, emulate_tools: bool, tool_names: dict[str, str]
    ) -> list[GeminiContent]:
        converted = []

        results = message.tool_results()
        if results:
            parts = []
            for result in results:
                if emulate_tools:
                    parts.append(GeminiPart(text=result.content_text()))
                    continue
                parts.append(
                    GeminiPart(
                        functionResponse=GeminiFunctionResponse(
                            name=result.name or tool_names.get(result.tool_use_id, "unknown"),
                            response={"content": result.content_text()},
                        )
                    )
                )
            converted.append(GeminiContent(role="user", parts=parts))

        parts = []
        for block in message.content:
            if isinstance(block, TextBlock):
                if block.text:
                    parts.append(GeminiPart(text=block.text))
            elif isinstance(block, ImageBlock):
                if block.is_inline:
                    parts.append(
                        GeminiPart(
                            inlineData=GeminiInlineData(
                                mimeType=block.source.media_type or "image/png",
                                data=block.source.data,
                            )
                        )
                    )
                else:
                    # Gemini 无法直接获取远程图片
                    parts.append(GeminiPart(text=f"[Image: {block.source.url}]"))
            elif isinstance(block, ToolUseBlock):
                if emulate_tools:
                    parts.append(GeminiPart(text=encode_tool_call(block)))
                else:
                    parts.append(
                        GeminiPart(
                            functionCall=GeminiFunctionCall(
                                name=block.name, args=block.input
                            )
                        )
                    )

        if parts:
            role = "model" if message.role == "assistant" else "user"
            converted.append(GeminiContent(role=role, parts=parts))
        return converted

    @staticmethod
    def _convert_tools(tools: list[ToolSpec] | None) -> list[GeminiTool] | None:
        if not tools:
            return None
        declarations = [
            GeminiFunctionDeclaration(
                name=tool.name,
                description=tool.description,
                parameters=_clean_gemini_schema(tool.input_schema),
            )
            for tool in tools
        ]
        return [GeminiTool(functionDeclarations=declarations)]


def _clean_gemini_schema(schema: Any) -> Any:
    """递归移除 Gemini 不支持的 JSON Schema 关键字"""
    if isinstance(schema, dict):
        return {
            key: _clean_gemini_schema(value)
            for key, value in schema.items()
            if key not in _GEMINI_UNSUPPORTED_SCHEMA_KEYS
        }
    if isinstance(schema, list):
        return [_clean_gemini_schema(item) for item in schema]
    return schema


class UnifiedToAnthropicConverter:
    """Anthropic透传：只替换模型名与输出上限

    未建模的字段与内容块（thinking、top_k、cache_control、redacted_thinking 等）原样保留。
    """

    @staticmethod
    def convert(
        request: UnifiedRequest,
        target: ProviderTarget,
        emulate_tools: bool,
        max_tokens: int,
    ) -> dict[str, Any]:
        body = request.model_dump(exclude_none=True, exclude={"messages", "tools"})
        body["messages"] = [
            message.model_dump(exclude_none=True)
            for message in orphan_results_as_text(request.messages)
        ]
        if request.tools is not None:
            # 服务端工具没有 input_schema，不能补默认值
            body["tools"] = [tool.model_dump(exclude_unset=True, exclude_none=True) for tool in request.tools]
        body["model"] = target.model
        body["max_tokens"] = max_tokens
        return body


_CONVERTERS = {
    Provider.GLM: ("/chat/completions", UnifiedToOpenAIConverter),
    Provider.FEATHERLESS: ("/chat/completions", UnifiedToOpenAIConverter),
    Provider.ANTHROPIC: ("/v1/messages", UnifiedToAnthropicConverter),
}


def to_provider_request(
    request: UnifiedRequest,
    target: ProviderTarget,
    emulate_tools: bool | None = None,
) -> TranslatedRequest:
    """
    构建服务商原生请求

    Args:
        request: 统一格式请求
        target: 目标服务商与模型
        emulate_tools: 是否使用文本模拟工具调用，None 表示按能力表自动判断

    Returns:
        TranslatedRequest: 路径、请求体与输出上限信息
    """
    if emulate_tools is None:
        emulate_tools = should_emulate_tools(request, target)

    max_tokens = cap_max_tokens(request.max_tokens, target.max_output_tokens)

    if target.provider == Provider.GOOGLE:
        path = f"/models/{target.model}:generateContent"
        converter = UnifiedToGeminiConverter
    else:
        path, converter = _CONVERTERS[target.provider]

    body = converter.convert(request, target, emulate_tools, max_tokens)
    return TranslatedRequest(
        path=path,
        body=body,
        max_tokens=max_tokens,
        requested_max_tokens=request.max_tokens,
        emulate_tools=emulate_tools,
    )
