"""
服务商原生响应到统一格式的转换器

停止原因统一映射为 end_turn / tool_use / max_tokens，其他值原样透传。
模拟工具调用时，助手文本先交给工具调用解码器处理。
"""

import json
import re
import time
import uuid
from typing import Any

from loguru import logger
from pydantic import ValidationError

from model_proxy.core.compaction import estimate_tokens
from model_proxy.core.dispatcher import Provider, ProviderTarget
from model_proxy.core.tool_emulation import decode_tool_calls, new_tool_call_id
from model_proxy.models.errors import ProviderResponseError
from model_proxy.models.gemini import GeminiResponse
from model_proxy.models.messages import (
    StopReasons,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    UnifiedResponse,
    Usage,
)
from model_proxy.models.openai import OpenAIResponse

_THINK_PATTERN = re.compile(r"<think>(.*?)</think>", re.DOTALL)

OPENAI_STOP_REASONS = {
    "stop": StopReasons.END_TURN,
    "tool_calls": StopReasons.TOOL_USE,
    "function_call": StopReasons.TOOL_USE,
    "length": StopReasons.MAX_TOKENS,
}

GEMINI_STOP_REASONS = {
    "STOP": StopReasons.END_TURN,
    "MAX_TOKENS": StopReasons.MAX_TOKENS,
}


def safe_json_parse(json_str: str) -> dict[str, Any]:
    """安全的JSON解析，失败时返回空字典"""
    try:
        parsed = json.loads(json_str)
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"工具调用参数解析失败: {str(json_str)[:100]}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def map_stop_reason(
    raw_reason: str | None, mapping: dict[str, str], has_tool_calls: bool
) -> str:
    if has_tool_calls:
        return StopReasons.TOOL_USE
    if raw_reason is None:
        return StopReasons.END_TURN
    return mapping.get(raw_reason, raw_reason)


def _new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:24]}"


def _estimate_output_tokens(blocks: list) -> int:
    total = 0
    for block in blocks:
        if isinstance(block, TextBlock):
            total += estimate_tokens(block.text)
        elif isinstance(block, ThinkingBlock):
            total += estimate_tokens(block.thinking)
        elif isinstance(block, ToolUseBlock):
            total += estimate_tokens(block.name)
            total += estimate_tokens(json.dumps(block.input, ensure_ascii=False))
    return total


def _split_text_and_calls(text: str, emulate_tools: bool) -> list:
    """把助手文本转换为内容块，模拟模式下解析其中的工具调用"""
    if not emulate_tools:
        return [TextBlock(text=text.strip())] if text.strip() else []

    cleaned, calls = decode_tool_calls(text)
    blocks: list = []
    if cleaned:
        blocks.append(TextBlock(text=cleaned))
    blocks.extend(calls)
    return blocks


def _ensure_unique_ids(blocks: list) -> None:
    seen: set[str] = set()
    for block in blocks:
        if not isinstance(block, ToolUseBlock):
            continue
        if not block.id or block.id in seen:
            block.id = new_tool_call_id()
        seen.add(block.id)


class OpenAIToUnifiedConverter:
    """OpenAI兼容响应到统一格式的转换器"""

    @staticmethod
    def convert(
        raw: dict[str, Any],
        target: ProviderTarget,
        emulate_tools: bool,
        input_tokens_hint: int | None = None,
    ) -> UnifiedResponse:
        try:
            response = OpenAIResponse.model_validate(raw)
        except ValidationError as e:
            raise ProviderResponseError(f"无法解析上游响应: {e.error_count()} 个字段错误") from e

        if not response.choices:
            raise ProviderResponseError("上游响应没有有效的choices")

        choice = response.choices[0]
        blocks = OpenAIToUnifiedConverter._extract_content_blocks(
            choice.message, emulate_tools
        )
        _ensure_unique_ids(blocks)
        has_tool_calls = any(isinstance(block, ToolUseBlock) for block in blocks)

        usage = response.usage
        input_tokens = (usage.prompt_tokens if usage else 0) or input_tokens_hint or 0
        output_tokens = (usage.completion_tokens if usage else 0) or _estimate_output_tokens(blocks)

        return UnifiedResponse(
            id=response.id or _new_message_id(),
            content=blocks or [TextBlock(text="")],
            model=response.model or target.model,
            stop_reason=map_stop_reason(
                choice.finish_reason, OPENAI_STOP_REASONS, has_tool_calls
            ),
            usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
        )

    @staticmethod
    def _extract_content_blocks(message, emulate_tools: bool) -> list:
        """
        从OpenAI消息中提取内容块，包括推理内容

        reasoning_content 与 <think> 标签内容作为独立的thinking块。
        """
        if message is None:
            return []

        blocks: list = []

        reasoning_content = message.reasoning_content
        if reasoning_content and reasoning_content.strip():
            blocks.append(
                ThinkingBlock(
                    thinking=reasoning_content.strip(),
                    signature=f"{int(time.time() * 1000)}",
                )
            )

        content = message.content
        if isinstance(content, list):
            content = "".join(part.text or "" for part in content if part.type == "text")
        content = content or ""

        if "<think>" in content and "</think>" in content:
            think_matches = _THINK_PATTERN.findall(content)
            if think_matches and not blocks:
                thinking = think_matches[0].strip()
                if thinking:
                    blocks.append(
                        ThinkingBlock(
                            thinking=thinking,
                            signature=f"{int(time.time() * 1000)}",
                        )
                    )
            content = _THINK_PATTERN.sub("", content)

        blocks.extend(_split_text_and_calls(content, emulate_tools))

        for tool_call in message.tool_calls or []:
            if not tool_call.function or not tool_call.function.name:
                continue
            blocks.append(
                ToolUseBlock(
                    id=tool_call.id,
                    name=tool_call.function.name,
                    input=(
                        safe_json_parse(tool_call.function.arguments)
                        if tool_call.function.arguments
                        else {}
                    ),
                )
            )

        return blocks


class GeminiToUnifiedConverter:
    """Gemini generateContent 响应到统一格式的转换器"""

    @staticmethod
    def convert(
        raw: dict[str, Any],
        target: ProviderTarget,
        emulate_tools: bool,
        input_tokens_hint: int | None = None,
    ) -> UnifiedResponse:
        try:
            response = GeminiResponse.model_validate(raw)
        except ValidationError as e:
            raise ProviderResponseError(f"无法解析Gemini响应: {e.error_count()} 个字段错误") from e

        if not response.candidates:
            raise ProviderResponseError("Gemini响应没有候选回复")

        candidate = response.candidates[0]
        parts = candidate.content.parts if candidate.content else []

        text = "".join(part.text for part in parts if part.text)
        blocks = _split_text_and_calls(text, emulate_tools)
        for part in parts:
            if part.functionCall:
                blocks.append(
                    ToolUseBlock(
                        id=new_tool_call_id(),
                        name=part.functionCall.name,
                        input=part.functionCall.args,
                    )
                )
        has_tool_calls = any(isinstance(block, ToolUseBlock) for block in blocks)

        metadata = response.usageMetadata
        input_tokens = (metadata.promptTokenCount if metadata else 0) or input_tokens_hint or 0
        output_tokens = (
            metadata.candidatesTokenCount if metadata else 0
        ) or _estimate_output_tokens(blocks)

        return UnifiedResponse(
            id=_new_message_id(),
            content=blocks or [TextBlock(text="")],
            model=target.model,
            stop_reason=map_stop_reason(
                candidate.finishReason, GEMINI_STOP_REASONS, has_tool_calls
            ),
            usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
        )


class AnthropicToUnifiedConverter:
    """Anthropic 响应本身就是统一格式，仅做校验"""

    @staticmethod
    def convert(
        raw: dict[str, Any],
        target: ProviderTarget,
        emulate_tools: bool,
        input_tokens_hint: int | None = None,
    ) -> UnifiedResponse:
        try:
            return UnifiedResponse.model_validate(raw)
        except ValidationError as e:
            raise ProviderResponseError(f"无法解析Anthropic响应: {e.error_count()} 个字段错误") from e


_CONVERTERS = {
    Provider.GLM: OpenAIToUnifiedConverter,
    Provider.FEATHERLESS: OpenAIToUnifiedConverter,
    Provider.GOOGLE: GeminiToUnifiedConverter,
    Provider.ANTHROPIC: AnthropicToUnifiedConverter,
}


def from_provider_response(
    raw: dict[str, Any],
    target: ProviderTarget,
    emulate_tools: bool,
    input_tokens_hint: int | None = None,
) -> UnifiedResponse:
    """
    将服务商原生响应转换为统一响应

    Args:
        raw: 解析后的上游响应体
        target: 目标服务商与模型
        emulate_tools: 请求是否使用了文本模拟工具调用
        input_tokens_hint: 上游未返回输入token数时使用的估算值

    Raises:
        ProviderResponseError: 响应体结构无法识别
    """
    converter = _CONVERTERS[target.provider]
    return converter.convert(raw, target, emulate_tools, input_tokens_hint)
