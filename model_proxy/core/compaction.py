"""上下文压缩引擎

当对话估算长度超过目标模型的上下文上限时，保留最近的若干条消息，
把更早的消息替换为一条抽取式摘要。单次执行，不做反复精调；
压缩后仍超限则返回 context_length_exceeded。

所有函数都是纯函数，可在并发请求之间安全重入。
"""

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from model_proxy.models.errors import ContextLengthExceeded
from model_proxy.models.messages import (
    Message,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UnifiedRequest,
    UnknownBlock,
)

_FILE_PATTERN = re.compile(r"(?:/[\w\-./]+\.\w+|[\w\-]+\.\w{1,4})")
_ACTION_PATTERN = re.compile(
    r"(?:created?|modified?|updated?|deleted?|fixed?|added?|removed?|implemented?|tested?)",
    re.IGNORECASE,
)

MAX_SUMMARY_FILES = 10
MAX_SUMMARY_TOPICS = 10
FILES_PER_MESSAGE = 5
SNIPPET_CHARS = 200


@dataclass(frozen=True)
class CompactionPolicy:
    """压缩策略，启动时读取一次，之后不再修改"""

    enabled: bool = True
    tail_reserve: int = 6
    response_token_reserve: int = 2048
    min_context_tokens: int = 1024
    buffer_ratio: float = 0.85
    summary_max_tokens: int = 512
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.tail_reserve < 0:
            raise ValueError("tail_reserve 不能为负数")
        if not 0 < self.buffer_ratio <= 1:
            raise ValueError("buffer_ratio 必须在 (0, 1] 区间内")
        if self.summary_max_tokens < 1:
            raise ValueError("summary_max_tokens 必须大于0")

    @classmethod
    def from_config(cls, compaction_config) -> "CompactionPolicy":
        return cls(
            enabled=compaction_config.enabled,
            tail_reserve=compaction_config.tail_reserve,
            response_token_reserve=compaction_config.response_token_reserve,
            min_context_tokens=compaction_config.min_context_tokens,
            buffer_ratio=compaction_config.buffer_ratio,
            summary_max_tokens=compaction_config.summary_max_tokens,
            verbose=compaction_config.verbose,
        )


@dataclass
class CompactionStats:
    """一次压缩的统计信息"""

    original: int
    final: int
    removed: int = 0
    summarized: int = 0
    original_tokens: int = 0
    final_tokens: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "original": self.original,
            "final": self.final,
            "removed": self.removed,
            "summarized": self.summarized,
            "original_tokens": self.original_tokens,
            "final_tokens": self.final_tokens,
        }

    def to_headers(self) -> dict[str, str]:
        return {
            "X-Proxy-Context-Compacted": "true",
            "X-Proxy-Context-Original-Messages": str(self.original),
            "X-Proxy-Context-Final-Messages": str(self.final),
            "X-Proxy-Context-Removed": str(self.removed),
            "X-Proxy-Context-Original-Tokens": str(self.original_tokens),
            "X-Proxy-Context-Final-Tokens": str(self.final_tokens),
        }


@dataclass
class CompactionResult:
    request: UnifiedRequest
    compacted: bool
    stats: CompactionStats
    summary: str | None = field(default=None, repr=False)


def estimate_tokens(text: str | None) -> int:
    """粗略估算token数：约每4个字符一个token"""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_message_tokens(message: Message) -> int:
    """估算单条消息的token数，计入文本、工具调用参数、工具结果与思考内容"""
    total = 0
    for block in message.content:
        if isinstance(block, TextBlock):
            total += estimate_tokens(block.text)
        elif isinstance(block, ToolUseBlock):
            total += estimate_tokens(block.name)
            total += estimate_tokens(json.dumps(block.input, ensure_ascii=False))
        elif isinstance(block, ToolResultBlock):
            total += estimate_tokens(block.content_text())
        elif isinstance(block, ThinkingBlock):
            total += estimate_tokens(block.thinking)
        elif isinstance(block, UnknownBlock):
            total += estimate_tokens(json.dumps(block.model_dump(), ensure_ascii=False))
    return total


def estimate_messages_tokens(messages: list[Message]) -> int:
    return sum(estimate_message_tokens(message) for message in messages)


def estimate_request_tokens(request: UnifiedRequest, output_tokens: int) -> int:
    """估算整个请求的token数：系统提示 + 全部消息 + 预留输出"""
    return (
        estimate_tokens(request.system_text())
        + estimate_messages_tokens(request.messages)
        + output_tokens
    )


def _distinct(values: list[str], limit: int) -> list[str]:
    return list(dict.fromkeys(values))[:limit]


def build_summary(messages: list[Message], max_tokens: int) -> str:
    """为被移除的消息生成抽取式摘要

    统计工具调用与结果数量，抽取文件路径和动作关键词，
    并附上被移除消息中最近一条用户消息的片段。
    """
    if not messages:
        return "[No previous context]"

    tool_uses = 0
    tool_results = 0
    tool_names: list[str] = []
    files: list[str] = []
    topics: list[str] = []

    for message in messages:
        for block in message.content:
            if isinstance(block, ToolUseBlock):
                tool_uses += 1
                tool_names.append(block.name)
            elif isinstance(block, ToolResultBlock):
                tool_results += 1

        text = message.text()
        files.extend(_FILE_PATTERN.findall(text)[:FILES_PER_MESSAGE])
        topics.extend(match.lower() for match in _ACTION_PATTERN.findall(text))

    lines = [f"[COMPACTED CONTEXT: {len(messages)} messages]"]
    if tool_uses:
        names = ", ".join(_distinct(tool_names, MAX_SUMMARY_TOPICS))
        lines.append(f"Tools used: {tool_uses} ({names})")
    if tool_results:
        lines.append(f"Actions completed: {tool_results}")
    if files:
        lines.append(f"Files: {', '.join(_distinct(files, MAX_SUMMARY_FILES))}")
    if topics:
        lines.append(f"Topics: {', '.join(_distinct(topics, MAX_SUMMARY_TOPICS))}")

    for message in reversed(messages):
        if message.role != "user":
            continue
        text = message.text()
        if not text:
            continue
        snippet = text[:SNIPPET_CHARS].replace("\n", " ")
        ellipsis = "..." if len(text) > SNIPPET_CHARS else ""
        lines.append(f'Last request: "{snippet}{ellipsis}"')
        break

    summary = "\n".join(lines)
    return summary[: max_tokens * 4]


def compact_messages(
    request: UnifiedRequest,
    context_limit: int,
    policy: CompactionPolicy,
    output_tokens: int | None = None,
) -> CompactionResult:
    """压缩请求中较早的消息，使其符合上下文预算

    最后 tail_reserve 条消息永远原样保留；被移除的前缀替换为恰好一条用户角色的摘要消息。
    如果压缩不能减少估算token数，则原样返回。
    """
    messages = request.messages
    unchanged = CompactionResult(
        request=request,
        compacted=False,
        stats=CompactionStats(original=len(messages), final=len(messages)),
    )
    if not policy.enabled or len(messages) <= policy.tail_reserve:
        return unchanged

    if output_tokens is None:
        output_tokens = request.max_tokens or policy.response_token_reserve

    system_tokens = estimate_tokens(request.system_text())
    available = math.floor(context_limit * policy.buffer_ratio) - system_tokens - output_tokens

    message_tokens = [estimate_message_tokens(message) for message in messages]
    current_tokens = sum(message_tokens)
    unchanged.stats.original_tokens = current_tokens
    unchanged.stats.final_tokens = current_tokens
    if current_tokens <= available:
        return unchanged

    split = len(messages) - policy.tail_reserve
    older = list(messages[:split])
    older_tokens_list = message_tokens[:split]
    recent = list(messages[split:])
    recent_tokens = sum(message_tokens[split:])

    target_older = max(
        available - policy.summary_max_tokens - recent_tokens,
        policy.min_context_tokens,
    )

    older_tokens = sum(older_tokens_list)
    removed_count = 0
    while older_tokens > target_older and removed_count < len(older):
        older_tokens -= older_tokens_list[removed_count]
        removed_count += 1

    if removed_count == 0:
        return unchanged

    to_summarize = older[:removed_count]
    summary = build_summary(to_summarize, policy.summary_max_tokens)
    summary_message = Message(role="user", content=summary)
    final_tokens = estimate_tokens(summary) + older_tokens + recent_tokens

    if final_tokens >= current_tokens:
        logger.debug(
            f"压缩无法减少token数，保持原样 - Tokens: {current_tokens} -> {final_tokens}"
        )
        return unchanged

    compacted_messages = [summary_message, *older[removed_count:], *recent]
    stats = CompactionStats(
        original=len(messages),
        final=len(compacted_messages),
        removed=removed_count,
        summarized=len(to_summarize),
        original_tokens=current_tokens,
        final_tokens=final_tokens,
    )
    if policy.verbose:
        logger.info(
            f"上下文已压缩: {stats.original} -> {stats.final} 条消息 (移除 {removed_count})"
        )

    return CompactionResult(
        request=request.model_copy(update={"messages": compacted_messages}),
        compacted=True,
        stats=stats,
        summary=summary,
    )


def ensure_context_fits(
    request: UnifiedRequest,
    model: str,
    context_limit: int,
    policy: CompactionPolicy,
    output_tokens: int,
) -> CompactionResult:
    """检查上下文是否超限，必要时压缩一次并复查

    Raises:
        ContextLengthExceeded: 压缩后估算仍超出上下文上限
    """
    estimated = estimate_request_tokens(request, output_tokens)
    if estimated <= context_limit:
        return CompactionResult(
            request=request,
            compacted=False,
            stats=CompactionStats(
                original=len(request.messages),
                final=len(request.messages),
                original_tokens=estimated,
                final_tokens=estimated,
            ),
        )

    logger.info(f"上下文超出限制，开始压缩 - Model: {model}, Estimated: {estimated}/{context_limit}")
    result = compact_messages(request, context_limit, policy, output_tokens)

    rechecked = estimate_request_tokens(result.request, output_tokens)
    if rechecked > context_limit:
        stats: dict[str, Any] = result.stats.as_dict()
        raise ContextLengthExceeded(model, rechecked, context_limit, stats)
    return result
