"""
流式事件合成

非 Anthropic 服务商以非流式方式调用上游，拿到完整的统一响应后，
再按 Messages 流式协议重新发出 SSE 事件序列。
"""

import json
from collections.abc import Iterator
from typing import Any

from model_proxy.models.messages import (
    StreamEventTypes,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    UnifiedResponse,
)

# 文本增量的分片大小（字符）
TEXT_CHUNK_SIZE = 200


def format_event(event_type: str, data: dict[str, Any]) -> str:
    """格式化事件为 SSE 格式"""
    return f"event: {event_type}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def _chunks(text: str, size: int) -> Iterator[str]:
    if not text:
        yield ""
        return
    for start in range(0, len(text), size):
        yield text[start : start + size]


def _block_events(index: int, block) -> Iterator[str]:
    if isinstance(block, TextBlock):
        start = {"type": "text", "text": ""}
        deltas = [
            {"type": "text_delta", "text": piece}
            for piece in _chunks(block.text, TEXT_CHUNK_SIZE)
        ]
    elif isinstance(block, ThinkingBlock):
        start = {"type": "thinking", "thinking": ""}
        deltas = [
            {"type": "thinking_delta", "thinking": piece}
            for piece in _chunks(block.thinking, TEXT_CHUNK_SIZE)
        ]
        if block.signature:
            deltas.append({"type": "signature_delta", "signature": block.signature})
    elif isinstance(block, ToolUseBlock):
        start = {"type": "tool_use", "id": block.id, "name": block.name, "input": {}}
        deltas = [
            {
                "type": "input_json_delta",
                "partial_json": json.dumps(block.input, ensure_ascii=False),
            }
        ]
    else:
        return

    yield format_event(
        StreamEventTypes.CONTENT_BLOCK_START,
        {
            "type": StreamEventTypes.CONTENT_BLOCK_START,
            "index": index,
            "content_block": start,
        },
    )
    for delta in deltas:
        yield format_event(
            StreamEventTypes.CONTENT_BLOCK_DELTA,
            {"type": StreamEventTypes.CONTENT_BLOCK_DELTA, "index": index, "delta": delta},
        )
    yield format_event(
        StreamEventTypes.CONTENT_BLOCK_STOP,
        {"type": StreamEventTypes.CONTENT_BLOCK_STOP, "index": index},
    )


def synthesize_stream(response: UnifiedResponse) -> Iterator[str]:
    """把完整的统一响应展开为 SSE 事件序列

    顺序：message_start, ping, 每个内容块的 start/delta/stop, message_delta, message_stop
    """
    yield format_event(
        StreamEventTypes.MESSAGE_START,
        {
            "type": StreamEventTypes.MESSAGE_START,
            "message": {
                "id": response.id,
                "type": "message",
                "role": response.role,
                "content": [],
                "model": response.model,
                "stop_reason": None,
                "stop_sequence": None,
                "usage": {"input_tokens": response.usage.input_tokens, "output_tokens": 0},
            },
        },
    )
    yield format_event(StreamEventTypes.PING, {"type": StreamEventTypes.PING})

    index = 0
    for block in response.content:
        events = list(_block_events(index, block))
        if events:
            yield from events
            index += 1

    yield format_event(
        StreamEventTypes.MESSAGE_DELTA,
        {
            "type": StreamEventTypes.MESSAGE_DELTA,
            "delta": {
                "stop_reason": response.stop_reason,
                "stop_sequence": response.stop_sequence,
            },
            "usage": {"output_tokens": response.usage.output_tokens},
        },
    )
    yield format_event(
        StreamEventTypes.MESSAGE_STOP, {"type": StreamEventTypes.MESSAGE_STOP}
    )
