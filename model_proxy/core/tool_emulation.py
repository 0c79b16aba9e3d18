"""工具调用模拟协议

为不支持原生工具调用的模型，把工具目录写入系统提示，
并从模型输出的文本中解析约定格式的工具调用：

    <tool_call>
    {"name": "tool_name", "arguments": {...}}
    </tool_call>

解析使用一次从左到右的显式扫描，不依赖正则回溯。
"""

import json
import re
import uuid
from typing import Any

from loguru import logger

from model_proxy.common.logging import format_proxy_event
from model_proxy.models.messages import ToolSpec, ToolUseBlock

TOOL_CALL_START = "<tool_call>"
TOOL_CALL_END = "</tool_call>"

_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")

_INSTRUCTIONS = """# Available Tools

You have access to the following tools. To use a tool, respond with XML tags in this exact format:

<tool_call>
{{"name": "tool_name", "arguments": {{"param1": "value1", "param2": "value2"}}}}
</tool_call>

IMPORTANT: You can call multiple tools IN PARALLEL by including multiple <tool_call> blocks in a single response. This is the preferred approach when tools don't depend on each other.

{tools}

# Examples

Example 1 - Single tool call:
User: What's the weather in San Francisco?
Assistant: I'll check the weather for you.
<tool_call>
{{"name": "get_weather", "arguments": {{"location": "San Francisco, CA"}}}}
</tool_call>

Example 2 - PARALLEL tool calls (recommended when possible):
User: Read files config.json and database.json
Assistant: I'll read both files in parallel.
<tool_call>
{{"name": "Read", "arguments": {{"file_path": "config.json"}}}}
</tool_call>
<tool_call>
{{"name": "Read", "arguments": {{"file_path": "database.json"}}}}
</tool_call>

# Critical Instructions for Tool Calling:
- Each <tool_call> block contains exactly one JSON object with "name" and "arguments"
- Always use parallel tool calls when tools are independent
- Only call tools listed above, using their exact names
- Include all required parameters in the arguments object
"""


def render_tool(tool: ToolSpec) -> str:
    return (
        f"## Tool: {tool.name}\n"
        f"Description: {tool.description or ''}\n"
        f"Parameters: {json.dumps(tool.input_schema, indent=2, ensure_ascii=False)}"
    )


def render_tool_catalog(tools: list[ToolSpec]) -> str:
    """渲染工具目录与调用语法说明"""
    rendered = "\n\n".join(render_tool(tool) for tool in tools)
    return _INSTRUCTIONS.format(tools=rendered)


def inject_tool_catalog(system: str | None, tools: list[ToolSpec] | None) -> str:
    """把工具目录追加到系统提示之后"""
    if not tools:
        return system or ""
    catalog = render_tool_catalog(tools)
    if not system:
        return catalog
    return f"{system}\n\n{catalog}"


def encode_tool_call(block: ToolUseBlock) -> str:
    """把历史工具调用重新编码为约定的文本格式"""
    payload = json.dumps(
        {"name": block.name, "arguments": block.input}, ensure_ascii=False
    )
    return f"{TOOL_CALL_START}\n{payload}\n{TOOL_CALL_END}"


def new_tool_call_id() -> str:
    return f"toolu_{uuid.uuid4().hex[:24]}"


def _log_dropped(reason: str, interior: str, name: str | None = None) -> None:
    """无法解析的片段直接丢弃，不影响响应"""
    logger.warning(
        format_proxy_event(
            "tool_call_dropped", reason=reason, name=name, snippet=interior[:80]
        )
    )


def _parse_call(interior: str) -> ToolUseBlock | None:
    try:
        payload: Any = json.loads(interior)
    except json.JSONDecodeError:
        _log_dropped("invalid_json", interior)
        return None

    if not isinstance(payload, dict):
        _log_dropped("not_an_object", interior)
        return None

    name = payload.get("name")
    if not isinstance(name, str) or not name:
        _log_dropped("missing_name", interior)
        return None

    arguments = payload.get("arguments", {})
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError:
            _log_dropped("invalid_arguments", interior, name)
            return None
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        _log_dropped("invalid_arguments", interior, name)
        return None

    return ToolUseBlock(id=new_tool_call_id(), name=name, input=arguments)


def decode_tool_calls(text: str) -> tuple[str, list[ToolUseBlock]]:
    """从模型输出中提取工具调用

    所有完整的分隔片段都会从可见文本中移除；无法解析的片段被丢弃并记录日志。
    没有结束标记的片段保留为普通文本。

    Returns:
        (剩余文本, 工具调用块列表)
    """
    if not text:
        return "", []

    remaining: list[str] = []
    calls: list[ToolUseBlock] = []
    position = 0

    while True:
        start = text.find(TOOL_CALL_START, position)
        if start == -1:
            remaining.append(text[position:])
            break
        body_start = start + len(TOOL_CALL_START)
        end = text.find(TOOL_CALL_END, body_start)
        if end == -1:
            remaining.append(text[position:])
            break

        remaining.append(text[position:start])
        call = _parse_call(text[body_start:end].strip())
        if call is not None:
            calls.append(call)
        position = end + len(TOOL_CALL_END)

    cleaned = _EXCESS_BLANK_LINES.sub("\n\n", "".join(remaining)).strip()
    return cleaned, calls
