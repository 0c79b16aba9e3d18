"""测试共用的假时钟、假传输层与上游响应构造函数"""

import json
from typing import Any

from model_proxy.config.settings import Config
from model_proxy.core.pipeline import ProxyContext
from model_proxy.core.transport import TransportRequest, TransportResponse
from model_proxy.main import create_app
from model_proxy.models.errors import TransportFailure


class FakeClock:
    """可控时钟：sleep 直接推进时间"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeTransport:
    """按顺序返回预设响应的传输层，记录每次出站请求"""

    def __init__(self, responses: list[Any] | None = None):
        self.responses = list(responses or [])
        self.requests: list[TransportRequest] = []
        self.closed = False

    def queue(self, response: Any) -> None:
        self.responses.append(response)

    async def send(self, request: TransportRequest) -> TransportResponse:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"unexpected upstream call: {request.url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def aclose(self) -> None:
        self.closed = True


class FakeEncoder:
    """按空白分词的编码器，避免测试时下载 tiktoken 词表"""

    def encode(self, text: str) -> list[str]:
        return text.split()


def json_response(body: dict[str, Any], status_code: int = 200, headers: dict[str, str] | None = None) -> TransportResponse:
    return TransportResponse(
        status_code=status_code,
        headers={"content-type": "application/json", **(headers or {})},
        body=json.dumps(body),
    )


def error_response(status_code: int, message: str = "upstream failure", headers: dict[str, str] | None = None) -> TransportResponse:
    body = {"error": {"message": message, "code": status_code}}
    return json_response(body, status_code=status_code, headers=headers)


def transport_failure(url: str = "https://upstream.test") -> TransportFailure:
    return TransportFailure("connection reset", url=url)


def openai_completion(
    content: str | None = "Hello from upstream",
    finish_reason: str = "stop",
    tool_calls: list[dict[str, Any]] | None = None,
    usage: dict[str, int] | None = None,
    reasoning_content: str | None = None,
) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    if reasoning_content:
        message["reasoning_content"] = reasoning_content
    body: dict[str, Any] = {
        "id": "chatcmpl-123",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "glm-4.7",
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
    }
    if usage is not None:
        body["usage"] = usage
    return body


def openai_tool_call(call_id: str, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(arguments)},
    }


def gemini_response(
    parts: list[dict[str, Any]],
    finish_reason: str = "STOP",
    usage: dict[str, int] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "candidates": [
            {"content": {"role": "model", "parts": parts}, "finishReason": finish_reason, "index": 0}
        ],
        "modelVersion": "gemini-2.0-flash",
    }
    if usage is not None:
        body["usageMetadata"] = usage
    return body


def anthropic_message(text: str = "Hi from Claude") -> dict[str, Any]:
    return {
        "id": "msg_01ABC",
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": text}],
        "model": "claude-sonnet-4-5-20250929",
        "stop_reason": "end_turn",
        "stop_sequence": None,
        "usage": {"input_tokens": 12, "output_tokens": 5},
    }


def make_config(**overrides: Any) -> Config:
    """带测试凭证的配置，关闭日志文件"""
    data: dict[str, Any] = {
        "logging": {"level": "DEBUG", "file": None},
        "providers": {
            "glm": {"api_key": "test-glm-key", "api_key_env": "TEST_UNSET_GLM_KEY"},
            "featherless": {"api_key": "test-featherless-key", "api_key_env": "TEST_UNSET_FEATHERLESS_KEY"},
            "google": {"api_key": "test-google-key", "api_key_env": "TEST_UNSET_GOOGLE_KEY"},
            "anthropic": {"api_key": None, "api_key_env": "TEST_UNSET_ANTHROPIC_KEY"},
        },
        "retry": {"jitter": False},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            merged = dict(data[key])
            for inner_key, inner_value in value.items():
                if isinstance(inner_value, dict) and isinstance(merged.get(inner_key), dict):
                    merged[inner_key] = {**merged[inner_key], **inner_value}
                else:
                    merged[inner_key] = inner_value
            data[key] = merged
        else:
            data[key] = value
    return Config.load(data)


def conversation(count: int, chars_per_message: int = 2000) -> list[dict[str, Any]]:
    """交替角色的长对话，每条消息长度固定"""
    messages = []
    for index in range(count):
        role = "user" if index % 2 == 0 else "assistant"
        prefix = f"message {index}: "
        filler = "x" * (chars_per_message - len(prefix))
        messages.append({"role": role, "content": prefix + filler})
    return messages


def make_app(transport: FakeTransport, **config_overrides: Any):
    """注入假传输层与假时钟的应用，不启动配置监听"""
    clock = FakeClock()
    context = ProxyContext.from_config(
        make_config(**config_overrides), transport, clock=clock, sleep=clock.sleep
    )
    return create_app(context=context, watch_config=False), clock
