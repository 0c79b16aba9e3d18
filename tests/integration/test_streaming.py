"""流式响应集成测试"""

import json

import pytest
from fastapi.testclient import TestClient

from tests.fixtures import (
    FakeTransport,
    make_app,
    openai_completion,
    openai_tool_call,
    json_response,
)
from model_proxy.core.transport import TransportResponse


def parse_sse(text: str) -> list[tuple[str, dict]]:
    """把 SSE 文本拆成 (event, data) 列表"""
    events = []
    for chunk in text.strip().split("\n\n"):
        lines = chunk.split("\n")
        event = lines[0].removeprefix("event: ")
        data = json.loads(lines[1].removeprefix("data: "))
        events.append((event, data))
    return events


class TestStreamingIntegration:
    @pytest.fixture
    def transport(self):
        return FakeTransport()

    @pytest.fixture
    def client(self, transport):
        app, _ = make_app(transport)
        return TestClient(app)

    def test_stream_synthesized_from_complete_response(self, client, transport):
        transport.queue(
            json_response(
                openai_completion(
                    "Write once, run anywhere.",
                    usage={"prompt_tokens": 9, "completion_tokens": 6, "total_tokens": 15},
                )
            )
        )
        payload = {
            "model": "glm/glm-4.7",
            "max_tokens": 1024,
            "stream": True,
            "messages": [{"role": "user", "content": "Write a short poem about Python"}],
        }

        with client.stream("POST", "/v1/messages", json=payload) as response:
            assert response.status_code == 200
            assert response.headers["content-type"].startswith("text/event-stream")
            assert response.headers["cache-control"] == "no-cache"
            body = "".join(response.iter_text())

        events = parse_sse(body)
        assert [name for name, _ in events] == [
            "message_start",
            "ping",
            "content_block_start",
            "content_block_delta",
            "content_block_stop",
            "message_delta",
            "message_stop",
        ]
        assert events[0][1]["message"]["usage"]["input_tokens"] == 9
        assert events[3][1]["delta"] == {"type": "text_delta", "text": "Write once, run anywhere."}
        assert events[5][1]["delta"]["stop_reason"] == "end_turn"
        assert events[5][1]["usage"]["output_tokens"] == 6

        # 上游始终以非流式方式调用
        assert transport.requests[0].json_body["stream"] is False

    def test_stream_tool_use_block(self, client, transport):
        transport.queue(
            json_response(
                openai_completion(
                    content=None,
                    finish_reason="tool_calls",
                    tool_calls=[openai_tool_call("call_9", "search", {"query": "fastapi"})],
                )
            )
        )
        payload = {
            "model": "glm/glm-4.7",
            "stream": True,
            "messages": [{"role": "user", "content": "Search docs"}],
            "tools": [{"name": "search", "input_schema": {"type": "object"}}],
        }

        response = client.post("/v1/messages", json=payload)

        events = parse_sse(response.text)
        starts = [data for name, data in events if name == "content_block_start"]
        assert starts == [
            {
                "type": "content_block_start",
                "index": 0,
                "content_block": {"type": "tool_use", "id": "call_9", "name": "search", "input": {}},
            }
        ]
        deltas = [data["delta"] for name, data in events if name == "content_block_delta"]
        assert json.loads(deltas[0]["partial_json"]) == {"query": "fastapi"}
        assert events[-2][1]["delta"]["stop_reason"] == "tool_use"

    def test_anthropic_stream_passed_through(self, client, transport):
        upstream = (
            'event: message_start\ndata: {"type": "message_start"}\n\n'
            'event: message_stop\ndata: {"type": "message_stop"}\n\n'
        )
        transport.queue(
            TransportResponse(
                status_code=200,
                headers={"content-type": "text/event-stream"},
                body=upstream,
            )
        )

        response = client.post(
            "/v1/messages",
            json={
                "model": "claude-sonnet-4-5-20250929",
                "max_tokens": 32,
                "stream": True,
                "messages": [{"role": "user", "content": "Hi"}],
            },
            headers={"x-api-key": "caller-key"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text == upstream
        assert transport.requests[0].json_body["stream"] is True
