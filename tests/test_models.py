"""测试数据模型是否正确工作"""

import json

import pytest
from pydantic import ValidationError

from model_proxy.models.errors import (
    ERROR_STATUS_MAPPING,
    AdmissionTimeout,
    AuthenticationError,
    ContextLengthExceeded,
    ErrorTypes,
    ProviderResponseError,
    TransportFailure,
    UpstreamError,
    get_error_response,
    is_client_error,
    is_retryable_status,
    is_server_error,
)
from model_proxy.models.messages import (
    ImageBlock,
    Message,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UnifiedRequest,
    UnifiedResponse,
    UnknownBlock,
)


class TestMessageModels:
    """测试统一消息模型"""

    def test_string_content_normalized(self):
        message = Message(role="user", content="Hello, world!")
        assert message.content == [TextBlock(text="Hello, world!")]
        assert message.text() == "Hello, world!"

    def test_content_blocks_discriminated(self):
        message = Message.model_validate(
            {
                "role": "assistant",
                "content": [
                    {"type": "thinking", "thinking": "hmm", "signature": "sig"},
                    {"type": "text", "text": "Calling tool"},
                    {"type": "tool_use", "id": "toolu_1", "name": "ls", "input": {"path": "."}},
                ],
            }
        )
        assert isinstance(message.content[0], ThinkingBlock)
        assert isinstance(message.content[1], TextBlock)
        assert message.tool_uses() == [ToolUseBlock(id="toolu_1", name="ls", input={"path": "."})]

    def test_image_block(self):
        message = Message.model_validate(
            {
                "role": "user",
                "content": [
                    {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "iVBOR"}},
                    {"type": "image", "source": {"type": "url", "url": "https://example.com/cat.png"}},
                ],
            }
        )
        inline, remote = message.content
        assert isinstance(inline, ImageBlock) and inline.is_inline
        assert not remote.is_inline

    def test_unknown_block_type_preserved(self):
        message = Message.model_validate(
            {"role": "assistant", "content": [{"type": "redacted_thinking", "data": "abc"}]}
        )
        block = message.content[0]
        assert isinstance(block, UnknownBlock)
        assert block.model_dump() == {"type": "redacted_thinking", "data": "abc"}
        assert message.text() == ""

    def test_known_block_type_still_validated(self):
        with pytest.raises(ValidationError):
            Message.model_validate({"role": "user", "content": [{"type": "tool_use", "name": "ls"}]})

    def test_extra_fields_kept(self):
        request = UnifiedRequest.model_validate(
            {"messages": [{"role": "user", "content": "hi"}], "top_k": 3}
        )
        assert request.model_dump()["top_k"] == 3

    def test_invalid_role_rejected(self):
        with pytest.raises(ValidationError):
            Message(role="system", content="x")

    def test_tool_result_content_text(self):
        assert ToolResultBlock(tool_use_id="t").content_text() == ""
        assert ToolResultBlock(tool_use_id="t", content="done").content_text() == "done"

        texts = ToolResultBlock(
            tool_use_id="t",
            content=[{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
        )
        assert texts.content_text() == "a\nb"

        mixed = ToolResultBlock(
            tool_use_id="t",
            content=[{"type": "text", "text": "a"}, {"type": "image", "source": {}}],
        )
        assert json.loads(mixed.content_text())[1]["type"] == "image"

    def test_tool_results(self):
        message = Message.model_validate(
            {
                "role": "user",
                "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "ok"}],
            }
        )
        assert message.tool_results()[0].tool_use_id == "toolu_1"


class TestUnifiedRequest:
    def test_system_text(self):
        assert UnifiedRequest(messages=[]).system_text() == ""

        plain = UnifiedRequest(messages=[], system="You are helpful.")
        assert plain.system_text() == "You are helpful."

        blocks = UnifiedRequest.model_validate(
            {"messages": [], "system": [{"type": "text", "text": "one"}, {"type": "text", "text": "two"}]}
        )
        assert blocks.system_text() == "one\n\ntwo"

    def test_defaults(self):
        request = UnifiedRequest.model_validate({"messages": [{"role": "user", "content": "hi"}]})
        assert request.model == ""
        assert request.stream is False
        assert request.tools is None

    @pytest.mark.parametrize("field, value", [("max_tokens", 0), ("temperature", 3.0), ("top_p", 1.5)])
    def test_parameter_bounds(self, field, value):
        with pytest.raises(ValidationError):
            UnifiedRequest.model_validate({"messages": [], field: value})

    def test_tool_spec_default_schema(self):
        request = UnifiedRequest.model_validate({"messages": [], "tools": [{"name": "noop"}]})
        assert request.tools[0].input_schema == {"type": "object", "properties": {}}


class TestUnifiedResponse:
    def test_dump_excludes_none(self):
        response = UnifiedResponse(
            id="msg_1",
            content=[TextBlock(text="hi")],
            model="glm-4.7",
            stop_reason="end_turn",
        )
        data = response.model_dump(exclude_none=True)
        assert data["type"] == "message"
        assert data["role"] == "assistant"
        assert "stop_sequence" not in data
        assert data["usage"] == {"input_tokens": 0, "output_tokens": 0}


class TestErrorModels:
    """测试错误模型"""

    def test_error_response_payload(self):
        payload = get_error_response(ErrorTypes.RATE_LIMIT, "slow down").model_dump()
        assert payload == {"type": "error", "error": {"type": "rate_limit_error", "message": "slow down"}}

    def test_status_mapping(self):
        assert ERROR_STATUS_MAPPING[ErrorTypes.RATE_LIMIT] == 429
        assert ERROR_STATUS_MAPPING[ErrorTypes.AUTHENTICATION] == 401
        assert ERROR_STATUS_MAPPING[ErrorTypes.CONTEXT_LENGTH_EXCEEDED] == 400

    def test_proxy_error_types(self):
        timeout = AdmissionTimeout("glm", 30.0)
        assert (timeout.status_code, timeout.error_type) == (429, "rate_limit_error")
        assert "glm" in timeout.message

        auth = AuthenticationError("missing key")
        assert auth.to_response().error.type == "authentication_error"
        assert auth.status_code == 401

        failure = TransportFailure("reset", url="https://x.test")
        assert failure.retryable
        assert failure.status_code == 502

        assert not ProviderResponseError("bad").retryable

    def test_upstream_error_retryability(self):
        assert UpstreamError(503, "{}").retryable
        assert UpstreamError(429, "{}").retryable
        assert not UpstreamError(400, "{}").retryable
        assert UpstreamError(404, "nope").body == "nope"

    def test_context_length_exceeded_headers(self):
        bare = ContextLengthExceeded("m", 9000, 8192)
        assert bare.headers() == {}

        with_stats = ContextLengthExceeded("m", 9000, 8192, {"original": 3, "final": 3})
        headers = with_stats.headers()
        assert headers["X-Proxy-Compaction-Attempted"] == "true"
        assert json.loads(headers["X-Proxy-Compaction-Stats"]) == {"original": 3, "final": 3}
        assert "/clear" in with_stats.message

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_retryable_status(self, status):
        assert is_retryable_status(status)

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422, 501])
    def test_non_retryable_status(self, status):
        assert not is_retryable_status(status)

    def test_status_classes(self):
        assert is_client_error(404) and not is_client_error(500)
        assert is_server_error(503) and not is_server_error(499)
