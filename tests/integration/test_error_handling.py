"""
统一错误响应集成测试
"""

import json

import pytest
from fastapi.testclient import TestClient

from tests.fixtures import (
    FakeTransport,
    error_response,
    json_response,
    make_app,
    openai_completion,
    transport_failure,
)

ERROR_TYPES = {
    "rate_limit_error",
    "authentication_error",
    "api_error",
    "invalid_request_error",
    "context_length_exceeded",
}


def assert_error_shape(response, error_type: str) -> dict:
    data = response.json()
    assert data["type"] == "error"
    assert data["error"]["type"] == error_type
    assert data["error"]["type"] in ERROR_TYPES
    assert data["error"]["message"]
    return data


class TestErrorHandling:
    @pytest.fixture
    def transport(self):
        return FakeTransport()

    @pytest.fixture
    def client(self, transport):
        app, _ = make_app(transport)
        return TestClient(app)

    def test_missing_messages_is_invalid_request(self, client):
        response = client.post("/v1/messages", json={"model": "glm/glm-4.7"})
        assert response.status_code == 400
        data = assert_error_shape(response, "invalid_request_error")
        assert "messages" in data["error"]["message"]

    def test_malformed_json_is_invalid_request(self, client):
        response = client.post(
            "/v1/messages",
            content=b'{"model": "glm/glm-4.7", "messages": [',
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400
        assert_error_shape(response, "invalid_request_error")

    def test_invalid_role_is_invalid_request(self, client):
        response = client.post(
            "/v1/messages",
            json={"model": "glm/glm-4.7", "messages": [{"role": "system", "content": "x"}]},
        )
        assert response.status_code == 400
        assert_error_shape(response, "invalid_request_error")

    def test_missing_provider_key_is_authentication_error(self, transport):
        app, _ = make_app(transport, providers={"google": {"api_key": None}})
        client = TestClient(app)

        response = client.post(
            "/v1/messages",
            json={"model": "google/gemini-pro", "messages": [{"role": "user", "content": "Hi"}]},
        )

        assert response.status_code == 401
        assert_error_shape(response, "authentication_error")
        assert transport.requests == []

    def test_rate_limit_error_after_bucket_drained(self, transport):
        app, _ = make_app(
            transport,
            providers={"glm": {"requests_per_minute": 1}},
            rate_limit={"admission_timeout": 1.0},
        )
        client = TestClient(app)
        transport.queue(json_response(openai_completion()))
        payload = {"model": "glm/glm-4.7", "messages": [{"role": "user", "content": "Hi"}]}

        assert client.post("/v1/messages", json=payload).status_code == 200
        response = client.post("/v1/messages", json=payload)

        assert response.status_code == 429
        assert_error_shape(response, "rate_limit_error")

    def test_context_length_exceeded_carries_stats(self, client, transport):
        response = client.post(
            "/v1/messages",
            json={
                "model": "featherless/WhiteRabbitNeo/WhiteRabbitNeo-V3-7B",
                "messages": [{"role": "user", "content": "z" * 40000}],
            },
        )

        assert response.status_code == 400
        data = assert_error_shape(response, "context_length_exceeded")
        assert "/clear" in data["error"]["message"]
        assert response.headers["X-Proxy-Compaction-Attempted"] == "true"
        stats = json.loads(response.headers["X-Proxy-Compaction-Stats"])
        assert stats["original"] == 1
        assert transport.requests == []

    def test_non_retryable_upstream_error_passed_verbatim(self, client, transport):
        transport.queue(error_response(422, "unsupported parameter"))

        response = client.post(
            "/v1/messages",
            json={"model": "glm/glm-4.7", "messages": [{"role": "user", "content": "Hi"}]},
        )

        assert response.status_code == 422
        assert response.json() == {"error": {"message": "unsupported parameter", "code": 422}}
        assert len(transport.requests) == 1

    def test_transport_failures_exhausted(self, client, transport):
        for _ in range(4):
            transport.queue(transport_failure())

        response = client.post(
            "/v1/messages",
            json={"model": "glm/glm-4.7", "messages": [{"role": "user", "content": "Hi"}]},
        )

        assert response.status_code == 502
        assert_error_shape(response, "api_error")
        assert len(transport.requests) == 4

    def test_unknown_route(self, client):
        response = client.get("/v2/unknown")
        assert response.status_code == 404
        assert_error_shape(response, "invalid_request_error")

    def test_unhandled_exception_is_api_error(self, transport):
        app, _ = make_app(transport)

        async def broken(*args, **kwargs):
            raise RuntimeError("unexpected")

        app.state.messages_handler.process_message = broken
        client = TestClient(app, raise_server_exceptions=False)

        response = client.post(
            "/v1/messages",
            json={"model": "glm/glm-4.7", "messages": [{"role": "user", "content": "Hi"}]},
        )

        assert response.status_code == 500
        assert_error_shape(response, "api_error")
