"""
模型标识解析与能力表测试
"""

import pytest

from model_proxy.core.dispatcher import (
    DEFAULT_CONTEXT_LIMIT,
    DEFAULT_MODEL,
    DEFAULT_OUTPUT_LIMIT,
    Provider,
    lookup_limit,
    parse_model,
    resolve_target,
    supports_native_tools,
)


class TestParseModel:
    def test_featherless_keeps_nested_model_path(self):
        ref = parse_model("featherless/org/model-name")
        assert ref.provider == Provider.FEATHERLESS
        assert ref.model == "org/model-name"

    def test_model_without_prefix_falls_back_to_anthropic(self):
        ref = parse_model("claude-x")
        assert ref.provider == Provider.ANTHROPIC
        assert ref.model == "claude-x"

    @pytest.mark.parametrize(
        "model_string,provider,model",
        [
            ("glm/glm-4.7", Provider.GLM, "glm-4.7"),
            ("google/gemini-2.0-flash", Provider.GOOGLE, "gemini-2.0-flash"),
            ("anthropic/claude-3-opus-20240229", Provider.ANTHROPIC, "claude-3-opus-20240229"),
        ],
    )
    def test_known_prefixes(self, model_string, provider, model):
        ref = parse_model(model_string)
        assert ref.provider == provider
        assert ref.model == model

    def test_unknown_prefix_keeps_full_string(self):
        ref = parse_model("openai/gpt-4o")
        assert ref.provider == Provider.ANTHROPIC
        assert ref.model == "openai/gpt-4o"

    def test_prefix_with_empty_model_keeps_full_string(self):
        ref = parse_model("glm/")
        assert ref.provider == Provider.ANTHROPIC
        assert ref.model == "glm/"

    @pytest.mark.parametrize("model_string", ["", None])
    def test_empty_model_uses_default(self, model_string):
        ref = parse_model(model_string)
        assert ref.provider == Provider.ANTHROPIC
        assert ref.model == DEFAULT_MODEL


class TestNativeTools:
    def test_full_featured_providers(self):
        assert supports_native_tools(Provider.ANTHROPIC, "anything")
        assert supports_native_tools(Provider.GOOGLE, "gemini-pro")

    def test_featherless_never_native(self):
        assert not supports_native_tools(Provider.FEATHERLESS, "org/Qwen2.5-72B-Instruct-abliterated")

    def test_glm_allow_list_substring(self):
        assert supports_native_tools(Provider.GLM, "glm-4.7")
        assert supports_native_tools(Provider.GLM, "glm-4-plus")
        assert not supports_native_tools(Provider.GLM, "chatglm3-6b")


class TestLimits:
    def test_lookup_by_last_segment(self):
        table = {"WhiteRabbitNeo-V3-7B": 8192}
        assert lookup_limit("WhiteRabbitNeo/WhiteRabbitNeo-V3-7B", table, 1) == 8192

    def test_lookup_by_substring(self):
        table = {"gemini-1.5-pro": 1048576}
        assert lookup_limit("gemini-1.5-pro-latest", table, 1) == 1048576

    def test_lookup_default(self):
        assert lookup_limit("mystery-model", {"glm-4": 1}, 77) == 77

    def test_resolve_target_fills_limits(self):
        target = resolve_target("glm/glm-4.7")
        assert target.provider == Provider.GLM
        assert target.native_tools is True
        assert target.context_limit == 131072
        assert target.max_output_tokens == 8192
        assert target.label == "glm/glm-4.7"

    def test_resolve_target_unknown_model_defaults(self):
        target = resolve_target("featherless/acme/unknown-model")
        assert target.context_limit == DEFAULT_CONTEXT_LIMIT
        assert target.max_output_tokens == DEFAULT_OUTPUT_LIMIT
        assert target.native_tools is False

    def test_overrides_win(self):
        target = resolve_target(
            "glm/glm-4.7",
            output_overrides={"glm-4.7": 2048},
            context_overrides={"glm-4.7": 16000},
        )
        assert target.max_output_tokens == 2048
        assert target.context_limit == 16000
