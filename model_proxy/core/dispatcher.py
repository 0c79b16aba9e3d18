"""服务商分发器

将 `provider/model` 形式的模型标识解析为服务商与原生模型名称，
并根据静态能力表决定使用原生工具调用还是文本模拟。
"""

import re
from dataclasses import dataclass
from enum import Enum


class Provider(str, Enum):
    """支持的上游服务商"""

    ANTHROPIC = "anthropic"
    GLM = "glm"
    FEATHERLESS = "featherless"
    GOOGLE = "google"


DEFAULT_PROVIDER = Provider.ANTHROPIC
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"

_MODEL_PATTERN = re.compile(r"^(glm|featherless|google|anthropic)/(.*)$")

# 部分支持原生工具调用的服务商：模型名包含任一片段即启用
NATIVE_TOOL_ALLOW_LIST: dict[Provider, tuple[str, ...]] = {
    Provider.GLM: ("glm-4", "glm-4-plus"),
}

# 最大输出token上限（按模型名最后一段匹配）
OUTPUT_LIMITS: dict[str, int] = {
    "glm-4.7": 8192,
    "glm-4": 8192,
    "glm-4-plus": 8192,
    "glm-4-air": 8192,
    "Dolphin-Mistral-24B-Venice-Edition": 4096,
    "Qwen2.5-72B-Instruct-abliterated": 4096,
    "WhiteRabbitNeo-V3-7B": 4096,
    "Meta-Llama-3.1-8B-Instruct-abliterated": 4096,
    "Llama-3.3-70B-Instruct-abliterated": 4096,
    "gemini-pro": 8192,
    "gemini-1.5-pro": 8192,
    "gemini-2.0-flash": 8192,
    "gemini-2.0-flash-exp": 8192,
    "claude-sonnet-4-5-20250929": 8192,
    "claude-3-5-sonnet-20241022": 8192,
    "claude-3-opus-20240229": 8192,
}
DEFAULT_OUTPUT_LIMIT = 4096

# 上下文窗口上限（输入+输出）
CONTEXT_LIMITS: dict[str, int] = {
    "glm-4.7": 131072,
    "glm-4": 131072,
    "glm-4-plus": 131072,
    "glm-4-air": 131072,
    "Dolphin-Mistral-24B-Venice-Edition": 32768,
    "Qwen2.5-72B-Instruct-abliterated": 32768,
    "WhiteRabbitNeo-V3-7B": 8192,
    "Meta-Llama-3.1-8B-Instruct-abliterated": 8192,
    "Llama-3.3-70B-Instruct-abliterated": 131072,
    "gemini-pro": 32768,
    "gemini-1.5-pro": 1048576,
    "gemini-2.0-flash": 1048576,
    "gemini-2.0-flash-exp": 1048576,
    "claude-sonnet-4-5-20250929": 200000,
    "claude-3-5-sonnet-20241022": 200000,
    "claude-3-opus-20240229": 200000,
}
DEFAULT_CONTEXT_LIMIT = 8192


@dataclass(frozen=True)
class ModelRef:
    """解析后的模型标识"""

    provider: Provider
    model: str


@dataclass(frozen=True)
class ProviderTarget:
    """一次调用的目标服务商与模型"""

    provider: Provider
    model: str
    native_tools: bool
    context_limit: int
    max_output_tokens: int

    @property
    def label(self) -> str:
        return f"{self.provider.value}/{self.model}"


def parse_model(model_string: str | None) -> ModelRef:
    """解析模型标识

    无法识别的前缀回退到默认服务商，并把完整字符串作为模型名；
    格式错误的输入永远不会导致调用失败。
    """
    if not model_string:
        return ModelRef(DEFAULT_PROVIDER, DEFAULT_MODEL)

    match = _MODEL_PATTERN.match(model_string)
    if match and match.group(2):
        return ModelRef(Provider(match.group(1)), match.group(2))
    return ModelRef(DEFAULT_PROVIDER, model_string)


def supports_native_tools(provider: Provider, model: str) -> bool:
    """查询静态能力表，判断模型是否支持原生工具调用"""
    if provider in (Provider.ANTHROPIC, Provider.GOOGLE):
        return True
    if provider == Provider.FEATHERLESS:
        # 无限制模型会忽略结构化工具定义
        return False
    fragments = NATIVE_TOOL_ALLOW_LIST.get(provider, ())
    return any(fragment in model for fragment in fragments)


def lookup_limit(model: str, table: dict[str, int], default: int) -> int:
    """按模型名查表：先精确匹配最后一段，再双向子串匹配"""
    short_name = model.rsplit("/", 1)[-1]
    if short_name in table:
        return table[short_name]
    if model in table:
        return table[model]
    for key, value in table.items():
        if key in model or model in key:
            return value
    return default


def resolve_target(
    model_string: str | None,
    output_overrides: dict[str, int] | None = None,
    context_overrides: dict[str, int] | None = None,
) -> ProviderTarget:
    """解析模型标识并补全能力与上限信息，配置覆盖优先"""
    ref = parse_model(model_string)
    output_table = {**OUTPUT_LIMITS, **(output_overrides or {})}
    context_table = {**CONTEXT_LIMITS, **(context_overrides or {})}
    return ProviderTarget(
        provider=ref.provider,
        model=ref.model,
        native_tools=supports_native_tools(ref.provider, ref.model),
        context_limit=lookup_limit(ref.model, context_table, DEFAULT_CONTEXT_LIMIT),
        max_output_tokens=lookup_limit(ref.model, output_table, DEFAULT_OUTPUT_LIMIT),
    )
