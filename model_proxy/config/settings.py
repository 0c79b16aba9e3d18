"""JSON 配置文件模型与加载

配置文件路径优先级：
1. 显式传入的路径
2. 环境变量 CONFIG_PATH
3. config/settings.json

配置文件不存在时使用默认配置并记录警告，不会导致启动失败。
"""

import json
import os
from pathlib import Path
from typing import Any

import aiofiles
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_CONFIG_PATH = "config/settings.json"

DEFAULT_PROVIDERS: dict[str, dict[str, Any]] = {
    "glm": {
        "base_url": "https://api.z.ai/api/coding/paas/v4",
        "requests_per_minute": 60,
    },
    "featherless": {
        "base_url": "https://api.featherless.ai/v1",
        "requests_per_minute": 100,
    },
    "google": {
        "base_url": "https://generativelanguage.googleapis.com/v1beta",
        "requests_per_minute": 60,
    },
    "anthropic": {
        "base_url": "https://api.anthropic.com",
        "requests_per_minute": 50,
    },
}


class ServerConfig(BaseModel):
    """服务器配置"""

    host: str = Field("127.0.0.1", description="监听地址")
    port: int = Field(3000, ge=1, le=65535, description="监听端口")


class LoggingConfig(BaseModel):
    """日志配置"""

    level: str = Field("INFO", description="日志级别")
    file: str | None = Field("logs/app.log", description="日志文件路径，null 表示不写文件")

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"无效的日志级别: {value}")
        return level


class ProviderConfig(BaseModel):
    """单个上游服务商配置"""

    base_url: str = Field(description="服务商API基础地址")
    api_key: str | None = Field(None, description="API密钥")
    api_key_env: str | None = Field(None, description="读取API密钥的环境变量名")
    requests_per_minute: int = Field(60, gt=0, description="每分钟请求配额")
    fallback_base_urls: list[str] = Field(
        default_factory=list, description="连续服务端错误时切换的备用地址"
    )
    timeout: float = Field(120.0, gt=0, description="单次调用的绝对超时（秒）")

    def resolve_api_key(self) -> str | None:
        """环境变量中的密钥优先于配置文件"""
        if self.api_key_env:
            env_value = os.getenv(self.api_key_env)
            if env_value:
                return env_value
        return self.api_key or None


class RateLimitConfig(BaseModel):
    """速率限制配置"""

    admission_timeout: float = Field(10.0, gt=0, description="等待令牌的最长时间（秒）")
    poll_ceiling: float = Field(1.0, gt=0, description="单次等待的最长时间（秒）")
    default_requests_per_minute: int = Field(60, gt=0, description="未配置服务商的默认配额")


class RetryConfig(BaseModel):
    """重试配置"""

    max_attempts: int = Field(4, ge=1, description="最大尝试次数（含首次）")
    initial_delay: float = Field(1.0, ge=0, description="首次重试等待（秒）")
    max_delay: float = Field(60.0, ge=0, description="最大等待（秒）")
    backoff_multiplier: float = Field(2.0, gt=0, description="退避倍数")
    jitter: bool = Field(True, description="是否使用完全抖动")
    rotate_after_failures: int = Field(2, ge=1, description="连续多少次5xx后切换备用地址")


class CompactionConfig(BaseModel):
    """上下文压缩配置"""

    enabled: bool = Field(True, description="是否启用压缩")
    tail_reserve: int = Field(6, ge=0, description="原样保留的最近消息数")
    response_token_reserve: int = Field(2048, ge=0, description="为输出预留的token数")
    min_context_tokens: int = Field(1024, ge=0, description="压缩后至少保留的较早消息token数")
    buffer_ratio: float = Field(0.85, gt=0, le=1, description="上下文上限的安全系数")
    summary_max_tokens: int = Field(512, ge=1, description="摘要最大token数")
    verbose: bool = Field(False, description="是否记录压缩详情")


class ModelLimitsConfig(BaseModel):
    """模型上限覆盖"""

    output: dict[str, int] = Field(default_factory=dict, description="最大输出token覆盖")
    context: dict[str, int] = Field(default_factory=dict, description="上下文窗口覆盖")


_COMPACTION_ENV = {
    "COMPACTION_TAIL_RESERVE": ("tail_reserve", int),
    "COMPACTION_RESPONSE_RESERVE": ("response_token_reserve", int),
    "COMPACTION_MIN_CONTEXT": ("min_context_tokens", int),
    "COMPACTION_BUFFER_RATIO": ("buffer_ratio", float),
    "COMPACTION_SUMMARY_TOKENS": ("summary_max_tokens", int),
}


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """把压缩相关的环境变量覆盖到原始配置字典上"""
    data = dict(data)
    compaction = dict(data.get("compaction") or {})

    enabled = os.getenv("COMPACTION_ENABLED")
    if enabled is not None:
        compaction["enabled"] = enabled.lower() != "false"
    verbose = os.getenv("COMPACTION_VERBOSE")
    if verbose is not None:
        compaction["verbose"] = verbose.lower() == "true"

    for env_name, (key, cast) in _COMPACTION_ENV.items():
        raw = os.getenv(env_name)
        if raw is None:
            continue
        try:
            compaction[key] = cast(raw)
        except ValueError:
            logger.warning(f"忽略无效的环境变量 {env_name}={raw}")

    data["compaction"] = compaction
    return data


class Config(BaseModel):
    """应用配置"""

    model_config = ConfigDict(protected_namespaces=())

    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    providers: dict[str, ProviderConfig] = Field(default_factory=dict, validate_default=True)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    model_limits: ModelLimitsConfig = Field(default_factory=ModelLimitsConfig)

    @field_validator("providers", mode="before")
    @classmethod
    def _merge_default_providers(cls, value: Any) -> Any:
        """补齐缺失的服务商，并为已配置的服务商补齐默认字段"""
        configured = dict(value or {})
        merged: dict[str, Any] = {}
        for name, defaults in DEFAULT_PROVIDERS.items():
            entry = configured.pop(name, {})
            if isinstance(entry, ProviderConfig):
                entry = entry.model_dump()
            merged[name] = {
                "api_key_env": f"{name.upper()}_API_KEY",
                **defaults,
                **entry,
            }
        merged.update(configured)
        return merged

    @classmethod
    def load(cls, data: dict[str, Any] | None = None) -> "Config":
        """从原始字典构建配置，并应用环境变量覆盖"""
        return cls.model_validate(apply_env_overrides(data or {}))

    @classmethod
    async def from_file(cls, config_path: str | None = None) -> "Config":
        """异步从JSON文件加载配置"""
        path = Path(config_path or get_config_file_path())
        if not path.exists():
            logger.warning(f"配置文件不存在，使用默认配置: {path}")
            return cls.load()

        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
        return cls.load(json.loads(content))

    @classmethod
    def from_file_sync(cls, config_path: str | None = None) -> "Config":
        """同步从JSON文件加载配置"""
        path = Path(config_path or get_config_file_path())
        if not path.exists():
            logger.warning(f"配置文件不存在，使用默认配置: {path}")
            return cls.load()

        with open(path, encoding="utf-8") as f:
            return cls.load(json.load(f))

    async def get_server_config(self) -> tuple[str, int]:
        return self.server.host, self.server.port

    def provider(self, name: str) -> ProviderConfig:
        return self.providers[name]

    def rate_limits(self) -> dict[str, int]:
        return {name: provider.requests_per_minute for name, provider in self.providers.items()}


_config: Config | None = None
_config_path: str | None = None


def get_config_file_path() -> str:
    """获取当前配置文件路径"""
    return _config_path or os.getenv("CONFIG_PATH", DEFAULT_CONFIG_PATH)


async def get_config() -> Config:
    """获取缓存的配置实例，首次调用时加载"""
    global _config
    if _config is None:
        _config = await Config.from_file(get_config_file_path())
    return _config


async def reload_config(config_path: str | None = None) -> Config:
    """重新从文件加载配置并替换缓存实例"""
    global _config, _config_path
    if config_path is not None:
        _config_path = config_path
    _config = await Config.from_file(get_config_file_path())
    logger.info(f"配置已重新加载: {get_config_file_path()}")
    return _config
