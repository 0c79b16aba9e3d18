"""代理请求处理流水线

数据流：
    解析目标 -> 速率准入 -> 上下文压缩 -> 构建原生请求 -> 发送(带重试) -> 转换响应

速率令牌桶、压缩策略和重试策略集中放在 ProxyContext 中，每个进程构建一次后注入，
不使用隐藏的全局单例。
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from model_proxy.common.logging import ProxyEventLogger
from model_proxy.config.settings import Config, ProviderConfig
from model_proxy.core.compaction import (
    CompactionPolicy,
    ensure_context_fits,
    estimate_request_tokens,
)
from model_proxy.core.converters import (
    from_provider_response,
    synthesize_stream,
    to_provider_request,
)
from model_proxy.core.dispatcher import Provider, ProviderTarget, resolve_target
from model_proxy.core.rate_limiter import RateLimiter
from model_proxy.core.retry import EndpointRotator, RetryPolicy, retry_with_backoff
from model_proxy.core.transport import HttpTransport, TransportRequest, TransportResponse
from model_proxy.models.errors import (
    AuthenticationError,
    ProxyError,
    TransportFailure,
    UpstreamError,
)
from model_proxy.models.messages import UnifiedRequest

DEFAULT_ANTHROPIC_VERSION = "2023-06-01"
MAX_TOKENS_CAPPED_HEADER = "X-Proxy-Max-Tokens-Capped"

JSON_MEDIA_TYPE = "application/json"
SSE_MEDIA_TYPE = "text/event-stream"


@dataclass
class ProxyResult:
    """流水线输出，由API层渲染为HTTP响应

    body 为 dict 时按JSON返回，为 str 时原样返回，为迭代器时按SSE流式返回。
    """

    status_code: int
    body: dict[str, Any] | str | Iterator[str]
    headers: dict[str, str] = field(default_factory=dict)
    media_type: str = JSON_MEDIA_TYPE

    @property
    def is_stream(self) -> bool:
        return not isinstance(self.body, (dict, str))

    @classmethod
    def from_error(cls, exc: ProxyError) -> "ProxyResult":
        return cls(
            status_code=exc.status_code,
            body=exc.to_response().model_dump(),
            headers=exc.headers(),
        )

    @classmethod
    def from_upstream_error(cls, exc: UpstreamError) -> "ProxyResult":
        """非2xx上游响应原样透传"""
        return cls(
            status_code=exc.status_code,
            body=exc.body,
            media_type=_content_type(exc.upstream_headers) or JSON_MEDIA_TYPE,
        )


def _content_type(headers: dict[str, str]) -> str | None:
    for name, value in headers.items():
        if name.lower() == "content-type":
            return value
    return None


def caller_api_key(headers: dict[str, str]) -> str | None:
    """从调用方请求头中提取凭证，x-api-key 优先于 Authorization: Bearer"""
    lowered = {name.lower(): value for name, value in headers.items()}
    api_key = lowered.get("x-api-key")
    if api_key:
        return api_key.strip()
    authorization = lowered.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        token = authorization[len("bearer "):].strip()
        return token or None
    return None


def build_upstream_headers(
    target: ProviderTarget, api_key: str, caller_headers: dict[str, str]
) -> dict[str, str]:
    """按服务商构建出站请求头"""
    headers = {"Content-Type": "application/json"}
    if target.provider == Provider.ANTHROPIC:
        lowered = {name.lower(): value for name, value in caller_headers.items()}
        headers["x-api-key"] = api_key
        headers["anthropic-version"] = lowered.get(
            "anthropic-version", DEFAULT_ANTHROPIC_VERSION
        )
        beta = lowered.get("anthropic-beta")
        if beta:
            headers["anthropic-beta"] = beta
    elif target.provider == Provider.GOOGLE:
        headers["x-goog-api-key"] = api_key
    else:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def compaction_output_tokens(
    request: UnifiedRequest, target: ProviderTarget, policy: CompactionPolicy
) -> int:
    """压缩预算中为输出预留的token数"""
    if request.max_tokens:
        return min(request.max_tokens, target.max_output_tokens)
    return policy.response_token_reserve


@dataclass
class ProxyContext:
    """进程级共享状态

    limiter、policy 与 retry_policy 在进程生命周期内保持不变；
    热重载只替换 config 中的服务商与日志配置。
    """

    config: Config
    limiter: RateLimiter
    policy: CompactionPolicy
    retry_policy: RetryPolicy
    transport: HttpTransport
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @classmethod
    def from_config(
        cls,
        config: Config,
        transport: HttpTransport | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "ProxyContext":
        limiter = RateLimiter(
            config.rate_limits(),
            admission_timeout=config.rate_limit.admission_timeout,
            poll_ceiling=config.rate_limit.poll_ceiling,
            default_rpm=config.rate_limit.default_requests_per_minute,
            clock=clock,
            sleep=sleep,
        )
        return cls(
            config=config,
            limiter=limiter,
            policy=CompactionPolicy.from_config(config.compaction),
            retry_policy=RetryPolicy.from_config(config.retry),
            transport=transport or HttpTransport(),
            sleep=sleep,
        )

    def apply_config(self, config: Config) -> None:
        """热重载：刷新服务商地址/凭证与日志配置"""
        self.config = self.config.model_copy(
            update={"providers": config.providers, "logging": config.logging}
        )


class ProxyPipeline:
    """单次调用的编排逻辑，所有 ProxyError 都在此转换为统一错误响应"""

    def __init__(self, context: ProxyContext):
        self.context = context

    async def handle(
        self,
        request: UnifiedRequest,
        caller_headers: dict[str, str] | None = None,
        request_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ProxyResult:
        events = ProxyEventLogger(request_id)
        started = time.monotonic()
        try:
            return await self._handle(request, caller_headers or {}, events, cancel)
        except UpstreamError as exc:
            events.request_failure(
                status=exc.status_code,
                error_type="upstream_error",
                duration_ms=_elapsed_ms(started),
            )
            return ProxyResult.from_upstream_error(exc)
        except ProxyError as exc:
            events.request_failure(
                status=exc.status_code,
                error_type=exc.error_type,
                message=exc.message,
                duration_ms=_elapsed_ms(started),
            )
            return ProxyResult.from_error(exc)

    def _resolve_api_key(
        self,
        target: ProviderTarget,
        provider_config: ProviderConfig,
        caller_headers: dict[str, str],
    ) -> str:
        api_key = None
        if target.provider == Provider.ANTHROPIC:
            api_key = caller_api_key(caller_headers)
        api_key = api_key or provider_config.resolve_api_key()
        if not api_key:
            hint = provider_config.api_key_env or f"{target.provider.value.upper()}_API_KEY"
            raise AuthenticationError(
                f"缺少 {target.provider.value} 服务商的API密钥，"
                f"请设置环境变量 {hint} 或在配置文件中填写 api_key"
            )
        return api_key

    async def _handle(
        self,
        request: UnifiedRequest,
        caller_headers: dict[str, str],
        events: ProxyEventLogger,
        cancel: asyncio.Event | None,
    ) -> ProxyResult:
        context = self.context
        config = context.config
        started = time.monotonic()

        target = resolve_target(
            request.model, config.model_limits.output, config.model_limits.context
        )
        events.bind_target(target.provider.value, target.model)
        provider_config = config.provider(target.provider.value)
        api_key = self._resolve_api_key(target, provider_config, caller_headers)

        events.request_start(
            messages=len(request.messages),
            tools=len(request.tools or []),
            stream=request.stream,
        )

        await context.limiter.admit(target.provider, cancel=cancel)

        output_tokens = compaction_output_tokens(request, target, context.policy)
        fitted = ensure_context_fits(
            request, target.label, target.context_limit, context.policy, output_tokens
        )
        response_headers: dict[str, str] = {}
        if fitted.compacted:
            stats = fitted.stats
            events.compaction(
                original_messages=stats.original,
                final_messages=stats.final,
                removed=stats.removed,
                original_tokens=stats.original_tokens,
                final_tokens=stats.final_tokens,
            )
            response_headers.update(stats.to_headers())

        translated = to_provider_request(fitted.request, target)
        if translated.max_tokens_capped:
            events.max_tokens_capped(
                requested=translated.requested_max_tokens, capped=translated.max_tokens
            )
            response_headers[MAX_TOKENS_CAPPED_HEADER] = (
                f"{translated.requested_max_tokens}->{translated.max_tokens}"
            )

        upstream_headers = build_upstream_headers(target, api_key, caller_headers)
        rotator = EndpointRotator(
            provider_config.base_url,
            provider_config.fallback_base_urls,
            context.retry_policy.rotate_after_failures,
        )

        async def attempt(number: int) -> TransportResponse:
            # 每次出站调用前都要重新获得令牌
            if number > 1:
                await context.limiter.admit(target.provider, cancel=cancel)
            url = rotator.current.rstrip("/") + translated.path
            try:
                response = await context.transport.send(
                    TransportRequest(
                        url=url,
                        json_body=translated.body,
                        headers=upstream_headers,
                        timeout=provider_config.timeout,
                    )
                )
            except TransportFailure as exc:
                rotator.record_failure(exc)
                raise
            if not response.ok:
                error = UpstreamError(
                    response.status_code,
                    response.body,
                    response.headers,
                    provider=target.provider.value,
                )
                rotator.record_failure(error)
                raise error
            rotator.record_success()
            return response

        def on_retry(number: int, exc: BaseException, delay: float) -> None:
            events.retry(
                attempt=number,
                reason=type(exc).__name__,
                status=getattr(exc, "status_code", None),
                delay_s=f"{delay:.2f}",
            )

        response = await retry_with_backoff(
            attempt,
            policy=context.retry_policy,
            on_retry=on_retry,
            sleep=context.sleep,
        )

        if target.provider == Provider.ANTHROPIC:
            events.request_success(
                status=response.status_code, passthrough=True, duration_ms=_elapsed_ms(started)
            )
            media_type = _content_type(response.headers) or (
                SSE_MEDIA_TYPE if request.stream else JSON_MEDIA_TYPE
            )
            return ProxyResult(
                status_code=response.status_code,
                body=response.body,
                headers=response_headers,
                media_type=media_type,
            )

        unified = from_provider_response(
            response.json(),
            target,
            translated.emulate_tools,
            input_tokens_hint=estimate_request_tokens(fitted.request, 0),
        )
        events.request_success(
            status=response.status_code,
            stop_reason=unified.stop_reason,
            input_tokens=unified.usage.input_tokens,
            output_tokens=unified.usage.output_tokens,
            duration_ms=_elapsed_ms(started),
        )

        if request.stream:
            return ProxyResult(
                status_code=200,
                body=synthesize_stream(unified),
                headers=response_headers,
                media_type=SSE_MEDIA_TYPE,
            )
        return ProxyResult(
            status_code=200,
            body=unified.model_dump(exclude_none=True),
            headers=response_headers,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
