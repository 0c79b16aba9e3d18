"""带指数退避的异步重试

- 只有瞬时错误（传输失败、可重试状态码）会被重试
- 429 的退避增长速度加倍
- 上游给出 Retry-After 时优先遵守
- 连续多次 5xx 后切换到下一个备用地址
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import TypeVar

from loguru import logger

from model_proxy.models.errors import ProxyError, UpstreamError, is_server_error

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """有界重试策略"""

    max_attempts: int = 4
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: bool = True
    rotate_after_failures: int = 2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts 必须 >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay 必须 >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("backoff_multiplier 必须 > 0")
        if self.max_delay < 0:
            raise ValueError("max_delay 必须 >= 0")
        if self.rotate_after_failures < 1:
            raise ValueError("rotate_after_failures 必须 >= 1")

    @classmethod
    def from_config(cls, retry_config) -> "RetryPolicy":
        return cls(
            max_attempts=retry_config.max_attempts,
            initial_delay=retry_config.initial_delay,
            backoff_multiplier=retry_config.backoff_multiplier,
            max_delay=retry_config.max_delay,
            jitter=retry_config.jitter,
            rotate_after_failures=retry_config.rotate_after_failures,
        )


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """解析 Retry-After 头，支持秒数与HTTP日期两种形式

    Returns:
        需要等待的秒数，无法解析时返回 None
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(int(value)))
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (retry_at - now).total_seconds())


def retry_after_from_error(exc: BaseException) -> float | None:
    if not isinstance(exc, UpstreamError):
        return None
    for name, value in exc.upstream_headers.items():
        if name.lower() == "retry-after":
            return parse_retry_after(value)
    return None


def is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamError) and exc.status_code == 429


def should_retry(exc: BaseException) -> bool:
    """判断异常是否属于可重试的瞬时错误，取消永远不重试"""
    if isinstance(exc, asyncio.CancelledError):
        return False
    return isinstance(exc, ProxyError) and exc.retryable


def compute_backoff_delay(
    policy: RetryPolicy, *, retry_index: int, rate_limited: bool = False
) -> float:
    """计算第 retry_index 次重试前的等待秒数（从1开始）"""
    multiplier = policy.backoff_multiplier * (2 if rate_limited else 1)
    base = policy.initial_delay * (multiplier ** max(0, retry_index - 1))
    base = min(policy.max_delay, base)
    if base <= 0:
        return 0.0
    if not policy.jitter:
        return base
    return random.random() * base


class EndpointRotator:
    """在主地址与备用地址之间轮换

    连续 rotate_after 次服务端错误后切换到下一个地址。
    """

    def __init__(self, base_url: str, fallbacks: list[str] | None = None, rotate_after: int = 2):
        self._urls = [base_url, *(fallbacks or [])]
        self._index = 0
        self._failures = 0
        self._rotate_after = rotate_after

    @property
    def current(self) -> str:
        return self._urls[self._index]

    def record_success(self) -> None:
        self._failures = 0

    def record_failure(self, exc: BaseException) -> None:
        if not (isinstance(exc, UpstreamError) and is_server_error(exc.status_code)):
            self._failures = 0
            return
        self._failures += 1
        if self._failures >= self._rotate_after and len(self._urls) > 1:
            previous = self.current
            self._index = (self._index + 1) % len(self._urls)
            self._failures = 0
            logger.warning(f"连续服务端错误，切换备用地址: {previous} -> {self.current}")


async def retry_with_backoff(
    factory: Callable[[int], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """按策略执行异步调用，attempt 从1开始传给 factory"""
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await factory(attempt)
        except Exception as exc:
            if not should_retry(exc) or attempt >= policy.max_attempts:
                raise

            delay = compute_backoff_delay(
                policy, retry_index=attempt, rate_limited=is_rate_limited(exc)
            )
            retry_after = retry_after_from_error(exc)
            if retry_after is not None:
                delay = min(retry_after, policy.max_delay)

            if on_retry is not None:
                on_retry(attempt, exc, delay)
            if delay > 0:
                await sleep(delay)

    raise RuntimeError("retry_with_backoff exhausted without an exception")
