"""按服务商划分的令牌桶速率限制器

令牌按时间连续（小数）累积，不是固定窗口。
桶在进程启动时为每个服务商创建一次，之后在整个进程生命周期内被修改。
"""

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from model_proxy.models.errors import AdmissionCancelled, AdmissionTimeout

# 浮点累积误差容忍度
_EPSILON = 1e-9

DEFAULT_ADMISSION_TIMEOUT = 10.0
DEFAULT_POLL_CEILING = 1.0
DEFAULT_REQUESTS_PER_MINUTE = 60


@dataclass
class RateBucket:
    """单个服务商的令牌桶"""

    provider: str
    capacity: float
    tokens: float
    last_refill: float

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed <= 0:
            return
        self.tokens = min(self.capacity, self.tokens + elapsed * self.capacity / 60.0)
        self.last_refill = now

    def try_consume(self) -> bool:
        if self.tokens + _EPSILON < 1.0:
            return False
        self.tokens = max(0.0, self.tokens - 1.0)
        return True

    @property
    def refill_interval(self) -> float:
        """从零开始恢复一个令牌所需的秒数，即 ceil(60000/Q) 毫秒"""
        return math.ceil(60000 / self.capacity) / 1000.0


def _provider_key(provider) -> str:
    return getattr(provider, "value", provider)


class RateLimiter:
    """令牌桶速率限制器

    refill、检查、消费三步之间没有挂起点，在单线程事件循环下天然原子。
    时钟与睡眠函数可注入，便于测试。
    """

    def __init__(
        self,
        limits: dict[str, int],
        *,
        admission_timeout: float = DEFAULT_ADMISSION_TIMEOUT,
        poll_ceiling: float = DEFAULT_POLL_CEILING,
        default_rpm: int = DEFAULT_REQUESTS_PER_MINUTE,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.admission_timeout = admission_timeout
        self.poll_ceiling = poll_ceiling
        self.default_rpm = default_rpm
        self._clock = clock
        self._sleep = sleep
        self._buckets: dict[str, RateBucket] = {}
        for provider, quota in limits.items():
            self._create_bucket(_provider_key(provider), quota)

    def _create_bucket(self, provider: str, quota: int) -> RateBucket:
        if quota <= 0:
            raise ValueError(f"{provider} 的每分钟请求配额必须大于0")
        bucket = RateBucket(
            provider=provider,
            capacity=float(quota),
            tokens=float(quota),
            last_refill=self._clock(),
        )
        self._buckets[provider] = bucket
        return bucket

    def bucket(self, provider) -> RateBucket:
        """获取服务商的令牌桶，未配置的服务商按默认配额懒创建"""
        key = _provider_key(provider)
        existing = self._buckets.get(key)
        if existing is not None:
            return existing
        return self._create_bucket(key, self.default_rpm)

    def deadline_in(self, seconds: float) -> float:
        """把相对超时转换为限制器时钟上的绝对截止时间"""
        return self._clock() + seconds

    async def admit(
        self,
        provider,
        deadline: float | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> float:
        """等待并消费一个令牌，返回实际等待的秒数

        Args:
            provider: 服务商
            deadline: 限制器时钟上的绝对截止时间，None 表示使用默认准入超时
            cancel: 取消令牌，被设置后立即放弃等待

        Raises:
            AdmissionTimeout: 截止时间内没有可用令牌
            AdmissionCancelled: 等待期间取消令牌被设置
        """
        key = _provider_key(provider)
        bucket = self.bucket(key)
        start = self._clock()
        if deadline is None:
            deadline = start + self.admission_timeout

        now = start
        while True:
            bucket.refill(now)
            if bucket.try_consume():
                waited = now - start
                if waited > 0:
                    logger.debug(f"速率限制等待结束 - Provider: {key}, Waited: {waited:.3f}s")
                return waited

            remaining = deadline - now
            if remaining <= 0:
                logger.warning(f"速率限制准入超时 - Provider: {key}, Waited: {now - start:.3f}s")
                raise AdmissionTimeout(key, now - start)

            delay = min(bucket.refill_interval, self.poll_ceiling, remaining)
            await self._wait(key, delay, cancel)
            now = self._clock()

    async def _wait(self, provider: str, delay: float, cancel: asyncio.Event | None) -> None:
        if cancel is None:
            await self._sleep(delay)
            return
        if cancel.is_set():
            raise AdmissionCancelled(provider)

        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            sleeper.cancel()
            waiter.cancel()
        if waiter in done:
            raise AdmissionCancelled(provider)

    def status(self, provider) -> dict:
        """返回服务商令牌桶的当前状态"""
        bucket = self.bucket(provider)
        bucket.refill(self._clock())
        return {
            "provider": bucket.provider,
            "available": math.floor(bucket.tokens + _EPSILON),
            "limit": int(bucket.capacity),
            "percentage": math.floor(bucket.tokens / bucket.capacity * 100 + _EPSILON),
        }

    def all_status(self) -> dict[str, dict]:
        return {provider: self.status(provider) for provider in list(self._buckets)}
