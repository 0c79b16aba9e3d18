"""
令牌桶速率限制器测试

使用假时钟驱动，sleep 直接推进时间。
"""

import asyncio
import math
import random

import pytest

from model_proxy.core.dispatcher import Provider
from model_proxy.core.rate_limiter import RateBucket, RateLimiter
from model_proxy.models.errors import AdmissionCancelled, AdmissionTimeout
from tests.fixtures import FakeClock


def make_limiter(limits, clock, **kwargs) -> RateLimiter:
    return RateLimiter(limits, clock=clock, sleep=clock.sleep, **kwargs)


class TestRateBucket:
    def test_refill_is_continuous_and_capped(self):
        bucket = RateBucket(provider="glm", capacity=60, tokens=0.0, last_refill=0.0)
        bucket.refill(0.5)
        assert bucket.tokens == pytest.approx(0.5)
        bucket.refill(1000.0)
        assert bucket.tokens == 60

    def test_consume_requires_a_whole_token(self):
        bucket = RateBucket(provider="glm", capacity=60, tokens=0.9, last_refill=0.0)
        assert bucket.try_consume() is False
        assert bucket.tokens == pytest.approx(0.9)

    @pytest.mark.parametrize("quota", [1, 7, 50, 60, 100, 1000])
    def test_refill_interval_yields_a_token(self, quota):
        bucket = RateBucket(provider="p", capacity=quota, tokens=0.0, last_refill=0.0)
        interval = bucket.refill_interval
        assert interval == math.ceil(60000 / quota) / 1000
        bucket.refill(interval)
        assert bucket.try_consume() is True


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_61st_call_waits_for_next_token(self):
        clock = FakeClock()
        limiter = make_limiter({"glm": 60}, clock)

        for _ in range(60):
            assert await limiter.admit(Provider.GLM) == 0

        waited = await limiter.admit(Provider.GLM)
        assert waited >= 1.0
        assert clock.now >= 1.0

    @pytest.mark.asyncio
    async def test_61st_call_times_out_before_deadline(self):
        clock = FakeClock()
        limiter = make_limiter({"glm": 60}, clock)
        for _ in range(60):
            await limiter.admit("glm")

        with pytest.raises(AdmissionTimeout) as exc_info:
            await limiter.admit("glm", deadline=limiter.deadline_in(0.5))

        assert exc_info.value.status_code == 429
        assert exc_info.value.error_type == "rate_limit_error"
        assert clock.now == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_sleep_never_exceeds_poll_ceiling(self):
        clock = FakeClock()
        limiter = make_limiter({"anthropic": 1}, clock, poll_ceiling=1.0, admission_timeout=120)
        await limiter.admit("anthropic")

        waited = await limiter.admit("anthropic")

        assert waited == pytest.approx(60.0)
        assert max(clock.sleeps) <= 1.0

    @pytest.mark.asyncio
    async def test_default_timeout_applies(self):
        clock = FakeClock()
        limiter = make_limiter({"google": 1}, clock, admission_timeout=3.0)
        await limiter.admit("google")

        with pytest.raises(AdmissionTimeout):
            await limiter.admit("google")
        assert clock.now == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_unknown_provider_gets_default_bucket(self):
        clock = FakeClock()
        limiter = make_limiter({}, clock, default_rpm=5)
        await limiter.admit("custom")
        assert limiter.status("custom")["limit"] == 5
        assert limiter.status("custom")["available"] == 4

    @pytest.mark.asyncio
    async def test_cancel_token_aborts_wait(self):
        clock = FakeClock()

        async def slow_sleep(seconds):
            await asyncio.sleep(3600)

        limiter = RateLimiter({"glm": 1}, clock=clock, sleep=slow_sleep)
        await limiter.admit("glm")

        cancel = asyncio.Event()
        task = asyncio.create_task(limiter.admit("glm", cancel=cancel))
        await asyncio.sleep(0)
        cancel.set()

        with pytest.raises(AdmissionCancelled):
            await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.asyncio
    async def test_caller_cancellation_stops_inner_waits(self):
        clock = FakeClock()
        sleep_cancelled = asyncio.Event()

        async def slow_sleep(seconds):
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                sleep_cancelled.set()
                raise

        limiter = RateLimiter({"glm": 1}, clock=clock, sleep=slow_sleep)
        await limiter.admit("glm")

        task = asyncio.create_task(limiter.admit("glm", cancel=asyncio.Event()))
        for _ in range(3):
            await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.wait_for(sleep_cancelled.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_tokens_stay_within_bounds(self):
        clock = FakeClock()
        limiter = make_limiter({"glm": 30, "featherless": 100}, clock, admission_timeout=5.0)
        rng = random.Random(1234)

        for _ in range(400):
            provider = rng.choice(["glm", "featherless"])
            clock.now += rng.choice([0.0, 0.0, 0.01, 0.5, 3.0])
            try:
                await limiter.admit(provider)
            except AdmissionTimeout:
                pass
            for name in ("glm", "featherless"):
                bucket = limiter.bucket(name)
                assert 0.0 <= bucket.tokens <= bucket.capacity

    def test_status_reports_percentage(self):
        clock = FakeClock()
        limiter = make_limiter({"glm": 60, "anthropic": 50}, clock)
        limiter.bucket("glm").tokens = 30.0

        status = limiter.all_status()

        assert status["glm"] == {"provider": "glm", "available": 30, "limit": 60, "percentage": 50}
        assert status["anthropic"]["percentage"] == 100

    def test_invalid_quota_rejected(self):
        with pytest.raises(ValueError):
            RateLimiter({"glm": 0})
