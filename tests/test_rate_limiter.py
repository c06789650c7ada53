"""
Rate limiter tests: fixed windows per job type.
"""
import pytest

from invite_dispatch.config import RateLimitRule
from invite_dispatch.models.job import JobType
from invite_dispatch.services.rate_limiter import RateLimiter


@pytest.mark.asyncio
async def test_second_send_in_window_is_blocked_then_allowed_next_window(rate_limiter, clock):
    assert await rate_limiter.check_rate_limit(JobType.WHATSAPP_SEND) is True
    assert await rate_limiter.check_rate_limit(JobType.WHATSAPP_SEND) is False

    clock.advance(1.0)
    assert await rate_limiter.check_rate_limit(JobType.WHATSAPP_SEND) is True


@pytest.mark.asyncio
async def test_window_key_uses_type_value(rate_limiter):
    key = rate_limiter.window_key(JobType.WHATSAPP_SEND, rate_limiter.default_rule)
    assert key == "rate_limit:whatsapp_send:1700000000"


@pytest.mark.asyncio
async def test_job_types_have_independent_counters(rate_limiter):
    assert await rate_limiter.check_rate_limit(JobType.WHATSAPP_SEND) is True
    assert await rate_limiter.check_rate_limit(JobType.SMS_SEND) is True
    assert await rate_limiter.get_current_count(JobType.WHATSAPP_SEND) == 1


@pytest.mark.asyncio
async def test_per_type_rule_overrides_default(store, clock):
    limiter = RateLimiter(
        store,
        window_ms=1000,
        max_per_window=1,
        rules={"sms_send": RateLimitRule(window_ms=60_000, max=3)},
        clock=clock,
    )
    results = [await limiter.check_rate_limit(JobType.SMS_SEND) for _ in range(4)]
    assert results == [True, True, True, False]


@pytest.mark.asyncio
async def test_counter_expires_with_window(rate_limiter, store, clock):
    await rate_limiter.check_rate_limit(JobType.WHATSAPP_SEND)
    key = rate_limiter.window_key(JobType.WHATSAPP_SEND, rate_limiter.default_rule)

    clock.advance(1.5)
    assert await store.get(key) is None
