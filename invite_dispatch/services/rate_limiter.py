"""
Rate Limiter Service using fixed-window counters.

One counter per (job type, window index). The provider enforces a strict
per-sender cap, so the default is one send per second.
"""
import time
from typing import Callable

import structlog

from invite_dispatch.config import RateLimitRule, settings
from invite_dispatch.services.kv_store import KeyValueStore

logger = structlog.get_logger()


def _type_name(job_type) -> str:
    return getattr(job_type, "value", job_type)


class RateLimiter:
    """Per-job-type send limiter backed by the shared store's atomic INCR."""

    def __init__(
        self,
        store: KeyValueStore,
        window_ms: int | None = None,
        max_per_window: int | None = None,
        rules: dict[str, RateLimitRule] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.default_rule = RateLimitRule(
            window_ms=window_ms or settings.RATE_LIMIT_WINDOW_MS,
            max=max_per_window or settings.RATE_LIMIT_MAX,
        )
        self.rules = rules if rules is not None else dict(settings.RATE_LIMITS)
        self.clock = clock

    def rule_for(self, job_type: str) -> RateLimitRule:
        return self.rules.get(_type_name(job_type), self.default_rule)

    def window_key(self, job_type: str, rule: RateLimitRule) -> str:
        window_index = int(self.clock() * 1000) // rule.window_ms
        return f"rate_limit:{_type_name(job_type)}:{window_index}"

    async def check_rate_limit(self, job_type: str, *, timeout: float | None = None) -> bool:
        """
        Count one send attempt against the current window.

        Returns True while the window's count is within the limit.
        """
        rule = self.rule_for(job_type)
        key = self.window_key(job_type, rule)

        count = await self.store.incr(key, timeout=timeout)
        if count == 1:
            # First hit in this window owns the expiry
            await self.store.expire_ms(key, rule.window_ms, timeout=timeout)

        allowed = count <= rule.max
        if not allowed:
            logger.info("rate_limit_exceeded", job_type=_type_name(job_type), count=count, limit=rule.max)
        return allowed

    async def get_current_count(self, job_type: str) -> int:
        """Sends counted so far in the current window."""
        rule = self.rule_for(job_type)
        value = await self.store.get(self.window_key(job_type, rule))
        return int(value) if value else 0
