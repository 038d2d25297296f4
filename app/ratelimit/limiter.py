import asyncio
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from redis.exceptions import RedisError

from app.cache.layer import CacheStore

import logging

logger = logging.getLogger(__name__)

# Anything the store can throw at us counts as an outage, not a rejection.
STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def _from_ms(value_ms: float) -> datetime:
    return datetime.fromtimestamp(value_ms / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime | None = None
    retry_after: int | None = None
    key: str | None = None
    member: str | None = None
    evaluated: bool = True

    @classmethod
    def fail_open(cls, max_requests: int) -> "RateLimitDecision":
        return cls(allowed=True, limit=max_requests, remaining=max_requests, evaluated=False)

    def headers(self) -> dict[str, str]:
        """Response headers for an evaluated decision (none when failing open)."""
        if not self.evaluated:
            return {}
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if self.reset_at is not None:
            headers["X-RateLimit-Reset"] = self.reset_at.isoformat()
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """
    Sliding-window limiter over a Redis sorted set per identity.

    Each admitted request is stored as a member "<now_ms>:<nonce>" scored by
    its timestamp. Evaluation evicts members older than the window, counts
    what is left and either rejects (without recording) or records the
    request. The three round-trips are not atomic, so concurrent requests on
    one key may over-admit by the number in flight.

    Store outages never block traffic: the limiter fails open.
    """

    KEY_PREFIX = "ratelimit:"

    def __init__(self, store: CacheStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def admit(self, identity: str, window_ms: int, max_requests: int) -> RateLimitDecision:
        key = f"{self.KEY_PREFIX}{identity}"
        try:
            if not await self.store.ready():
                logger.warning(f"Rate limit store not ready, admitting {identity}")
                return RateLimitDecision.fail_open(max_requests)
            return await self._evaluate(key, window_ms, max_requests)
        except STORE_ERRORS as e:
            logger.warning(f"Rate limiter error for {identity}, admitting: {e}")
            return RateLimitDecision.fail_open(max_requests)

    async def _evaluate(self, key: str, window_ms: int, max_requests: int) -> RateLimitDecision:
        now = self._now_ms()

        # Evict everything at or before the window start
        await self.store.remove_range_by_score(key, "-inf", now - window_ms)
        current = await self.store.cardinality(key)

        if current >= max_requests:
            retry_after = math.ceil(window_ms / 1000)
            oldest = await self.store.range_with_scores(key, 0, 0)
            if oldest:
                _, oldest_ts = oldest[0]
                retry_after = max(1, math.ceil((oldest_ts + window_ms - now) / 1000))

            logger.info(f"Rate limit exceeded for {key}, retry in {retry_after}s")
            return RateLimitDecision(
                allowed=False,
                limit=max_requests,
                remaining=0,
                reset_at=_from_ms(now + retry_after * 1000),
                retry_after=retry_after,
                key=key,
            )

        member = f"{now}:{uuid.uuid4().hex}"
        await self.store.add_scored(key, now, member)
        await self.store.expire(key, math.ceil(window_ms / 1000))

        return RateLimitDecision(
            allowed=True,
            limit=max_requests,
            remaining=max(0, max_requests - current - 1),
            reset_at=_from_ms(now + window_ms),
            key=key,
            member=member,
        )

    async def release(self, decision: RateLimitDecision) -> bool:
        """
        Forget an admitted request so it no longer counts against the window.

        Returns True when a member was removed.
        """
        if not decision.allowed or decision.member is None or decision.key is None:
            return False
        try:
            removed = await self.store.remove_member(decision.key, decision.member)
        except STORE_ERRORS as e:
            logger.warning(f"Could not release rate limit entry on {decision.key}: {e}")
            return False
        return bool(removed)
