"""
Rekey Rate Limiting.

Two independent limits:

- ``RotationRateLimiter``: per-owner cooldown and daily cap on rotation starts,
  computed from the rotation ledger so every worker sees the same history.
- ``MemoryRateLimiter`` / ``RedisRateLimiter``: the general per-address request
  throttle applied at the transport boundary.

Both fail closed: a storage error denies rather than admits.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from redis.exceptions import RedisError

from rekey.config import RotationSettings
from rekey.ledger import RotationLedgerInterface

logger = logging.getLogger(__name__)

DAY = timedelta(hours=24)

COOLDOWN_ACTIVE = "cooldown_active"
DAILY_CAP_REACHED = "daily_cap_reached"
THROTTLED = "throttled"


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None
    reason: Optional[str] = None


@dataclass
class RotationAllowance(RateLimitResult):
    """
    Result of a per-owner rotation check.

    Attributes:
        latest_rotation_id: Newest ticket the check observed for the owner. Passed
            back to the ledger on insert so a concurrent start is refused.
    """

    latest_rotation_id: Optional[str] = None


class RotationRateLimiter:
    """
    Per-owner limiter for rotation starts.

    Example:
        >>> limiter = RotationRateLimiter(ledger, RotationSettings(daily_cap=3))
        >>> allowance = await limiter.check("owner-1", now)
        >>> if not allowance.allowed:
        ...     raise RateLimitedError(..., retry_after=allowance.retry_after)
    """

    def __init__(self, ledger: RotationLedgerInterface, settings: RotationSettings):
        self._ledger = ledger
        self._settings = settings

    async def check(self, owner_id: str, now: datetime) -> RotationAllowance:
        """Decide whether ``owner_id`` may start a rotation at ``now``."""
        latest = await self._ledger.latest_for_owner(owner_id)
        latest_id = latest.rotation_id if latest else None
        reset_at = (now + self._settings.cooldown).timestamp()

        if latest is not None:
            elapsed = now - latest.started_at
            # Strict: a start exactly one cooldown later is allowed
            if elapsed < self._settings.cooldown:
                wait = (self._settings.cooldown - elapsed).total_seconds()
                logger.info(f"Rotation cooldown active for {owner_id} ({wait:.0f}s left)")
                return RotationAllowance(
                    allowed=False,
                    remaining=0,
                    reset_at=now.timestamp() + wait,
                    retry_after=wait,
                    reason=COOLDOWN_ACTIVE,
                    latest_rotation_id=latest_id,
                )

        recent = await self._ledger.list_for_owner(owner_id, since=now - DAY)
        recent = [t for t in recent if now - t.started_at < DAY]
        if len(recent) >= self._settings.daily_cap:
            wait = (recent[0].started_at + DAY - now).total_seconds()
            logger.info(f"Daily rotation cap reached for {owner_id}")
            return RotationAllowance(
                allowed=False,
                remaining=0,
                reset_at=now.timestamp() + wait,
                retry_after=wait,
                reason=DAILY_CAP_REACHED,
                latest_rotation_id=latest_id,
            )

        return RotationAllowance(
            allowed=True,
            remaining=self._settings.daily_cap - len(recent) - 1,
            reset_at=reset_at,
            latest_rotation_id=latest_id,
        )


class RateLimiterInterface(ABC):
    """Abstract interface for request throttle implementations."""

    @abstractmethod
    async def check_limit(
        self, key: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        """
        Check if a request is allowed under rate limits.

        Args:
            key: Identifier for rate limiting (e.g., client address).
            max_requests: Maximum requests allowed in window.
            window_seconds: Time window in seconds.

        Returns:
            RateLimitResult with allowed status and metadata.
        """
        pass

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Reset rate limit for a key."""
        pass


class MemoryRateLimiter(RateLimiterInterface):
    """
    In-memory token bucket rate limiter.

    Suitable for single-instance deployments. For multi-instance
    deployments, use RedisRateLimiter.

    Example:
        >>> limiter = MemoryRateLimiter()
        >>> result = await limiter.check_limit(
        ...     key="start:203.0.113.7",
        ...     max_requests=1,
        ...     window_seconds=900
        ... )
    """

    def __init__(self, cleanup_interval: int = 300):
        """
        Initialize the rate limiter.

        Args:
            cleanup_interval: Seconds between cleanup runs.
        """
        # key -> (tokens, last_update)
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = time.time()

    async def check_limit(
        self, key: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        """Check rate limit using token bucket algorithm."""
        async with self._lock:
            self._maybe_cleanup()

            now = time.time()
            refill_rate = max_requests / window_seconds

            if key in self._buckets:
                tokens, last_update = self._buckets[key]
                tokens = min(max_requests, tokens + (now - last_update) * refill_rate)
            else:
                tokens = float(max_requests)

            if tokens >= 1:
                tokens -= 1
                self._buckets[key] = (tokens, now)
                return RateLimitResult(
                    allowed=True, remaining=int(tokens), reset_at=now + window_seconds
                )

            retry_after = (1 - tokens) / refill_rate
            self._buckets[key] = (tokens, now)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=now + retry_after,
                retry_after=retry_after,
                reason=THROTTLED,
            )

    async def reset(self, key: str) -> None:
        """Reset rate limit for a key."""
        async with self._lock:
            self._buckets.pop(key, None)

    def _maybe_cleanup(self) -> None:
        """Drop buckets idle for two cleanup intervals."""
        now = time.time()
        if now - self._last_cleanup >= self._cleanup_interval:
            cutoff = now - (self._cleanup_interval * 2)
            expired = [k for k, (_, last_update) in self._buckets.items() if last_update < cutoff]
            for key in expired:
                del self._buckets[key]
            self._last_cleanup = now


class RedisRateLimiter(RateLimiterInterface):
    """
    Redis-backed sliding window rate limiter.

    Provides consistent rate limiting across all instances using
    Redis sorted sets for sliding window implementation.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.Redis(host='localhost', port=6379)
        >>> limiter = RedisRateLimiter(client)
    """

    def __init__(self, redis_client, key_prefix: str = "rekey:throttle:"):
        """
        Initialize Redis rate limiter.

        Args:
            redis_client: An async Redis client.
            key_prefix: Prefix for rate limit keys.
        """
        self._redis = redis_client
        self._prefix = key_prefix

    def _key(self, key: str) -> str:
        """Generate prefixed key."""
        return f"{self._prefix}{key}"

    async def check_limit(
        self, key: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        """Check rate limit using sliding window."""
        now = time.time()
        try:
            redis_key = self._key(key)
            window_start = now - window_seconds

            pipe = self._redis.pipeline()
            pipe.zremrangebyscore(redis_key, 0, window_start)
            pipe.zcard(redis_key)
            results = await pipe.execute()
            current_count = results[1]

            if current_count < max_requests:
                await self._redis.zadd(redis_key, {str(now): now})
                await self._redis.expire(redis_key, window_seconds + 1)
                return RateLimitResult(
                    allowed=True,
                    remaining=max_requests - current_count - 1,
                    reset_at=now + window_seconds,
                )

            oldest = await self._redis.zrange(redis_key, 0, 0, withscores=True)
            retry_after = oldest[0][1] + window_seconds - now if oldest else window_seconds
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=now + retry_after,
                retry_after=max(0, retry_after),
                reason=THROTTLED,
            )

        except RedisError as e:
            logger.warning(f"Redis rate limit error: {e}")
            # Fail closed
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=now + window_seconds,
                retry_after=window_seconds,
                reason=THROTTLED,
            )

    async def reset(self, key: str) -> None:
        """Reset rate limit for a key."""
        try:
            await self._redis.delete(self._key(key))
        except RedisError as e:
            logger.warning(f"Redis reset error: {e}")
