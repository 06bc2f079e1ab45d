from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from movieauth.config import Settings
from movieauth.logging import get_logger
from movieauth.service.errors import RateLimitedError
from movieauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_attempts: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    remaining: int
    retry_after: int


class RateLimitBackend(Protocol):
    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        """Count one request; returns (count in window, seconds until the window resets)."""
        ...


class MemoryRateLimitBackend:
    """Process-local fixed windows keyed by client.

    The read, reset-or-increment and write happen under one lock, so
    concurrent requests from the same key can never both observe a free slot.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_keys: int = 10_000,
    ) -> None:
        self._clock = clock
        self._max_keys = max_keys
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        with self._lock:
            now = self._clock()
            count, reset_at = self._windows.get(key, (0, 0.0))
            if count == 0 or now >= reset_at:
                count, reset_at = 1, now + window_seconds
            else:
                count += 1
            self._windows[key] = (count, reset_at)
            if len(self._windows) > self._max_keys:
                self._purge_expired(now)
            return count, reset_at - now

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, (_, reset_at) in self._windows.items() if reset_at <= now]
        for key in expired:
            del self._windows[key]


class RedisRateLimitBackend:
    """Shared fixed windows in Redis for multi-instance deployments."""

    def __init__(self, cache: RedisCache | SyncRedisCache) -> None:
        self.cache = cache

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        count, ttl_ms = await self.cache.hit_fixed_window(key, window_seconds)
        return count, ttl_ms / 1000.0


class RateLimiter:
    """Fixed-window request limiter with named per-endpoint policies.

    Keys are namespaced by policy name, so one client address has an
    independent budget for every endpoint class.
    """

    def __init__(
        self,
        backend: RateLimitBackend,
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
    ) -> None:
        self.backend = backend
        self.policies: Dict[str, RateLimitPolicy] = dict(policies or {})

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        cache: RedisCache | SyncRedisCache | None = None,
    ) -> "RateLimiter":
        backend: RateLimitBackend = (
            RedisRateLimitBackend(cache) if cache is not None else MemoryRateLimitBackend()
        )
        policies = [
            RateLimitPolicy("login", settings.rate_limit_login, settings.rate_limit_login_window_seconds),
            RateLimitPolicy(
                "register", settings.rate_limit_register, settings.rate_limit_register_window_seconds
            ),
            RateLimitPolicy(
                "reset-request",
                settings.rate_limit_reset_request,
                settings.rate_limit_reset_request_window_seconds,
            ),
            RateLimitPolicy(
                "reset-confirm",
                settings.rate_limit_reset_confirm,
                settings.rate_limit_reset_confirm_window_seconds,
            ),
            RateLimitPolicy(
                "refresh", settings.rate_limit_refresh, settings.rate_limit_refresh_window_seconds
            ),
            RateLimitPolicy(
                "generic", settings.rate_limit_generic, settings.rate_limit_generic_window_seconds
            ),
        ]
        return cls(backend, {p.name: p for p in policies})

    async def check(self, key: str, window_seconds: int, max_attempts: int) -> RateLimitDecision:
        if max_attempts <= 0:
            return RateLimitDecision(True, 0, max_attempts, 0, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        count, seconds_left = await self.backend.hit(key, window_seconds)
        allowed = count <= max_attempts
        retry_after = min(window_seconds, max(1, math.ceil(seconds_left)))
        return RateLimitDecision(
            allowed=allowed,
            count=count,
            limit=max_attempts,
            remaining=max(0, max_attempts - count),
            retry_after=retry_after,
        )

    async def enforce(self, policy_name: str, client_key: str) -> RateLimitDecision:
        policy = self.policies.get(policy_name)
        if policy is None:
            raise KeyError(f"unknown rate limit policy: {policy_name}")
        decision = await self.check(
            f"{policy.name}:{client_key}", policy.window_seconds, policy.max_attempts
        )
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                policy=policy.name,
                client=client_key,
                count=decision.count,
                retry_after=decision.retry_after,
            )
            raise RateLimitedError(retry_after=decision.retry_after)
        return decision
