"""Tests for fixed-window rate limiting.

Invalid windows are logged and default to 60 seconds; a non-positive limit
always passes.
"""

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from movieauth.config import Settings
from movieauth.service.errors import RateLimitedError
from movieauth.service.rate_limit import (
    MemoryRateLimitBackend,
    RateLimiter,
    RateLimitPolicy,
    RedisRateLimitBackend,
)
from movieauth.storage.redis_cache import RedisCache, SyncRedisCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(
        MemoryRateLimitBackend(clock=clock),
        {"login": RateLimitPolicy("login", 5, 900), "refresh": RateLimitPolicy("refresh", 10, 300)},
    )


class TestCheck:
    async def test_allows_up_to_limit(self, limiter):
        for i in range(1, 6):
            decision = await limiter.check("k", 900, 5)
            assert decision.allowed
            assert decision.count == i
            assert decision.remaining == 5 - i
        denied = await limiter.check("k", 900, 5)
        assert not denied.allowed
        assert denied.remaining == 0

    async def test_window_resets(self, limiter, clock):
        for _ in range(6):
            await limiter.check("k", 900, 5)
        clock.now += 900
        decision = await limiter.check("k", 900, 5)
        assert decision.allowed
        assert decision.count == 1

    async def test_retry_after_counts_down(self, limiter, clock):
        await limiter.check("k", 900, 5)
        clock.now += 600
        decision = await limiter.check("k", 900, 5)
        assert decision.retry_after == 300

    async def test_retry_after_at_least_one_second(self, limiter, clock):
        await limiter.check("k", 900, 5)
        clock.now += 899.9
        decision = await limiter.check("k", 900, 5)
        assert decision.retry_after == 1

    async def test_zero_limit_always_passes(self, limiter):
        for _ in range(20):
            assert (await limiter.check("k", 60, 0)).allowed
        assert (await limiter.check("k", 60, -1)).allowed

    async def test_invalid_window_logs_warning(self, limiter):
        with patch("movieauth.service.rate_limit.logger") as mock_logger:
            decision = await limiter.check("k", 0, 10)
        mock_logger.warning.assert_called_once()
        call_args = mock_logger.warning.call_args
        assert call_args[0][0] == "rate_limit_invalid_window"
        assert call_args[1]["window_seconds"] == 0
        assert decision.retry_after == 60

    async def test_valid_window_no_warning(self, limiter):
        with patch("movieauth.service.rate_limit.logger") as mock_logger:
            await limiter.check("k", 60, 10)
        mock_logger.warning.assert_not_called()

    async def test_keys_are_independent(self, limiter):
        for _ in range(5):
            await limiter.check("a", 900, 5)
        assert not (await limiter.check("a", 900, 5)).allowed
        assert (await limiter.check("b", 900, 5)).allowed


class TestEnforce:
    async def test_raises_after_limit(self, limiter):
        for _ in range(5):
            await limiter.enforce("login", "10.0.0.1")
        with pytest.raises(RateLimitedError) as excinfo:
            await limiter.enforce("login", "10.0.0.1")
        assert excinfo.value.status_code == 429
        assert excinfo.value.retry_after == 900
        assert excinfo.value.detail == {"retry_after": 900}

    async def test_policies_count_separately(self, limiter):
        for _ in range(5):
            await limiter.enforce("login", "10.0.0.1")
        decision = await limiter.enforce("refresh", "10.0.0.1")
        assert decision.count == 1

    async def test_denial_is_logged(self, limiter):
        for _ in range(5):
            await limiter.enforce("login", "10.0.0.1")
        with patch("movieauth.service.rate_limit.logger") as mock_logger:
            with pytest.raises(RateLimitedError):
                await limiter.enforce("login", "10.0.0.1")
        assert mock_logger.warning.call_args[0][0] == "rate_limit_exceeded"
        assert mock_logger.warning.call_args[1]["policy"] == "login"

    async def test_unknown_policy(self, limiter):
        with pytest.raises(KeyError):
            await limiter.enforce("nope", "10.0.0.1")


class TestFromSettings:
    def test_default_policies(self):
        limiter = RateLimiter.from_settings(Settings(jwt_secret="x" * 40))
        assert isinstance(limiter.backend, MemoryRateLimitBackend)
        expected = {
            "login": (5, 900),
            "register": (3, 900),
            "reset-request": (3, 3600),
            "reset-confirm": (5, 3600),
            "refresh": (10, 300),
            "generic": (100, 900),
        }
        actual = {
            name: (p.max_attempts, p.window_seconds) for name, p in limiter.policies.items()
        }
        assert actual == expected

    def test_cache_selects_redis_backend(self):
        cache = MagicMock(spec=RedisCache)
        limiter = RateLimiter.from_settings(Settings(jwt_secret="x" * 40), cache)
        assert isinstance(limiter.backend, RedisRateLimitBackend)


class TestMemoryBackend:
    def test_concurrent_hits_are_counted_once_each(self):
        backend = MemoryRateLimitBackend()
        results = []

        def worker():
            for _ in range(50):
                results.append(asyncio.run(backend.hit("shared", 60))[0])

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(results) == list(range(1, 201))

    async def test_purges_expired_keys_over_capacity(self, clock):
        backend = MemoryRateLimitBackend(clock=clock, max_keys=2)
        await backend.hit("a", 10)
        await backend.hit("b", 10)
        clock.now += 11
        await backend.hit("c", 10)
        assert set(backend._windows) == {"c"}


class TestRedisBackend:
    async def test_converts_milliseconds(self):
        cache = MagicMock(spec=RedisCache)
        cache.hit_fixed_window = AsyncMock(return_value=(3, 4500))
        backend = RedisRateLimitBackend(cache)
        assert await backend.hit("login:1.2.3.4", 900) == (3, 4.5)
        cache.hit_fixed_window.assert_awaited_once_with("login:1.2.3.4", 900)

    async def test_sync_cache_hashes_keys(self):
        cache = SyncRedisCache.__new__(SyncRedisCache)
        cache._fixed_window = MagicMock(return_value=[2, 1000])
        count, ttl_ms = await cache.hit_fixed_window("login:1.2.3.4", 900)
        assert (count, ttl_ms) == (2, 1000)
        kwargs = cache._fixed_window.call_args[1]
        assert kwargs["keys"][0].startswith("rate:")
        assert "1.2.3.4" not in kwargs["keys"][0]
        assert kwargs["args"] == [900_000]
