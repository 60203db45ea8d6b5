"""Tests for point-bucket rate limiting.

Per-key allowance of N points per window, Redis as the shared primary and a
process-local fallback. Backend failures fail open and switch traffic to the
local counters for a cooldown period.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tokenwarden.service.errors import RateLimitedError
from tokenwarden.service.rate_limit import (
    LocalLimiterBackend,
    RateLimiter,
    RateLimitPolicy,
    RateLimitScope,
    RedisLimiterBackend,
)
from tokenwarden.storage.redis_cache import RedisCache


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


POLICIES = {
    RateLimitScope.AUTH: RateLimitPolicy(points=10, window_seconds=3600),
    RateLimitScope.API: RateLimitPolicy(points=100, window_seconds=900),
}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def local_limiter(clock):
    return RateLimiter(POLICIES, fallback=LocalLimiterBackend(clock=clock), clock=clock)


def _redis_backend(**cache_kwargs):
    cache = AsyncMock(spec=RedisCache)
    cache.consume_rate_limit = AsyncMock(**cache_kwargs)
    return cache, RedisLimiterBackend(cache, timeout_seconds=0.05)


class TestPolicies:
    def test_non_positive_policy_rejected(self):
        with pytest.raises(ValueError):
            RateLimitPolicy(points=0, window_seconds=60)
        with pytest.raises(ValueError):
            RateLimitPolicy(points=5, window_seconds=0)

    def test_verification_scope_not_handled_by_limiter(self, clock):
        policies = {**POLICIES, RateLimitScope.VERIFICATION_EMAIL: RateLimitPolicy(3, 3600)}
        with pytest.raises(ValueError):
            RateLimiter(policies, fallback=LocalLimiterBackend(clock=clock))

    async def test_unconfigured_scope_rejected(self, clock):
        limiter = RateLimiter(
            {RateLimitScope.AUTH: RateLimitPolicy(10, 3600)},
            fallback=LocalLimiterBackend(clock=clock),
        )
        with pytest.raises(ValueError):
            await limiter.consume(RateLimitScope.API, "10.0.0.1")


class TestLocalBackend:
    async def test_exactly_n_attempts_allowed(self, local_limiter):
        for attempt in range(10):
            result = await local_limiter.check(RateLimitScope.AUTH, "10.0.0.1")
            assert result.allowed
            assert result.remaining == 9 - attempt

        with pytest.raises(RateLimitedError) as exc_info:
            await local_limiter.check(RateLimitScope.AUTH, "10.0.0.1")
        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 3600

    async def test_window_rollover_resets_count(self, local_limiter, clock):
        for _ in range(10):
            await local_limiter.check(RateLimitScope.AUTH, "10.0.0.1")

        clock.advance(1800)
        with pytest.raises(RateLimitedError) as exc_info:
            await local_limiter.check(RateLimitScope.AUTH, "10.0.0.1")
        assert exc_info.value.retry_after == 1800

        clock.advance(1800)
        result = await local_limiter.check(RateLimitScope.AUTH, "10.0.0.1")
        assert result.allowed
        assert result.remaining == 9

    async def test_scopes_and_subjects_are_independent(self, local_limiter):
        for _ in range(10):
            await local_limiter.check(RateLimitScope.AUTH, "10.0.0.1")

        assert (await local_limiter.consume(RateLimitScope.API, "10.0.0.1")).allowed
        assert (await local_limiter.consume(RateLimitScope.AUTH, "10.0.0.2")).allowed

    async def test_concurrent_increments_do_not_lose_counts(self, local_limiter):
        results = await asyncio.gather(
            *(local_limiter.consume(RateLimitScope.AUTH, "10.0.0.1") for _ in range(25))
        )

        assert sum(r.allowed for r in results) == 10

    async def test_reset_clears_counters(self, clock):
        backend = LocalLimiterBackend(clock=clock)
        await backend.consume("auth:x", 1, 60)
        backend.reset()

        assert (await backend.consume("auth:x", 1, 60)).allowed


class TestRedisPrimary:
    async def test_counts_from_redis(self, clock):
        cache, primary = _redis_backend(return_value=(3, 120.0))
        limiter = RateLimiter(
            POLICIES, primary=primary, fallback=LocalLimiterBackend(clock=clock), clock=clock
        )

        result = await limiter.check(RateLimitScope.AUTH, "10.0.0.1")

        assert result.backend == "redis"
        assert result.remaining == 7
        cache.consume_rate_limit.assert_awaited_once_with("auth:10.0.0.1", 3600)

    async def test_exceeded_in_redis_rejects_with_retry_after(self, clock):
        _, primary = _redis_backend(return_value=(11, 119.2))
        limiter = RateLimiter(
            POLICIES, primary=primary, fallback=LocalLimiterBackend(clock=clock), clock=clock
        )

        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.check(RateLimitScope.AUTH, "10.0.0.1")
        assert exc_info.value.retry_after == 120

    async def test_connection_error_fails_open_and_degrades(self, clock):
        cache, primary = _redis_backend(side_effect=RedisConnectionError("refused"))
        limiter = RateLimiter(
            POLICIES,
            primary=primary,
            fallback=LocalLimiterBackend(clock=clock),
            cooldown_seconds=30,
            clock=clock,
        )

        with patch("tokenwarden.service.rate_limit.logger") as mock_logger:
            result = await limiter.check(RateLimitScope.AUTH, "10.0.0.1")

        assert result.allowed
        assert result.backend == "fail_open"
        assert limiter.active_backend == "local"
        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args[0][0] == "rate_limit_backend_unavailable"
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "rate_limit_fallback_engaged"

        # Served locally during the cooldown without touching Redis
        follow_up = await limiter.check(RateLimitScope.AUTH, "10.0.0.1")
        assert follow_up.backend == "local"
        assert cache.consume_rate_limit.await_count == 1

    async def test_timeout_fails_open(self, clock):
        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        _, primary = _redis_backend(side_effect=hang)
        limiter = RateLimiter(
            POLICIES, primary=primary, fallback=LocalLimiterBackend(clock=clock), clock=clock
        )

        result = await limiter.check(RateLimitScope.AUTH, "10.0.0.1")

        assert result.allowed
        assert result.backend == "fail_open"
        assert limiter.active_backend == "local"

    async def test_primary_restored_after_cooldown(self, clock):
        cache, primary = _redis_backend(side_effect=[OSError("reset by peer"), (1, 3600.0)])
        limiter = RateLimiter(
            POLICIES,
            primary=primary,
            fallback=LocalLimiterBackend(clock=clock),
            cooldown_seconds=30,
            clock=clock,
        )
        await limiter.consume(RateLimitScope.AUTH, "10.0.0.1")
        assert limiter.active_backend == "local"

        clock.advance(31)
        result = await limiter.consume(RateLimitScope.AUTH, "10.0.0.1")

        assert result.backend == "redis"
        assert limiter.active_backend == "redis"

    async def test_local_limit_enforced_while_degraded(self, clock):
        _, primary = _redis_backend(side_effect=RedisConnectionError("refused"))
        limiter = RateLimiter(
            POLICIES, primary=primary, fallback=LocalLimiterBackend(clock=clock), clock=clock
        )
        limiter.degrade("test")

        for _ in range(10):
            await limiter.check(RateLimitScope.AUTH, "10.0.0.1")
        with pytest.raises(RateLimitedError):
            await limiter.check(RateLimitScope.AUTH, "10.0.0.1")

    def test_degrade_without_primary_is_noop(self, local_limiter):
        local_limiter.degrade("nothing to degrade")
        assert local_limiter.active_backend == "local"


class TestRedisCache:
    def test_rate_key_hashes_subject(self):
        key = RedisCache._normalize_rate_key("auth:user@example.com", "login")

        assert key.startswith("rate:login:")
        assert "user@example.com" not in key
        assert key != RedisCache._normalize_rate_key("auth:user@example.com", "other")

    async def test_consume_runs_fixed_window_script(self):
        cache = RedisCache("redis://localhost:6379/15")
        cache._fixed_window = AsyncMock(return_value=[4, 59000])

        count, reset_seconds = await cache.consume_rate_limit("auth:10.0.0.1", 60)

        assert count == 4
        assert reset_seconds == 59.0
        kwargs = cache._fixed_window.call_args.kwargs
        assert kwargs["args"] == [1, 60000]
        assert kwargs["keys"] == [RedisCache._normalize_rate_key("auth:10.0.0.1")]
        await cache.close()
