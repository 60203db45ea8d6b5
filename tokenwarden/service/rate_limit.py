"""Point-bucket request throttling with a shared primary and a local fallback.

Each ``(scope, subject)`` key gets ``points`` attempts per fixed window of
``window_seconds``. Redis holds the shared counters; when it errors or times
out the request is let through (fail-open) and the limiter serves traffic from
process-local counters for a cooldown period before probing Redis again.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Tuple

from redis.exceptions import RedisError

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import BackendUnavailableError, RateLimitedError
from tokenwarden.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_LOCAL_PRUNE_THRESHOLD = 10000


class RateLimitScope(str, Enum):
    AUTH = "auth"
    API = "api"
    # Enforced from verification code row counts, never by this limiter
    VERIFICATION_EMAIL = "verification_email"


@dataclass(frozen=True)
class RateLimitPolicy:
    points: int
    window_seconds: int

    def __post_init__(self) -> None:
        if self.points <= 0 or self.window_seconds <= 0:
            raise ValueError("rate limit points and window must be positive")


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_seconds: float
    backend: str


class LimiterBackend(Protocol):
    name: str

    async def consume(
        self, key: str, points: int, window_seconds: int
    ) -> RateLimitResult: ...


class RedisLimiterBackend:
    """Shared fixed-window counters in Redis with a hard per-call deadline."""

    name = "redis"

    def __init__(self, cache: RedisCache, *, timeout_seconds: float = 0.25) -> None:
        self.cache = cache
        self.timeout_seconds = timeout_seconds

    async def consume(
        self, key: str, points: int, window_seconds: int
    ) -> RateLimitResult:
        try:
            count, reset_seconds = await asyncio.wait_for(
                self.cache.consume_rate_limit(key, window_seconds),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise BackendUnavailableError("rate limit backend timed out") from exc
        except (RedisError, OSError) as exc:
            raise BackendUnavailableError("rate limit backend unavailable") from exc
        return RateLimitResult(
            allowed=count <= points,
            remaining=max(0, points - count),
            reset_seconds=reset_seconds,
            backend=self.name,
        )


class LocalLimiterBackend:
    """Process-local fixed-window counters guarded by an asyncio lock."""

    name = "local"

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._buckets: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def consume(
        self, key: str, points: int, window_seconds: int
    ) -> RateLimitResult:
        async with self._lock:
            now = self._clock()
            count, reset_at = self._buckets.get(key, (0, now + window_seconds))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._buckets[key] = (count, reset_at)
            if len(self._buckets) > _LOCAL_PRUNE_THRESHOLD:
                self._prune(now)
        return RateLimitResult(
            allowed=count <= points,
            remaining=max(0, points - count),
            reset_seconds=max(0.0, reset_at - now),
            backend=self.name,
        )

    def _prune(self, now: float) -> None:
        for key, (_, reset_at) in list(self._buckets.items()):
            if now >= reset_at:
                self._buckets.pop(key, None)

    def reset(self) -> None:
        self._buckets.clear()


@dataclass(frozen=True)
class _BackendState:
    """Immutable snapshot of which backend serves traffic.

    Swapped as a whole so a reader never sees a half-updated selection.
    """

    backend: LimiterBackend
    degraded_until: Optional[float] = None


class RateLimiter:
    def __init__(
        self,
        policies: Dict[RateLimitScope, RateLimitPolicy],
        *,
        fallback: LocalLimiterBackend,
        primary: Optional[LimiterBackend] = None,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if RateLimitScope.VERIFICATION_EMAIL in policies:
            raise ValueError("verification email limits are enforced by the code store")
        self.policies = dict(policies)
        self.primary = primary
        self.fallback = fallback
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._state = _BackendState(backend=primary or fallback)

    @property
    def active_backend(self) -> str:
        return self._state.backend.name

    def policy_for(self, scope: RateLimitScope) -> RateLimitPolicy:
        policy = self.policies.get(scope)
        if policy is None:
            raise ValueError(f"no rate limit policy for scope {scope!r}")
        return policy

    def degrade(self, reason: str) -> None:
        """Route traffic to the local backend for one cooldown period."""
        if self.primary is None:
            return
        self._state = _BackendState(
            backend=self.fallback,
            degraded_until=self._clock() + self.cooldown_seconds,
        )
        logger.warning(
            "rate_limit_fallback_engaged",
            reason=reason,
            cooldown_seconds=self.cooldown_seconds,
        )

    def _select(self) -> LimiterBackend:
        state = self._state
        if (
            state.degraded_until is not None
            and self.primary is not None
            and self._clock() >= state.degraded_until
        ):
            self._state = _BackendState(backend=self.primary)
            logger.info("rate_limit_primary_restored", backend=self.primary.name)
            return self.primary
        return state.backend

    async def consume(self, scope: RateLimitScope, subject: str) -> RateLimitResult:
        """Consume one point for ``subject`` without raising on exhaustion."""
        policy = self.policy_for(scope)
        key = f"{scope.value}:{subject}"
        backend = self._select()
        try:
            return await backend.consume(key, policy.points, policy.window_seconds)
        except BackendUnavailableError as exc:
            logger.error(
                "rate_limit_backend_unavailable",
                backend=backend.name,
                scope=scope.value,
                error=exc.message,
                cause=type(exc.__cause__).__name__ if exc.__cause__ else None,
            )
            if backend is self.primary:
                self.degrade(exc.message)
            return RateLimitResult(
                allowed=True,
                remaining=policy.points,
                reset_seconds=0.0,
                backend="fail_open",
            )

    async def check(self, scope: RateLimitScope, subject: str) -> RateLimitResult:
        """Consume one point and raise :class:`RateLimitedError` when exhausted."""
        result = await self.consume(scope, subject)
        if not result.allowed:
            logger.info(
                "rate_limited",
                scope=scope.value,
                backend=result.backend,
                retry_after=result.reset_seconds,
            )
            raise RateLimitedError(retry_after=result.reset_seconds)
        return result
