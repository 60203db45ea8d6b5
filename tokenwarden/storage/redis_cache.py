from __future__ import annotations

import hashlib
from typing import Optional, Tuple

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for shared rate limit counters."""

    # Atomic fixed-window consume: the first hit in a window sets the expiry,
    # every hit increments. Returns the post-increment count and the window's
    # remaining lifetime in milliseconds.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local cost = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])

local count = redis.call('INCRBY', key, cost)
if count == cost then
  redis.call('PEXPIRE', key, window_ms)
end

local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 1.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str, scope: Optional[str] = None) -> str:
        """Generate collision-resistant rate keys.

        The subject is hashed so delimiter characters in an IP or email cannot
        collide with another scope, and so raw addresses never land in Redis.
        """

        digest = hashlib.sha256(key.encode()).hexdigest()
        scope_prefix = f"{scope}:" if scope else ""
        return f"rate:{scope_prefix}{digest}"

    async def verify_connection(self) -> None:
        """Raise if Redis cannot be reached."""
        await self.client.ping()

    async def consume_rate_limit(
        self,
        key: str,
        window_seconds: int,
        *,
        scope: Optional[str] = None,
        cost: int = 1,
    ) -> Tuple[int, float]:
        """Consume ``cost`` points from a fixed window.

        Returns:
            Tuple of (points consumed in the current window, seconds until reset)
        """

        safe_key = self._normalize_rate_key(key, scope)
        count, ttl_ms = await self._fixed_window(
            keys=[safe_key], args=[max(1, cost), int(window_seconds * 1000)]
        )
        return int(count), max(0.0, int(ttl_ms) / 1000.0)

    async def reset_rate_limit(self, key: str, *, scope: Optional[str] = None) -> None:
        await self.client.delete(self._normalize_rate_key(key, scope))

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
