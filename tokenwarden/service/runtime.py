from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from tokenwarden.config import Settings
from tokenwarden.logging import get_logger
from tokenwarden.service.auth import AuthService
from tokenwarden.service.email import EmailService
from tokenwarden.service.notifications import NotificationDispatcher, Notifier
from tokenwarden.service.password_reset import PasswordResetService
from tokenwarden.service.rate_limit import (
    LocalLimiterBackend,
    RateLimiter,
    RateLimitPolicy,
    RateLimitScope,
    RedisLimiterBackend,
)
from tokenwarden.service.reaper import GhostAccountReaper
from tokenwarden.service.tokens import TokenService
from tokenwarden.service.verification import VerificationCodeService
from tokenwarden.storage.memory import MemoryStore
from tokenwarden.storage.postgres import PostgresStore
from tokenwarden.storage.redis_cache import RedisCache

logger = get_logger(__name__)

NOTIFICATION_DRAIN_TIMEOUT_SECONDS = 10.0


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_policies(settings: Settings) -> dict[RateLimitScope, RateLimitPolicy]:
    return {
        RateLimitScope.AUTH: RateLimitPolicy(
            settings.auth_rate_limit_points, settings.auth_rate_limit_window_seconds
        ),
        RateLimitScope.API: RateLimitPolicy(
            settings.api_rate_limit_points, settings.api_rate_limit_window_seconds
        ),
    }


class Runtime:
    """Builds every long-lived collaborator once and owns their lifecycle.

    Handles are passed explicitly to the services that need them; nothing is
    stashed in module globals.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[Union[MemoryStore, PostgresStore]] = None,
        cache: Optional[RedisCache] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.settings = settings
        if store is not None:
            self.store = store
        elif settings.use_memory_store:
            self.store = MemoryStore()
        else:
            self.store = PostgresStore(settings.database_url)
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if isinstance(self.store, MemoryStore) else "postgres",
        )

        self.cache = cache
        if self.cache is None and settings.redis_url:
            self.cache = RedisCache(
                settings.redis_url,
                socket_timeout=settings.rate_limit_backend_timeout_seconds,
            )

        self.email = EmailService.from_settings(settings)
        self.dispatcher = NotificationDispatcher(notifier or self.email)

        self.local_limiter = LocalLimiterBackend()
        self.redis_limiter = (
            RedisLimiterBackend(
                self.cache, timeout_seconds=settings.rate_limit_backend_timeout_seconds
            )
            if self.cache is not None
            else None
        )
        self.rate_limiter = RateLimiter(
            build_policies(settings),
            primary=self.redis_limiter,
            fallback=self.local_limiter,
            cooldown_seconds=settings.rate_limit_fallback_cooldown_seconds,
        )

        self.tokens = TokenService(self.store, settings)
        self.verification = VerificationCodeService(self.store, settings, self.dispatcher)
        self.password_reset = PasswordResetService(self.store, settings, self.dispatcher)
        self.auth = AuthService(
            self.store,
            settings,
            tokens=self.tokens,
            verification=self.verification,
            password_reset=self.password_reset,
            rate_limiter=self.rate_limiter,
        )
        self.reaper = GhostAccountReaper(
            self.store,
            grace_days=settings.reaper_grace_days,
            run_at=settings.reaper_run_at_parts,
        )
        self._started = False

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            reaper_enabled=settings.reaper_enabled,
            revoke_sessions_on_token_reuse=settings.revoke_sessions_on_token_reuse,
        )

    async def start(self) -> None:
        if self._started:
            return
        if isinstance(self.store, PostgresStore):
            await self.store.open()
            await self.store.ensure_schema()
        if self.cache is not None:
            try:
                await self.cache.verify_connection()
            except (RedisError, OSError) as exc:
                # Keep the primary so it is probed again after the cooldown
                logger.warning(
                    "redis_unreachable_at_startup",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                self.rate_limiter.degrade("unreachable at startup")
        if self.settings.reaper_enabled:
            await self.reaper.start()
        self._started = True
        logger.info("runtime_started", rate_limit_backend=self.rate_limiter.active_backend)

    async def close(self) -> None:
        await self.reaper.stop()
        await self.dispatcher.drain(timeout=NOTIFICATION_DRAIN_TIMEOUT_SECONDS)
        if self.cache is not None:
            await self.cache.close()
        await self.store.close()
        self._started = False
        logger.info("runtime_closed")

    async def __aenter__(self) -> "Runtime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
