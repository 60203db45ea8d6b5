"""Daily sweep removing accounts that never verified their email.

Deleting a user cascades to its session tokens, verification codes and reset
tokens in the store.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from tokenwarden.logging import get_logger
from tokenwarden.storage.common import CredentialStore

logger = get_logger(__name__)

DEFAULT_GRACE_DAYS = 3
DEFAULT_RUN_AT = (3, 0)
MAX_BACKOFF_SECONDS = 3600


class GhostAccountReaper:
    def __init__(
        self,
        store: CredentialStore,
        *,
        grace_days: int = DEFAULT_GRACE_DAYS,
        run_at: tuple[int, int] = DEFAULT_RUN_AT,
    ) -> None:
        self.store = store
        self.grace_period = timedelta(days=grace_days)
        self.run_at = run_at
        self.last_run_at: Optional[datetime] = None
        self.last_deleted: int = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def next_run(self, now: datetime) -> datetime:
        hour, minute = self.run_at
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    def seconds_until_next_run(self, now: Optional[datetime] = None) -> float:
        now = now or self._now()
        return (self.next_run(now) - now).total_seconds()

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """Delete unverified users created before ``now - grace period``."""
        now = now or self._now()
        cutoff = now - self.grace_period
        deleted = await self.store.delete_unverified_users(cutoff)
        self.last_run_at = now
        self.last_deleted = deleted
        logger.info("ghost_accounts_reaped", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted

    async def start(self) -> None:
        """Start the background schedule."""
        if self._running:
            logger.warning("ghost_account_reaper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "ghost_account_reaper_started",
            run_at=f"{self.run_at[0]:02d}:{self.run_at[1]:02d}",
            grace_days=self.grace_period.days,
        )

    async def stop(self) -> None:
        """Stop the background schedule."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("ghost_account_reaper_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            if consecutive_errors:
                delay = min(MAX_BACKOFF_SECONDS, 60 * (2 ** (consecutive_errors - 1)))
            else:
                delay = self.seconds_until_next_run()
            await asyncio.sleep(delay)
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "ghost_account_reaper_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
