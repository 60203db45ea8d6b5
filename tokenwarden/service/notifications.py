"""Fire-and-forget delivery of verification codes and reset links.

State changes commit before a notification is enqueued. Delivery runs in its
own task; a failure is logged and counted but never propagates back into the
operation that triggered it.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, Protocol, Set

from tokenwarden.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    async def send_verification_code(self, to_email: str, code: str) -> bool: ...

    async def send_password_reset_link(self, to_email: str, token: str) -> bool: ...


class NotificationDispatcher:
    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier
        self._tasks: Set[asyncio.Task] = set()
        self.delivered = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def send_verification_code(
        self, email: str, code: str, *, user_id: Optional[str] = None
    ) -> asyncio.Task:
        return self.dispatch(
            "verification_code",
            self.notifier.send_verification_code(email, code),
            user_id=user_id,
        )

    def send_password_reset_link(
        self, email: str, token: str, *, user_id: Optional[str] = None
    ) -> asyncio.Task:
        return self.dispatch(
            "password_reset_link",
            self.notifier.send_password_reset_link(email, token),
            user_id=user_id,
        )

    def dispatch(
        self, name: str, delivery: Awaitable[bool], *, user_id: Optional[str] = None
    ) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(name, delivery, user_id))
        # Hold a reference until completion so the task is not collected early
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(
        self, name: str, delivery: Awaitable[bool], user_id: Optional[str]
    ) -> bool:
        try:
            delivered = await delivery
        except asyncio.CancelledError:
            logger.warning("notification_cancelled", notification=name, user_id=user_id)
            raise
        except Exception as exc:
            self.failed += 1
            logger.error(
                "notification_failed",
                notification=name,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not delivered:
            self.failed += 1
            logger.warning("notification_undelivered", notification=name, user_id=user_id)
            return False
        self.delivered += 1
        return True

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries, cancelling any still running at ``timeout``."""
        if not self._tasks:
            return
        pending_tasks = set(self._tasks)
        _, still_running = await asyncio.wait(pending_tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("notifications_abandoned", count=len(still_running))
