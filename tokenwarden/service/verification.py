from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from tokenwarden.config import Settings
from tokenwarden.logging import get_logger
from tokenwarden.service.errors import (
    InvalidVerificationCodeError,
    RateLimitedError,
    ValidationError,
)
from tokenwarden.service.notifications import NotificationDispatcher
from tokenwarden.storage.common import CredentialStore
from tokenwarden.storage.errors import ConstraintViolation

logger = get_logger(__name__)

CODE_PATTERN = re.compile(r"^\d{6}$")
QUOTA_WINDOW = timedelta(hours=1)


def generate_code() -> str:
    """Uniform six digit string; leading zeros are significant."""
    return f"{secrets.randbelow(10**6):06d}"


class VerificationCodeService:
    """Short-lived numeric codes proving ownership of an email address.

    The hourly quota is counted from code rows keyed by email, so it survives
    restarts of the rate limit backend and applies per address rather than per
    client IP.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        dispatcher: Optional[NotificationDispatcher] = None,
        *,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self.store = store
        self.settings = settings
        self.dispatcher = dispatcher
        self.code_factory = code_factory

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def code_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.verification_code_ttl_minutes)

    @property
    def hourly_limit(self) -> int:
        return self.settings.verification_code_hourly_limit

    async def _retry_after(self, email: str, window_start: datetime, now: datetime) -> float:
        times = await self.store.verification_code_times(email, window_start)
        if len(times) < self.hourly_limit:
            return 1.0
        # A slot frees up when the oldest code still counted ages out
        frees_at = times[len(times) - self.hourly_limit] + QUOTA_WINDOW
        return max(1.0, (frees_at - now).total_seconds())

    async def check_quota(self, email: str) -> None:
        """Raise :class:`RateLimitedError` if ``email`` has no issuance left this hour."""
        now = self._now()
        window_start = now - QUOTA_WINDOW
        times = await self.store.verification_code_times(email, window_start)
        if len(times) >= self.hourly_limit:
            raise RateLimitedError(
                "too many verification emails; try again later",
                retry_after=await self._retry_after(email, window_start, now),
            )

    async def issue(self, user_id: str, email: str) -> str:
        """Create a code for ``email`` and enqueue its delivery.

        Delivery failures are reported by the dispatcher and do not remove the
        row, so failed sends still count against the hourly quota.
        """
        now = self._now()
        window_start = now - QUOTA_WINDOW
        code = self.code_factory()
        try:
            row = await self.store.create_verification_code(
                user_id,
                email,
                code,
                now + self.code_ttl,
                created_at=now,
                window_start=window_start,
                limit=self.hourly_limit,
            )
        except ConstraintViolation as exc:
            raise ValidationError("unknown user", detail=exc.detail) from exc
        if row is None:
            retry_after = await self._retry_after(email, window_start, now)
            logger.info(
                "verification_code_quota_exhausted",
                user_id=user_id,
                limit=self.hourly_limit,
            )
            raise RateLimitedError(
                "too many verification emails; try again later",
                retry_after=retry_after,
            )
        logger.info(
            "verification_code_issued",
            user_id=user_id,
            expires_at=row.expires_at.isoformat(),
        )
        if self.dispatcher is not None:
            self.dispatcher.send_verification_code(row.email, code, user_id=user_id)
        return code

    async def consume(self, email: str, code: str) -> str:
        """Verify ``email`` with ``code`` and return the verified user's id.

        Raises:
            ValidationError: If ``code`` is not exactly six digits
            InvalidVerificationCodeError: If no live code matches
        """
        if not isinstance(code, str) or not CODE_PATTERN.match(code):
            raise ValidationError("verification code must be 6 digits")
        now = self._now()
        row = await self.store.find_verification_code(email, code)
        if row is None:
            logger.info("verification_code_rejected", reason="not_found")
            raise InvalidVerificationCodeError()
        if row.is_expired(now):
            await self.store.delete_verification_code(row.id)
            logger.info("verification_code_rejected", reason="expired", user_id=row.user_id)
            raise InvalidVerificationCodeError()
        if not await self.store.consume_verification_code(row.id):
            # A concurrent consume removed the row first
            logger.info("verification_code_rejected", reason="consumed", user_id=row.user_id)
            raise InvalidVerificationCodeError()
        logger.info("email_verified", user_id=row.user_id)
        return row.user_id
