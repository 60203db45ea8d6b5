from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from tokenwarden.config import Settings
from tokenwarden.logging import get_logger
from tokenwarden.service.errors import InvalidResetTokenError
from tokenwarden.service.notifications import NotificationDispatcher
from tokenwarden.storage.common import CredentialStore

logger = get_logger(__name__)

RESET_TOKEN_BYTES = 32


class PasswordResetService:
    """Opaque single-use password reset tokens."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.dispatcher = dispatcher

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def token_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.password_reset_ttl_minutes)

    async def request_reset(self, email: str) -> Optional[str]:
        """Create and send a reset token if ``email`` belongs to a user.

        Returns the token, or None for unknown addresses. Callers must not let
        the difference reach the client.
        """
        user = await self.store.get_user_by_email(email)
        if user is None:
            logger.info("password_reset_requested", known_user=False)
            return None
        token = secrets.token_hex(RESET_TOKEN_BYTES)
        row = await self.store.create_password_reset_token(
            token, user.id, self._now() + self.token_ttl
        )
        logger.info(
            "password_reset_requested",
            known_user=True,
            user_id=user.id,
            expires_at=row.expires_at.isoformat(),
        )
        if self.dispatcher is not None:
            self.dispatcher.send_password_reset_link(user.email, token, user_id=user.id)
        return token

    async def consume(self, token: str, password_hash: str) -> str:
        """Replace the user's password hash and burn ``token`` in one transaction.

        Returns the user id whose password changed.

        Raises:
            InvalidResetTokenError: If the token is unknown, expired or already used
        """
        now = self._now()
        user_id = await self.store.consume_password_reset_token(token, password_hash, now)
        if user_id is not None:
            logger.info("password_reset_completed", user_id=user_id)
            return user_id
        # Opportunistic cleanup so an expired row does not linger
        row = await self.store.get_password_reset_token(token)
        if row is not None and row.is_expired(now):
            await self.store.delete_password_reset_token(token)
            logger.info("password_reset_rejected", reason="expired", user_id=row.user_id)
        else:
            logger.info("password_reset_rejected", reason="not_found")
        raise InvalidResetTokenError()
