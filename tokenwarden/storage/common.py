"""Storage contract and helpers shared between the memory and postgres stores.

Both backends implement :class:`CredentialStore`. Every method is a coroutine
so callers never block the event loop, and every multi-row state change the
services depend on (rotation, code consumption, reset consumption) is exposed
as a single method the backend executes atomically.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from tokenwarden.storage.errors import ConstraintViolation
from tokenwarden.storage.models import (
    PasswordResetToken,
    RotatedSessionToken,
    SessionToken,
    User,
    VerificationCode,
)

# Columns callers may change through ``update_user``
USER_UPDATABLE_FIELDS = frozenset(
    {"email", "display_name", "password_hash", "email_verified"}
)


@runtime_checkable
class CredentialStore(Protocol):
    # users
    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def get_user_by_display_name(self, display_name: str) -> Optional[User]: ...

    async def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        display_name: Optional[str] = None,
        *,
        email_verified: bool = False,
        created_at: Optional[datetime] = None,
    ) -> User: ...

    async def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    async def delete_user(self, user_id: str) -> bool: ...

    async def delete_unverified_users(self, created_before: datetime) -> int: ...

    # session tokens
    async def create_session_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> SessionToken: ...

    async def get_session_token(self, token: str) -> Optional[SessionToken]: ...

    async def delete_session_token(self, token: str) -> bool: ...

    async def rotate_session_token(
        self, old_token: str, new_token: str, expires_at: datetime, now: datetime
    ) -> Optional[SessionToken]: ...

    async def get_rotated_session_token(
        self, token: str
    ) -> Optional[RotatedSessionToken]: ...

    async def list_session_tokens(self, user_id: str) -> List[SessionToken]: ...

    async def delete_user_session_tokens(self, user_id: str) -> int: ...

    # verification codes
    async def create_verification_code(
        self,
        user_id: str,
        email: str,
        code: str,
        expires_at: datetime,
        *,
        created_at: datetime,
        window_start: datetime,
        limit: int,
    ) -> Optional[VerificationCode]: ...

    async def verification_code_times(
        self, email: str, since: datetime
    ) -> List[datetime]: ...

    async def find_verification_code(
        self, email: str, code: str
    ) -> Optional[VerificationCode]: ...

    async def delete_verification_code(self, code_id: str) -> bool: ...

    async def consume_verification_code(self, code_id: str) -> bool: ...

    # password reset tokens
    async def create_password_reset_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> PasswordResetToken: ...

    async def get_password_reset_token(
        self, token: str
    ) -> Optional[PasswordResetToken]: ...

    async def delete_password_reset_token(self, token: str) -> bool: ...

    async def consume_password_reset_token(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[str]: ...

    async def close(self) -> None: ...


def normalize_email(email: str) -> str:
    """Emails are compared case-insensitively and without surrounding space."""
    return email.strip().lower()


def validate_user_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Reject updates to columns outside :data:`USER_UPDATABLE_FIELDS`.

    Raises:
        ConstraintViolation: If an unknown column is named
    """
    unknown = sorted(set(fields) - USER_UPDATABLE_FIELDS)
    if unknown:
        raise ConstraintViolation("unknown user fields", {"fields": unknown})
    normalized = dict(fields)
    if "email" in normalized and normalized["email"] is not None:
        normalized["email"] = normalize_email(normalized["email"])
    return normalized


def generate_uuid() -> str:
    return str(uuid.uuid4())
