from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    display_name: Optional[str] = None
    # None for identities authenticated by an external provider
    password_hash: Optional[str] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass
class SessionToken:
    """Persisted refresh credential; one row per live session lineage."""

    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class RotatedSessionToken:
    """Tombstone left behind when a session token is rotated away.

    Lets a replayed token be told apart from one that never existed.
    """

    token: str
    user_id: str
    replaced_by: str
    rotated_at: datetime
    expires_at: datetime


@dataclass
class VerificationCode:
    id: str
    user_id: str
    email: str
    code: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        email: str,
        code: str,
        expires_at: datetime,
        *,
        created_at: Optional[datetime] = None,
    ) -> "VerificationCode":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            email=email,
            code=code,
            expires_at=expires_at,
            created_at=created_at or utcnow(),
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class PasswordResetToken:
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
