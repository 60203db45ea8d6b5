from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from tokenwarden.logging import get_logger
from tokenwarden.storage.common import (
    generate_uuid,
    normalize_email,
    validate_user_fields,
)
from tokenwarden.storage.errors import ConstraintViolation
from tokenwarden.storage.models import (
    PasswordResetToken,
    RotatedSessionToken,
    SessionToken,
    User,
    VerificationCode,
    utcnow,
)


class MemoryStore:
    """In-process credential store for tests and single-node development.

    Every public method takes ``_data_lock`` for its whole critical section, so
    compound operations (rotation, consumption) are atomic with respect to each
    other. The lock is never held across an ``await``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.session_tokens: Dict[str, SessionToken] = {}
        self.rotated_tokens: Dict[str, RotatedSessionToken] = {}
        self.verification_codes: Dict[str, VerificationCode] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock so helpers can re-enter from within a locked public method
        self._data_lock = threading.RLock()

    # users
    async def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        display_name: Optional[str] = None,
        *,
        email_verified: bool = False,
        created_at: Optional[datetime] = None,
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if display_name and any(
                existing.display_name == display_name for existing in self.users.values()
            ):
                raise ConstraintViolation(
                    "display name already exists", {"field": "display_name"}
                )
            user = User(
                id=generate_uuid(),
                email=email,
                display_name=display_name,
                password_hash=password_hash,
                email_verified=email_verified,
                created_at=created_at or utcnow(),
            )
            self.users[user.id] = user
            return user

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    async def get_user_by_display_name(self, display_name: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.display_name == display_name),
                None,
            )

    async def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        updates = validate_user_fields(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_email = updates.get("email")
            if new_email and any(
                u.email == new_email and u.id != user_id for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            new_name = updates.get("display_name")
            if new_name and any(
                u.display_name == new_name and u.id != user_id
                for u in self.users.values()
            ):
                raise ConstraintViolation(
                    "display name already exists", {"field": "display_name"}
                )
            for name, value in updates.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            return user

    async def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            return self._delete_user_locked(user_id)

    def _delete_user_locked(self, user_id: str) -> bool:
        if user_id not in self.users:
            return False
        self.users.pop(user_id, None)
        # Cascade to every credential row owned by the user
        for token, row in list(self.session_tokens.items()):
            if row.user_id == user_id:
                self.session_tokens.pop(token, None)
        for token, row in list(self.rotated_tokens.items()):
            if row.user_id == user_id:
                self.rotated_tokens.pop(token, None)
        for code_id, row in list(self.verification_codes.items()):
            if row.user_id == user_id:
                self.verification_codes.pop(code_id, None)
        for token, row in list(self.reset_tokens.items()):
            if row.user_id == user_id:
                self.reset_tokens.pop(token, None)
        return True

    async def delete_unverified_users(self, created_before: datetime) -> int:
        with self._data_lock:
            stale = [
                u.id
                for u in self.users.values()
                if not u.email_verified and u.created_at < created_before
            ]
            for user_id in stale:
                self._delete_user_locked(user_id)
            return len(stale)

    # session tokens
    async def create_session_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> SessionToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if token in self.session_tokens:
                raise ConstraintViolation("session token collision", {"field": "token"})
            row = SessionToken(token=token, user_id=user_id, expires_at=expires_at)
            self.session_tokens[token] = row
            return row

    async def get_session_token(self, token: str) -> Optional[SessionToken]:
        with self._data_lock:
            return self.session_tokens.get(token)

    async def delete_session_token(self, token: str) -> bool:
        with self._data_lock:
            return self.session_tokens.pop(token, None) is not None

    async def rotate_session_token(
        self, old_token: str, new_token: str, expires_at: datetime, now: datetime
    ) -> Optional[SessionToken]:
        with self._data_lock:
            old = self.session_tokens.get(old_token)
            if old is None or old.is_expired(now):
                return None
            if new_token in self.session_tokens:
                raise ConstraintViolation("session token collision", {"field": "token"})
            self.session_tokens.pop(old_token, None)
            row = SessionToken(
                token=new_token, user_id=old.user_id, expires_at=expires_at, created_at=now
            )
            self.session_tokens[new_token] = row
            self._prune_rotated_locked(now)
            self.rotated_tokens[old_token] = RotatedSessionToken(
                token=old_token,
                user_id=old.user_id,
                replaced_by=new_token,
                rotated_at=now,
                expires_at=old.expires_at,
            )
            return row

    def _prune_rotated_locked(self, now: datetime) -> None:
        for token, row in list(self.rotated_tokens.items()):
            if row.expires_at <= now:
                self.rotated_tokens.pop(token, None)

    async def get_rotated_session_token(
        self, token: str
    ) -> Optional[RotatedSessionToken]:
        with self._data_lock:
            return self.rotated_tokens.get(token)

    async def list_session_tokens(self, user_id: str) -> List[SessionToken]:
        with self._data_lock:
            rows = [t for t in self.session_tokens.values() if t.user_id == user_id]
        return sorted(rows, key=lambda t: t.created_at)

    async def delete_user_session_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [
                token
                for token, row in self.session_tokens.items()
                if row.user_id == user_id
            ]
            for token in stale:
                self.session_tokens.pop(token, None)
            return len(stale)

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
    ) -> Optional[VerificationCode]:
        email = normalize_email(email)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            recent = sum(
                1
                for row in self.verification_codes.values()
                if row.email == email and row.created_at >= window_start
            )
            if recent >= limit:
                return None
            row = VerificationCode.new(
                user_id, email, code, expires_at, created_at=created_at
            )
            self.verification_codes[row.id] = row
            return row

    async def verification_code_times(
        self, email: str, since: datetime
    ) -> List[datetime]:
        email = normalize_email(email)
        with self._data_lock:
            times = [
                row.created_at
                for row in self.verification_codes.values()
                if row.email == email and row.created_at >= since
            ]
        return sorted(times)

    async def find_verification_code(
        self, email: str, code: str
    ) -> Optional[VerificationCode]:
        email = normalize_email(email)
        with self._data_lock:
            return next(
                (
                    row
                    for row in self.verification_codes.values()
                    if row.email == email and row.code == code
                ),
                None,
            )

    async def delete_verification_code(self, code_id: str) -> bool:
        with self._data_lock:
            return self.verification_codes.pop(code_id, None) is not None

    async def consume_verification_code(self, code_id: str) -> bool:
        with self._data_lock:
            row = self.verification_codes.pop(code_id, None)
            if row is None:
                return False
            user = self.users.get(row.user_id)
            if user is not None:
                user.email_verified = True
                user.updated_at = utcnow()
            return True

    # password reset tokens
    async def create_password_reset_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> PasswordResetToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            row = PasswordResetToken(token=token, user_id=user_id, expires_at=expires_at)
            self.reset_tokens[token] = row
            return row

    async def get_password_reset_token(
        self, token: str
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            return self.reset_tokens.get(token)

    async def delete_password_reset_token(self, token: str) -> bool:
        with self._data_lock:
            return self.reset_tokens.pop(token, None) is not None

    async def consume_password_reset_token(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[str]:
        with self._data_lock:
            row = self.reset_tokens.get(token)
            if row is None or row.is_expired(now):
                return None
            user = self.users.get(row.user_id)
            if user is None:
                return None
            self.reset_tokens.pop(token, None)
            user.password_hash = password_hash
            user.updated_at = now
            return user.id

    async def close(self) -> None:
        return None
