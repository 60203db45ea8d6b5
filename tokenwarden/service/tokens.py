from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from tokenwarden.config import Settings
from tokenwarden.logging import get_logger
from tokenwarden.service.errors import (
    AccessTokenExpiredError,
    AuthenticationError,
    InvalidSignatureError,
    SessionTokenExpiredError,
    SessionTokenNotFoundError,
)
from tokenwarden.storage.common import CredentialStore
from tokenwarden.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# 48 random bytes -> 64 url-safe characters
SESSION_TOKEN_BYTES = 48


@dataclass
class IssuedSession:
    user_id: str
    access_token: str
    access_expires_at: datetime
    session_token: str
    session_expires_at: datetime

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": "bearer",
            "expires_in": int(
                (self.access_expires_at - datetime.now(timezone.utc)).total_seconds()
            ),
            "session_token": self.session_token,
            "session_expires_at": self.session_expires_at.isoformat(),
        }


class TokenService:
    """Stateless access tokens plus persisted, single-use session tokens.

    Access tokens are HS256 JWTs verified without touching the store. Session
    tokens are opaque strings; each one is consumed by exactly one rotation or
    revocation. Session token values are never logged.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(days=self.settings.session_token_ttl_days)

    @staticmethod
    def _generate_session_token() -> str:
        return secrets.token_urlsafe(SESSION_TOKEN_BYTES)

    async def issue(self, user_id: str) -> IssuedSession:
        """Mint an access token and persist a fresh session token for ``user_id``."""
        now = self._now()
        access_token, access_exp = self.create_access_token(user_id, now=now)
        session_expires_at = now + self.session_ttl
        try:
            row = await self.store.create_session_token(
                self._generate_session_token(), user_id, session_expires_at
            )
        except ConstraintViolation as exc:
            self.logger.warning("session_issue_rejected", user_id=user_id, reason=exc.message)
            raise AuthenticationError("unknown user") from exc
        self.logger.info("session_issued", user_id=user_id)
        return IssuedSession(
            user_id=user_id,
            access_token=access_token,
            access_expires_at=access_exp,
            session_token=row.token,
            session_expires_at=row.expires_at,
        )

    async def rotate(self, session_token: str) -> IssuedSession:
        """Exchange a live session token for a new one and a new access token.

        The old row is consumed in the same store transaction that creates the
        new one. When two callers race with the same token only one wins; the
        other sees :class:`SessionTokenNotFoundError`.
        """
        now = self._now()
        current = await self.store.get_session_token(session_token)
        if current is None:
            await self._check_reuse(session_token)
            raise SessionTokenNotFoundError()
        if current.is_expired(now):
            await self.store.delete_session_token(session_token)
            self.logger.info("session_token_expired", user_id=current.user_id)
            raise SessionTokenExpiredError()

        new_expires_at = now + self.session_ttl
        rotated = await self.store.rotate_session_token(
            session_token, self._generate_session_token(), new_expires_at, now
        )
        if rotated is None:
            # Lost a race with a concurrent rotation or revocation of the same token
            self.logger.info("session_rotation_lost_race", user_id=current.user_id)
            raise SessionTokenNotFoundError()

        access_token, access_exp = self.create_access_token(rotated.user_id, now=now)
        self.logger.info("session_rotated", user_id=rotated.user_id)
        return IssuedSession(
            user_id=rotated.user_id,
            access_token=access_token,
            access_expires_at=access_exp,
            session_token=rotated.token,
            session_expires_at=rotated.expires_at,
        )

    async def _check_reuse(self, session_token: str) -> None:
        tombstone = await self.store.get_rotated_session_token(session_token)
        if tombstone is None:
            return
        revoke = self.settings.revoke_sessions_on_token_reuse
        self.logger.warning(
            "session_token_reuse_detected",
            user_id=tombstone.user_id,
            rotated_at=tombstone.rotated_at.isoformat(),
            revoking_all_sessions=revoke,
        )
        if revoke:
            await self.revoke_all(tombstone.user_id)

    async def revoke(self, session_token: str) -> bool:
        """Delete a session token. Absence is not an error."""
        removed = await self.store.delete_session_token(session_token)
        if removed:
            self.logger.info("session_revoked")
        return removed

    async def revoke_all(self, user_id: str) -> int:
        count = await self.store.delete_user_session_tokens(user_id)
        self.logger.info("sessions_revoked_all", user_id=user_id, count=count)
        return count

    # access tokens
    def create_access_token(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> tuple[str, datetime]:
        issued_at = now or self._now()
        expires_at = issued_at + self.access_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    def verify(self, access_token: str) -> str:
        """Return the user id an access token was issued to.

        Raises:
            InvalidSignatureError: If the token is malformed, forged or for another audience
            AccessTokenExpiredError: If the token verified but its ``exp`` has passed
        """
        payload = self._decode_jwt(access_token)
        if payload is None:
            raise InvalidSignatureError("invalid access token")
        if payload.get("token_type") != "access" or not payload.get("sub"):
            raise InvalidSignatureError("invalid access token")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidSignatureError("invalid access token")
        if exp_ts <= self._now().timestamp():
            raise AccessTokenExpiredError("access token expired")
        return str(payload["sub"])

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Verify signature, issuer and audience; expiry is left to the caller."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        return payload
