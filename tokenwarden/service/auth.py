from __future__ import annotations

import asyncio
import secrets
from typing import Any, Optional, Type as ModelType, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from tokenwarden.api.schemas import (
    EmailRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    VerifyEmailRequest,
)
from tokenwarden.config import Settings
from tokenwarden.logging import get_logger
from tokenwarden.service.errors import (
    AuthenticationError,
    ConflictError,
    EmailNotVerifiedError,
    RateLimitedError,
    ValidationError,
)
from tokenwarden.service.password_reset import PasswordResetService
from tokenwarden.service.rate_limit import RateLimiter, RateLimitResult, RateLimitScope
from tokenwarden.service.tokens import IssuedSession, TokenService
from tokenwarden.service.verification import VerificationCodeService
from tokenwarden.storage.common import CredentialStore
from tokenwarden.storage.errors import ConstraintViolation
from tokenwarden.storage.models import User

logger = get_logger(__name__)

# Identical bodies for known and unknown addresses
VERIFICATION_RESEND_RESPONSE = {
    "message": "If the account is awaiting verification, a new code has been sent.",
}
PASSWORD_RESET_RESPONSE = {
    "message": "If an account exists for that email, a password reset link has been sent.",
}
INVALID_CREDENTIALS_MESSAGE = "invalid email or password"

_M = TypeVar("_M", bound=BaseModel)


def _parse(model: ModelType[_M], **data: Any) -> _M:
    """Validate raw input against a request schema, mapping failures to 400s."""
    try:
        return model(**data)
    except SchemaValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError(errors[0]["message"] if errors else "invalid input", detail={"errors": errors})


class AuthService:
    """Exposed credential operations composed from the lifecycle services."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        tokens: TokenService,
        verification: VerificationCodeService,
        password_reset: PasswordResetService,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.verification = verification
        self.password_reset = password_reset
        self.rate_limiter = rate_limiter
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when no real hash exists so unknown accounts cost
        # the same time as wrong passwords
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    # passwords
    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._hash_password, password)

    async def verify_password(self, user: Optional[User], password: str) -> bool:
        stored_hash = user.password_hash if user and user.password_hash else None
        matched = await asyncio.to_thread(
            self._verify_hash, stored_hash or self._dummy_hash, password
        )
        return bool(stored_hash) and matched

    async def _maybe_rehash(self, user: User, password: str) -> None:
        if user.password_hash and self._pwd_hasher.check_needs_rehash(user.password_hash):
            await self.store.update_user(
                user.id, password_hash=await self.hash_password(password)
            )
            self.logger.info("password_rehashed", user_id=user.id)

    # registration and login
    async def register(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> User:
        """Create an unverified account and send its first verification code."""
        request = _parse(
            RegisterRequest, email=email, password=password, display_name=display_name
        )
        if await self.store.get_user_by_email(request.email):
            raise ConflictError("email already registered", detail={"field": "email"})
        if request.display_name and await self.store.get_user_by_display_name(
            request.display_name
        ):
            raise ConflictError(
                "display name already taken", detail={"field": "display_name"}
            )
        password_hash = await self.hash_password(request.password)
        try:
            user = await self.store.create_user(
                request.email, password_hash, request.display_name
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            field = exc.detail.get("field", "email")
            raise ConflictError(f"{field} already registered", detail={"field": field})
        self.logger.info("user_registered", user_id=user.id)
        try:
            await self.verification.issue(user.id, user.email)
        except RateLimitedError:
            # Quota carried over from an earlier, reaped registration
            self.logger.warning("verification_code_deferred", user_id=user.id)
        return user

    async def login(self, email: str, password: str) -> IssuedSession:
        request = _parse(LoginRequest, email=email, password=password)
        user = await self.store.get_user_by_email(request.email)
        if not await self.verify_password(user, request.password):
            if user is None:
                reason = "unknown_email"
            elif not user.has_password:
                reason = "external_identity"
            else:
                reason = "password_mismatch"
            self.logger.info("login_failed", reason=reason)
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        if not user.email_verified:
            self.logger.info("login_blocked_unverified", user_id=user.id)
            raise EmailNotVerifiedError("verify your email address before signing in")
        await self._maybe_rehash(user, request.password)
        return await self.tokens.issue(user.id)

    async def authenticate(self, access_token: str, *, require_verified: bool = True) -> User:
        """Resolve a bearer access token to its user."""
        user_id = self.tokens.verify(access_token)
        user = await self.store.get_user(user_id)
        if user is None:
            raise AuthenticationError("user no longer exists")
        if require_verified and not user.email_verified:
            raise EmailNotVerifiedError("verify your email address to continue")
        return user

    # sessions
    async def issue_session(self, user_id: str) -> IssuedSession:
        return await self.tokens.issue(user_id)

    async def rotate_session(self, session_token: str) -> IssuedSession:
        return await self.tokens.rotate(session_token)

    async def revoke_session(self, session_token: str) -> None:
        await self.tokens.revoke(session_token)

    async def revoke_all_sessions(self, user_id: str) -> int:
        return await self.tokens.revoke_all(user_id)

    # email verification
    async def issue_verification_code(self, user_id: str, email: str) -> str:
        return await self.verification.issue(user_id, email)

    async def consume_verification_code(self, email: str, code: str) -> str:
        if not isinstance(code, str) or not code.strip():
            raise ValidationError("verification code must be 6 digits")
        request = _parse(VerifyEmailRequest, email=email, code=code)
        return await self.verification.consume(request.email, request.code)

    async def resend_verification(self, email: str) -> dict[str, str]:
        request = _parse(EmailRequest, email=email)
        user = await self.store.get_user_by_email(request.email)
        if user is not None and not user.email_verified:
            try:
                await self.verification.issue(user.id, user.email)
            except RateLimitedError:
                # Surfacing the quota would reveal that the account exists
                self.logger.info("verification_resend_suppressed", user_id=user.id)
        return dict(VERIFICATION_RESEND_RESPONSE)

    # password reset
    async def request_password_reset(self, email: str) -> dict[str, str]:
        request = _parse(EmailRequest, email=email)
        await self.password_reset.request_reset(request.email)
        return dict(PASSWORD_RESET_RESPONSE)

    async def consume_password_reset(self, token: str, new_password: str) -> str:
        request = _parse(ResetPasswordRequest, token=token, new_password=new_password)
        password_hash = await self.hash_password(request.new_password)
        user_id = await self.password_reset.consume(request.token, password_hash)
        if self.settings.revoke_sessions_on_password_reset:
            await self.tokens.revoke_all(user_id)
        return user_id

    # throttling
    async def check_rate_limit(
        self, scope: RateLimitScope, subject: str
    ) -> Optional[RateLimitResult]:
        """Consume one attempt for ``subject`` or raise :class:`RateLimitedError`.

        The verification email scope is answered from code rows keyed by email
        rather than from the request limiter.
        """
        if scope is RateLimitScope.VERIFICATION_EMAIL:
            await self.verification.check_quota(subject)
            return None
        if self.rate_limiter is None:
            return None
        return await self.rate_limiter.check(scope, subject)
