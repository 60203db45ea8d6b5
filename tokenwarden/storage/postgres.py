from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, List, Optional

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from tokenwarden.logging import get_logger
from tokenwarden.storage.common import (
    generate_uuid,
    normalize_email,
    validate_user_fields,
)
from tokenwarden.storage.errors import ConstraintViolation, StoreUnavailable
from tokenwarden.storage.models import (
    PasswordResetToken,
    RotatedSessionToken,
    SessionToken,
    User,
    VerificationCode,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT UNIQUE,
        password_hash TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS app_user_unverified_idx
        ON app_user (created_at) WHERE email_verified = FALSE
    """,
    """
    CREATE TABLE IF NOT EXISTS session_token (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS session_token_user_idx ON session_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS rotated_session_token (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        replaced_by TEXT NOT NULL,
        rotated_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verification_code (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        code TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS verification_code_email_idx
        ON verification_code (email, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

# Unique constraint name -> user-facing field
_UNIQUE_FIELDS = {
    "app_user_email_key": "email",
    "app_user_display_name_key": "display_name",
}


def _unique_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    return _UNIQUE_FIELDS.get(constraint, "unknown")


def _row_to_user(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        display_name=row.get("display_name"),
        password_hash=row.get("password_hash"),
        email_verified=bool(row.get("email_verified", False)),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at"),
    )


def _row_to_session_token(row: dict) -> SessionToken:
    return SessionToken(
        token=row["token"],
        user_id=str(row["user_id"]),
        expires_at=row["expires_at"],
        created_at=row.get("created_at") or utcnow(),
    )


def _row_to_verification_code(row: dict) -> VerificationCode:
    return VerificationCode(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        email=row["email"],
        code=row["code"],
        expires_at=row["expires_at"],
        created_at=row.get("created_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed credential store on an async psycopg pool.

    Compound state changes run inside one transaction and rely on conditional
    ``DELETE ... RETURNING`` so concurrent callers racing on the same row
    serialize in the database rather than in the application.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    async def open(self) -> None:
        await self.pool.open(wait=True)

    async def close(self) -> None:
        await self.pool.close()

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[psycopg.AsyncConnection]:
        try:
            async with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StoreUnavailable("credential store pool exhausted") from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("credential store unavailable") from exc

    async def ensure_schema(self) -> None:
        """Create the credential tables if they are missing."""

        async with self._connect() as conn:
            async with conn.transaction():
                for statement in _SCHEMA_STATEMENTS:
                    await conn.execute(statement)

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
        user = User(
            id=generate_uuid(),
            email=normalize_email(email),
            display_name=display_name,
            password_hash=password_hash,
            email_verified=email_verified,
            created_at=created_at or utcnow(),
        )
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO app_user (id, email, display_name, password_hash, email_verified, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.display_name,
                        user.password_hash,
                        user.email_verified,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,))
            row = await cur.fetchone()
        return _row_to_user(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            )
            row = await cur.fetchone()
        return _row_to_user(row) if row else None

    async def get_user_by_display_name(self, display_name: str) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM app_user WHERE display_name = %s", (display_name,)
            )
            row = await cur.fetchone()
        return _row_to_user(row) if row else None

    async def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        updates = validate_user_fields(fields)
        if not updates:
            return await self.get_user(user_id)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in updates
        )
        query = sql.SQL(
            "UPDATE app_user SET {}, updated_at = now() WHERE id = %s RETURNING *"
        ).format(assignments)
        try:
            async with self._connect() as conn:
                cur = await conn.execute(query, (*updates.values(), user_id))
                row = await cur.fetchone()
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return _row_to_user(row) if row else None

    async def delete_user(self, user_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    async def delete_unverified_users(self, created_before: datetime) -> int:
        # Predicate is re-evaluated per row under the delete's row lock, so a
        # user verified concurrently is skipped
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM app_user WHERE email_verified = FALSE AND created_at < %s",
                (created_before,),
            )
            return cur.rowcount

    # session tokens
    async def create_session_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> SessionToken:
        row = SessionToken(token=token, user_id=user_id, expires_at=expires_at)
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO session_token (token, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (row.token, row.user_id, row.expires_at, row.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session token collision", {"field": "token"})
        return row

    async def get_session_token(self, token: str) -> Optional[SessionToken]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM session_token WHERE token = %s", (token,)
            )
            row = await cur.fetchone()
        return _row_to_session_token(row) if row else None

    async def delete_session_token(self, token: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM session_token WHERE token = %s", (token,)
            )
            return cur.rowcount > 0

    async def rotate_session_token(
        self, old_token: str, new_token: str, expires_at: datetime, now: datetime
    ) -> Optional[SessionToken]:
        async with self._connect() as conn:
            async with conn.transaction():
                cur = await conn.execute(
                    """
                    DELETE FROM session_token
                    WHERE token = %s AND expires_at > %s
                    RETURNING user_id, expires_at
                    """,
                    (old_token, now),
                )
                old = await cur.fetchone()
                if not old:
                    return None
                user_id = str(old["user_id"])
                try:
                    await conn.execute(
                        """
                        INSERT INTO session_token (token, user_id, expires_at, created_at)
                        VALUES (%s, %s, %s, %s)
                        """,
                        (new_token, user_id, expires_at, now),
                    )
                except errors.UniqueViolation:
                    raise ConstraintViolation(
                        "session token collision", {"field": "token"}
                    )
                await conn.execute(
                    "DELETE FROM rotated_session_token WHERE user_id = %s AND expires_at <= %s",
                    (user_id, now),
                )
                await conn.execute(
                    """
                    INSERT INTO rotated_session_token (token, user_id, replaced_by, rotated_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (token) DO NOTHING
                    """,
                    (old_token, user_id, new_token, now, old["expires_at"]),
                )
        return SessionToken(
            token=new_token, user_id=user_id, expires_at=expires_at, created_at=now
        )

    async def get_rotated_session_token(
        self, token: str
    ) -> Optional[RotatedSessionToken]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM rotated_session_token WHERE token = %s", (token,)
            )
            row = await cur.fetchone()
        if not row:
            return None
        return RotatedSessionToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            replaced_by=row["replaced_by"],
            rotated_at=row["rotated_at"],
            expires_at=row["expires_at"],
        )

    async def list_session_tokens(self, user_id: str) -> List[SessionToken]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM session_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            )
            rows = await cur.fetchall()
        return [_row_to_session_token(row) for row in rows]

    async def delete_user_session_tokens(self, user_id: str) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM session_token WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

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
        row = VerificationCode.new(
            user_id, normalize_email(email), code, expires_at, created_at=created_at
        )
        try:
            async with self._connect() as conn:
                async with conn.transaction():
                    # Serialize count-then-insert per address across instances
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext(%s))", (row.email,)
                    )
                    cur = await conn.execute(
                        "SELECT count(*) AS recent FROM verification_code WHERE email = %s AND created_at >= %s",
                        (row.email, window_start),
                    )
                    counted = await cur.fetchone()
                    if counted and counted["recent"] >= limit:
                        return None
                    await conn.execute(
                        """
                        INSERT INTO verification_code (id, user_id, email, code, expires_at, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            row.id,
                            row.user_id,
                            row.email,
                            row.code,
                            row.expires_at,
                            row.created_at,
                        ),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return row

    async def verification_code_times(
        self, email: str, since: datetime
    ) -> List[datetime]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT created_at FROM verification_code
                WHERE email = %s AND created_at >= %s
                ORDER BY created_at
                """,
                (normalize_email(email), since),
            )
            rows = await cur.fetchall()
        return [row["created_at"] for row in rows]

    async def find_verification_code(
        self, email: str, code: str
    ) -> Optional[VerificationCode]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT * FROM verification_code
                WHERE email = %s AND code = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (normalize_email(email), code),
            )
            row = await cur.fetchone()
        return _row_to_verification_code(row) if row else None

    async def delete_verification_code(self, code_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM verification_code WHERE id = %s", (code_id,)
            )
            return cur.rowcount > 0

    async def consume_verification_code(self, code_id: str) -> bool:
        async with self._connect() as conn:
            async with conn.transaction():
                cur = await conn.execute(
                    "DELETE FROM verification_code WHERE id = %s RETURNING user_id",
                    (code_id,),
                )
                row = await cur.fetchone()
                if not row:
                    return False
                await conn.execute(
                    "UPDATE app_user SET email_verified = TRUE, updated_at = now() WHERE id = %s",
                    (str(row["user_id"]),),
                )
        return True

    # password reset tokens
    async def create_password_reset_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> PasswordResetToken:
        row = PasswordResetToken(token=token, user_id=user_id, expires_at=expires_at)
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO password_reset_token (token, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (row.token, row.user_id, row.expires_at, row.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return row

    async def get_password_reset_token(
        self, token: str
    ) -> Optional[PasswordResetToken]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM password_reset_token WHERE token = %s", (token,)
            )
            row = await cur.fetchone()
        if not row:
            return None
        return PasswordResetToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    async def delete_password_reset_token(self, token: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM password_reset_token WHERE token = %s", (token,)
            )
            return cur.rowcount > 0

    async def consume_password_reset_token(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[str]:
        async with self._connect() as conn:
            async with conn.transaction():
                cur = await conn.execute(
                    """
                    DELETE FROM password_reset_token
                    WHERE token = %s AND expires_at > %s
                    RETURNING user_id
                    """,
                    (token, now),
                )
                row = await cur.fetchone()
                if not row:
                    return None
                user_id = str(row["user_id"])
                await conn.execute(
                    "UPDATE app_user SET password_hash = %s, updated_at = %s WHERE id = %s",
                    (password_hash, now, user_id),
                )
        return user_id
