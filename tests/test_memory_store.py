"""Tests for the in-memory credential store."""

from datetime import datetime, timedelta, timezone

import pytest

from tokenwarden.storage.common import CredentialStore
from tokenwarden.storage.errors import ConstraintViolation
from tokenwarden.storage.memory import MemoryStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_memory_store_satisfies_protocol():
    assert isinstance(MemoryStore(), CredentialStore)


class TestUsers:
    async def test_email_lookup_is_case_insensitive(self, store):
        user = await store.create_user("Mixed@Example.COM", "hash")

        assert user.email == "mixed@example.com"
        assert (await store.get_user_by_email(" MIXED@example.com ")).id == user.id

    async def test_duplicate_email_violates_constraint(self, store):
        await store.create_user("user@example.com")

        with pytest.raises(ConstraintViolation) as exc_info:
            await store.create_user("USER@example.com")
        assert exc_info.value.detail == {"field": "email"}

    async def test_duplicate_display_name_violates_constraint(self, store):
        await store.create_user("a@example.com", display_name="same")

        with pytest.raises(ConstraintViolation) as exc_info:
            await store.create_user("b@example.com", display_name="same")
        assert exc_info.value.detail == {"field": "display_name"}

    async def test_partial_update(self, store):
        user = await store.create_user("user@example.com", "hash")

        updated = await store.update_user(user.id, email_verified=True)

        assert updated.email_verified is True
        assert updated.password_hash == "hash"
        assert updated.updated_at is not None

    async def test_update_rejects_unknown_fields(self, store):
        user = await store.create_user("user@example.com")

        with pytest.raises(ConstraintViolation) as exc_info:
            await store.update_user(user.id, role="admin")
        assert exc_info.value.detail == {"fields": ["role"]}

    async def test_update_email_conflict(self, store):
        await store.create_user("taken@example.com")
        user = await store.create_user("user@example.com")

        with pytest.raises(ConstraintViolation):
            await store.update_user(user.id, email="Taken@example.com")

    async def test_update_missing_user_returns_none(self, store):
        assert await store.update_user("missing", email_verified=True) is None

    async def test_delete_unverified_uses_strict_cutoff(self, store):
        edge = await store.create_user("edge@example.com", created_at=NOW)
        old = await store.create_user("old@example.com", created_at=NOW - timedelta(seconds=1))

        assert await store.delete_unverified_users(NOW) == 1
        assert await store.get_user(edge.id) is not None
        assert await store.get_user(old.id) is None


class TestSessionTokens:
    async def test_create_requires_existing_user(self, store):
        with pytest.raises(ConstraintViolation):
            await store.create_session_token("t", "missing", NOW + timedelta(days=7))

    async def test_rotate_swaps_rows_and_leaves_tombstone(self, store):
        user = await store.create_user("user@example.com")
        await store.create_session_token("old", user.id, NOW + timedelta(days=7))

        row = await store.rotate_session_token("old", "new", NOW + timedelta(days=7), NOW)

        assert row.token == "new"
        assert row.user_id == user.id
        assert await store.get_session_token("old") is None
        tombstone = await store.get_rotated_session_token("old")
        assert tombstone.replaced_by == "new"
        assert tombstone.user_id == user.id

    async def test_rotate_expired_or_missing_returns_none(self, store):
        user = await store.create_user("user@example.com")
        await store.create_session_token("old", user.id, NOW)

        assert await store.rotate_session_token("old", "new", NOW + timedelta(days=7), NOW) is None
        assert await store.rotate_session_token("gone", "new", NOW + timedelta(days=7), NOW) is None
        assert await store.get_session_token("new") is None

    async def test_expired_tombstones_are_pruned(self, store):
        user = await store.create_user("user@example.com")
        await store.create_session_token("a", user.id, NOW + timedelta(days=1))
        await store.rotate_session_token("a", "b", NOW + timedelta(days=7), NOW)

        later = NOW + timedelta(days=2)
        await store.rotate_session_token("b", "c", later + timedelta(days=7), later)

        assert await store.get_rotated_session_token("a") is None
        assert await store.get_rotated_session_token("b") is not None

    async def test_delete_is_conditional(self, store):
        user = await store.create_user("user@example.com")
        await store.create_session_token("t", user.id, NOW + timedelta(days=7))

        assert await store.delete_session_token("t") is True
        assert await store.delete_session_token("t") is False


class TestVerificationCodes:
    async def _create(self, store, user, code, created_at, limit=3):
        return await store.create_verification_code(
            user.id,
            user.email,
            code,
            created_at + timedelta(minutes=5),
            created_at=created_at,
            window_start=created_at - timedelta(hours=1),
            limit=limit,
        )

    async def test_window_limit_refuses_insert(self, store):
        user = await store.create_user("user@example.com")
        for i in range(3):
            assert await self._create(store, user, f"00000{i}", NOW + timedelta(seconds=i))

        assert await self._create(store, user, "000009", NOW + timedelta(seconds=5)) is None
        assert len(await store.verification_code_times(user.email, NOW - timedelta(hours=1))) == 3

    async def test_consume_deletes_row_and_verifies(self, store):
        user = await store.create_user("user@example.com")
        row = await self._create(store, user, "123456", NOW)

        assert await store.consume_verification_code(row.id) is True
        assert await store.consume_verification_code(row.id) is False
        assert (await store.get_user(user.id)).email_verified is True
        assert await store.find_verification_code(user.email, "123456") is None


class TestResetTokens:
    async def test_consume_is_single_use_and_checks_expiry(self, store):
        user = await store.create_user("user@example.com", "old")
        await store.create_password_reset_token("live", user.id, NOW + timedelta(minutes=10))
        await store.create_password_reset_token("stale", user.id, NOW)

        assert await store.consume_password_reset_token("stale", "new", NOW) is None
        assert await store.consume_password_reset_token("live", "new", NOW) == user.id
        assert await store.consume_password_reset_token("live", "newer", NOW) is None
        assert (await store.get_user(user.id)).password_hash == "new"
