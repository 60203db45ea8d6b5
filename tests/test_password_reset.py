"""Tests for single-use password reset tokens."""

from datetime import datetime, timedelta, timezone

import pytest

from tokenwarden.service.errors import InvalidResetTokenError
from tokenwarden.service.notifications import NotificationDispatcher
from tokenwarden.service.password_reset import PasswordResetService


class LinkRecorder:
    def __init__(self):
        self.links = []

    async def send_verification_code(self, to_email, code):
        return True

    async def send_password_reset_link(self, to_email, token):
        self.links.append((to_email, token))
        return True


@pytest.fixture
def resets(store, settings):
    return PasswordResetService(store, settings)


class TestRequestReset:
    async def test_known_email_gets_token(self, store, resets):
        user = await store.create_user("user@example.com", "old-hash", email_verified=True)

        token = await resets.request_reset("user@example.com")

        assert token is not None
        assert len(token) == 64
        int(token, 16)
        row = await store.get_password_reset_token(token)
        assert row.user_id == user.id
        assert timedelta(minutes=9) < row.expires_at - row.created_at <= timedelta(minutes=10)

    async def test_unknown_email_creates_nothing(self, store, resets):
        assert await resets.request_reset("nobody@example.com") is None
        assert store.reset_tokens == {}

    async def test_link_is_dispatched(self, store, settings):
        recorder = LinkRecorder()
        dispatcher = NotificationDispatcher(recorder)
        resets = PasswordResetService(store, settings, dispatcher)
        await store.create_user("user@example.com", "old-hash")

        token = await resets.request_reset("User@Example.com")
        await dispatcher.drain(timeout=1)

        assert recorder.links == [("user@example.com", token)]


class TestConsumeReset:
    async def test_consume_updates_hash_once(self, store, resets):
        user = await store.create_user("user@example.com", "old-hash")
        token = await resets.request_reset(user.email)

        assert await resets.consume(token, "new-hash") == user.id
        assert (await store.get_user(user.id)).password_hash == "new-hash"
        assert await store.get_password_reset_token(token) is None

        with pytest.raises(InvalidResetTokenError):
            await resets.consume(token, "newer-hash")
        assert (await store.get_user(user.id)).password_hash == "new-hash"

    async def test_expired_token_rejected_and_deleted(self, store, resets):
        user = await store.create_user("user@example.com", "old-hash")
        token = await resets.request_reset(user.email)
        later = datetime.now(timezone.utc) + timedelta(minutes=11)
        resets._now = lambda: later

        with pytest.raises(InvalidResetTokenError):
            await resets.consume(token, "new-hash")

        assert await store.get_password_reset_token(token) is None
        assert (await store.get_user(user.id)).password_hash == "old-hash"

    async def test_unknown_token_rejected(self, resets):
        with pytest.raises(InvalidResetTokenError):
            await resets.consume("f" * 64, "new-hash")

    async def test_tokens_are_unique_per_request(self, store, resets):
        user = await store.create_user("user@example.com", "old-hash")

        first = await resets.request_reset(user.email)
        second = await resets.request_reset(user.email)

        assert first != second
        assert len(store.reset_tokens) == 2
