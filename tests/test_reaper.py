"""Tests for the daily ghost-account sweep."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from tokenwarden.service.reaper import GhostAccountReaper

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


class TestRunOnce:
    async def test_only_stale_unverified_users_are_deleted(self, store):
        fresh = await store.create_user("fresh@example.com", created_at=NOW - timedelta(days=2))
        stale = await store.create_user("stale@example.com", created_at=NOW - timedelta(days=4))
        verified = await store.create_user(
            "verified@example.com", email_verified=True, created_at=NOW - timedelta(days=30)
        )
        reaper = GhostAccountReaper(store, grace_days=3)

        deleted = await reaper.run_once(NOW)

        assert deleted == 1
        assert await store.get_user(fresh.id) is not None
        assert await store.get_user(stale.id) is None
        assert await store.get_user(verified.id) is not None
        assert reaper.last_run_at == NOW
        assert reaper.last_deleted == 1

    async def test_deletion_cascades_to_credentials(self, store):
        stale = await store.create_user("stale@example.com", created_at=NOW - timedelta(days=4))
        await store.create_session_token("s-token", stale.id, NOW + timedelta(days=7))
        await store.create_password_reset_token("r-token", stale.id, NOW + timedelta(minutes=10))
        await store.create_verification_code(
            stale.id,
            stale.email,
            "123456",
            NOW + timedelta(minutes=5),
            created_at=NOW,
            window_start=NOW - timedelta(hours=1),
            limit=3,
        )

        await GhostAccountReaper(store).run_once(NOW)

        assert store.session_tokens == {}
        assert store.reset_tokens == {}
        assert store.verification_codes == {}

    async def test_second_run_is_idempotent(self, store):
        await store.create_user("stale@example.com", created_at=NOW - timedelta(days=4))
        reaper = GhostAccountReaper(store)

        assert await reaper.run_once(NOW) == 1
        assert await reaper.run_once(NOW) == 0

    async def test_logs_sweep_result(self, store):
        reaper = GhostAccountReaper(store)

        with patch("tokenwarden.service.reaper.logger") as mock_logger:
            await reaper.run_once(NOW)

        mock_logger.info.assert_called_once()
        assert mock_logger.info.call_args[0][0] == "ghost_accounts_reaped"
        assert mock_logger.info.call_args[1]["deleted"] == 0


class TestSchedule:
    def test_next_run_later_today(self, store):
        reaper = GhostAccountReaper(store, run_at=(15, 30))

        assert reaper.next_run(NOW) == NOW.replace(hour=15, minute=30)

    def test_next_run_rolls_to_tomorrow(self, store):
        reaper = GhostAccountReaper(store, run_at=(3, 0))

        assert reaper.next_run(NOW) == datetime(2024, 5, 11, 3, 0, tzinfo=timezone.utc)

    def test_exact_run_time_schedules_next_day(self, store):
        reaper = GhostAccountReaper(store, run_at=(12, 0))

        assert reaper.next_run(NOW) == NOW + timedelta(days=1)

    def test_seconds_until_next_run(self, store):
        reaper = GhostAccountReaper(store, run_at=(13, 0))

        assert reaper.seconds_until_next_run(NOW) == 3600


class TestBackgroundLoop:
    async def test_start_and_stop(self, store):
        reaper = GhostAccountReaper(store)
        reaper.seconds_until_next_run = lambda now=None: 0
        reaper.run_once = AsyncMock(return_value=0)

        await reaper.start()
        await asyncio.sleep(0.01)
        await reaper.stop()

        assert reaper.run_once.await_count >= 1
        assert reaper._task is None

    async def test_start_twice_keeps_single_task(self, store):
        reaper = GhostAccountReaper(store)
        reaper.seconds_until_next_run = lambda now=None: 3600

        await reaper.start()
        task = reaper._task
        await reaper.start()

        assert reaper._task is task
        await reaper.stop()

    async def test_errors_back_off_instead_of_crashing(self, store):
        reaper = GhostAccountReaper(store)
        reaper.seconds_until_next_run = lambda now=None: 0
        reaper.run_once = AsyncMock(side_effect=RuntimeError("db down"))
        delays = []
        real_sleep = asyncio.sleep

        async def record_sleep(delay):
            delays.append(delay)
            await real_sleep(0)

        with patch("tokenwarden.service.reaper.asyncio.sleep", record_sleep):
            await reaper.start()
            for _ in range(10):
                await real_sleep(0)
            await reaper.stop()

        assert delays[0] == 0
        assert delays[1:3] == [60, 120]
