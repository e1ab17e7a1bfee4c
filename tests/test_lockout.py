"""Tests for the failed-login tracker over the in-memory store."""

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from consentmanager.config import Settings
from consentmanager.service.lockout import LockedUserService
from consentmanager.service.users import UserDirectory
from consentmanager.storage.memory import MemoryStore
from consentmanager.storage.models import LockedUser


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def lockout(memory_store):
    return LockedUserService(memory_store, max_attempts=3, cool_off=timedelta(minutes=10))


async def _fail(lockout: LockedUserService, username: str) -> None:
    record = await lockout.user_for(username)
    if record is None:
        await lockout.create_user(username)
    else:
        await lockout.update_user(record)


class TestLockedUserService:
    async def test_first_failure_creates_record(self, lockout):
        assert await lockout.user_for("alice") is None

        await lockout.create_user("alice")

        record = await lockout.user_for("alice")
        assert record.invalid_attempts == 1
        assert record.is_locked is False

    async def test_create_user_is_idempotent(self, lockout):
        await lockout.create_user("alice")
        await lockout.create_user("alice")

        record = await lockout.user_for("alice")
        assert record.invalid_attempts == 1

    async def test_threshold_failure_locks_account(self, lockout):
        for _ in range(2):
            await _fail(lockout, "alice")
        assert await lockout.is_locked("alice") is False

        await _fail(lockout, "alice")

        record = await lockout.user_for("alice")
        assert record.invalid_attempts == 3
        assert record.is_locked is True
        assert record.locked_at is not None
        assert await lockout.is_locked("alice") is True

    async def test_expired_lock_is_cleared(self, lockout, memory_store):
        memory_store.locked_users["alice"] = LockedUser(
            username="alice",
            invalid_attempts=3,
            is_locked=True,
            locked_at=datetime.now(timezone.utc) - timedelta(minutes=11),
        )

        assert await lockout.is_locked("alice") is False
        assert await lockout.user_for("alice") is None

    async def test_single_attempt_policy_locks_on_first_failure(self, memory_store):
        lockout = LockedUserService(memory_store, max_attempts=1)

        await _fail(lockout, "alice")

        record = await lockout.user_for("alice")
        assert record.invalid_attempts == 1
        assert record.locked_at is not None
        assert await lockout.is_locked("alice") is True

    async def test_update_recreates_vanished_record(self, lockout):
        stale = LockedUser(username="alice", invalid_attempts=2)

        result = await lockout.update_user(stale)

        assert result is None
        record = await lockout.user_for("alice")
        assert record.invalid_attempts == 1

    async def test_remove_user_resets(self, lockout):
        await lockout.create_user("alice")

        await lockout.remove_user("alice")

        assert await lockout.user_for("alice") is None

    async def test_returned_record_is_a_copy(self, lockout):
        await lockout.create_user("alice")
        record = await lockout.user_for("alice")
        record.is_locked = True

        assert await lockout.is_locked("alice") is False

    def test_from_settings(self, memory_store):
        settings = Settings(
            jwt_secret="x" * 32, lockout_max_attempts=7, lockout_cool_off_minutes=15
        )

        service = LockedUserService.from_settings(memory_store, settings)

        assert service.max_attempts == 7
        assert service.cool_off == timedelta(minutes=15)


class TestLockExpiry:
    def test_unlocked_record_never_expires(self):
        record = LockedUser(username="alice", invalid_attempts=2)
        assert record.lock_expired(timedelta(minutes=1)) is False

    def test_naive_timestamps_are_read_as_utc(self):
        locked_at = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=9)
        record = LockedUser(username="alice", is_locked=True, locked_at=locked_at)

        assert record.lock_expired(timedelta(hours=8)) is True
        assert record.lock_expired(timedelta(hours=10)) is False


class TestStoreOffload:
    async def test_store_calls_run_in_worker_threads(self, lockout):
        calls = []
        real_to_thread = asyncio.to_thread

        async def recording_to_thread(func, *args, **kwargs):
            calls.append(func.__name__)
            return await real_to_thread(func, *args, **kwargs)

        with patch("consentmanager.service.lockout.asyncio.to_thread", recording_to_thread):
            await lockout.create_user("alice")
            await lockout.is_locked("alice")
            await lockout.remove_user("alice")

        assert calls == ["insert_locked_user", "get_locked_user", "delete_locked_user"]

    async def test_user_directory_reads_in_worker_thread(self, memory_store):
        memory_store.create_user("alice", "9876543210")
        directory = UserDirectory(memory_store)
        loop_thread = threading.get_ident()
        seen = []
        original = memory_store.get_user

        def recording_get_user(username):
            seen.append(threading.get_ident())
            return original(username)

        memory_store.get_user = recording_get_user

        user = await directory.user_with("alice")

        assert user.phone == "9876543210"
        assert seen and seen[0] != loop_thread
