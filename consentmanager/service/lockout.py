from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional, Protocol

from consentmanager.config import Settings
from consentmanager.logging import get_logger
from consentmanager.storage.models import LockedUser

logger = get_logger(__name__)


class LockoutStore(Protocol):
    def get_locked_user(self, username: str) -> Optional[LockedUser]: ...

    def insert_locked_user(self, username: str, *, max_attempts: int) -> bool: ...

    def increment_locked_user(
        self, username: str, *, max_attempts: int
    ) -> Optional[LockedUser]: ...

    def delete_locked_user(self, username: str) -> None: ...


class LockedUserService:
    """Failed-login bookkeeping per username.

    A record is created on the first failure and incremented on each
    following one; once ``max_attempts`` is reached the account is locked
    for ``cool_off``. A successful login (or an expired lock) clears it.
    Store calls run in a worker thread since the Postgres store blocks.
    """

    def __init__(
        self,
        store: LockoutStore,
        *,
        max_attempts: int = 5,
        cool_off: timedelta = timedelta(hours=8),
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.cool_off = cool_off

    @classmethod
    def from_settings(cls, store: LockoutStore, settings: Settings) -> "LockedUserService":
        return cls(
            store,
            max_attempts=settings.lockout_max_attempts,
            cool_off=timedelta(minutes=settings.lockout_cool_off_minutes),
        )

    async def user_for(self, username: str) -> Optional[LockedUser]:
        return await asyncio.to_thread(self.store.get_locked_user, username)

    async def create_user(self, username: str) -> None:
        created = await asyncio.to_thread(
            self.store.insert_locked_user, username, max_attempts=self.max_attempts
        )
        # No-op when a concurrent failure already created the record
        if not created:
            return
        logger.info("locked_user_created", username=username)
        if self.max_attempts <= 1:
            logger.warning("user_locked", username=username, invalid_attempts=1)

    async def update_user(self, locked_user: LockedUser) -> Optional[LockedUser]:
        updated = await asyncio.to_thread(
            self.store.increment_locked_user,
            locked_user.username,
            max_attempts=self.max_attempts,
        )
        if updated is None:
            # Record was reset between the lookup and the increment
            await self.create_user(locked_user.username)
            return None
        if updated.is_locked and not locked_user.is_locked:
            logger.warning(
                "user_locked",
                username=updated.username,
                invalid_attempts=updated.invalid_attempts,
            )
        return updated

    async def is_locked(self, username: str) -> bool:
        record = await asyncio.to_thread(self.store.get_locked_user, username)
        if record is None or not record.is_locked:
            return False
        if record.lock_expired(self.cool_off):
            await asyncio.to_thread(self.store.delete_locked_user, username)
            logger.info("user_lock_expired", username=username)
            return False
        return True

    async def remove_user(self, username: str) -> None:
        await asyncio.to_thread(self.store.delete_locked_user, username)
