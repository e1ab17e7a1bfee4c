from __future__ import annotations

import asyncio
from typing import List, Optional, Protocol

from consentmanager.storage.models import User


class UserStore(Protocol):
    def create_user(
        self,
        username: str,
        phone: str,
        *,
        name: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, username: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...


class UserDirectory:
    """Read-side lookup of user records by username."""

    def __init__(self, store: UserStore) -> None:
        self.store = store

    async def user_with(self, username: str) -> Optional[User]:
        return await asyncio.to_thread(self.store.get_user, username)

    async def create_user(
        self,
        username: str,
        phone: str,
        *,
        name: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User:
        """Provision a user record; raises ConstraintViolation on duplicates."""
        return await asyncio.to_thread(
            self.store.create_user, username, phone, name=name, meta=meta
        )
