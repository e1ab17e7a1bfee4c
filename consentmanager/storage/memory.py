from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, List, Optional

from consentmanager.logging import get_logger
from consentmanager.storage.errors import DuplicateUserError
from consentmanager.storage.models import LockedUser, User, UserCredential, utc_now


class MemoryStore:
    """In-memory backing store for users, credentials and lockout records."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        self.locked_users: Dict[str, LockedUser] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        username: str,
        phone: str,
        *,
        name: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User:
        with self._data_lock:
            if username in self.users:
                raise DuplicateUserError(username)
            user = User(username=username, phone=phone, name=name, meta=meta)
            self.users[username] = user
        self.logger.info("user_created", username=username)
        return user

    def get_user(self, username: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(username)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return list(self.users.values())[:limit]

    def save_password(
        self, username: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            existing = self.credentials.get(username)
            if existing:
                self.credentials[username] = replace(
                    existing,
                    password_hash=password_hash,
                    password_algo=password_algo,
                    last_updated_at=utc_now(),
                )
            else:
                self.credentials[username] = UserCredential(
                    username=username,
                    password_hash=password_hash,
                    password_algo=password_algo,
                )

    def get_password_record(self, username: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            record = self.credentials.get(username)
        if not record or not record.password_hash:
            return None
        return record.password_hash, record.password_algo or ""

    # -- locked users --------------------------------------------------------

    def get_locked_user(self, username: str) -> Optional[LockedUser]:
        with self._data_lock:
            record = self.locked_users.get(username)
            # Hand out copies so callers cannot mutate stored state
            return replace(record) if record else None

    def insert_locked_user(self, username: str, *, max_attempts: int) -> bool:
        """Insert a fresh record with one failed attempt; False if one exists.

        The record starts locked when a single failure already reaches
        ``max_attempts``.
        """
        with self._data_lock:
            if username in self.locked_users:
                return False
            locked = max_attempts <= 1
            self.locked_users[username] = LockedUser(
                username=username,
                is_locked=locked,
                locked_at=utc_now() if locked else None,
            )
            return True

    def increment_locked_user(
        self, username: str, *, max_attempts: int
    ) -> Optional[LockedUser]:
        with self._data_lock:
            record = self.locked_users.get(username)
            if record is None:
                return None
            record.invalid_attempts += 1
            if record.invalid_attempts >= max_attempts and not record.is_locked:
                record.is_locked = True
                record.locked_at = utc_now()
            return replace(record)

    def delete_locked_user(self, username: str) -> None:
        with self._data_lock:
            self.locked_users.pop(username, None)
