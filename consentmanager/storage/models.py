from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    username: str
    phone: str
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    meta: Dict | None = None


@dataclass
class UserCredential:
    username: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    last_updated_at: Optional[datetime] = None


@dataclass
class LockedUser:
    username: str
    invalid_attempts: int = 1
    is_locked: bool = False
    locked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    def lock_expired(self, cool_off: timedelta, now: Optional[datetime] = None) -> bool:
        if not self.is_locked or self.locked_at is None:
            return False
        locked_at = self.locked_at
        if locked_at.tzinfo is None:
            # Naive timestamps are stored as UTC
            locked_at = locked_at.replace(tzinfo=timezone.utc)
        return (now or utc_now()) - locked_at >= cool_off


@dataclass
class Session:
    """Bearer token pair handed back to the caller."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 0
    refresh_expires_in: int = 0
    token_type: str = "bearer"
