from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write conflicted with an existing row."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateUserError(ConstraintViolation):
    """A user with the same username is already provisioned."""

    def __init__(self, username: str):
        super().__init__("username already exists", {"field": "username"})
        self.username = username


__all__ = ["ConstraintViolation", "DuplicateUserError"]
