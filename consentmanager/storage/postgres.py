from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from consentmanager.logging import get_logger
from consentmanager.storage.errors import DuplicateUserError
from consentmanager.storage.models import LockedUser, User, utc_now

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS consent_user (
        username TEXT PRIMARY KEY,
        phone TEXT NOT NULL,
        name TEXT,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        username TEXT PRIMARY KEY REFERENCES consent_user(username) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS locked_users (
        username TEXT PRIMARY KEY,
        invalid_attempts INTEGER NOT NULL DEFAULT 1,
        is_locked BOOLEAN NOT NULL DEFAULT false,
        locked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for users, credentials and lockout records."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the user, credential and lockout tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return User(
            username=row["username"],
            phone=row["phone"],
            name=row.get("name"),
            created_at=row.get("created_at") or utc_now(),
            meta=meta,
        )

    @staticmethod
    def _row_to_locked_user(row: Dict[str, Any]) -> LockedUser:
        return LockedUser(
            username=row["username"],
            invalid_attempts=int(row["invalid_attempts"]),
            is_locked=bool(row["is_locked"]),
            locked_at=row.get("locked_at"),
            created_at=row.get("created_at") or utc_now(),
        )

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        username: str,
        phone: str,
        *,
        name: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO consent_user (username, phone, name, meta)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (username, phone, name, json.dumps(meta) if meta else None),
                )
        except errors.UniqueViolation:
            raise DuplicateUserError(username)
        self.logger.info("user_created", username=username)
        return User(username=username, phone=phone, name=name, meta=meta)

    def get_user(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM consent_user WHERE username = %s", (username,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM consent_user ORDER BY created_at LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def save_password(
        self, username: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_credential (username, password_hash, password_algo, last_updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (username) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    last_updated_at = now()
                """,
                (username, password_hash, password_algo),
            )

    def get_password_record(self, username: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE username = %s",
                (username,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- locked users --------------------------------------------------------

    def get_locked_user(self, username: str) -> Optional[LockedUser]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM locked_users WHERE username = %s", (username,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_locked_user(row)

    def insert_locked_user(self, username: str, *, max_attempts: int) -> bool:
        """Insert a fresh record with one failed attempt; False if one exists."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO locked_users (username, invalid_attempts, is_locked, locked_at)
                VALUES (%s, 1, %s::boolean, CASE WHEN %s::boolean THEN now() END)
                ON CONFLICT (username) DO NOTHING
                """,
                (username, max_attempts <= 1, max_attempts <= 1),
            )
            return cur.rowcount == 1

    def increment_locked_user(
        self, username: str, *, max_attempts: int
    ) -> Optional[LockedUser]:
        # Single UPDATE so concurrent failures cannot lose an increment
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE locked_users
                SET invalid_attempts = invalid_attempts + 1,
                    is_locked = is_locked OR invalid_attempts + 1 >= %s,
                    locked_at = CASE
                        WHEN NOT is_locked AND invalid_attempts + 1 >= %s THEN now()
                        ELSE locked_at
                    END
                WHERE username = %s
                RETURNING *
                """,
                (max_attempts, max_attempts, username),
            ).fetchone()
        if not row:
            return None
        return self._row_to_locked_user(row)

    def delete_locked_user(self, username: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM locked_users WHERE username = %s", (username,))
