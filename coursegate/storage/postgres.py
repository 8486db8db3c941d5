from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from coursegate.logging import get_logger
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.models import SessionDescriptor, User, default_preferences

SessionMutator = Callable[[List[SessionDescriptor]], List[SessionDescriptor]]

_USER_COLUMNS = (
    "id, email, name, password_hash, role, two_factor_enabled, sessions, "
    "preferences, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed credential store.

    Session descriptors live in a JSONB column on ``app_user`` so the
    session list and the identity are updated in the same row lock.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'student',
                    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    sessions JSONB NOT NULL DEFAULT '[]'::jsonb,
                    preferences JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _row_to_user(row: Dict) -> User:
        sessions = row.get("sessions") or []
        if isinstance(sessions, str):
            sessions = json.loads(sessions)
        preferences = row.get("preferences") or {}
        if isinstance(preferences, str):
            preferences = json.loads(preferences)
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            password_hash=row["password_hash"],
            role=row.get("role", "student"),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            sessions=[SessionDescriptor.from_dict(s) for s in sessions],
            preferences={**default_preferences(), **preferences},
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    def create_user(
        self,
        email: str,
        name: str,
        password_hash: str,
        *,
        role: str = "student",
        two_factor_enabled: bool = False,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        now = datetime.now(timezone.utc)
        preferences = default_preferences()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, password_hash, role, two_factor_enabled, preferences, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s)
                    """,
                    (
                        user_id,
                        normalized,
                        name,
                        password_hash,
                        role,
                        two_factor_enabled,
                        json.dumps(preferences),
                        now,
                        now,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User(
            id=user_id,
            email=normalized,
            name=name,
            password_hash=password_hash,
            role=role,
            two_factor_enabled=two_factor_enabled,
            preferences=preferences,
            created_at=now,
            updated_at=now,
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM app_user").fetchone()
        return int(row["total"]) if row else 0

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        two_factor_enabled: Optional[bool] = None,
        preferences: Optional[Dict] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                   SET name = COALESCE(%s, name),
                       two_factor_enabled = COALESCE(%s, two_factor_enabled),
                       preferences = preferences || COALESCE(%s::jsonb, '{}'::jsonb),
                       updated_at = now()
                 WHERE id = %s
             RETURNING """
                + _USER_COLUMNS,
                (
                    name,
                    two_factor_enabled,
                    json.dumps(preferences) if preferences is not None else None,
                    user_id,
                ),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_password(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return cur.rowcount > 0

    def update_sessions(
        self, user_id: str, mutate: SessionMutator
    ) -> Optional[List[SessionDescriptor]]:
        """Read, mutate and write a user's session list under a row lock."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT sessions FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not row:
                return None
            raw = row.get("sessions") or []
            if isinstance(raw, str):
                raw = json.loads(raw)
            sessions = list(mutate([SessionDescriptor.from_dict(s) for s in raw]))
            conn.execute(
                "UPDATE app_user SET sessions = %s::jsonb, updated_at = now() WHERE id = %s",
                (json.dumps([s.to_dict() for s in sessions]), user_id),
            )
        return sessions

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def close(self) -> None:
        self.pool.close()
