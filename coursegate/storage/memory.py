from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from coursegate.logging import get_logger
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.models import SessionDescriptor, User, default_preferences

SessionMutator = Callable[[List[SessionDescriptor]], List[SessionDescriptor]]


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """In-memory credential store for development and single-instance use.

    Users are optionally persisted as JSON under ``fs_root/state`` so a
    restart keeps accounts.
    """

    def __init__(self, fs_root: str = "/tmp/coursegate", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def create_user(
        self,
        email: str,
        name: str,
        password_hash: str,
        *,
        role: str = "student",
        two_factor_enabled: bool = False,
    ) -> User:
        normalized = _normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = self._now()
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                password_hash=password_hash,
                role=role,
                two_factor_enabled=two_factor_enabled,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.deepcopy(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = _normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.deepcopy(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [copy.deepcopy(u) for u in ordered[offset : offset + limit]]

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        two_factor_enabled: Optional[bool] = None,
        preferences: Optional[Dict] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if name is not None:
                user.name = name
            if two_factor_enabled is not None:
                user.two_factor_enabled = two_factor_enabled
            if preferences is not None:
                user.preferences = {**user.preferences, **preferences}
            user.updated_at = self._now()
            self._persist_state()
            return copy.deepcopy(user)

    def set_password(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = self._now()
            self._persist_state()
            return True

    def update_sessions(
        self, user_id: str, mutate: SessionMutator
    ) -> Optional[List[SessionDescriptor]]:
        """Apply ``mutate`` to a user's session list as one atomic step."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.sessions = list(mutate(list(user.sessions)))
            user.updated_at = self._now()
            self._persist_state()
            return copy.deepcopy(user.sessions)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self._persist_state()
            return True

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            # refuse to start; the next write would replace every account on disk
            self.logger.error("memory_state_corrupt", path=str(path), error=str(exc))
            raise RuntimeError(f"in-memory state at {path} is unreadable; restore or move it aside") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "role": user.role,
            "two_factor_enabled": user.two_factor_enabled,
            "sessions": [s.to_dict() for s in user.sessions],
            "preferences": user.preferences,
            "created_at": user.created_at.isoformat(),
            "updated_at": user.updated_at.isoformat(),
        }

    def _deserialize_user(self, data: dict) -> User:
        created_at = datetime.fromisoformat(data["created_at"])
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name") or data["email"].split("@")[0],
            password_hash=data["password_hash"],
            role=data.get("role", "student"),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            sessions=[SessionDescriptor.from_dict(s) for s in data.get("sessions", [])],
            preferences={**default_preferences(), **(data.get("preferences") or {})},
            created_at=created_at,
            updated_at=datetime.fromisoformat(data.get("updated_at") or data["created_at"]),
        )
