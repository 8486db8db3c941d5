from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

ROLES = ("student", "teacher", "admin")
LANGUAGES = ("en", "fr", "es", "ar")
THEMES = ("light", "dark", "system")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def default_preferences() -> Dict:
    return {
        "language": "en",
        "theme": "system",
        "email_notifications": True,
        "course_recommendations": True,
    }


@dataclass
class SessionDescriptor:
    """One signed-in device for a user; advisory metadata only."""

    session_id: str
    device_info: str
    ip_address: Optional[str]
    created_at: datetime
    last_active: datetime

    def to_dict(self) -> Dict:
        return {
            "session_id": self.session_id,
            "device_info": self.device_info,
            "ip_address": self.ip_address,
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SessionDescriptor":
        return cls(
            session_id=data["session_id"],
            device_info=data.get("device_info") or "Unknown Device • Unknown",
            ip_address=data.get("ip_address"),
            created_at=_parse_ts(data["created_at"]),
            last_active=_parse_ts(data.get("last_active") or data["created_at"]),
        )


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: str = field(repr=False)
    role: str = "student"
    two_factor_enabled: bool = False
    sessions: List[SessionDescriptor] = field(default_factory=list)
    preferences: Dict = field(default_factory=default_preferences)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def has_session(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        return any(s.session_id == session_id for s in self.sessions)


@dataclass
class PendingVerification:
    """A live one-time code challenge for a user mid-login."""

    user_id: str
    code: str = field(repr=False)
    email: str
    name: Optional[str]
    issued_at: datetime
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 3

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict:
        return {
            "user_id": self.user_id,
            "code": self.code,
            "email": self.email,
            "name": self.name,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PendingVerification":
        return cls(
            user_id=data["user_id"],
            code=data["code"],
            email=data["email"],
            name=data.get("name"),
            issued_at=_parse_ts(data["issued_at"]),
            expires_at=_parse_ts(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 3)),
        )
