from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from coursegate.logging import get_logger
from coursegate.service.errors import NotFoundError
from coursegate.storage.models import SessionDescriptor

logger = get_logger(__name__)


class SessionStore(Protocol):
    def update_sessions(
        self,
        user_id: str,
        mutate: Callable[[List[SessionDescriptor]], List[SessionDescriptor]],
    ) -> Optional[List[SessionDescriptor]]:
        ...


def detect_device(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "Unknown Device"
    if "Mobile" in user_agent or "Android" in user_agent:
        return "Mobile Device"
    if "iPad" in user_agent:
        return "iPad"
    if "iPhone" in user_agent:
        return "iPhone"
    if "Macintosh" in user_agent:
        return "Mac"
    if "Windows" in user_agent:
        return "Windows PC"
    if "Linux" in user_agent:
        return "Linux"
    return "Desktop"


def detect_browser(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "Unknown"
    # Order matters: Edge and Chrome both claim Safari
    if "Chrome" in user_agent:
        return "Chrome"
    if "Firefox" in user_agent:
        return "Firefox"
    if "Safari" in user_agent:
        return "Safari"
    if "Edge" in user_agent:
        return "Edge"
    return "Unknown Browser"


def describe_device(user_agent: Optional[str]) -> str:
    return f"{detect_device(user_agent)} • {detect_browser(user_agent)}"


def new_session_id() -> str:
    return secrets.token_hex(32)


class SessionRegistry:
    """Bounded, age-pruned list of signed-in devices on each user record.

    Every mutation runs as one read-prune-write step inside the store
    (row lock in Postgres, data lock in memory), so concurrent logins for the
    same user cannot push the list past ``max_sessions``.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        max_sessions: int = 10,
        max_age_days: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.max_sessions = max_sessions
        self.max_age = timedelta(days=max_age_days)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def new_descriptor(
        self, user_agent: Optional[str] = None, ip_address: Optional[str] = None
    ) -> SessionDescriptor:
        now = self.clock()
        return SessionDescriptor(
            session_id=new_session_id(),
            device_info=describe_device(user_agent),
            ip_address=ip_address,
            created_at=now,
            last_active=now,
        )

    def prune_expired(self, sessions: List[SessionDescriptor]) -> List[SessionDescriptor]:
        cutoff = self.clock() - self.max_age
        return [s for s in sessions if s.last_active > cutoff]

    def add_session(self, user_id: str, descriptor: SessionDescriptor) -> str:
        """Append ``descriptor`` after pruning stale sessions; evicts the oldest beyond the cap."""
        evicted: List[int] = []

        def _append(sessions: List[SessionDescriptor]) -> List[SessionDescriptor]:
            kept = self.prune_expired(sessions)
            taken = {s.session_id for s in kept}
            while descriptor.session_id in taken:
                descriptor.session_id = new_session_id()
            kept.append(descriptor)
            overflow = len(kept) - self.max_sessions
            if overflow > 0:
                kept = kept[overflow:]
            evicted.append(len(sessions) + 1 - len(kept))
            return kept

        if self.store.update_sessions(user_id, _append) is None:
            raise NotFoundError("user not found", detail={"userId": user_id})
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=descriptor.session_id[:8],
            device_info=descriptor.device_info,
            evicted=evicted[0] if evicted else 0,
        )
        return descriptor.session_id

    def revoke_all_except(self, user_id: str, current_session_id: Optional[str]) -> int:
        """Keep only ``current_session_id``; an unknown id leaves no sessions at all."""
        revoked: List[int] = []

        def _keep_current(sessions: List[SessionDescriptor]) -> List[SessionDescriptor]:
            kept = [s for s in sessions if current_session_id and s.session_id == current_session_id][:1]
            revoked.append(len(sessions) - len(kept))
            return kept

        if self.store.update_sessions(user_id, _keep_current) is None:
            raise NotFoundError("user not found", detail={"userId": user_id})
        count = revoked[0] if revoked else 0
        logger.info("sessions_revoked", user_id=user_id, revoked=count)
        return count

    def revoke_all(self, user_id: str) -> int:
        return self.revoke_all_except(user_id, None)
