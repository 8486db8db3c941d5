from __future__ import annotations

import asyncio
import hmac
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from coursegate.logging import get_logger
from coursegate.service.email import Mailer, mask_email
from coursegate.service.errors import (
    AttemptsExhaustedError,
    CodeExpiredError,
    DeliveryFailedError,
    InvalidCodeError,
    NoPendingCodeError,
    ResendTooSoonError,
)
from coursegate.storage.ephemeral import EphemeralStore
from coursegate.storage.models import PendingVerification

logger = get_logger(__name__)

CODE_NAMESPACE = "2fa"


def generate_code() -> str:
    """Return a 6-digit code drawn uniformly from [100000, 999999] via ``secrets``."""
    return str(100000 + secrets.randbelow(900000))


@dataclass
class VerificationStatus:
    has_pending_code: bool
    time_remaining: Optional[int] = None
    attempts_used: Optional[int] = None
    max_attempts: Optional[int] = None
    masked_email: Optional[str] = None


class VerificationCodeRegistry:
    """One-time login codes keyed by user id.

    At most one code is pending per user; issuing replaces it. Every
    read-modify-write on a user's entry happens under that user's lock in the
    ephemeral store, so a verify racing a resend sees either the old code or
    the new one, never a mix.
    """

    def __init__(
        self,
        store: EphemeralStore,
        mailer: Mailer,
        *,
        code_ttl_seconds: int = 600,
        max_attempts: int = 3,
        resend_interval_seconds: int = 60,
        dispatch_timeout_seconds: float = 15.0,
        retention_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.code_ttl = timedelta(seconds=code_ttl_seconds)
        self.max_attempts = max_attempts
        self.resend_interval_seconds = resend_interval_seconds
        self.dispatch_timeout_seconds = dispatch_timeout_seconds
        # Entries outlive their logical expiry by this much so a late submit
        # still reports CodeExpired rather than NoPendingCode.
        self.retention_seconds = retention_seconds
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self.clock()

    async def _load(self, user_id: str) -> Optional[PendingVerification]:
        raw = await self.store.get(CODE_NAMESPACE, user_id)
        if raw is None:
            return None
        try:
            return PendingVerification.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("two_factor_entry_unreadable", user_id=user_id, error=str(exc))
            await self.store.delete(CODE_NAMESPACE, user_id)
            return None

    async def _save(self, pending: PendingVerification) -> None:
        remaining = (pending.expires_at - self._now()).total_seconds()
        ttl = max(1, math.ceil(remaining)) + self.retention_seconds
        await self.store.put(CODE_NAMESPACE, pending.user_id, pending.to_dict(), ttl)

    async def _dispatch(self, pending: PendingVerification) -> bool:
        try:
            return bool(
                await asyncio.wait_for(
                    asyncio.to_thread(
                        self.mailer.send_two_factor_code,
                        pending.email,
                        pending.code,
                        pending.name,
                    ),
                    timeout=self.dispatch_timeout_seconds,
                )
            )
        except asyncio.TimeoutError:
            logger.error(
                "two_factor_dispatch_timeout",
                user_id=pending.user_id,
                timeout=self.dispatch_timeout_seconds,
            )
            return False
        except Exception as exc:
            logger.error(
                "two_factor_dispatch_failed",
                user_id=pending.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    async def issue(
        self, user_id: str, email: str, name: Optional[str] = None
    ) -> PendingVerification:
        """Mint, store and email a fresh code for ``user_id``.

        Raises ResendTooSoonError when the pending code was issued less than
        the resend interval ago, and DeliveryFailedError (after discarding the
        new code) when the email could not be sent.
        """
        async with self.store.lock(CODE_NAMESPACE, user_id):
            now = self._now()
            existing = await self._load(user_id)
            # an expired or spent code never blocks a replacement
            if (
                existing is not None
                and not existing.is_expired(now)
                and existing.attempts < existing.max_attempts
            ):
                elapsed = (now - existing.issued_at).total_seconds()
                if elapsed < self.resend_interval_seconds:
                    wait = math.ceil(self.resend_interval_seconds - elapsed)
                    raise ResendTooSoonError(wait)

            pending = PendingVerification(
                user_id=user_id,
                code=generate_code(),
                email=email,
                name=name,
                issued_at=now,
                expires_at=now + self.code_ttl,
                attempts=0,
                max_attempts=self.max_attempts,
            )
            await self._save(pending)

            if not await self._dispatch(pending):
                await self.store.delete(CODE_NAMESPACE, user_id)
                logger.warning("two_factor_code_rolled_back", user_id=user_id)
                raise DeliveryFailedError()

            logger.info(
                "two_factor_code_issued",
                user_id=user_id,
                destination=mask_email(email),
                replaced=existing is not None,
            )
            return pending

    async def verify(self, user_id: str, submitted_code: str) -> PendingVerification:
        """Consume the pending code if ``submitted_code`` matches it."""
        async with self.store.lock(CODE_NAMESPACE, user_id):
            pending = await self._load(user_id)
            if pending is None:
                raise NoPendingCodeError()

            if pending.is_expired(self._now()):
                await self.store.delete(CODE_NAMESPACE, user_id)
                logger.info("two_factor_code_expired", user_id=user_id)
                raise CodeExpiredError()

            if pending.attempts >= pending.max_attempts:
                await self.store.delete(CODE_NAMESPACE, user_id)
                logger.warning("two_factor_attempts_exhausted", user_id=user_id)
                raise AttemptsExhaustedError()

            candidate = str(submitted_code).strip()
            if hmac.compare_digest(pending.code.encode(), candidate.encode()):
                await self.store.delete(CODE_NAMESPACE, user_id)
                logger.info("two_factor_code_verified", user_id=user_id)
                return pending

            pending.attempts += 1
            await self._save(pending)
            remaining = pending.max_attempts - pending.attempts
            logger.info(
                "two_factor_code_mismatch",
                user_id=user_id,
                attempts=pending.attempts,
                remaining=remaining,
            )
            raise InvalidCodeError(remaining)

    async def status(self, user_id: str) -> VerificationStatus:
        async with self.store.lock(CODE_NAMESPACE, user_id):
            pending = await self._load(user_id)
            if pending is None:
                return VerificationStatus(has_pending_code=False)
            now = self._now()
            if pending.is_expired(now):
                await self.store.delete(CODE_NAMESPACE, user_id)
                return VerificationStatus(has_pending_code=False)
            return VerificationStatus(
                has_pending_code=True,
                time_remaining=math.ceil((pending.expires_at - now).total_seconds()),
                attempts_used=pending.attempts,
                max_attempts=pending.max_attempts,
                masked_email=mask_email(pending.email),
            )

    async def discard(self, user_id: str) -> bool:
        async with self.store.lock(CODE_NAMESPACE, user_id):
            return await self.store.delete(CODE_NAMESPACE, user_id)

    async def sweep(self) -> int:
        """Delete every code past its expiry; returns how many were removed.

        Each key is checked and deleted under its own lock, so the sweep
        never holds up codes for other users.
        """
        removed = 0
        for user_id in await self.store.keys(CODE_NAMESPACE):
            async with self.store.lock(CODE_NAMESPACE, user_id):
                pending = await self._load(user_id)
                if pending is not None and pending.is_expired(self._now()):
                    await self.store.delete(CODE_NAMESPACE, user_id)
                    removed += 1
        if removed:
            logger.info("two_factor_sweep_completed", removed=removed)
        return removed
