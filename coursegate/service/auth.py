from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from coursegate.config import Settings
from coursegate.logging import get_logger
from coursegate.service.email import EmailService, mask_email
from coursegate.service.errors import (
    BadRequestError,
    DuplicateEmailError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    ResendTooSoonError,
    RoleMismatchError,
)
from coursegate.service.sessions import SessionRegistry
from coursegate.service.verification import VerificationCodeRegistry, VerificationStatus
from coursegate.storage.ephemeral import EphemeralStore
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.models import ROLES, SessionDescriptor, User

logger = get_logger(__name__)

RESET_NAMESPACE = "password_reset"
SELF_SERVICE_ROLES = ("student", "teacher")


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        password_hash: str,
        *,
        role: str = "student",
        two_factor_enabled: bool = False,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]: ...

    def count_users(self) -> int: ...

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        two_factor_enabled: Optional[bool] = None,
        preferences: Optional[Dict] = None,
    ) -> Optional[User]: ...

    def set_password(self, user_id: str, password_hash: str) -> bool: ...

    def update_sessions(
        self,
        user_id: str,
        mutate: Callable[[List[SessionDescriptor]], List[SessionDescriptor]],
    ) -> Optional[List[SessionDescriptor]]: ...

    def delete_user(self, user_id: str) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: Optional[str] = None


@dataclass
class LoginResult:
    """Outcome of a credential check: either a token or a pending 2FA challenge."""

    user: User
    token: Optional[str] = None
    session_id: Optional[str] = None
    requires_two_factor: bool = False
    masked_email: Optional[str] = None


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class AuthService:
    """Credential checks, the 2FA login handshake and bearer tokens.

    Pending codes live in the verification registry, session descriptors in
    the session registry; this class decides which of them a request touches
    and in what order.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionRegistry,
        verification: VerificationCodeRegistry,
        ephemeral: EphemeralStore,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.sessions = sessions
        self.verification = verification
        self.ephemeral = ephemeral
        self.email = email
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        *,
        role: str = "student",
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        allow_privileged: bool = False,
    ) -> Tuple[User, str, str]:
        """Create an identity and its first session; returns ``(user, token, session_id)``."""
        if not self.settings.allow_signup and not allow_privileged:
            raise ForbiddenError("signup is disabled")
        if role not in ROLES:
            raise BadRequestError("unknown role", detail={"role": role})
        if role not in SELF_SERVICE_ROLES and not allow_privileged:
            raise BadRequestError("role cannot be self-assigned", detail={"role": role})

        try:
            user = self.store.create_user(
                email,
                name,
                self._hash_password(password),
                role=role,
            )
        except ConstraintViolation as exc:
            self.logger.info("signup_duplicate_email", email_hash=_digest(email.strip().lower()))
            raise DuplicateEmailError() from exc

        session_id = self._create_session(user, user_agent, ip_address)
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        return self._refresh(user), self._issue_token(user, session_id), session_id

    async def login(
        self,
        email: str,
        password: str,
        *,
        expected_role: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if not user:
            # Burn comparable time so response latency does not reveal unknown emails
            self._verify_dummy(password)
            self.logger.info("login_failed", reason="invalid_credentials")
            raise InvalidCredentialsError()
        if not self.verify_password(user, password):
            self.logger.info("login_failed", user_id=user.id, reason="invalid_credentials")
            raise InvalidCredentialsError()
        if expected_role and user.role != expected_role:
            self.logger.info(
                "login_failed", user_id=user.id, reason="role_mismatch", expected=expected_role
            )
            raise RoleMismatchError(expected_role)

        if user.two_factor_enabled:
            try:
                await self.verification.issue(user.id, user.email, user.name)
            except ResendTooSoonError as exc:
                # The code issued moments ago is still valid; do not mint another
                self.logger.info(
                    "two_factor_code_reused", user_id=user.id, wait_seconds=exc.wait_seconds
                )
            return LoginResult(
                user=user,
                requires_two_factor=True,
                masked_email=mask_email(user.email),
            )

        session_id = self._create_session(user, user_agent, ip_address)
        self.logger.info("login_succeeded", user_id=user.id, two_factor=False)
        return LoginResult(
            user=self._refresh(user),
            token=self._issue_token(user, session_id),
            session_id=session_id,
        )

    async def verify_two_factor(
        self,
        user_id: str,
        code: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        await self.verification.verify(user_id, code)
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"userId": user_id})
        session_id = self._create_session(user, user_agent, ip_address)
        self.logger.info("login_succeeded", user_id=user.id, two_factor=True)
        return LoginResult(
            user=self._refresh(user),
            token=self._issue_token(user, session_id),
            session_id=session_id,
        )

    async def resend_two_factor(self, user_id: str) -> str:
        """Issue a replacement code; returns the masked destination."""
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"userId": user_id})
        if not user.two_factor_enabled:
            raise BadRequestError("two-factor authentication is not enabled")
        await self.verification.issue(user.id, user.email, user.name)
        return mask_email(user.email)

    async def two_factor_status(self, user_id: str) -> VerificationStatus:
        return await self.verification.status(user_id)

    async def set_two_factor(self, user_id: str, enabled: bool) -> User:
        user = self.store.update_user(user_id, two_factor_enabled=enabled)
        if not user:
            raise NotFoundError("user not found", detail={"userId": user_id})
        if not enabled:
            await self.verification.discard(user_id)
        self.logger.info("two_factor_toggled", user_id=user_id, enabled=enabled)
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.email.send_two_factor_changed, user.email, enabled),
                timeout=self.settings.email_dispatch_timeout_seconds,
            )
        except Exception as exc:
            # Notification only; the toggle itself already succeeded
            self.logger.warning(
                "two_factor_notice_failed", user_id=user_id, error_type=type(exc).__name__
            )
        return user

    # ------------------------------------------------------------------
    # Sessions and tokens
    # ------------------------------------------------------------------

    def _create_session(
        self, user: User, user_agent: Optional[str], ip_address: Optional[str]
    ) -> str:
        descriptor = self.sessions.new_descriptor(user_agent, ip_address)
        return self.sessions.add_session(user.id, descriptor)

    def _refresh(self, user: User) -> User:
        return self.store.get_user(user.id) or user

    async def logout_other_sessions(self, user_id: str, current_session_id: Optional[str]) -> int:
        return self.sessions.revoke_all_except(user_id, current_session_id)

    def _issue_token(self, user: User, session_id: Optional[str]) -> str:
        now = self._now()
        exp = int((now + timedelta(days=self.settings.token_ttl_days)).timestamp())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "sid": session_id,
            "role": user.role,
            "iat": int(now.timestamp()),
            "exp": exp,
        }
        return self._encode_jwt(payload)

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve a bearer header to the caller, or None when it is not acceptable."""
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = self._decode_jwt(token)
        if not payload:
            return None
        user_id = payload.get("sub")
        if not user_id:
            return None
        user = self.store.get_user(str(user_id))
        if not user:
            return None
        session_id = payload.get("sid")
        if self.settings.enforce_session_liveness and not user.has_session(session_id):
            self.logger.info("token_session_revoked", user_id=user.id)
            return None
        return AuthContext(user_id=user.id, role=user.role, session_id=session_id)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        """Check ``password`` against the stored argon2id hash; never raises on mismatch."""
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _verify_dummy(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError):
            pass

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"userId": user_id})
        if not self.verify_password(user, current_password):
            raise InvalidCredentialsError("current password is incorrect")
        self.store.set_password(user_id, self._hash_password(new_password))
        self.logger.info("password_changed", user_id=user_id)

    async def initiate_password_reset(self, email: str) -> Optional[str]:
        """Store and email a single-use reset token when the account exists.

        Returns the token (None for unknown emails) so callers can log or
        test it; the HTTP layer never echoes it.
        """
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info(
                "password_reset_unknown_email",
                email_hash=_digest(email.strip().lower()),
            )
            return None
        token = secrets.token_urlsafe(32)
        await self.ephemeral.put(
            RESET_NAMESPACE,
            _digest(token),
            {"user_id": user.id, "email": user.email},
            self.settings.password_reset_ttl_minutes * 60,
        )
        try:
            sent = await asyncio.wait_for(
                asyncio.to_thread(self.email.send_password_reset, user.email, token),
                timeout=self.settings.email_dispatch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            sent = False
        if not sent:
            self.logger.warning("password_reset_email_failed", user_id=user.id)
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def complete_password_reset(self, token: str, new_password: str) -> bool:
        record = await self.ephemeral.pop(RESET_NAMESPACE, _digest(token))
        if not record:
            self.logger.warning("password_reset_invalid_token")
            return False
        user = self.store.get_user(record.get("user_id", ""))
        if not user or user.email != record.get("email"):
            self.logger.warning("password_reset_user_missing", user_id=record.get("user_id"))
            return False
        self.store.set_password(user.id, self._hash_password(new_password))
        revoked = self.sessions.revoke_all(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return True

    # ------------------------------------------------------------------
    # Profile and administration
    # ------------------------------------------------------------------

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"userId": user_id})
        return user

    async def update_profile(self, user_id: str, *, name: Optional[str] = None) -> User:
        user = self.store.update_user(user_id, name=name)
        if not user:
            raise NotFoundError("user not found", detail={"userId": user_id})
        return user

    async def update_preferences(self, user_id: str, preferences: Dict) -> User:
        user = self.store.update_user(user_id, preferences=preferences)
        if not user:
            raise NotFoundError("user not found", detail={"userId": user_id})
        return user

    async def delete_account(self, user_id: str) -> None:
        await self.verification.discard(user_id)
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found", detail={"userId": user_id})
        self.logger.info("account_deleted", user_id=user_id)

    def list_users(self, *, page: int = 1, limit: int = 20) -> Tuple[List[User], int]:
        offset = (max(1, page) - 1) * limit
        return self.store.list_users(limit=limit, offset=offset), self.store.count_users()


__all__ = ["AuthContext", "AuthService", "AuthStore", "LoginResult", "RESET_NAMESPACE"]
