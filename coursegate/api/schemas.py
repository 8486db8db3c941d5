from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from coursegate.service.verification import VerificationStatus
from coursegate.storage.models import SessionDescriptor, User


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode string using NFKC.

    This handles:
    - Combining diacritics
    - Compatibility characters
    - Zero-width characters

    Args:
        value: String to normalize

    Returns:
        NFKC normalized string
    """
    # U+200B ZERO WIDTH SPACE, U+200C ZERO WIDTH NON-JOINER,
    # U+200D ZERO WIDTH JOINER, U+FEFF ZERO WIDTH NO-BREAK SPACE
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    # U+202A-U+202E, U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    # Authentication flow refinements
    "invalid_credentials",
    "role_mismatch",
    "duplicate_email",
    "no_pending_code",
    "code_expired",
    "attempts_exhausted",
    "invalid_code",
    "resend_too_soon",
    "delivery_failed",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if len(cleaned) < 2:
        raise ValueError("name must be at least 2 characters")
    if len(cleaned) > 50:
        raise ValueError("name must be at most 50 characters")
    return cleaned


class _CamelModel(BaseModel):
    """Accepts and emits camelCase keys while keeping snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    email: str
    password: str
    name: str
    role: Literal["student", "teacher"] = "student"

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., max_length=128)
    role: Optional[Literal["student", "teacher", "admin"]] = None

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyTwoFactorRequest(_CamelModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=1, max_length=10)

    @field_validator("code", mode="before")
    @classmethod
    def _coerce_code(cls, value: Any) -> Any:
        # Clients sometimes send the code as a JSON number
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value


class ResendTwoFactorRequest(_CamelModel):
    user_id: str = Field(..., min_length=1, max_length=128)


class TwoFactorToggleRequest(_CamelModel):
    enabled: bool


class ProfileUpdateRequest(_CamelModel):
    name: str

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: str) -> str:
        return _validate_name(value)


class PreferencesRequest(_CamelModel):
    language: Optional[Literal["en", "fr", "es", "ar"]] = None
    theme: Optional[Literal["light", "dark", "system"]] = None
    email_notifications: Optional[bool] = None
    course_recommendations: Optional[bool] = None

    def to_update(self) -> dict:
        return self.model_dump(exclude_none=True)


class PasswordChangeRequest(_CamelModel):
    current_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordResetRequest(_CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(_CamelModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class PreferencesResponse(_CamelModel):
    language: str = "en"
    theme: str = "system"
    email_notifications: bool = True
    course_recommendations: bool = True


class SessionResponse(_CamelModel):
    session_id: str
    device_info: str
    ip_address: Optional[str] = None
    created_at: datetime
    last_active: datetime
    current: bool = False

    @classmethod
    def from_descriptor(
        cls, descriptor: SessionDescriptor, current_session_id: Optional[str] = None
    ) -> "SessionResponse":
        return cls(
            session_id=descriptor.session_id,
            device_info=descriptor.device_info,
            ip_address=descriptor.ip_address,
            created_at=descriptor.created_at,
            last_active=descriptor.last_active,
            current=descriptor.session_id == current_session_id,
        )


class UserResponse(_CamelModel):
    """Outward projection of an identity; never carries the password hash."""

    id: str
    email: str
    name: str
    role: str
    two_factor_enabled: bool
    preferences: PreferencesResponse
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            two_factor_enabled=user.two_factor_enabled,
            preferences=PreferencesResponse(**user.preferences),
            created_at=user.created_at,
        )


class ProfileResponse(UserResponse):
    sessions: List[SessionResponse] = Field(default_factory=list)

    @classmethod
    def from_user_sessions(
        cls, user: User, current_session_id: Optional[str] = None
    ) -> "ProfileResponse":
        base = UserResponse.from_user(user)
        return cls(
            **base.model_dump(),
            sessions=[
                SessionResponse.from_descriptor(s, current_session_id) for s in user.sessions
            ],
        )


class AuthResponse(_CamelModel):
    user: UserResponse
    token: str
    session_id: Optional[str] = None


class TwoFactorChallengeResponse(_CamelModel):
    requires_2fa: bool = Field(default=True, alias="requires2FA")
    user_id: str
    masked_email: str
    message: str = "verification code sent to your email"


class TwoFactorStatusResponse(_CamelModel):
    has_pending_code: bool
    time_remaining: Optional[int] = None
    attempts_used: Optional[int] = None
    max_attempts: Optional[int] = None
    masked_email: Optional[str] = None

    @classmethod
    def from_status(cls, status: VerificationStatus) -> "TwoFactorStatusResponse":
        return cls(
            has_pending_code=status.has_pending_code,
            time_remaining=status.time_remaining,
            attempts_used=status.attempts_used,
            max_attempts=status.max_attempts,
            masked_email=status.masked_email,
        )


class TwoFactorToggleResponse(_CamelModel):
    two_factor_enabled: bool
    message: str


class MessageResponse(_CamelModel):
    message: str
    masked_email: Optional[str] = None


class UserListResponse(_CamelModel):
    users: List[UserResponse]
    total: int
    page: int
    limit: int
