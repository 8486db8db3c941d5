from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from coursegate.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PreferencesRequest,
    ProfileResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    ResendTwoFactorRequest,
    TwoFactorChallengeResponse,
    TwoFactorStatusResponse,
    TwoFactorToggleRequest,
    TwoFactorToggleResponse,
    UserListResponse,
    UserResponse,
    VerifyTwoFactorRequest,
)
from coursegate.service.auth import AuthContext, LoginResult
from coursegate.service.runtime import check_rate_limit, get_runtime


router = APIRouter(prefix="/api/users")

PASSWORD_RESET_MESSAGE = "if an account exists for that email, a reset link has been sent"


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> int:
    """Raise 429 when ``key`` has spent its budget; returns the remaining allowance."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retryAfter": reset_seconds},
            headers={"Retry-After": str(max(1, reset_seconds))},
        )
    return remaining


def _client_meta(request: Request) -> tuple[Optional[str], Optional[str]]:
    user_agent = request.headers.get("user-agent")
    ip_address = request.client.host if request.client else None
    return user_agent, ip_address


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)
    return ctx


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if principal.role != "admin":
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


def _auth_payload(result: LoginResult) -> dict:
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        token=result.token,
        session_id=result.session_id,
    ).model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Registration, login and the 2FA handshake
# ---------------------------------------------------------------------------


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a student or teacher account and sign it in.

    Raises:
        400: duplicate_email, or validation_error for a malformed payload
        403: If signup is disabled in settings
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    user_agent, ip_address = _client_meta(request)
    user, token, session_id = await runtime.auth.register(
        body.email,
        body.password,
        body.name,
        role=body.role,
        user_agent=user_agent,
        ip_address=ip_address,
    )
    return Envelope(
        status="ok",
        data=_auth_payload(LoginResult(user=user, token=token, session_id=session_id)),
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Check credentials; returns a token, or a 2FA challenge when enabled.

    Raises:
        401: invalid_credentials
        403: role_mismatch when ``role`` is given and differs
        429: rate_limited for this email
        500: delivery_failed when the verification email could not be sent
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    user_agent, ip_address = _client_meta(request)
    result = await runtime.auth.login(
        body.email,
        body.password,
        expected_role=body.role,
        user_agent=user_agent,
        ip_address=ip_address,
    )
    if result.requires_two_factor:
        challenge = TwoFactorChallengeResponse(
            user_id=result.user.id,
            masked_email=result.masked_email,
        )
        return Envelope(status="ok", data=challenge.model_dump(by_alias=True))
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/verify-2fa", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: VerifyTwoFactorRequest, request: Request):
    user_agent, ip_address = _client_meta(request)
    runtime = get_runtime()
    result = await runtime.auth.verify_two_factor(
        body.user_id,
        body.code,
        user_agent=user_agent,
        ip_address=ip_address,
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/resend-2fa", response_model=Envelope, tags=["auth"])
async def resend_two_factor(body: ResendTwoFactorRequest):
    runtime = get_runtime()
    masked = await runtime.auth.resend_two_factor(body.user_id)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="a new verification code has been sent", masked_email=masked
        ).model_dump(by_alias=True),
    )


@router.get("/2fa-status/{user_id}", response_model=Envelope, tags=["auth"])
async def two_factor_status(user_id: str = Path(..., min_length=1, max_length=128)):
    runtime = get_runtime()
    status = await runtime.auth.two_factor_status(user_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse.from_status(status).model_dump(
            by_alias=True, exclude_none=True
        ),
    )


# ---------------------------------------------------------------------------
# Authenticated account management
# ---------------------------------------------------------------------------


@router.put("/two-factor", response_model=Envelope, tags=["account"])
async def set_two_factor(
    body: TwoFactorToggleRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = await runtime.auth.set_two_factor(principal.user_id, body.enabled)
    state = "enabled" if user.two_factor_enabled else "disabled"
    return Envelope(
        status="ok",
        data=TwoFactorToggleResponse(
            two_factor_enabled=user.two_factor_enabled,
            message=f"two-factor authentication {state}",
        ).model_dump(by_alias=True),
    )


@router.post("/logout-all", response_model=Envelope, tags=["account"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    """Revoke every session except the one the caller's token was issued for."""
    runtime = get_runtime()
    revoked = await runtime.auth.logout_other_sessions(principal.user_id, principal.session_id)
    return Envelope(
        status="ok",
        data={"message": "logged out of all other devices", "revoked": revoked},
    )


@router.get("/me", response_model=Envelope, tags=["account"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.get_user(principal.user_id)
    profile = ProfileResponse.from_user_sessions(user, principal.session_id)
    return Envelope(status="ok", data=profile.model_dump(mode="json", by_alias=True))


@router.put("/me", response_model=Envelope, tags=["account"])
async def update_me(body: ProfileUpdateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(principal.user_id, name=body.name)
    return Envelope(
        status="ok", data=UserResponse.from_user(user).model_dump(mode="json", by_alias=True)
    )


@router.delete("/me", response_model=Envelope, tags=["account"])
async def delete_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.delete_account(principal.user_id)
    return Envelope(status="ok", data={"message": "account deleted"})


@router.put("/preferences", response_model=Envelope, tags=["account"])
async def update_preferences(
    body: PreferencesRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = await runtime.auth.update_preferences(principal.user_id, body.to_update())
    return Envelope(
        status="ok", data=UserResponse.from_user(user).model_dump(mode="json", by_alias=True)
    )


@router.put("/change-password", response_model=Envelope, tags=["account"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "password updated"})


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/request-password-reset", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.initiate_password_reset(body.email)
    # Same answer whether or not the account exists
    return Envelope(status="ok", data={"message": PASSWORD_RESET_MESSAGE})


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    # token guessing budget per client address
    _, ip_address = _client_meta(request)
    await _enforce_rate_limit(runtime, f"reset:confirm:{ip_address or 'unknown'}", 5, 300)
    ok = await runtime.auth.complete_password_reset(body.token, body.new_password)
    if not ok:
        raise _http_error("validation_error", "invalid or expired reset token", status_code=400)
    return Envelope(status="ok", data={"message": "password has been reset"})


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@router.get("", response_model=Envelope, tags=["admin"])
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    users, total = runtime.auth.list_users(page=page, limit=limit)
    payload = UserListResponse(
        users=[UserResponse.from_user(u) for u in users],
        total=total,
        page=page,
        limit=limit,
    )
    return Envelope(status="ok", data=payload.model_dump(mode="json", by_alias=True))
