from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from walletauth.api.schemas import (
    BackupCodesRegenerateRequest,
    DeviceResponse,
    DeviceTrustRequest,
    EmailVerificationConfirm,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MFAChallengeRequest,
    MFAChallengeResponse,
    MFACompleteRequest,
    MFADisableRequest,
    MFALoginChallengeRequest,
    MFASetupRequest,
    MFAVerifyRequest,
    MFAVerifyResponse,
    MFAVerifySetupRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    SessionResponse,
    StepUpCompleteRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from walletauth.logging import get_logger
from walletauth.service.auth import RequestContext
from walletauth.service.authenticator import AuthContext
from walletauth.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RATE_WINDOW_SECONDS = 60


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {"error": {"code": code, "message": message}}
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _request_context(request: Request, fingerprint: Optional[str] = None) -> RequestContext:
    return RequestContext(
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        device_fingerprint=fingerprint or request.headers.get("x-device-fingerprint"),
    )


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int = RATE_WINDOW_SECONDS
) -> None:
    allowed, remaining, retry_after = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], retry_after=retry_after)
        raise _http_error(
            "rate_limited",
            "too many requests",
            status_code=429,
            details={"retry_after": retry_after},
            headers={"Retry-After": str(max(retry_after, 1))},
        )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().authenticator.authenticate(authorization)


def _ok(data=None, message: Optional[str] = None) -> Envelope:
    return Envelope(success=True, data=data, message=message)


# -- auth ----------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account and, unless email verification is required, a session."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.register_rate_limit_per_minute,
    )
    user, pair = await runtime.auth.register(
        body.email,
        body.username,
        body.password,
        profile=body.profile(),
        context=_request_context(request),
    )
    return _ok(
        {
            "user": UserResponse.from_user(user),
            "tokens": TokenResponse.from_pair(pair) if pair else None,
            "requires_email_verification": pair is None,
        },
        message="registration successful",
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Returns a token pair, or a pending MFA or step-up token when another
    factor is required first.
    """
    runtime = get_runtime()
    limit = runtime.settings.login_rate_limit_per_minute
    await _enforce_rate_limit(runtime, f"login:ip:{_client_ip(request)}", limit)
    await _enforce_rate_limit(runtime, f"login:email:{body.email}", limit)
    result = await runtime.auth.login(
        body.email, body.password, _request_context(request, body.device_fingerprint)
    )
    data = LoginResponse(
        user=UserResponse.from_user(result.user),
        tokens=TokenResponse.from_pair(result.tokens) if result.tokens else None,
        requires_mfa=result.requires_mfa,
        mfa_token=result.mfa_token,
        mfa_methods=result.mfa_methods,
        requires_step_up=result.requires_step_up,
        step_up_token=result.step_up_token,
        expires_at=result.pending_expires_at,
    )
    if result.requires_mfa:
        message = "mfa verification required"
    elif result.requires_step_up:
        message = "additional verification required; a code was sent to your email"
    else:
        message = "login successful"
    return _ok(data, message=message)


@router.post("/auth/mfa/complete", response_model=Envelope, tags=["auth"])
async def complete_mfa(body: MFACompleteRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"mfa:ip:{_client_ip(request)}", runtime.settings.mfa_rate_limit_per_minute
    )
    user, pair, result = await runtime.auth.complete_mfa(
        body.mfa_token,
        body.code,
        config_id=body.config_id,
        is_backup_code=body.is_backup_code,
        context=_request_context(request, body.device_fingerprint),
    )
    return _ok(
        {
            "user": UserResponse.from_user(user),
            "tokens": TokenResponse.from_pair(pair),
            "remaining_backup_codes": result.remaining_backup_codes,
        },
        message="login successful",
    )


@router.post("/auth/mfa/challenge", response_model=Envelope, tags=["auth"])
async def mfa_login_challenge(body: MFALoginChallengeRequest, request: Request):
    """Send the SMS or email code for a login that returned ``requires_mfa``."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"mfa:ip:{_client_ip(request)}", runtime.settings.mfa_rate_limit_per_minute
    )
    result = await runtime.auth.mfa_login_challenge(body.mfa_token, body.method, body.config_id)
    return _ok(
        MFAChallengeResponse(
            config_id=result.config_id,
            method=result.method,
            expires_at=result.expires_at,
            destination=result.destination,
        ),
        message="code sent" if result.expires_at else "use your authenticator app",
    )


@router.post("/auth/step-up/complete", response_model=Envelope, tags=["auth"])
async def complete_step_up(body: StepUpCompleteRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"mfa:ip:{_client_ip(request)}", runtime.settings.mfa_rate_limit_per_minute
    )
    user, pair = await runtime.auth.complete_step_up(
        body.step_up_token, body.code, _request_context(request, body.device_fingerprint)
    )
    return _ok(
        {"user": UserResponse.from_user(user), "tokens": TokenResponse.from_pair(pair)},
        message="login successful",
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
    )
    pair = await runtime.auth.refresh(body.refresh_token, _request_context(request))
    return _ok({"tokens": TokenResponse.from_pair(pair)})


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token)
    return _ok(message="logged out")


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = [
        SessionResponse(**s)
        for s in runtime.auth.list_sessions(principal.user_id, principal.session_id)
    ]
    return _ok({"sessions": sessions, "total": len(sessions)})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal.user_id, session_id)
    return _ok(message="session terminated")


@router.delete("/auth/sessions", response_model=Envelope, tags=["auth"])
async def revoke_other_sessions(principal: AuthContext = Depends(get_user)):
    """Sign out every other session; the one making the request stays."""
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_all_sessions(principal.user_id, principal.session_id)
    return _ok({"revoked_sessions": revoked}, message=f"{revoked} session(s) terminated")


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return _ok({"sessions_revoked": revoked}, message="password changed")


@router.post("/auth/password/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    limit = runtime.settings.reset_rate_limit_per_minute
    await _enforce_rate_limit(runtime, f"reset:ip:{_client_ip(request)}", limit)
    await _enforce_rate_limit(runtime, f"reset:email:{body.email}", limit)
    await runtime.auth.request_password_reset(body.email)
    # Same answer whether or not the account exists
    return _ok(message="if the account exists, a reset link has been sent")


@router.post("/auth/password/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    await runtime.auth.reset_password(body.token, body.new_password)
    return _ok(message="password has been reset")


@router.post("/auth/email/verify/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{principal.user_id}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    sent = await runtime.auth.request_email_verification(principal.user_id)
    return _ok({"sent": sent}, message="verification email sent" if sent else "email already verified")


@router.post("/auth/email/verify/confirm", response_model=Envelope, tags=["auth"])
async def confirm_email_verification(body: EmailVerificationConfirm):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(body.token)
    return _ok({"user": UserResponse.from_user(user)}, message="email verified")


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.get_user(principal.user_id)
    return _ok({"user": UserResponse.from_user(user)})


# -- mfa -----------------------------------------------------------------------


@router.post("/mfa/setup", response_model=Envelope, status_code=201, tags=["mfa"])
async def mfa_setup(body: MFASetupRequest, principal: AuthContext = Depends(get_user)):
    """Start enrolling a method; backup codes are returned once, here."""
    runtime = get_runtime()
    result = await runtime.mfa.setup(
        principal.user_id, body.method, body.destination, is_primary=body.is_primary
    )
    return _ok(result.as_dict(), message="verify the method to finish setup")


@router.post("/mfa/verify-setup", response_model=Envelope, tags=["mfa"])
async def mfa_verify_setup(body: MFAVerifySetupRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"mfa:user:{principal.user_id}", runtime.settings.mfa_rate_limit_per_minute
    )
    cfg = await runtime.mfa.verify_setup(principal.user_id, body.config_id, body.code)
    return _ok(
        {"config_id": cfg.id, "method": cfg.method, "state": cfg.state, "is_primary": cfg.is_primary},
        message="mfa method enabled",
    )


@router.post("/mfa/challenge", response_model=Envelope, tags=["mfa"])
async def mfa_challenge(body: MFAChallengeRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    result = await runtime.mfa.challenge(principal.user_id, body.method, body.config_id)
    return _ok(
        MFAChallengeResponse(
            config_id=result.config_id,
            method=result.method,
            expires_at=result.expires_at,
            destination=result.destination,
        )
    )


@router.post("/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(body: MFAVerifyRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"mfa:user:{principal.user_id}", runtime.settings.mfa_rate_limit_per_minute
    )
    result = await runtime.mfa.verify(
        principal.user_id, body.code, body.config_id, body.is_backup_code
    )
    return _ok(
        MFAVerifyResponse(
            config_id=result.config_id,
            method=result.method,
            remaining_backup_codes=result.remaining_backup_codes,
            used_backup_code=result.used_backup_code,
        ),
        message="code verified",
    )


@router.post("/mfa/backup-codes/regenerate", response_model=Envelope, tags=["mfa"])
async def mfa_regenerate_backup_codes(
    body: BackupCodesRegenerateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    codes = await runtime.mfa.regenerate_backup_codes(principal.user_id, body.config_id)
    return _ok({"config_id": body.config_id, "backup_codes": codes})


@router.get("/mfa/methods", response_model=Envelope, tags=["mfa"])
async def mfa_methods(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return _ok({"methods": runtime.mfa.list_methods(principal.user_id)})


@router.delete("/mfa/methods/{config_id}", response_model=Envelope, tags=["mfa"])
async def mfa_disable(
    config_id: str = Path(..., max_length=64),
    body: Optional[MFADisableRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    reason = body.reason if body else "user_request"
    cfg = await runtime.mfa.disable(principal.user_id, config_id, reason)
    user = runtime.auth.get_user(principal.user_id)
    return _ok(
        {"config_id": cfg.id, "state": cfg.state, "mfa_enabled": user.mfa_enabled},
        message="mfa method disabled",
    )


# -- devices -------------------------------------------------------------------


@router.get("/devices", response_model=Envelope, tags=["devices"])
async def list_devices(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    devices = [DeviceResponse.from_device(d) for d in runtime.auth.list_devices(principal.user_id)]
    return _ok({"devices": devices, "total": len(devices)})


@router.put("/devices/{device_id}/trust", response_model=Envelope, tags=["devices"])
async def set_device_trust(
    body: DeviceTrustRequest,
    device_id: str = Path(..., max_length=256),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    device = await runtime.auth.set_device_trust(principal.user_id, device_id, body.trusted)
    return _ok({"device": DeviceResponse.from_device(device)}, message="device trust updated")


@router.delete("/devices/{device_id}", response_model=Envelope, tags=["devices"])
async def remove_device(
    device_id: str = Path(..., max_length=256),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.remove_device(principal.user_id, device_id)
    return _ok(message="device removed")


# -- admin ---------------------------------------------------------------------


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    user = await runtime.auth.unlock_account(principal.user_id, user_id)
    return _ok({"user": UserResponse.from_user(user)}, message="account unlocked")
