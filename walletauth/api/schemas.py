from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from walletauth.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "weak_password",
    "invalid_code",
    "verification_expired",
    "unauthorized",
    "invalid_credentials",
    "invalid_token",
    "token_revoked",
    "forbidden",
    "email_not_verified",
    "insufficient_permissions",
    "not_found",
    "conflict",
    "email_exists",
    "account_locked",
    "rate_limited",
    "server_error",
    "service_unavailable",
})


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error payload with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value}")
        return value


class Envelope(BaseModel):
    """Wrapper around every JSON response."""

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    timestamp: str = Field(default_factory=_utc_timestamp)
    request_id: str = Field(default_factory=_request_id)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]{3,32}$")


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    username: str
    # Strength rules live in the service so they report weak_password
    password: str = Field(..., max_length=1024)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=20)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        value = _normalize_unicode(value.strip())
        if not _USERNAME_PATTERN.match(value):
            raise ValueError(
                "username must be 3-32 characters of letters, digits, dots, underscores or hyphens"
            )
        return value

    def profile(self) -> Dict[str, Any]:
        return {
            key: value
            for key, value in {
                "first_name": self.first_name,
                "last_name": self.last_name,
                "phone": self.phone,
            }.items()
            if value
        }


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    device_fingerprint: Optional[str] = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        # Not validated: a malformed email must fail exactly like an unknown one
        return _normalize_unicode(value.strip().lower())


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class MFACompleteRequest(BaseModel):
    mfa_token: str = Field(..., max_length=2048)
    code: str = Field(..., min_length=1, max_length=32)
    config_id: Optional[str] = Field(default=None, max_length=64)
    is_backup_code: bool = False
    device_fingerprint: Optional[str] = Field(default=None, max_length=256)


class StepUpCompleteRequest(BaseModel):
    step_up_token: str = Field(..., max_length=2048)
    code: str = Field(..., min_length=1, max_length=32)
    device_fingerprint: Optional[str] = Field(default=None, max_length=256)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., max_length=1024)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=1024)


class EmailVerificationConfirm(BaseModel):
    token: str = Field(..., max_length=256)


class MFASetupRequest(BaseModel):
    method: Literal["totp", "sms", "email", "biometric"]
    destination: Optional[str] = Field(default=None, max_length=320)
    is_primary: bool = False


class MFAVerifySetupRequest(BaseModel):
    config_id: str = Field(..., max_length=64)
    code: str = Field(..., min_length=1, max_length=32)


class MFAChallengeRequest(BaseModel):
    method: Optional[Literal["totp", "sms", "email"]] = None
    config_id: Optional[str] = Field(default=None, max_length=64)


class MFAVerifyRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    config_id: Optional[str] = Field(default=None, max_length=64)
    is_backup_code: bool = False


class BackupCodesRegenerateRequest(BaseModel):
    config_id: str = Field(..., max_length=64)


class MFADisableRequest(BaseModel):
    reason: str = Field(default="user_request", max_length=200)


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    role: str
    account_status: str
    email_verified: bool
    mfa_enabled: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None
    profile: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_user(cls, user) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            role=user.role,
            account_status=user.account_status,
            email_verified=user.email_verified,
            mfa_enabled=user.mfa_enabled,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
            profile=user.profile or {},
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime

    @classmethod
    def from_pair(cls, pair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )


class LoginResponse(BaseModel):
    user: UserResponse
    tokens: Optional[TokenResponse] = None
    requires_mfa: bool = False
    mfa_token: Optional[str] = None
    mfa_methods: List[Dict[str, Any]] = Field(default_factory=list)
    requires_step_up: bool = False
    step_up_token: Optional[str] = None
    expires_at: Optional[datetime] = None


class MFAChallengeResponse(BaseModel):
    config_id: str
    method: str
    expires_at: Optional[datetime] = None
    destination: Optional[str] = None


class MFAVerifyResponse(BaseModel):
    config_id: str
    method: str
    remaining_backup_codes: int
    used_backup_code: bool = False


class MFALoginChallengeRequest(BaseModel):
    mfa_token: str = Field(..., max_length=2048)
    method: Optional[Literal["totp", "sms", "email"]] = None
    config_id: Optional[str] = Field(default=None, max_length=64)


class DeviceTrustRequest(BaseModel):
    trusted: bool


class SessionResponse(BaseModel):
    session_id: str
    created_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class DeviceResponse(BaseModel):
    device_id: str
    trusted: bool
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    first_seen: datetime
    last_seen: datetime
    seen_count: int

    @classmethod
    def from_device(cls, device) -> "DeviceResponse":
        return cls(
            device_id=device.fingerprint,
            trusted=device.trusted,
            ip_addr=device.ip_addr,
            user_agent=device.user_agent,
            first_seen=device.first_seen,
            last_seen=device.last_seen,
            seen_count=device.seen_count,
        )
