from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

ACCOUNT_ACTIVE = "active"
ACCOUNT_LOCKED = "locked"
ACCOUNT_DISABLED = "disabled"
ACCOUNT_STATUSES = (ACCOUNT_ACTIVE, ACCOUNT_LOCKED, ACCOUNT_DISABLED)

MFA_METHODS = ("totp", "sms", "email", "biometric")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    username: str
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    account_status: str = ACCOUNT_ACTIVE
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    email_verified: bool = False
    mfa_enabled: bool = False
    last_login_at: Optional[datetime] = None
    profile: Dict | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class MFAConfig:
    """One enrolled MFA method. ``secret`` holds the plaintext TOTP secret
    in memory; stores encrypt it at rest."""

    id: str
    user_id: str
    method: str
    is_primary: bool = False
    is_enabled: bool = False
    secret: Optional[str] = None
    destination: Optional[str] = None
    verified_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    backup_codes_used: int = 0
    last_totp_step: Optional[int] = None
    disabled_reason: Optional[str] = None
    disabled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_verified(self) -> bool:
        return self.verified_at is not None

    @property
    def is_usable(self) -> bool:
        return self.is_enabled and self.verified_at is not None

    @property
    def state(self) -> str:
        if self.disabled_at is not None:
            return "disabled"
        if self.verified_at is None:
            return "pending_setup"
        return "enabled" if self.is_enabled else "verified"


@dataclass
class Device:
    user_id: str
    fingerprint: str
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    trusted: bool = False
    first_seen: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)
    seen_count: int = 1
    known_ips: List[str] = field(default_factory=list)


@dataclass
class RefreshTokenRecord:
    jti: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None
