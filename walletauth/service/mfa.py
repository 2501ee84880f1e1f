from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import re
import secrets
import struct
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, urlencode

from walletauth.config import Settings
from walletauth.logging import audit_event, get_logger
from walletauth.service.email import EmailService
from walletauth.service.errors import (
    InvalidCodeError,
    NotFoundError,
    RateLimitedError,
    ServiceUnavailableError,
    ValidationError,
)
from walletauth.service.guards import dependency_boundary
from walletauth.service.sms import SMSService, is_e164
from walletauth.storage.models import MFA_METHODS, MFAConfig

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
OTP_DIGITS = 6
BACKUP_CODE_BYTES = 4  # 8 hex characters

_SIX_DIGITS = re.compile(r"^\d{6}$")
_BACKUP_CODE = re.compile(r"^[0-9A-F]{8}$")


def generate_totp(secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL) -> str:
    """RFC 6238 code (HMAC-SHA1, 6 digits), compatible with authenticator apps."""
    return _totp_for_step(secret, int(timestamp // interval))


def _totp_for_step(secret: str, step: int) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    digest = hmac.new(key, struct.pack(">Q", step), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**TOTP_DIGITS
    )
    return str(code_int).zfill(TOTP_DIGITS)


def match_totp_step(
    secret: str, code: str, timestamp: float, *, window: int = 1
) -> Optional[int]:
    """Return the time step ``code`` belongs to, within +/- ``window`` steps."""
    current = int(timestamp // TOTP_INTERVAL)
    for step in range(current - window, current + window + 1):
        generated = _totp_for_step(secret, step)
        if generated and hmac.compare_digest(generated.encode(), code.encode()):
            return step
    return None


def normalize_backup_code(code: str) -> str:
    return re.sub(r"[\s-]", "", code or "").upper()


def _mask_destination(method: str, destination: Optional[str]) -> Optional[str]:
    if not destination:
        return None
    if method == "email" and "@" in destination:
        local, domain = destination.split("@", 1)
        return f"{local[:2]}***@{domain}"
    return f"{destination[:3]}***{destination[-2:]}" if len(destination) > 5 else "***"


@dataclass
class SetupResult:
    config: MFAConfig
    backup_codes: List[str]
    secret: Optional[str] = None
    provisioning_uri: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "config_id": self.config.id,
            "method": self.config.method,
            "state": self.config.state,
            "destination": _mask_destination(self.config.method, self.config.destination),
            "backup_codes": list(self.backup_codes),
        }
        if self.secret:
            data["secret"] = self.secret
            data["provisioning_uri"] = self.provisioning_uri
        return data


@dataclass
class ChallengeResult:
    config_id: str
    method: str
    expires_at: Optional[datetime] = None
    destination: Optional[str] = None


@dataclass
class VerificationResult:
    config_id: str
    method: str
    remaining_backup_codes: int
    used_backup_code: bool = False


class MFAService:
    """Owns the lifecycle of per-user MFA configurations.

    ``pending_setup`` configurations are created by :meth:`setup`, activated by
    one successful :meth:`verify_setup`, and soft-disabled by :meth:`disable`.
    Every failed verification counts towards a per-user limit kept in the
    cache; once it trips, verification is refused until the window expires.
    Callers only ever see ``invalid code`` for a failed check.
    """

    def __init__(
        self,
        settings: Settings,
        store,
        cache,
        *,
        email: EmailService,
        sms: SMSService,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self.email = email
        self.sms = sms
        self._clock = clock or time.time

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # -- code material ------------------------------------------------------

    def _hash_code(self, code: str) -> str:
        return hmac.new(
            self.settings.backup_code_pepper.encode(), code.encode(), hashlib.sha256
        ).hexdigest()

    def _new_backup_codes(self) -> List[str]:
        return [
            secrets.token_hex(BACKUP_CODE_BYTES).upper()
            for _ in range(self.settings.backup_code_count)
        ]

    @staticmethod
    def _new_otp() -> str:
        return str(secrets.randbelow(10**OTP_DIGITS)).zfill(OTP_DIGITS)

    def provisioning_uri(self, secret: str, account: str) -> str:
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{account}")
        params = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{params}"

    # -- lookups ------------------------------------------------------------

    def _owned_config(self, user_id: str, config_id: str) -> MFAConfig:
        cfg = self.store.get_mfa_config(config_id) if config_id else None
        if cfg is None or cfg.user_id != user_id:
            raise NotFoundError("mfa method not found", detail={"config_id": config_id})
        return cfg

    def _usable_configs(self, user_id: str) -> List[MFAConfig]:
        configs = [c for c in self.store.list_mfa_configs(user_id) if c.is_usable]
        return sorted(configs, key=lambda c: (not c.is_primary, c.created_at))

    # -- failure accounting -------------------------------------------------

    async def _ensure_not_locked(self, user_id: str) -> None:
        retry_after = await self.cache.check_mfa_lockout(user_id)
        if retry_after:
            raise RateLimitedError(
                "too many invalid codes, try again later",
                detail={"retry_after": retry_after},
            )

    async def _record_failure(self, user_id: str, *, stage: str, config_id: Optional[str]) -> None:
        locked, attempts = await self.cache.atomic_mfa_attempt(
            user_id,
            max_attempts=self.settings.mfa_verify_max_failures,
            lockout_seconds=self.settings.mfa_verify_window_seconds,
        )
        audit_event(
            "mfa_verification_failed",
            user_id=user_id,
            stage=stage,
            config_id=config_id,
            attempts=attempts,
        )
        if locked:
            audit_event("mfa_verification_locked", user_id=user_id, stage=stage)

    # -- delivery -----------------------------------------------------------

    async def _deliver(self, method: str, destination: str, code: str, *, purpose: str) -> None:
        ttl = self.settings.otp_code_ttl_minutes
        timeout = self.settings.delivery_timeout_seconds + 1
        if method == "sms":
            sent = await asyncio.wait_for(
                self.sms.send_code(destination, code, ttl_minutes=ttl), timeout
            )
        else:
            sent = await asyncio.wait_for(
                asyncio.to_thread(
                    self.email.send_mfa_code, destination, code, purpose=purpose, ttl_minutes=ttl
                ),
                timeout,
            )
        if not sent:
            logger.error("mfa_code_delivery_failed", method=method, purpose=purpose)
            raise ServiceUnavailableError("could not deliver verification code")

    async def send_one_time_code(
        self, key: str, method: str, destination: str, *, purpose: str
    ) -> datetime:
        """Store a fresh code under ``key`` and deliver it; returns its expiry."""
        code = self._new_otp()
        ttl_seconds = self.settings.otp_code_ttl_minutes * 60
        await self.cache.set_otp(key, self._hash_code(code), ttl_seconds)
        await self._deliver(method, destination, code, purpose=purpose)
        return self._now() + timedelta(seconds=ttl_seconds)

    async def _consume_one_time_code(self, key: str, code: str) -> bool:
        if not _SIX_DIGITS.match(code or ""):
            return False
        return await self.cache.consume_otp(key, self._hash_code(code))

    @dependency_boundary("mfa_verify_one_time_code")
    async def verify_one_time_code(self, user_id: str, key: str, code: str, *, stage: str) -> None:
        """Check a delivered code outside any MFA configuration (step-up login)."""
        await self._ensure_not_locked(user_id)
        if not await self._consume_one_time_code(key, code):
            await self._record_failure(user_id, stage=stage, config_id=None)
            raise InvalidCodeError()
        await self.cache.clear_mfa_attempts(user_id)

    # -- lifecycle ----------------------------------------------------------

    @dependency_boundary("mfa_setup")
    async def setup(
        self,
        user_id: str,
        method: str,
        destination: Optional[str] = None,
        *,
        is_primary: bool = False,
    ) -> SetupResult:
        if method not in MFA_METHODS:
            raise ValidationError(
                "unsupported mfa method", detail={"field": "method", "allowed": list(MFA_METHODS)}
            )
        if method == "biometric":
            # Listed as a method but there is no verification path for it
            raise ValidationError(
                "biometric mfa is not supported", detail={"field": "method"}
            )
        user = self.store.find_by_id(user_id)
        if user is None:
            raise NotFoundError("user not found")

        secret = None
        uri = None
        if method == "totp":
            secret = base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")
            uri = self.provisioning_uri(secret, user.email)
            destination = None
        elif method == "sms":
            destination = (destination or "").strip()
            if not is_e164(destination):
                raise ValidationError(
                    "phone number must be in E.164 format", detail={"field": "destination"}
                )
        else:
            destination = (destination or user.email).strip().lower()
            if "@" not in destination:
                raise ValidationError("invalid email address", detail={"field": "destination"})

        backup_codes = self._new_backup_codes()
        cfg = self.store.create_mfa_config(
            user_id,
            method,
            secret=secret,
            destination=destination,
            backup_code_hashes=[self._hash_code(c) for c in backup_codes],
            is_primary=is_primary,
        )
        logger.info("mfa_setup_started", user_id=user_id, config_id=cfg.id, method=method)
        return SetupResult(config=cfg, backup_codes=backup_codes, secret=secret, provisioning_uri=uri)

    @dependency_boundary("mfa_verify_setup")
    async def verify_setup(self, user_id: str, config_id: str, code: str) -> MFAConfig:
        cfg = self._owned_config(user_id, config_id)
        if cfg.disabled_at is not None:
            raise NotFoundError("mfa method not found", detail={"config_id": config_id})
        if cfg.is_usable:
            return cfg
        await self._ensure_not_locked(user_id)

        if not await self._check_code(cfg, (code or "").strip()):
            await self._record_failure(user_id, stage="setup", config_id=cfg.id)
            raise InvalidCodeError()
        await self.cache.clear_mfa_attempts(user_id)

        now = self._now()
        updated = self.store.update_mfa_config(
            cfg.id, verified_at=now, is_enabled=True, last_used=now
        )
        if not any(c.is_primary for c in self._usable_configs(user_id)):
            self.store.set_primary_mfa_config(user_id, cfg.id)
        self.store.set_mfa_enabled(user_id, True)
        audit_event("mfa_method_enabled", user_id=user_id, config_id=cfg.id, method=cfg.method)
        return self.store.get_mfa_config(cfg.id) or updated

    async def _check_code(self, cfg: MFAConfig, code: str) -> bool:
        if cfg.method == "totp":
            if not cfg.secret or not _SIX_DIGITS.match(code):
                return False
            step = match_totp_step(
                cfg.secret, code, self._clock(), window=self.settings.totp_window
            )
            # A step that was already accepted is a replay
            return step is not None and self.store.advance_totp_step(cfg.id, step)
        if cfg.method in ("sms", "email"):
            return await self._consume_one_time_code(cfg.id, code)
        return False

    @dependency_boundary("mfa_challenge")
    async def challenge(
        self,
        user_id: str,
        method: Optional[str] = None,
        config_id: Optional[str] = None,
    ) -> ChallengeResult:
        if config_id:
            cfg = self._owned_config(user_id, config_id)
            if cfg.disabled_at is not None:
                raise NotFoundError("mfa method not found", detail={"config_id": config_id})
        else:
            usable = self._usable_configs(user_id)
            if method:
                usable = [c for c in usable if c.method == method]
            if not usable:
                raise NotFoundError("no enabled mfa method", detail={"method": method})
            cfg = usable[0]

        allowed, hits, retry_after = await self.cache.hit_window_counter(
            f"mfa:challenge:{user_id}",
            self.settings.mfa_challenge_limit,
            self.settings.mfa_challenge_window_seconds,
        )
        if not allowed:
            audit_event("mfa_challenge_rate_limited", user_id=user_id, hits=hits)
            raise RateLimitedError(
                "too many verification requests", detail={"retry_after": retry_after}
            )

        if cfg.method == "totp":
            return ChallengeResult(config_id=cfg.id, method=cfg.method)
        expires_at = await self.send_one_time_code(
            cfg.id, cfg.method, cfg.destination or "", purpose="sign-in"
        )
        logger.info("mfa_challenge_sent", user_id=user_id, config_id=cfg.id, method=cfg.method)
        return ChallengeResult(
            config_id=cfg.id,
            method=cfg.method,
            expires_at=expires_at,
            destination=_mask_destination(cfg.method, cfg.destination),
        )

    @dependency_boundary("mfa_verify")
    async def verify(
        self,
        user_id: str,
        code: str,
        config_id: Optional[str] = None,
        is_backup_code: bool = False,
    ) -> VerificationResult:
        await self._ensure_not_locked(user_id)
        if config_id:
            cfg = self._owned_config(user_id, config_id)
            candidates = [cfg] if cfg.is_usable else []
        else:
            candidates = self._usable_configs(user_id)

        result = None
        if is_backup_code:
            normalized = normalize_backup_code(code)
            if _BACKUP_CODE.match(normalized):
                code_hash = self._hash_code(normalized)
                for cfg in candidates:
                    remaining = self.store.consume_backup_code(cfg.id, code_hash)
                    if remaining is not None:
                        audit_event(
                            "mfa_backup_code_used",
                            user_id=user_id,
                            config_id=cfg.id,
                            remaining=remaining,
                        )
                        result = VerificationResult(cfg.id, cfg.method, remaining, True)
                        break
        else:
            cleaned = (code or "").strip()
            for cfg in candidates:
                if await self._check_code(cfg, cleaned):
                    if cfg.method != "totp":
                        self.store.update_mfa_config(cfg.id, last_used=self._now())
                    result = VerificationResult(
                        cfg.id, cfg.method, len(cfg.backup_code_hashes)
                    )
                    break

        if result is None:
            await self._record_failure(user_id, stage="verify", config_id=config_id)
            raise InvalidCodeError()
        await self.cache.clear_mfa_attempts(user_id)
        return result

    @dependency_boundary("mfa_regenerate_backup_codes")
    async def regenerate_backup_codes(self, user_id: str, config_id: str) -> List[str]:
        cfg = self._owned_config(user_id, config_id)
        if not cfg.is_usable:
            raise NotFoundError("mfa method not found", detail={"config_id": config_id})
        codes = self._new_backup_codes()
        # One store update swaps the whole batch
        if not self.store.replace_backup_codes(cfg.id, [self._hash_code(c) for c in codes]):
            raise NotFoundError("mfa method not found", detail={"config_id": config_id})
        audit_event("mfa_backup_codes_regenerated", user_id=user_id, config_id=cfg.id)
        return codes

    @dependency_boundary("mfa_disable")
    async def disable(self, user_id: str, config_id: str, reason: str = "user_request") -> MFAConfig:
        cfg = self._owned_config(user_id, config_id)
        if cfg.disabled_at is not None:
            return cfg
        updated = self.store.update_mfa_config(
            cfg.id,
            is_enabled=False,
            disabled_reason=reason,
            disabled_at=self._now(),
        )
        remaining = self._usable_configs(user_id)
        if not remaining:
            self.store.set_mfa_enabled(user_id, False)
        elif cfg.is_primary and not any(c.is_primary for c in remaining):
            self.store.set_primary_mfa_config(user_id, remaining[0].id)
        audit_event(
            "mfa_method_disabled",
            user_id=user_id,
            config_id=cfg.id,
            method=cfg.method,
            reason=reason,
        )
        return updated or cfg

    def list_methods(self, user_id: str) -> List[Dict[str, Any]]:
        return [
            {
                "config_id": c.id,
                "method": c.method,
                "state": c.state,
                "is_primary": c.is_primary,
                "is_enabled": c.is_enabled,
                "destination": _mask_destination(c.method, c.destination),
                "verified_at": c.verified_at.isoformat() if c.verified_at else None,
                "last_used": c.last_used.isoformat() if c.last_used else None,
                "backup_codes_remaining": len(c.backup_code_hashes),
                "disabled_reason": c.disabled_reason,
            }
            for c in self.store.list_mfa_configs(user_id)
        ]

    def usable_methods(self, user_id: str) -> List[Dict[str, Any]]:
        return [
            {"config_id": c.id, "method": c.method, "is_primary": c.is_primary}
            for c in self._usable_configs(user_id)
        ]
