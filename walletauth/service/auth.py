from __future__ import annotations

import asyncio
import hashlib
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from walletauth.config import Settings
from walletauth.logging import audit_event, get_logger
from walletauth.service.email import EmailService
from walletauth.service.errors import (
    AccountLockedError,
    EmailExistsError,
    ForbiddenError,
    InsufficientPermissionsError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ServiceError,
    ValidationError,
    VerificationExpiredError,
    WeakPasswordError,
)
from walletauth.service.guards import dependency_boundary
from walletauth.service.mfa import ChallengeResult, MFAService, VerificationResult
from walletauth.service.risk import RiskAssessment, RiskCheck
from walletauth.service.tokens import MFA_PENDING, STEP_UP, TokenPair, TokenService
from walletauth.storage.errors import ConstraintViolation
from walletauth.storage.models import (
    ACCOUNT_ACTIVE,
    ACCOUNT_DISABLED,
    ACCOUNT_LOCKED,
    Device,
    User,
)

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
_PASSWORD_RULES = (
    (re.compile(r"[a-z]"), "lowercase letter"),
    (re.compile(r"[A-Z]"), "uppercase letter"),
    (re.compile(r"\d"), "digit"),
    (re.compile(r"[^A-Za-z0-9]"), "special character"),
)
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

RESET_TOKEN_KIND = "reset"
VERIFY_TOKEN_KIND = "verify"


def password_problems(password: str) -> List[str]:
    """Return the unmet strength requirements; empty when the password is acceptable."""
    problems: List[str] = []
    if not PASSWORD_MIN_LENGTH <= len(password or "") <= PASSWORD_MAX_LENGTH:
        problems.append(f"length between {PASSWORD_MIN_LENGTH} and {PASSWORD_MAX_LENGTH}")
    for pattern, label in _PASSWORD_RULES:
        if not pattern.search(password or ""):
            problems.append(label)
    return problems


def _ensure_strong(password: str) -> None:
    problems = password_problems(password)
    if problems:
        raise WeakPasswordError(
            "password does not meet the strength requirements",
            detail={"field": "password", "requirements": problems},
        )


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]


@dataclass
class RequestContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None

    def as_token_context(self) -> Dict[str, Optional[str]]:
        return {"ip": self.ip, "user_agent": self.user_agent}


@dataclass
class LoginResult:
    """Outcome of a password login: a session, or the next step required."""

    user: User
    tokens: Optional[TokenPair] = None
    requires_mfa: bool = False
    mfa_token: Optional[str] = None
    mfa_methods: List[Dict[str, Any]] = field(default_factory=list)
    requires_step_up: bool = False
    step_up_token: Optional[str] = None
    pending_expires_at: Optional[datetime] = None
    risk: Optional[RiskAssessment] = None


class AuthService:
    """Registration, login and account recovery flows.

    Login walks ``CREDENTIALS_PENDING -> PASSWORD_VERIFIED -> (MFA_REQUIRED ->
    MFA_VERIFIED) -> SESSION_ISSUED``. This class owns the lockout state
    machine; the store makes each counter transition atomic per user. A
    rejected attempt is final for that request.
    """

    def __init__(
        self,
        settings: Settings,
        store,
        cache,
        *,
        tokens: TokenService,
        mfa: MFAService,
        risk: RiskCheck,
        email: EmailService,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.mfa = mfa
        self.risk = risk
        self.email = email
        self._clock = clock or time.time
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against unknown emails so both failure paths do the same work
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # -- passwords ----------------------------------------------------------

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            self._burn_password_check(password)
            return False
        if record.password_algo != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user_id, algo=record.password_algo)
            return False
        try:
            return self._pwd_hasher.verify(record.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    def _burn_password_check(self, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(self._dummy_hash, password or "")
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    # -- delivery -----------------------------------------------------------

    async def _send(self, kind: str, func: Callable[..., bool], *args: Any, **kwargs: Any) -> bool:
        """Run a blocking email send under the delivery timeout.

        Notification mails never fail the calling flow; the outcome is logged.
        """
        try:
            sent = await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                self.settings.delivery_timeout_seconds + 1,
            )
        except asyncio.TimeoutError:
            logger.error("email_delivery_timeout", kind=kind)
            return False
        if not sent:
            logger.warning("email_delivery_failed", kind=kind)
        return sent

    async def _send_verification_email(self, user: User) -> None:
        token = secrets.token_urlsafe(32)
        await self.cache.set_token(
            VERIFY_TOKEN_KIND,
            _hash_token(token),
            user.id,
            self.settings.email_verification_ttl_minutes * 60,
        )
        await self._send("email_verification", self.email.send_email_verification, user.email, token)

    # -- helpers ------------------------------------------------------------

    def _require_user(self, user_id: str) -> User:
        user = self.store.find_by_id(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _retry_after(self, user: User) -> int:
        if not user.locked_until:
            return 0
        return max(int((user.locked_until - self._now()).total_seconds()), 0)

    def _locked_error(self, user: User) -> AccountLockedError:
        retry_after = self._retry_after(user)
        detail: Dict[str, Any] = {}
        if user.locked_until:
            detail = {"locked_until": user.locked_until.isoformat(), "retry_after": retry_after}
        return AccountLockedError("account is temporarily locked", detail=detail)

    def _session_user(self, user_id: str) -> User:
        """User behind a pending login token; must still be allowed in."""
        user = self.store.find_by_id(user_id)
        if user is None or user.account_status == ACCOUNT_DISABLED:
            raise InvalidTokenError()
        if user.account_status == ACCOUNT_LOCKED:
            raise self._locked_error(user)
        return user

    async def _issue_session(
        self, user: User, context: Optional[RequestContext], *, trusted: Optional[bool] = None
    ) -> TokenPair:
        context = context or RequestContext()
        pair = await self.tokens.issue_token_pair(
            user.id, role=user.role, context=context.as_token_context()
        )
        if context.device_fingerprint:
            self.store.upsert_device(
                user.id,
                context.device_fingerprint,
                ip_addr=context.ip,
                user_agent=context.user_agent,
                trusted=trusted,
            )
        logger.info("session_issued", user_id=user.id)
        return pair

    # -- registration -------------------------------------------------------

    @dependency_boundary("register")
    async def register(
        self,
        email: str,
        username: str,
        password: str,
        profile: Optional[dict] = None,
        context: Optional[RequestContext] = None,
    ) -> Tuple[User, Optional[TokenPair]]:
        email = (email or "").strip()
        username = (username or "").strip()
        if not _EMAIL_PATTERN.match(email):
            raise ValidationError("invalid email address", detail={"field": "email"})
        if not username:
            raise ValidationError("username is required", detail={"field": "username"})
        _ensure_strong(password)

        if self.store.find_by_email(email):
            raise EmailExistsError("email already registered", detail={"field": "email"})
        if self.store.find_by_username(username):
            raise EmailExistsError("username already taken", detail={"field": "username"})

        pwd_hash, algo = self.hash_password(password)
        try:
            user = self.store.create_user(
                email, username, pwd_hash, profile=profile, password_algo=algo
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            field_name = (exc.detail or {}).get("field", "email")
            message = "username already taken" if field_name == "username" else "email already registered"
            raise EmailExistsError(message, detail={"field": field_name}) from exc

        audit_event("user_registered", user_id=user.id)
        await self._send_verification_email(user)
        if self.settings.require_email_verification:
            return user, None
        pair = await self._issue_session(user, context)
        return user, pair

    # -- login --------------------------------------------------------------

    @dependency_boundary("login")
    async def login(
        self, email: str, password: str, context: Optional[RequestContext] = None
    ) -> LoginResult:
        context = context or RequestContext()
        user = self.store.find_by_email(email or "")
        if user is None:
            self._burn_password_check(password)
            logger.info("login_failed", reason="unknown_email", email_hash=_email_hash(email or ""))
            raise InvalidCredentialsError()
        if user.account_status == ACCOUNT_DISABLED:
            self._burn_password_check(password)
            logger.info("login_failed", reason="account_disabled", user_id=user.id)
            raise InvalidCredentialsError()

        if user.account_status == ACCOUNT_LOCKED:
            now = self._now()
            if not self.store.unlock_if_expired(user.id, now):
                refreshed = self.store.find_by_id(user.id) or user
                if refreshed.account_status != ACCOUNT_ACTIVE:
                    logger.info("login_rejected_locked", user_id=user.id)
                    raise self._locked_error(refreshed)
            else:
                audit_event("account_unlocked", user_id=user.id, reason="cooldown_elapsed")

        if not self.verify_password(user.id, password):
            await self._register_failure(user)
            raise InvalidCredentialsError()

        if not self.store.record_successful_login(user.id):
            # Locked by a concurrent failure between the check and now
            raise self._locked_error(self.store.find_by_id(user.id) or user)

        if self.settings.require_email_verification and not user.email_verified:
            raise ForbiddenError(
                "email address has not been verified", error_code="email_not_verified"
            )

        if user.mfa_enabled:
            token, expires_at = self.tokens.issue_ephemeral_token(
                user.id, MFA_PENDING, self.settings.mfa_session_ttl_minutes
            )
            logger.info("login_mfa_required", user_id=user.id)
            return LoginResult(
                user=user,
                requires_mfa=True,
                mfa_token=token,
                mfa_methods=self.mfa.usable_methods(user.id),
                pending_expires_at=expires_at,
            )

        assessment = self.risk.evaluate(
            user.id, context.ip, context.user_agent, context.device_fingerprint
        )
        if assessment.is_anomalous:
            audit_event(
                "login_anomaly_detected",
                user_id=user.id,
                risk_score=assessment.risk_score,
                reasons=assessment.reasons,
                ip=context.ip,
            )
            token, expires_at = self.tokens.issue_ephemeral_token(
                user.id,
                STEP_UP,
                self.settings.step_up_ttl_minutes,
                fp=context.device_fingerprint,
            )
            jti = self.tokens.peek_ephemeral_token(token, STEP_UP)["jti"]
            await self.mfa.send_one_time_code(
                f"stepup:{jti}", "email", user.email, purpose="sign-in verification"
            )
            return LoginResult(
                user=user,
                requires_step_up=True,
                step_up_token=token,
                pending_expires_at=expires_at,
                risk=assessment,
            )

        pair = await self._issue_session(user, context)
        return LoginResult(user=user, tokens=pair, risk=assessment)

    async def _register_failure(self, user: User) -> None:
        lock_until = self._now() + timedelta(minutes=self.settings.lockout_cooldown_minutes)
        count, status = self.store.increment_failed_attempts(
            user.id, self.settings.lockout_threshold, lock_until
        )
        logger.info("login_failed", reason="bad_password", user_id=user.id, attempts=count)
        if status != ACCOUNT_LOCKED:
            return
        locked = self.store.find_by_id(user.id) or user
        if count == self.settings.lockout_threshold:
            audit_event(
                "account_locked",
                user_id=user.id,
                attempts=count,
                locked_until=locked.locked_until.isoformat() if locked.locked_until else None,
            )
            await self._send("account_locked", self.email.send_account_locked, user.email, locked.locked_until)
        raise self._locked_error(locked)

    @dependency_boundary("complete_mfa")
    async def complete_mfa(
        self,
        mfa_token: str,
        code: str,
        *,
        config_id: Optional[str] = None,
        is_backup_code: bool = False,
        context: Optional[RequestContext] = None,
    ) -> Tuple[User, TokenPair, VerificationResult]:
        payload = self.tokens.peek_ephemeral_token(mfa_token, MFA_PENDING)
        user = self._session_user(str(payload["sub"]))
        # Claim the pending token before a code (possibly a backup code) is
        # spent, so concurrent completions cannot each burn one.
        await self.tokens.consume_ephemeral_token(mfa_token, MFA_PENDING)
        try:
            result = await self.mfa.verify(
                user.id, code, config_id=config_id, is_backup_code=is_backup_code
            )
        except ServiceError:
            await self.tokens.release_ephemeral_token(payload)
            raise
        pair = await self._issue_session(user, context)
        return user, pair, result

    @dependency_boundary("mfa_login_challenge")
    async def mfa_login_challenge(
        self,
        mfa_token: str,
        method: Optional[str] = None,
        config_id: Optional[str] = None,
    ) -> ChallengeResult:
        """Send a sign-in code for a login that is waiting on MFA.

        The pending token stays usable; only :meth:`complete_mfa` burns it.
        """
        payload = self.tokens.peek_ephemeral_token(mfa_token, MFA_PENDING)
        user = self._session_user(str(payload["sub"]))
        return await self.mfa.challenge(user.id, method, config_id)

    @dependency_boundary("complete_step_up")
    async def complete_step_up(
        self, step_up_token: str, code: str, context: Optional[RequestContext] = None
    ) -> Tuple[User, TokenPair]:
        payload = self.tokens.peek_ephemeral_token(step_up_token, STEP_UP)
        user = self._session_user(str(payload["sub"]))
        await self.mfa.verify_one_time_code(
            user.id, f"stepup:{payload['jti']}", code, stage="step_up"
        )
        await self.tokens.consume_ephemeral_token(step_up_token, STEP_UP)
        context = context or RequestContext()
        if not context.device_fingerprint and payload.get("fp"):
            context.device_fingerprint = payload["fp"]
        audit_event("step_up_verified", user_id=user.id)
        pair = await self._issue_session(user, context, trusted=True)
        return user, pair

    # -- tokens -------------------------------------------------------------

    @dependency_boundary("refresh")
    async def refresh(
        self, refresh_token: str, context: Optional[RequestContext] = None
    ) -> TokenPair:
        subject_id = await self.tokens.verify_refresh_token(refresh_token)
        user = self.store.find_by_id(subject_id)
        if user is None or user.account_status == ACCOUNT_DISABLED:
            raise InvalidTokenError()
        if user.account_status == ACCOUNT_LOCKED:
            raise self._locked_error(user)
        context = context or RequestContext()
        _, pair = await self.tokens.rotate_refresh_token(
            refresh_token, role=user.role, context=context.as_token_context()
        )
        return pair

    @dependency_boundary("logout")
    async def logout(self, refresh_token: str) -> bool:
        revoked = await self.tokens.revoke_token(refresh_token)
        logger.info("logout", revoked=revoked)
        return revoked

    # -- sessions and devices -----------------------------------------------

    def list_sessions(self, user_id: str, current_session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        self._require_user(user_id)
        return [
            {
                "session_id": record.jti,
                "created_at": record.created_at,
                "expires_at": record.expires_at,
                "ip_addr": record.ip_addr,
                "user_agent": record.user_agent,
                "current": record.jti == current_session_id,
            }
            for record in self.tokens.active_refresh_tokens(user_id)
        ]

    @dependency_boundary("revoke_session")
    async def revoke_session(self, user_id: str, session_id: str) -> None:
        if not await self.tokens.revoke_refresh_jti(user_id, session_id):
            raise NotFoundError(
                "session not found or already terminated", detail={"session_id": session_id}
            )
        audit_event("session_revoked", user_id=user_id, session_id=session_id)

    @dependency_boundary("revoke_all_sessions")
    async def revoke_all_sessions(self, user_id: str, keep_session_id: Optional[str] = None) -> int:
        """Sign out everywhere except ``keep_session_id``; returns how many were revoked."""
        revoked = await self.tokens.revoke_all_for_subject(user_id, except_jti=keep_session_id)
        audit_event("sessions_revoked", user_id=user_id, count=revoked, kept=keep_session_id)
        return revoked

    def list_devices(self, user_id: str) -> List[Device]:
        self._require_user(user_id)
        return sorted(self.store.list_devices(user_id), key=lambda d: d.last_seen, reverse=True)

    @dependency_boundary("set_device_trust")
    async def set_device_trust(self, user_id: str, fingerprint: str, trusted: bool) -> Device:
        device = self.store.set_device_trust(user_id, fingerprint, trusted)
        if device is None:
            raise NotFoundError("device not found", detail={"device_id": fingerprint})
        audit_event("device_trust_changed", user_id=user_id, trusted=trusted)
        return device

    @dependency_boundary("remove_device")
    async def remove_device(self, user_id: str, fingerprint: str) -> None:
        # The next sign-in from this device is treated as a new device again
        if not self.store.delete_device(user_id, fingerprint):
            raise NotFoundError("device not found", detail={"device_id": fingerprint})
        audit_event("device_removed", user_id=user_id)

    # -- passwords ----------------------------------------------------------

    @dependency_boundary("change_password")
    async def change_password(self, user_id: str, current_password: str, new_password: str) -> int:
        user = self._require_user(user_id)
        if not self.verify_password(user.id, current_password):
            logger.info("password_change_rejected", user_id=user.id)
            raise InvalidCredentialsError("current password is incorrect")
        _ensure_strong(new_password)
        if current_password == new_password:
            raise WeakPasswordError(
                "new password must differ from the current one", detail={"field": "new_password"}
            )
        pwd_hash, algo = self.hash_password(new_password)
        self.store.update_password_hash(user.id, pwd_hash, password_algo=algo)
        revoked = await self.tokens.revoke_all_for_subject(user.id)
        audit_event("password_changed", user_id=user.id, sessions_revoked=revoked)
        return revoked

    @dependency_boundary("request_password_reset")
    async def request_password_reset(self, email: str) -> None:
        """Send a reset link if the account exists. The caller learns nothing either way."""
        user = self.store.find_by_email(email or "")
        if user is None or user.account_status == ACCOUNT_DISABLED:
            logger.info("password_reset_requested_unknown", email_hash=_email_hash(email or ""))
            return
        token = secrets.token_urlsafe(32)
        ttl_minutes = self.settings.password_reset_ttl_minutes
        await self.cache.set_token(RESET_TOKEN_KIND, _hash_token(token), user.id, ttl_minutes * 60)
        await self._send("password_reset", self.email.send_password_reset, user.email, token, ttl_minutes)
        logger.info("password_reset_requested", user_id=user.id)

    @dependency_boundary("reset_password")
    async def reset_password(self, token: str, new_password: str) -> int:
        _ensure_strong(new_password)
        user_id = await self.cache.pop_token(RESET_TOKEN_KIND, _hash_token(token or ""))
        user = self.store.find_by_id(user_id) if user_id else None
        if user is None:
            logger.warning("password_reset_invalid_token")
            raise VerificationExpiredError("reset link is invalid or has expired")
        pwd_hash, algo = self.hash_password(new_password)
        self.store.update_password_hash(user.id, pwd_hash, password_algo=algo)
        revoked = await self.tokens.revoke_all_for_subject(user.id)
        audit_event("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return revoked

    # -- email verification -------------------------------------------------

    @dependency_boundary("request_email_verification")
    async def request_email_verification(self, user_id: str) -> bool:
        """Resend the verification link; False when already verified."""
        user = self._require_user(user_id)
        if user.email_verified:
            return False
        await self._send_verification_email(user)
        logger.info("email_verification_requested", user_id=user.id)
        return True

    @dependency_boundary("verify_email")
    async def verify_email(self, token: str) -> User:
        user_id = await self.cache.pop_token(VERIFY_TOKEN_KIND, _hash_token(token or ""))
        user = self.store.mark_email_verified(user_id) if user_id else None
        if user is None:
            logger.warning("email_verification_invalid_token")
            raise VerificationExpiredError("verification link is invalid or has expired")
        logger.info("email_verified", user_id=user.id)
        return user

    # -- administration -----------------------------------------------------

    @dependency_boundary("unlock_account")
    async def unlock_account(self, actor_id: str, user_id: str) -> User:
        actor = self.store.find_by_id(actor_id)
        if actor is None or not actor.is_admin:
            audit_event("unlock_denied", actor_id=actor_id, user_id=user_id)
            raise InsufficientPermissionsError("administrator role required")
        target = self._require_user(user_id)
        if target.account_status == ACCOUNT_DISABLED:
            raise ValidationError("account is disabled", detail={"user_id": user_id})
        unlocked = self.store.set_account_status(target.id, ACCOUNT_ACTIVE)
        audit_event("account_unlocked", user_id=target.id, actor_id=actor.id, reason="manual")
        return unlocked or target

    def get_user(self, user_id: str) -> User:
        return self._require_user(user_id)
