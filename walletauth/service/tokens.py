from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from redis.exceptions import RedisError

from walletauth.config import Settings
from walletauth.logging import audit_event, get_logger
from walletauth.service.errors import InvalidTokenError, TokenRevokedError
from walletauth.service.guards import dependency_boundary
from walletauth.storage.models import RefreshTokenRecord

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
MFA_PENDING = "mfa_pending"
STEP_UP = "step_up"

CLOCK_SKEW_LEEWAY_SECONDS = 120


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "access_expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


@dataclass
class TokenClaims:
    subject_id: str
    claims: Dict[str, Any] = field(default_factory=dict)


class TokenService:
    """Signs, verifies and rotates HS256 tokens.

    Access and ephemeral tokens are signed with ``JWT_SECRET``; refresh tokens
    with the separate ``JWT_REFRESH_SECRET``. Access verification is stateless.
    Refresh tokens are tracked by ``jti`` in the store (the source of truth for
    revocation) and mirrored into the cache denylist. The service knows nothing
    about MFA or lockout state.
    """

    def __init__(
        self,
        settings: Settings,
        store,
        cache,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self._clock = clock or time.time

    def _now(self) -> float:
        return self._clock()

    # -- encoding -----------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: str) -> Optional[Dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or not payload.get("sub") or not payload.get("jti"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now() - CLOCK_SKEW_LEEWAY_SECONDS:
            return None
        return payload

    def _claims(self, subject_id: str, token_type: str, ttl_seconds: int, **extra: Any) -> Dict[str, Any]:
        now = int(self._now())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject_id,
            "typ": token_type,
            "jti": extra.pop("jti", None) or str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl_seconds,
        }
        payload.update({k: v for k, v in extra.items() if v is not None})
        return payload

    @staticmethod
    def _as_datetime(ts: float) -> datetime:
        return datetime.fromtimestamp(ts, tz=timezone.utc)

    # -- token pairs --------------------------------------------------------

    @dependency_boundary("issue_token_pair")
    async def issue_token_pair(
        self,
        subject_id: str,
        *,
        role: str = "user",
        context: Optional[Dict[str, Optional[str]]] = None,
        refresh_jti: Optional[str] = None,
    ) -> TokenPair:
        context = context or {}
        refresh = self._claims(
            subject_id,
            REFRESH,
            self.settings.refresh_token_ttl_minutes * 60,
            jti=refresh_jti,
        )
        # sid ties the access token to the refresh token (the session) it came with
        access = self._claims(
            subject_id,
            ACCESS,
            self.settings.access_token_ttl_minutes * 60,
            role=role,
            sid=refresh["jti"],
        )
        refresh_expires_at = self._as_datetime(refresh["exp"])
        self.store.create_refresh_token(
            refresh["jti"],
            subject_id,
            refresh_expires_at,
            user_agent=context.get("user_agent"),
            ip_addr=context.get("ip"),
        )
        return TokenPair(
            access_token=self._encode_jwt(access, self.settings.jwt_secret),
            refresh_token=self._encode_jwt(refresh, self.settings.jwt_refresh_secret),
            access_expires_at=self._as_datetime(access["exp"]),
            refresh_expires_at=refresh_expires_at,
        )

    def verify_access_token(self, token: str) -> TokenClaims:
        payload = self._decode_jwt(token, self.settings.jwt_secret)
        if not payload or payload.get("typ") != ACCESS:
            raise InvalidTokenError()
        return TokenClaims(subject_id=str(payload["sub"]), claims=payload)

    def _decode_refresh(self, token: str) -> Dict[str, Any]:
        payload = self._decode_jwt(token, self.settings.jwt_refresh_secret)
        if not payload or payload.get("typ") != REFRESH:
            raise InvalidTokenError()
        return payload

    async def _is_denylisted(self, jti: str) -> bool:
        # A cache failure propagates; the boundary turns it into a retryable 503
        return await self.cache.is_refresh_revoked(jti)

    async def _mark_denylisted(self, jti: str, exp: Any) -> None:
        try:
            ttl = max(int(float(exp) - self._now()), 1)
        except (TypeError, ValueError):
            ttl = self.settings.refresh_token_ttl_minutes * 60
        try:
            await self.cache.mark_refresh_revoked(jti, ttl)
        except RedisError as exc:
            # The store already holds the revocation; the denylist is a mirror.
            logger.warning("cache_revoked_refresh_token_failed", jti=jti, error=str(exc))

    @dependency_boundary("verify_refresh_token")
    async def verify_refresh_token(self, token: str) -> str:
        payload = self._decode_refresh(token)
        jti = payload["jti"]
        record = self.store.get_refresh_token(jti)
        if record is None or record.user_id != payload["sub"]:
            raise InvalidTokenError()
        if not record.is_active or await self._is_denylisted(jti):
            raise TokenRevokedError()
        return str(payload["sub"])

    @dependency_boundary("revoke_token")
    async def revoke_token(self, refresh_token: str) -> bool:
        """Make ``refresh_token`` unusable. Idempotent; garbage is ignored.

        Returns True only when this call performed the revocation.
        """
        payload = self._decode_jwt(refresh_token, self.settings.jwt_refresh_secret)
        if not payload or payload.get("typ") != REFRESH:
            logger.info("revoke_token_ignored_invalid")
            return False
        revoked = self.store.revoke_refresh_token(payload["jti"])
        await self._mark_denylisted(payload["jti"], payload.get("exp"))
        return revoked

    @dependency_boundary("rotate_refresh_token")
    async def rotate_refresh_token(
        self,
        refresh_token: str,
        *,
        role: str = "user",
        context: Optional[Dict[str, Optional[str]]] = None,
    ) -> Tuple[str, TokenPair]:
        """Consume ``refresh_token`` and mint a new pair.

        The presented token is revoked by a single conditional store update, so
        of two concurrent rotations of the same token exactly one succeeds.
        Returns ``(subject_id, new_pair)``.
        """
        payload = self._decode_refresh(refresh_token)
        jti = payload["jti"]
        subject_id = str(payload["sub"])
        record = self.store.get_refresh_token(jti)
        if record is None or record.user_id != subject_id:
            raise InvalidTokenError()
        if await self._is_denylisted(jti):
            raise TokenRevokedError()
        new_jti = str(uuid.uuid4())
        if not self.store.revoke_refresh_token(jti, replaced_by=new_jti):
            audit_event("refresh_token_reuse", user_id=subject_id, jti=jti)
            raise TokenRevokedError()
        await self._mark_denylisted(jti, payload.get("exp"))
        pair = await self.issue_token_pair(
            subject_id, role=role, context=context, refresh_jti=new_jti
        )
        return subject_id, pair

    @dependency_boundary("revoke_all_for_subject")
    async def revoke_all_for_subject(self, subject_id: str, *, except_jti: Optional[str] = None) -> int:
        revoked = self.store.revoke_user_refresh_tokens(subject_id, except_jti=except_jti)
        for record in revoked:
            await self._mark_denylisted(record.jti, record.expires_at.timestamp())
        return len(revoked)

    # -- sessions -----------------------------------------------------------

    def active_refresh_tokens(self, subject_id: str) -> List[RefreshTokenRecord]:
        """Unrevoked, unexpired refresh tokens of ``subject_id``, newest first."""
        now = self._as_datetime(self._now())
        return [r for r in self.store.list_refresh_tokens(subject_id) if r.expires_at > now]

    @dependency_boundary("revoke_refresh_jti")
    async def revoke_refresh_jti(self, subject_id: str, jti: str) -> bool:
        """Revoke one of ``subject_id``'s refresh tokens by id; False if it is
        not theirs or already revoked."""
        record = self.store.get_refresh_token(jti)
        if record is None or record.user_id != subject_id:
            return False
        revoked = self.store.revoke_refresh_token(jti)
        if revoked:
            await self._mark_denylisted(jti, record.expires_at.timestamp())
        return revoked

    # -- ephemeral tokens ---------------------------------------------------

    def issue_ephemeral_token(
        self, subject_id: str, purpose: str, ttl_minutes: int, **extra: Any
    ) -> Tuple[str, datetime]:
        """Short-lived typed token bridging two steps of one login."""
        payload = self._claims(subject_id, purpose, ttl_minutes * 60, **extra)
        return (
            self._encode_jwt(payload, self.settings.jwt_secret),
            self._as_datetime(payload["exp"]),
        )

    def peek_ephemeral_token(self, token: str, purpose: str) -> Dict[str, Any]:
        payload = self._decode_jwt(token, self.settings.jwt_secret)
        if not payload or payload.get("typ") != purpose:
            raise InvalidTokenError()
        return payload

    @dependency_boundary("consume_ephemeral_token")
    async def consume_ephemeral_token(self, token: str, purpose: str) -> Dict[str, Any]:
        """Verify and burn an ephemeral token; a second use is rejected."""
        payload = self.peek_ephemeral_token(token, purpose)
        ttl = max(int(float(payload["exp"]) - self._now()) + CLOCK_SKEW_LEEWAY_SECONDS, 1)
        if not await self.cache.consume_once(f"{purpose}:{payload['jti']}", ttl):
            raise InvalidTokenError()
        return payload

    @dependency_boundary("release_ephemeral_token")
    async def release_ephemeral_token(self, payload: Dict[str, Any]) -> None:
        """Undo :meth:`consume_ephemeral_token` when the step it guarded failed."""
        await self.cache.release_once(f"{payload['typ']}:{payload['jti']}")
