from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from walletauth.config import AuthStrategy, Settings
from walletauth.logging import get_logger
from walletauth.service.errors import AccountLockedError, AuthenticationError, InvalidTokenError
from walletauth.service.tokens import TokenService
from walletauth.storage.models import ACCOUNT_ACTIVE, ACCOUNT_LOCKED

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    role: str
    token_id: Optional[str] = None
    session_id: Optional[str] = None


class Authenticator(Protocol):
    def authenticate(self, authorization: Optional[str]) -> AuthContext: ...


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class TokenAuthenticator:
    """Resolve ``Authorization: Bearer <access token>`` to the current user."""

    def __init__(self, tokens: TokenService, store) -> None:
        self.tokens = tokens
        self.store = store

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("authentication required")
        claims = self.tokens.verify_access_token(token)
        user = self.store.find_by_id(claims.subject_id)
        if user is None:
            raise InvalidTokenError()
        if user.account_status == ACCOUNT_LOCKED:
            raise AccountLockedError("account is temporarily locked")
        if user.account_status != ACCOUNT_ACTIVE:
            raise InvalidTokenError()
        return AuthContext(
            user_id=user.id,
            role=user.role,
            token_id=claims.claims.get("jti"),
            session_id=claims.claims.get("sid"),
        )


class StaticAuthenticator:
    """Every request acts as one configured user. Test harnesses only."""

    def __init__(self, store, user_id: str) -> None:
        self.store = store
        self.user_id = user_id

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        user = self.store.find_by_id(self.user_id)
        if user is None:
            raise AuthenticationError("static principal does not exist")
        return AuthContext(user_id=user.id, role=user.role)


def build_authenticator(settings: Settings, tokens: TokenService, store) -> Authenticator:
    if settings.auth_strategy == AuthStrategy.STATIC:
        if not settings.test_mode or not settings.static_auth_user_id:
            raise RuntimeError("static authentication needs TEST_MODE and STATIC_AUTH_USER_ID")
        logger.warning("static_authenticator_enabled", user_id=settings.static_auth_user_id)
        return StaticAuthenticator(store, settings.static_auth_user_id)
    return TokenAuthenticator(tokens, store)
