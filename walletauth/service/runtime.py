from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from walletauth.config import get_settings, reset_settings_cache
from walletauth.logging import get_logger
from walletauth.service.auth import AuthService
from walletauth.service.authenticator import build_authenticator
from walletauth.service.email import EmailService
from walletauth.service.guards import DEPENDENCY_ERRORS
from walletauth.service.mfa import MFAService
from walletauth.service.risk import HeuristicRiskCheck
from walletauth.service.sms import SMSService
from walletauth.service.tokens import TokenService
from walletauth.storage.local_cache import LocalCache
from walletauth.storage.memory import MemoryStore
from walletauth.storage.postgres import PostgresStore
from walletauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store, cache, providers and services for one process."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(
                    fs_root=settings.shared_fs_root,
                    mfa_encryption_key=settings.mfa_secret_key,
                )
                if settings.use_memory_store
                else PostgresStore(
                    settings.database_url,
                    fs_root=settings.shared_fs_root,
                    mfa_encryption_key=settings.mfa_secret_key,
                    timeout_seconds=settings.storage_timeout_seconds,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, SyncRedisCache, LocalCache, None] = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                # Sync client in tests keeps the pool off short-lived event loops
                if settings.test_mode:
                    cache = SyncRedisCache(
                        settings.redis_url, socket_timeout=settings.storage_timeout_seconds
                    )
                else:
                    cache = RedisCache(
                        settings.redis_url, socket_timeout=settings.storage_timeout_seconds
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for token revocation, one-time codes and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; revocation denylist, one-time codes "
                    "and rate limits are process-local."
                ),
                mode=fallback_mode,
            )
            self.cache = LocalCache()

        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            timeout_seconds=settings.delivery_timeout_seconds,
        )
        self.sms = SMSService(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.sms_from_number,
            api_base=settings.twilio_api_base,
            brand=settings.mfa_issuer,
            timeout_seconds=settings.delivery_timeout_seconds,
        )
        self.tokens = TokenService(settings, self.store, self.cache)
        self.mfa = MFAService(settings, self.store, self.cache, email=self.email, sms=self.sms)
        self.risk = HeuristicRiskCheck(self.store, threshold=settings.risk_threshold)
        self.auth = AuthService(
            settings,
            self.store,
            self.cache,
            tokens=self.tokens,
            mfa=self.mfa,
            risk=self.risk,
            email=self.email,
        )
        self.authenticator = build_authenticator(settings, self.tokens, self.store)
        logger.info(
            "runtime_init_completed",
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
        )

    async def health(self) -> Dict[str, Any]:
        checks: Dict[str, Any] = {}
        try:
            checks["storage"] = bool(
                await asyncio.wait_for(
                    asyncio.to_thread(self.store.ping), self.settings.storage_timeout_seconds
                )
            )
        except DEPENDENCY_ERRORS as exc:
            logger.warning("health_storage_failed", error=str(exc))
            checks["storage"] = False
        try:
            checks["cache"] = await asyncio.wait_for(
                self.cache.ping(), self.settings.storage_timeout_seconds
            )
        except DEPENDENCY_ERRORS as exc:
            logger.warning("health_cache_failed", error=str(exc))
            checks["cache"] = False
        checks["cache_type"] = type(self.cache).__name__
        checks["healthy"] = bool(checks["storage"] and checks["cache"])
        return checks

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_for_reset(current: Runtime) -> None:
    if isinstance(current.cache, SyncRedisCache):
        current.cache.client.close()
    elif isinstance(current.cache, RedisCache):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(current.cache.close())
        else:
            loop.create_task(current.cache.close())
    current.store.close()


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_for_reset(runtime)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket limit on ``key``; a non-positive limit disables it.

    Returns ``allowed``, or ``(allowed, remaining, retry_after)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    return await runtime.cache.check_rate_limit(
        key, limit, window_seconds, return_remaining=return_remaining, cost=cost
    )
