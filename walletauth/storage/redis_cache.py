from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate limits, revocation lists and one-time codes."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Fixed window: the first hit opens the window, hits past the limit are refused
    _FIXED_WINDOW_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[2])
end
local ttl = redis.call('TTL', KEYS[1])
if current > tonumber(ARGV[1]) then
  return {0, current, ttl}
end
return {1, current, ttl}
"""

    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
    redis.call('EXPIRE', KEYS[2], ARGV[2])
end
if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end
return {0, attempts}
"""

    _COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)
        self._mfa_attempt = self.client.register_script(self._MFA_ATTEMPT_SCRIPT)
        self._compare_and_delete = self.client.register_script(
            self._COMPARE_AND_DELETE_SCRIPT
        )

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so user input cannot inject delimiters."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def hit_window_counter(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Count one hit in a fixed window. Returns (allowed, hits, retry_after)."""
        allowed, hits, ttl = await self._fixed_window(
            keys=[f"window:{key}"], args=[limit, window_seconds]
        )
        return bool(int(allowed)), int(hits), max(0, int(ttl))

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:refresh:revoked:{jti}", "1", ex=max(1, ttl_seconds))

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:refresh:revoked:{jti}"))

    async def consume_once(self, key: str, ttl_seconds: int) -> bool:
        """Claim ``key`` exactly once; later claims within the TTL get False."""
        return bool(
            await self.client.set(f"auth:once:{key}", "1", ex=max(1, ttl_seconds), nx=True)
        )

    async def release_once(self, key: str) -> None:
        """Give a claimed key back, e.g. when the guarded step failed."""
        await self.client.delete(f"auth:once:{key}")

    async def set_otp(self, key: str, code_hash: str, ttl_seconds: int) -> None:
        await self.client.set(f"mfa:otp:{key}", code_hash, ex=max(1, ttl_seconds))

    async def consume_otp(self, key: str, code_hash: str) -> bool:
        """Delete the pending code only if it matches; a code works once."""
        deleted = await self._compare_and_delete(keys=[f"mfa:otp:{key}"], args=[code_hash])
        return bool(int(deleted))

    async def set_token(self, kind: str, token: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:{kind}:{token}", value, ex=max(1, ttl_seconds))

    async def pop_token(self, kind: str, token: str) -> Optional[str]:
        return await self.client.getdel(f"auth:{kind}:{token}")

    async def check_mfa_lockout(self, user_id: str) -> int:
        """Seconds left on the MFA verification lockout, 0 when not locked."""
        ttl = await self.client.ttl(f"mfa:lockout:{user_id}")
        return max(0, int(ttl))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 900
    ) -> Tuple[bool, int]:
        """Record one failed MFA verification and trigger the lockout.

        Returns ``(is_locked_out, attempts)``; attempts is -1 when the user was
        already locked out before this call.
        """
        result = await self._mfa_attempt(
            keys=[f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"],
            args=[max_attempts, lockout_seconds],
        )
        return bool(int(result[0])), int(result[1])

    async def clear_mfa_attempts(self, user_id: str) -> None:
        await self.client.delete(f"mfa:attempts:{user_id}")


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally so the connection pool is never bound
    to a short-lived event loop, but exposes the same awaitable surface as
    :class:`RedisCache`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)
        self._fixed_window = self.client.register_script(RedisCache._FIXED_WINDOW_SCRIPT)
        self._mfa_attempt = self.client.register_script(RedisCache._MFA_ATTEMPT_SCRIPT)
        self._compare_and_delete = self.client.register_script(
            RedisCache._COMPARE_AND_DELETE_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def ping(self) -> bool:
        return bool(self.client.ping())

    async def close(self) -> None:
        self.client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def hit_window_counter(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        allowed, hits, ttl = self._fixed_window(
            keys=[f"window:{key}"], args=[limit, window_seconds]
        )
        return bool(int(allowed)), int(hits), max(0, int(ttl))

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        self.client.set(f"auth:refresh:revoked:{jti}", "1", ex=max(1, ttl_seconds))

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(self.client.exists(f"auth:refresh:revoked:{jti}"))

    async def consume_once(self, key: str, ttl_seconds: int) -> bool:
        return bool(self.client.set(f"auth:once:{key}", "1", ex=max(1, ttl_seconds), nx=True))

    async def release_once(self, key: str) -> None:
        self.client.delete(f"auth:once:{key}")

    async def set_otp(self, key: str, code_hash: str, ttl_seconds: int) -> None:
        self.client.set(f"mfa:otp:{key}", code_hash, ex=max(1, ttl_seconds))

    async def consume_otp(self, key: str, code_hash: str) -> bool:
        return bool(int(self._compare_and_delete(keys=[f"mfa:otp:{key}"], args=[code_hash])))

    async def set_token(self, kind: str, token: str, value: str, ttl_seconds: int) -> None:
        self.client.set(f"auth:{kind}:{token}", value, ex=max(1, ttl_seconds))

    async def pop_token(self, kind: str, token: str) -> Optional[str]:
        return self.client.getdel(f"auth:{kind}:{token}")

    async def check_mfa_lockout(self, user_id: str) -> int:
        return max(0, int(self.client.ttl(f"mfa:lockout:{user_id}")))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 900
    ) -> Tuple[bool, int]:
        result = self._mfa_attempt(
            keys=[f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"],
            args=[max_attempts, lockout_seconds],
        )
        return bool(int(result[0])), int(result[1])

    async def clear_mfa_attempts(self, user_id: str) -> None:
        self.client.delete(f"mfa:attempts:{user_id}")
