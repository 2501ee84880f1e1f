from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple, Union


class LocalCache:
    """Process-local stand-in for :class:`RedisCache`.

    Used when Redis is unreachable under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV.
    State lives only as long as the process, and is not shared between
    workers, so limits are per worker. Every operation takes one lock and never
    awaits while holding it.
    """

    SWEEP_INTERVAL_SECONDS = 60

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, float]] = {}
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._next_sweep = clock() + self.SWEEP_INTERVAL_SECONDS

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._buckets.clear()

    def _get(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires <= self._clock():
            del self._values[key]
            return None
        return value

    def _set(self, key: str, value: str, ttl_seconds: float) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)
        self._values[key] = (value, now + max(1, ttl_seconds))

    def _sweep(self, now: float) -> None:
        """Drop expired values; keys that are never read again would otherwise stay."""
        expired = [key for key, (_, expires) in self._values.items() if expires <= now]
        for key in expired:
            del self._values[key]
        self._next_sweep = now + self.SWEEP_INTERVAL_SECONDS

    def size(self) -> int:
        with self._lock:
            return len(self._values)

    def _ttl(self, key: str) -> int:
        entry = self._values.get(key)
        if entry is None or self._get(key) is None:
            return 0
        return max(0, int(entry[1] - self._clock() + 0.999))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            tokens, last = self._buckets.get(key, (float(limit), now))
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
            reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
            remaining = int(tokens)
        if return_remaining:
            return (allowed, remaining, reset_seconds)
        return allowed

    async def hit_window_counter(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        window_key = f"window:{key}"
        with self._lock:
            current = self._get(window_key)
            if current is None:
                hits = 1
                self._set(window_key, "1", window_seconds)
            else:
                hits = int(current) + 1
                expires = self._values[window_key][1]
                self._values[window_key] = (str(hits), expires)
            return hits <= limit, hits, self._ttl(window_key)

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(f"auth:refresh:revoked:{jti}", "1", ttl_seconds)

    async def is_refresh_revoked(self, jti: str) -> bool:
        with self._lock:
            return self._get(f"auth:refresh:revoked:{jti}") is not None

    async def consume_once(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            once_key = f"auth:once:{key}"
            if self._get(once_key) is not None:
                return False
            self._set(once_key, "1", ttl_seconds)
            return True

    async def release_once(self, key: str) -> None:
        with self._lock:
            self._values.pop(f"auth:once:{key}", None)

    async def set_otp(self, key: str, code_hash: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(f"mfa:otp:{key}", code_hash, ttl_seconds)

    async def consume_otp(self, key: str, code_hash: str) -> bool:
        with self._lock:
            otp_key = f"mfa:otp:{key}"
            if self._get(otp_key) != code_hash:
                return False
            del self._values[otp_key]
            return True

    async def set_token(self, kind: str, token: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(f"auth:{kind}:{token}", value, ttl_seconds)

    async def pop_token(self, kind: str, token: str) -> Optional[str]:
        with self._lock:
            token_key = f"auth:{kind}:{token}"
            value = self._get(token_key)
            self._values.pop(token_key, None)
            return value

    async def check_mfa_lockout(self, user_id: str) -> int:
        with self._lock:
            return self._ttl(f"mfa:lockout:{user_id}")

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 900
    ) -> Tuple[bool, int]:
        lockout_key = f"mfa:lockout:{user_id}"
        attempts_key = f"mfa:attempts:{user_id}"
        with self._lock:
            if self._get(lockout_key) is not None:
                return True, -1
            current = self._get(attempts_key)
            if current is None:
                attempts = 1
                self._set(attempts_key, "1", lockout_seconds)
            else:
                attempts = int(current) + 1
                self._values[attempts_key] = (str(attempts), self._values[attempts_key][1])
            if attempts >= max_attempts:
                self._set(lockout_key, "1", lockout_seconds)
                self._values.pop(attempts_key, None)
                return True, attempts
            return False, attempts

    async def clear_mfa_attempts(self, user_id: str) -> None:
        with self._lock:
            self._values.pop(f"mfa:attempts:{user_id}", None)
