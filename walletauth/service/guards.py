from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, TypeVar

from redis.exceptions import RedisError

from walletauth.logging import get_logger
from walletauth.service.errors import ServiceUnavailableError
from walletauth.storage.errors import StorageUnavailable

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

# Failures of the store, the cache or a timed-out await; all retryable
DEPENDENCY_ERRORS = (StorageUnavailable, RedisError, asyncio.TimeoutError)


def dependency_boundary(operation: str) -> Callable[[F], F]:
    """Map storage and cache failures inside ``operation`` to ServiceUnavailable."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except DEPENDENCY_ERRORS as exc:
                logger.error(
                    "dependency_unavailable",
                    operation=operation,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise ServiceUnavailableError() from exc

        return wrapper  # type: ignore[return-value]

    return decorator
