"""Process-wide TTL caches.

Small, unsynchronised get-or-refresh containers used for the rule index and
the category list. Last writer wins; a concurrent refresh may serve a value
that is a few seconds stale, which is fine for advisory categorisation.
"""

import time
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError

from budgetline.config import settings

logger = structlog.get_logger()

T = TypeVar("T")


class TTLCache(Generic[T]):
    """A single cached value with a time-to-live and explicit invalidation.

    ``clock`` is injectable so tests can move time forward deterministically.
    Loader failures listed in ``recoverable_errors`` are absorbed: the last
    good value (or ``default``) is served instead.
    """

    def __init__(
        self,
        ttl: float,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
        recoverable_errors: tuple[type[BaseException], ...] = (SQLAlchemyError,),
    ) -> None:
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._recoverable = recoverable_errors
        self._value: T | None = None
        self._loaded_at: float | None = None

    @property
    def is_fresh(self) -> bool:
        if self._loaded_at is None:
            return False
        return (self._clock() - self._loaded_at) < self.ttl

    def peek(self) -> T | None:
        """Return the cached value without refreshing it."""
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        self._loaded_at = self._clock()

    def invalidate(self) -> None:
        self._value = None
        self._loaded_at = None

    async def get_or_refresh(self, loader: Callable[[], Awaitable[T]], default: T) -> T:
        """Return the cached value, reloading it when missing or expired."""
        if self.is_fresh and self._value is not None:
            return self._value

        try:
            value = await loader()
        except self._recoverable as e:
            logger.warning(
                "cache_refresh_failed",
                cache=self.name,
                serving_stale=self._value is not None,
                error=str(e),
            )
            return self._value if self._value is not None else default

        self.set(value)
        return value


# ── Process-wide instances ────────────────────────

rules_cache: TTLCache = TTLCache(settings.rules_cache_ttl, name="rules")
categories_cache: TTLCache = TTLCache(settings.categories_cache_ttl, name="categories")
