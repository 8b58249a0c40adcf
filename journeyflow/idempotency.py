"""Idempotency guard collapsing at-least-once delivery into one effect.

The guard is a cache, not the system of record: losing its contents only
means a redelivered unit falls through to the durable ``StepExecution``
check in the coordinator.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, Optional, Protocol, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from .config import IdempotencyConfig, JourneyflowConfig, load_config
from .constants import STEP_EXEC_KEY_PREFIX


class IdempotencyStore(Protocol):
    """Key-value store with per-key expiry."""

    async def get(self, key: str) -> Optional[str]:
        """Return the stored value or ``None`` when missing or expired."""

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""


class InMemoryIdempotencyStore:
    """Process-local store, for tests and single-process runs."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (value, self._clock() + ttl_seconds)

    def ttl(self, key: str) -> Optional[float]:
        """Seconds left before ``key`` expires."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return entry[1] - self._clock()

    def clear(self) -> None:
        self._entries.clear()


class RedisIdempotencyStore:
    """Redis-backed store using ``SETEX``."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisIdempotencyStore")
        self._redis = redis.Redis(
            host=host, port=port, db=db, password=password, decode_responses=True
        )

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.setex(key, ttl_seconds, value)

    async def close(self) -> None:
        await self._redis.aclose()


def step_execution_key(execution_id: str, step_id: str) -> str:
    return f"{STEP_EXEC_KEY_PREFIX}:{execution_id}:{step_id}"


class IdempotencyGuard:
    """Records which step-execution units have already run."""

    def __init__(self, store: IdempotencyStore, default_ttl_seconds: int) -> None:
        self._store = store
        self.default_ttl_seconds = default_ttl_seconds

    async def seen(self, key: str) -> bool:
        return await self._store.get(key) is not None

    async def mark_seen(self, key: str, ttl_seconds: Optional[int] = None) -> None:
        await self._store.set_with_ttl(key, "1", ttl_seconds or self.default_ttl_seconds)


def get_idempotency_store(
    config: Optional[JourneyflowConfig] = None,
) -> IdempotencyStore:
    """Build the configured idempotency store."""

    settings: IdempotencyConfig = (config or load_config()).idempotency
    if settings.backend == "inmemory":
        return InMemoryIdempotencyStore()
    if settings.backend == "redis":
        conf = settings.redis
        return RedisIdempotencyStore(
            host=conf.host, port=conf.port, db=conf.db, password=conf.password
        )
    raise ValueError(f"Unsupported idempotency backend: {settings.backend}")
