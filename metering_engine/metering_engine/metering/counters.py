"""Fast per-period usage counters.

Counters give the quota validator a low-latency view of how much a tenant
has consumed in the current month without querying the event log.  They
are keyed ``usage:counter:{tenant_id}:{metric}:{YYYY-MM}`` and expire on
their own after the configured TTL.

Two stores are provided:

* :class:`RedisCounterStore` -- shared counters backed by ``redis.asyncio``.
* :class:`InMemoryCounterStore` -- process-local counters for local mode
  and tests.

Reads never raise for infrastructure failures.  They return a
:class:`CounterRead` whose status tells the caller whether the value was
found, missing, or the store was unavailable, so the fallback decision is
made by the caller from the returned value.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_KEY_PREFIX = "usage:counter"


class CounterStoreError(Exception):
    """Raised when a counter write cannot be applied."""


class CounterReadStatus(str, Enum):
    FOUND = "found"
    MISSING = "missing"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class CounterRead:
    """Outcome of a counter lookup.

    ``value`` is only meaningful when ``status`` is ``FOUND``.
    """

    status: CounterReadStatus
    value: int = 0

    @classmethod
    def found(cls, value: int) -> CounterRead:
        return cls(CounterReadStatus.FOUND, value)

    @classmethod
    def missing(cls) -> CounterRead:
        return cls(CounterReadStatus.MISSING)

    @classmethod
    def unavailable(cls) -> CounterRead:
        return cls(CounterReadStatus.UNAVAILABLE)

    @property
    def is_found(self) -> bool:
        return self.status is CounterReadStatus.FOUND


def period_tag(now: datetime | None = None) -> str:
    """Return the ``YYYY-MM`` tag for the month containing *now* (UTC)."""
    now = now or datetime.now(UTC)
    return now.strftime("%Y-%m")


def counter_key(tenant_id: str, metric: str, now: datetime | None = None) -> str:
    """Build the counter key for *tenant_id* / *metric* in the current month."""
    return f"{_KEY_PREFIX}:{tenant_id}:{metric}:{period_tag(now)}"


class CounterStore(Protocol):
    """Protocol for atomic, TTL-capable counter storage."""

    async def increment(self, key: str, amount: int) -> int:
        """Atomically add *amount* to *key* and return the new value.

        Raises
        ------
        CounterStoreError
            If the store cannot apply the increment.
        """
        ...

    async def get(self, key: str) -> CounterRead:
        """Return the current value of *key*."""
        ...

    async def expire(self, key: str, ttl_seconds: int) -> None:
        """Set a time-to-live on *key*."""
        ...

    async def close(self) -> None:
        """Release any connections held by the store."""
        ...


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


class RedisCounterStore:
    """Counter store backed by a shared Redis instance.

    Parameters
    ----------
    url:
        Redis connection URL (``redis://host:port/db``).
    client:
        Pre-built ``redis.asyncio.Redis`` client.  Takes precedence over
        *url*; mainly useful for tests.
    socket_timeout:
        Per-command timeout in seconds.  Kept short so that a slow Redis
        never delays a quota check noticeably.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        client: redis.Redis | None = None,
        socket_timeout: float = 0.5,
    ) -> None:
        if client is None and url is None:
            raise ValueError("RedisCounterStore requires either url or client")
        if client is None:
            client = redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self._client = client

    async def ping(self) -> bool:
        """Return True when the server answers a PING."""
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError, asyncio.TimeoutError):
            logger.warning("Redis counter store did not answer PING", exc_info=True)
            return False

    async def increment(self, key: str, amount: int) -> int:
        try:
            return int(await self._client.incrby(key, amount))
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise CounterStoreError(f"INCRBY {key} failed: {exc}") from exc

    async def get(self, key: str) -> CounterRead:
        try:
            raw = await self._client.get(key)
        except (RedisError, OSError, asyncio.TimeoutError):
            logger.warning("Redis counter read failed for key=%s", key, exc_info=True)
            return CounterRead.unavailable()
        if raw is None:
            return CounterRead.missing()
        return CounterRead.found(int(raw))

    async def expire(self, key: str, ttl_seconds: int) -> None:
        try:
            await self._client.expire(key, ttl_seconds)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise CounterStoreError(f"EXPIRE {key} failed: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis counter store closed")


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryCounterStore:
    """Process-local counter store with lazy TTL expiry.

    Used when no Redis URL is configured (local SQLite mode) and as a fake
    in tests.  Expired keys are dropped on access.
    """

    def __init__(self) -> None:
        self._values: dict[str, int] = {}
        self._expires_at: dict[str, float] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expires_at.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    async def increment(self, key: str, amount: int) -> int:
        async with self._lock:
            self._purge_if_expired(key)
            value = self._values.get(key, 0) + amount
            self._values[key] = value
            return value

    async def get(self, key: str) -> CounterRead:
        async with self._lock:
            self._purge_if_expired(key)
            if key not in self._values:
                return CounterRead.missing()
            return CounterRead.found(self._values[key])

    async def expire(self, key: str, ttl_seconds: int) -> None:
        async with self._lock:
            if key in self._values:
                self._expires_at[key] = time.monotonic() + ttl_seconds

    async def ttl(self, key: str) -> float | None:
        """Seconds until *key* expires, or None if it has no TTL."""
        async with self._lock:
            deadline = self._expires_at.get(key)
            if deadline is None:
                return None
            return max(deadline - time.monotonic(), 0.0)

    async def close(self) -> None:
        async with self._lock:
            self._values.clear()
            self._expires_at.clear()
