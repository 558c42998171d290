"""Tests for the fast usage counter stores."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from metering_engine.metering.counters import (
    CounterRead,
    CounterReadStatus,
    CounterStoreError,
    InMemoryCounterStore,
    RedisCounterStore,
    counter_key,
    period_tag,
)

# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


class TestCounterKeys:
    def test_period_tag_is_year_month(self) -> None:
        assert period_tag(datetime(2024, 7, 31, 23, 59, tzinfo=UTC)) == "2024-07"

    def test_counter_key_layout(self) -> None:
        key = counter_key("tenant-1", "ai_tokens", datetime(2024, 7, 1, tzinfo=UTC))
        assert key == "usage:counter:tenant-1:ai_tokens:2024-07"


class TestCounterRead:
    def test_found_carries_value(self) -> None:
        read = CounterRead.found(42)
        assert read.is_found
        assert read.value == 42

    def test_missing_and_unavailable_are_not_found(self) -> None:
        assert not CounterRead.missing().is_found
        assert CounterRead.unavailable().status is CounterReadStatus.UNAVAILABLE


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class TestInMemoryCounterStore:
    @pytest.mark.asyncio
    async def test_increment_accumulates(self) -> None:
        store = InMemoryCounterStore()
        assert await store.increment("k", 5) == 5
        assert await store.increment("k", 7) == 12
        assert await store.get("k") == CounterRead.found(12)

    @pytest.mark.asyncio
    async def test_missing_key(self) -> None:
        store = InMemoryCounterStore()
        assert (await store.get("absent")).status is CounterReadStatus.MISSING

    @pytest.mark.asyncio
    async def test_expire_sets_ttl(self) -> None:
        store = InMemoryCounterStore()
        await store.increment("k", 1)
        assert await store.ttl("k") is None
        await store.expire("k", 3600)
        ttl = await store.ttl("k")
        assert ttl is not None
        assert 3590 < ttl <= 3600

    @pytest.mark.asyncio
    async def test_expired_key_reads_as_missing(self) -> None:
        store = InMemoryCounterStore()
        await store.increment("k", 10)
        await store.expire("k", 0)
        assert (await store.get("k")).status is CounterReadStatus.MISSING
        assert await store.increment("k", 1) == 1


# ---------------------------------------------------------------------------
# Redis store (mocked client)
# ---------------------------------------------------------------------------


def _redis_client(**methods: AsyncMock) -> MagicMock:
    client = MagicMock()
    for name, mock in methods.items():
        setattr(client, name, mock)
    return client


class TestRedisCounterStore:
    def test_requires_url_or_client(self) -> None:
        with pytest.raises(ValueError):
            RedisCounterStore()

    @pytest.mark.asyncio
    async def test_increment_returns_new_value(self) -> None:
        client = _redis_client(incrby=AsyncMock(return_value=15))
        store = RedisCounterStore(client=client)
        assert await store.increment("k", 15) == 15
        client.incrby.assert_awaited_once_with("k", 15)

    @pytest.mark.asyncio
    async def test_get_parses_value(self) -> None:
        store = RedisCounterStore(client=_redis_client(get=AsyncMock(return_value="950")))
        assert await store.get("k") == CounterRead.found(950)

    @pytest.mark.asyncio
    async def test_get_missing(self) -> None:
        store = RedisCounterStore(client=_redis_client(get=AsyncMock(return_value=None)))
        assert (await store.get("k")).status is CounterReadStatus.MISSING

    @pytest.mark.asyncio
    async def test_get_reports_unavailable_on_redis_error(self) -> None:
        store = RedisCounterStore(client=_redis_client(get=AsyncMock(side_effect=RedisConnectionError("down"))))
        assert (await store.get("k")).status is CounterReadStatus.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_increment_failure_raises_counter_store_error(self) -> None:
        store = RedisCounterStore(client=_redis_client(incrby=AsyncMock(side_effect=RedisConnectionError("down"))))
        with pytest.raises(CounterStoreError):
            await store.increment("k", 1)

    @pytest.mark.asyncio
    async def test_expire_failure_raises_counter_store_error(self) -> None:
        store = RedisCounterStore(client=_redis_client(expire=AsyncMock(side_effect=TimeoutError())))
        with pytest.raises(CounterStoreError):
            await store.expire("k", 60)

    @pytest.mark.asyncio
    async def test_ping_false_when_unreachable(self) -> None:
        store = RedisCounterStore(client=_redis_client(ping=AsyncMock(side_effect=OSError("refused"))))
        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_close_closes_client(self) -> None:
        client = _redis_client(aclose=AsyncMock())
        await RedisCounterStore(client=client).close()
        client.aclose.assert_awaited_once()
