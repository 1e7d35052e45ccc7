"""Tests for checkpoint stores."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from checkpoint import (
    CheckpointError,
    ConsumerCheckpoint,
    RedisCheckpointStore,
)
from conftest import MemoryCheckpointStore


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_redis():
    """Create mock async Redis client."""
    redis = MagicMock()
    redis.get = AsyncMock(return_value=None)
    redis.eval = AsyncMock(return_value="0")
    redis.hget = AsyncMock(return_value=None)
    redis.hset = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def redis_store(mock_redis):
    return RedisCheckpointStore(mock_redis, prefix="test")


# ============================================================================
# Memory store
# ============================================================================

class TestMemoryCheckpointStore:
    """In-process store semantics."""

    @pytest.mark.asyncio
    async def test_mark_defaults_to_zero(self):
        store = MemoryCheckpointStore()
        assert await store.load_high_water_mark("ledger-1") == 0

    @pytest.mark.asyncio
    async def test_mark_never_regresses(self):
        store = MemoryCheckpointStore()

        assert await store.save_high_water_mark("ledger-1", 50) == 50
        assert await store.save_high_water_mark("ledger-1", 10) == 50
        assert await store.load_high_water_mark("ledger-1") == 50

    @pytest.mark.asyncio
    async def test_offsets_are_per_partition(self):
        store = MemoryCheckpointStore()
        await store.commit_offset("g", ConsumerCheckpoint("transactions", 0, 7))
        await store.commit_offset("g", ConsumerCheckpoint("transactions", 1, 3))

        assert await store.load_offset("g", "transactions", 0) == 7
        assert await store.load_offset("g", "transactions", 1) == 3
        assert await store.load_offset("g", "transactions", 2) is None
        assert await store.load_offset("other", "transactions", 0) is None


# ============================================================================
# Redis store
# ============================================================================

class TestRedisCheckpointStore:
    """Redis key layout and error wrapping."""

    @pytest.mark.asyncio
    async def test_load_mark_reads_namespaced_key(self, redis_store, mock_redis):
        mock_redis.get.return_value = "1700000000000000123"

        value = await redis_store.load_high_water_mark("ledger-1-code-718")

        mock_redis.get.assert_called_once_with("test:hwm:ledger-1-code-718")
        assert value == 1700000000000000123

    @pytest.mark.asyncio
    async def test_load_mark_missing_is_zero(self, redis_store):
        assert await redis_store.load_high_water_mark("ledger-1") == 0

    @pytest.mark.asyncio
    async def test_save_mark_passes_value_as_string(self, redis_store, mock_redis):
        """Test marks above 2^53 travel to the script as exact decimal text."""
        mark = 2**63 + 5
        mock_redis.eval.return_value = str(mark)

        stored = await redis_store.save_high_water_mark("ledger-1", mark)

        args = mock_redis.eval.call_args[0]
        assert args[1] == 1
        assert args[2] == "test:hwm:ledger-1"
        assert args[3] == str(mark)
        assert stored == mark

    @pytest.mark.asyncio
    async def test_save_mark_returns_stored_value_when_not_advanced(self, redis_store, mock_redis):
        mock_redis.eval.return_value = "900"
        assert await redis_store.save_high_water_mark("ledger-1", 100) == 900

    @pytest.mark.asyncio
    async def test_offset_round_trip_through_hash(self, redis_store, mock_redis):
        await redis_store.commit_offset("sink", ConsumerCheckpoint("transactions", 2, 41))

        mock_redis.hset.assert_called_once_with("test:offsets:sink:transactions", "2", "41")

        mock_redis.hget.return_value = "41"
        assert await redis_store.load_offset("sink", "transactions", 2) == 41
        mock_redis.hget.assert_called_with("test:offsets:sink:transactions", "2")

    @pytest.mark.asyncio
    async def test_missing_offset_is_none(self, redis_store):
        assert await redis_store.load_offset("sink", "transactions", 0) is None

    @pytest.mark.asyncio
    async def test_errors_are_wrapped(self, redis_store, mock_redis):
        mock_redis.get.side_effect = ConnectionError("refused")
        mock_redis.eval.side_effect = ConnectionError("refused")
        mock_redis.hset.side_effect = ConnectionError("refused")

        with pytest.raises(CheckpointError):
            await redis_store.load_high_water_mark("ledger-1")
        with pytest.raises(CheckpointError):
            await redis_store.save_high_water_mark("ledger-1", 5)
        with pytest.raises(CheckpointError):
            await redis_store.commit_offset("sink", ConsumerCheckpoint("transactions", 0, 1))
