"""Checkpoint Store - Durable extractor marks and sink consumer offsets."""

from dataclasses import dataclass
from typing import Optional, Protocol
import logging

logger = logging.getLogger(__name__)


class CheckpointError(Exception):
    """Raised when a checkpoint cannot be read or persisted."""


@dataclass(frozen=True)
class ConsumerCheckpoint:
    """Read position for one log partition (offset of the next record to read)."""

    topic: str
    partition: int
    offset: int


class RedisClient(Protocol):
    """Protocol for the subset of the async Redis client we use."""
    async def get(self, key: str) -> Optional[str]: ...
    async def eval(self, script: str, numkeys: int, *keys_and_args) -> int: ...
    async def hset(self, name: str, key: str, value: str) -> int: ...
    async def hget(self, name: str, key: str) -> Optional[str]: ...
    async def hgetall(self, name: str) -> dict: ...


class CheckpointStore(Protocol):
    """Protocol shared by the extractor and the sink orchestrator."""
    async def load_high_water_mark(self, name: str) -> int: ...
    async def save_high_water_mark(self, name: str, value: int) -> int: ...
    async def load_offset(self, group: str, topic: str, partition: int) -> Optional[int]: ...
    async def commit_offset(self, group: str, checkpoint: ConsumerCheckpoint) -> None: ...


# Only moves the mark forward; returns the stored value.
# Marks are compared as decimal strings (length, then lexically) because
# ledger timestamps exceed the 2^53 range of Lua numbers.
_ADVANCE_MARK_SCRIPT = """
local current = redis.call('GET', KEYS[1]) or '0'
local candidate = ARGV[1]
if #candidate > #current or (#candidate == #current and candidate > current) then
    redis.call('SET', KEYS[1], candidate)
    return candidate
end
return current
"""


class RedisCheckpointStore:
    """
    Checkpoint store backed by Redis.

    Layout:
        <prefix>:hwm:<name>                      -> integer high-water mark
        <prefix>:offsets:<group>:<topic>         -> hash {partition: next offset}

    Each partition offset is an independent hash field, so workers for
    different partitions commit without coordinating with each other.
    """

    def __init__(self, redis_client: RedisClient, prefix: str = "cdc"):
        """
        Initialize the store.

        Args:
            redis_client: Async Redis client (decode_responses=True)
            prefix: Key namespace shared by all checkpoints of this deployment
        """
        self.redis = redis_client
        self.prefix = prefix

    def _mark_key(self, name: str) -> str:
        return f"{self.prefix}:hwm:{name}"

    def _offsets_key(self, group: str, topic: str) -> str:
        return f"{self.prefix}:offsets:{group}:{topic}"

    async def load_high_water_mark(self, name: str) -> int:
        """Return the persisted mark, or 0 when none has been stored yet."""
        try:
            value = await self.redis.get(self._mark_key(name))
        except Exception as e:
            raise CheckpointError(f"Failed to load high-water mark {name}: {e}") from e
        return int(value) if value is not None else 0

    async def save_high_water_mark(self, name: str, value: int) -> int:
        """
        Advance the mark to `value` if it is greater than the stored one.

        Returns:
            The mark stored after the call
        """
        try:
            stored = await self.redis.eval(
                _ADVANCE_MARK_SCRIPT, 1, self._mark_key(name), str(value)
            )
        except Exception as e:
            raise CheckpointError(f"Failed to save high-water mark {name}: {e}") from e
        return int(stored)

    async def load_offset(self, group: str, topic: str, partition: int) -> Optional[int]:
        try:
            value = await self.redis.hget(self._offsets_key(group, topic), str(partition))
        except Exception as e:
            raise CheckpointError(
                f"Failed to load offset {topic}[{partition}] for {group}: {e}"
            ) from e
        return int(value) if value is not None else None

    async def commit_offset(self, group: str, checkpoint: ConsumerCheckpoint) -> None:
        try:
            await self.redis.hset(
                self._offsets_key(group, checkpoint.topic),
                str(checkpoint.partition),
                str(checkpoint.offset),
            )
        except Exception as e:
            raise CheckpointError(
                f"Failed to commit offset {checkpoint.topic}[{checkpoint.partition}]"
                f"={checkpoint.offset} for {group}: {e}"
            ) from e
        logger.debug(
            f"Committed {group} {checkpoint.topic}[{checkpoint.partition}] -> {checkpoint.offset}"
        )

