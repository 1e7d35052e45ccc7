"""Checkpoint Store - persisted high-water marks and consumer offsets."""

from .store import (
    CheckpointError,
    CheckpointStore,
    ConsumerCheckpoint,
    RedisCheckpointStore,
)

__all__ = [
    "CheckpointError",
    "CheckpointStore",
    "ConsumerCheckpoint",
    "RedisCheckpointStore",
]
