"""Event Consumer - consumer-group reader that resumes from checkpointed offsets."""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from aiokafka import AIOKafkaConsumer, ConsumerRebalanceListener, TopicPartition

from checkpoint.store import CheckpointStore

from .config import SinkConfig, DEFAULT_CONFIG

logger = logging.getLogger(__name__)

PartitionCallback = Callable[[List[TopicPartition]], Awaitable[None]]


class KafkaConsumerClient(Protocol):
    """Protocol for the subset of `AIOKafkaConsumer` we use."""
    def subscribe(self, topics: List[str], listener: Any = None) -> None: ...
    async def start(self) -> None: ...
    async def stop(self) -> None: ...
    async def getmany(self, *partitions, timeout_ms: int = 0,
                      max_records: Optional[int] = None) -> Dict[TopicPartition, list]: ...
    def seek(self, partition: TopicPartition, offset: int) -> None: ...


class _CheckpointRebalanceListener(ConsumerRebalanceListener):
    """Forwards group rebalances to the owning EventConsumer."""

    def __init__(self, owner: "EventConsumer"):
        self.owner = owner

    async def on_partitions_revoked(self, revoked):
        await self.owner.handle_revoked(list(revoked))

    async def on_partitions_assigned(self, assigned):
        await self.owner.handle_assigned(list(assigned))


class EventConsumer:
    """
    Reads transfer records under a durable consumer group.

    Offsets are not committed to the broker. The checkpoint store is the
    source of truth: when a partition is assigned, the consumer seeks it to
    the stored offset so processing resumes right after the last record whose
    graph write succeeded. Partitions without a stored offset start from the
    group's `auto_offset_reset` position.
    """

    def __init__(
        self,
        consumer: KafkaConsumerClient,
        store: CheckpointStore,
        config: SinkConfig = DEFAULT_CONFIG,
    ):
        """
        Args:
            consumer: Kafka consumer created with enable_auto_commit=False
            store: Checkpoint store holding per-partition offsets
            config: Sink configuration
        """
        self.consumer = consumer
        self.store = store
        self.config = config
        self._on_assigned: Optional[PartitionCallback] = None
        self._on_revoked: Optional[PartitionCallback] = None

    async def start(
        self,
        on_assigned: Optional[PartitionCallback] = None,
        on_revoked: Optional[PartitionCallback] = None,
    ) -> None:
        """Join the group and subscribe to the transfer topic."""
        self._on_assigned = on_assigned
        self._on_revoked = on_revoked
        self.consumer.subscribe(
            topics=[self.config.topic],
            listener=_CheckpointRebalanceListener(self),
        )
        await self.consumer.start()
        logger.info(
            f"Joined consumer group {self.config.consumer_group} on topic {self.config.topic}"
        )

    async def stop(self) -> None:
        await self.consumer.stop()
        logger.info("Consumer stopped")

    async def handle_assigned(self, assigned: List[TopicPartition]) -> None:
        for tp in assigned:
            offset = await self.store.load_offset(self.config.consumer_group, tp.topic, tp.partition)
            if offset is not None:
                self.consumer.seek(tp, offset)
                logger.info(f"Assigned {tp.topic}[{tp.partition}], resuming at offset {offset}")
            else:
                logger.info(
                    f"Assigned {tp.topic}[{tp.partition}], no checkpoint "
                    f"(starting from {self.config.auto_offset_reset})"
                )
        if self._on_assigned:
            await self._on_assigned(assigned)

    async def handle_revoked(self, revoked: List[TopicPartition]) -> None:
        if revoked:
            logger.info(
                "Revoked partitions: "
                + ", ".join(f"{tp.topic}[{tp.partition}]" for tp in revoked)
            )
        if self._on_revoked:
            await self._on_revoked(revoked)

    async def fetch(self) -> Dict[TopicPartition, list]:
        """Fetch the next batch, grouped by partition, in log order per partition."""
        return await self.consumer.getmany(
            timeout_ms=self.config.fetch_timeout_ms,
            max_records=self.config.fetch_max_records,
        )

    def rewind(self, tp: TopicPartition, offset: int) -> None:
        """Make the next fetch for `tp` start again at `offset`."""
        self.consumer.seek(tp, offset)
        logger.warning(f"Rewound {tp.topic}[{tp.partition}] to offset {offset}")


def create_kafka_consumer(config: SinkConfig) -> AIOKafkaConsumer:
    """Create the group consumer (not started) with broker auto-commit disabled."""
    return AIOKafkaConsumer(
        bootstrap_servers=config.bootstrap_servers,
        group_id=config.consumer_group,
        client_id=config.client_id,
        enable_auto_commit=False,
        auto_offset_reset=config.auto_offset_reset,
    )
