"""Kafka Event Publisher for the CDC Connector."""

import asyncio
import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Set

import backoff
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from .events import TransferEvent

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """Raised when a record could not be delivered after all attempts."""

    def __init__(self, transfer_id: str, cause: Exception):
        super().__init__(f"Failed to deliver transfer {transfer_id}: {cause}")
        self.transfer_id = transfer_id
        self.cause = cause


class PublisherSaturatedError(Exception):
    """Raised by a non-blocking publish when the in-flight queue is full."""


class ProducerClient(Protocol):
    """Protocol for the async Kafka producer."""
    async def send_and_wait(self, topic: str, value: Optional[bytes] = None,
                            key: Optional[bytes] = None) -> Any: ...


@dataclass(frozen=True)
class DeliveryReceipt:
    """Broker acknowledgment for one record."""

    transfer_id: str
    topic: str
    partition: int
    offset: int


@dataclass
class DeadLetterRecord:
    """Envelope for records the bridge could not decode or deliver."""

    stage: str  # "connector" or "sink"
    reason: str  # e.g. "amount_overflow", "malformed", "write_exhausted"
    error: str
    transfer_id: Optional[str] = None
    payload: Optional[Any] = None
    topic: Optional[str] = None
    partition: Optional[int] = None
    offset: Optional[int] = None
    failed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), default=str)


class EventPublisher:
    """
    Publishes canonical transfer events to the log.

    Records are keyed by transfer id so that every record for one transfer
    is totally ordered on a single partition. `publish()` returns a future
    that resolves with a `DeliveryReceipt` once the broker acknowledges the
    record, or fails with `PublishError` after the last attempt.

    The number of unacknowledged records is bounded by `max_in_flight`. When
    the bound is reached `publish()` waits for a free slot, or raises
    `PublisherSaturatedError` when called with `block=False`.

    Usage:
        publisher = EventPublisher(producer, topic="transactions",
                                   dlq_topic="transactions.dlq")
        future = await publisher.publish(event)
        receipt = await future
    """

    def __init__(
        self,
        producer: ProducerClient,
        topic: str,
        dlq_topic: str,
        max_attempts: int = 5,
        max_in_flight: int = 1000,
        backoff_factor: float = 0.5,
        backoff_max_seconds: float = 10.0,
    ):
        """
        Initialize the publisher.

        Args:
            producer: Started async Kafka producer
            topic: Topic for transfer events
            dlq_topic: Topic for dead-letter records
            max_attempts: Delivery attempts per record, including the first
            max_in_flight: Maximum unacknowledged records
            backoff_factor: Base delay in seconds for exponential backoff
            backoff_max_seconds: Cap for a single backoff delay
        """
        self.producer = producer
        self.topic = topic
        self.dlq_topic = dlq_topic
        self.max_in_flight = max_in_flight
        self._slots = asyncio.Semaphore(max_in_flight)
        self._in_flight: Set[asyncio.Task] = set()
        self._send = backoff.on_exception(
            backoff.expo,
            KafkaError,
            max_tries=max_attempts,
            on_backoff=lambda details: logger.warning(
                f"Publish to {details['args'][0]} failed, retrying "
                f"(attempt {details['tries']}): {details.get('exception')}"
            ),
            factor=backoff_factor,
            max_value=backoff_max_seconds,
        )(self._send_once)

    @property
    def in_flight(self) -> int:
        """Number of records submitted but not yet resolved."""
        return len(self._in_flight)

    async def publish(self, event: TransferEvent, block: bool = True) -> "asyncio.Future[DeliveryReceipt]":
        """
        Submit an event for delivery.

        Args:
            event: The transfer event to publish
            block: Wait for a free in-flight slot instead of failing fast

        Returns:
            Future resolving to the DeliveryReceipt

        Raises:
            PublisherSaturatedError: block is False and the in-flight queue is full
        """
        if not block and self._slots.locked():
            raise PublisherSaturatedError(
                f"{self.max_in_flight} records already in flight; rejected {event.id}"
            )
        await self._slots.acquire()

        task = asyncio.create_task(self._deliver(event), name=f"publish-{event.id}")
        self._in_flight.add(task)
        task.add_done_callback(self._release)
        return task

    def _release(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        self._slots.release()
        # Callers may stop waiting before the ack; retrieve the outcome here.
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"{task.get_name()} finished with {task.exception()!r}")

    async def _send_once(self, topic: str, value: bytes, key: Optional[bytes]) -> Any:
        return await self.producer.send_and_wait(topic, value=value, key=key)

    async def _deliver(self, event: TransferEvent) -> DeliveryReceipt:
        try:
            metadata = await self._send(self.topic, event.to_json().encode("utf-8"), event.key)
        except KafkaError as e:
            logger.error(f"Giving up on transfer {event.id}: {e}")
            raise PublishError(event.id, e) from e

        receipt = DeliveryReceipt(
            transfer_id=event.id,
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
        )
        logger.debug(
            f"Forwarded transfer {event.id} to {receipt.topic}[{receipt.partition}]@{receipt.offset}"
        )
        return receipt

    async def publish_dead_letter(self, record: DeadLetterRecord) -> DeliveryReceipt:
        """
        Write a record to the dead-letter topic and wait for the ack.

        Raises:
            PublishError: the dead-letter record itself could not be delivered
        """
        key = record.transfer_id.encode("utf-8") if record.transfer_id else None
        try:
            metadata = await self._send(self.dlq_topic, record.to_json().encode("utf-8"), key)
        except KafkaError as e:
            raise PublishError(record.transfer_id or "<unknown>", e) from e

        logger.error(
            f"Dead-lettered transfer {record.transfer_id} ({record.stage}/{record.reason}): "
            f"{record.error}"
        )
        return DeliveryReceipt(
            transfer_id=record.transfer_id or "",
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
        )

    async def drain(self) -> None:
        """Wait for every in-flight record to resolve."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)


async def create_producer(bootstrap_servers: str, client_id: str) -> AIOKafkaProducer:
    """Create and start an idempotent producer that waits for all replicas."""
    producer = AIOKafkaProducer(
        bootstrap_servers=bootstrap_servers,
        client_id=client_id,
        acks="all",
        enable_idempotence=True,
    )
    await producer.start()
    return producer
