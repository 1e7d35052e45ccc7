"""Sink Orchestrator - per-partition workers with commit-after-write semantics."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple

import backoff
from aiokafka import TopicPartition
from aiokafka.errors import KafkaError

from checkpoint.store import CheckpointError, CheckpointStore, ConsumerCheckpoint
from connector.events import AmountOverflowError, CodecError, TransferEvent
from connector.publisher import DeadLetterRecord, PublishError

from .config import SinkConfig, DEFAULT_CONFIG
from .consumer import EventConsumer
from .materializer import GraphMaterializer, GraphSession, MaterializeError, MaterializeResult

logger = logging.getLogger(__name__)


class PartitionStalledError(Exception):
    """Raised when a record failed in an unexpected way; nothing was committed past it."""

    def __init__(self, topic: str, partition: int, offset: int, cause: Exception):
        super().__init__(f"Unexpected error at {topic}[{partition}]@{offset}: {cause!r}")
        self.topic = topic
        self.partition = partition
        self.offset = offset
        self.cause = cause


class DeadLetterSink(Protocol):
    """Protocol for the dead-letter side of the event publisher."""
    async def publish_dead_letter(self, record: DeadLetterRecord) -> Any: ...


class GraphDriver(Protocol):
    """Protocol for the subset of `neo4j.AsyncDriver` we use."""
    def session(self, **config) -> Any: ...


class PartitionWorker:
    """
    Processes the records of one partition, strictly in order.

    Every record is materialized, and only then is `offset + 1` committed
    to the checkpoint store. A failing write is retried with exponential
    backoff; once the attempts are exhausted the record is dead-lettered
    and skipped so one poisoned record cannot stall the partition. If even
    the dead-letter write fails, the worker stops and reports the offset to
    resume from; nothing is committed past it.

    Each worker owns its graph session; sessions are never shared.
    """

    def __init__(
        self,
        topic: str,
        partition: int,
        session: GraphSession,
        store: CheckpointStore,
        dead_letters: DeadLetterSink,
        config: SinkConfig = DEFAULT_CONFIG,
    ):
        self.topic = topic
        self.partition = partition
        self.session = session
        self.store = store
        self.dead_letters = dead_letters
        self.config = config
        self.materializer = GraphMaterializer(session)
        self.processed = 0
        self.skipped = 0
        self._write = backoff.on_exception(
            backoff.expo,
            MaterializeError,
            max_tries=config.write_max_attempts,
            on_backoff=lambda details: logger.warning(
                f"Graph write for {topic}[{partition}] failed, retrying "
                f"(attempt {details['tries']}): {details.get('exception')}"
            ),
            factor=config.write_backoff_factor,
            max_value=config.write_backoff_max_seconds,
        )(self.materializer.materialize)

    async def process(self, records: List[Any], cancel: asyncio.Event) -> Optional[int]:
        """
        Process a batch of records from this partition.

        Returns:
            None when every record was handled, otherwise the offset the
            partition must be re-read from

        Raises:
            PartitionStalledError: a record failed unexpectedly; the partition
                must be re-read from its offset
        """
        for record in records:
            if cancel.is_set():
                return record.offset
            try:
                handled = await self._process_one(record)
            except Exception as e:
                raise PartitionStalledError(self.topic, self.partition, record.offset, e) from e
            if not handled:
                return record.offset
        return None

    async def _process_one(self, record: Any) -> bool:
        try:
            event = TransferEvent.from_json(record.value)
        except CodecError as e:
            reason = "amount_overflow" if isinstance(e, AmountOverflowError) else "malformed"
            logger.error(
                f"Undecodable record at {self.topic}[{self.partition}]@{record.offset}: {e}"
            )
            return await self._skip(record, reason, e, _key_of(record))

        try:
            result: MaterializeResult = await self._write(event)
        except MaterializeError as e:
            logger.critical(
                f"DATA LOSS RISK: giving up on transfer {event.id} at "
                f"{self.topic}[{self.partition}]@{record.offset} after "
                f"{self.config.write_max_attempts} attempts: {e.cause}"
            )
            return await self._skip(record, "write_exhausted", e, event.id)

        self.processed += 1
        if not result.is_replay:
            logger.info(
                f"Written transfer {event.id} to graph "
                f"(from:{event.debit_account_id} to:{event.credit_account_id} amount:{event.amount})"
            )
        await self._commit(record.offset + 1)
        return True

    async def _skip(self, record: Any, reason: str, error: Exception, transfer_id: Optional[str]) -> bool:
        dead_letter = DeadLetterRecord(
            stage="sink",
            reason=reason,
            error=str(error),
            transfer_id=transfer_id,
            payload=_text_of(record.value),
            topic=self.topic,
            partition=self.partition,
            offset=record.offset,
        )
        try:
            await self.dead_letters.publish_dead_letter(dead_letter)
        except PublishError as e:
            logger.error(
                f"Could not dead-letter {self.topic}[{self.partition}]@{record.offset}; "
                f"partition paused at this offset: {e}"
            )
            return False

        self.skipped += 1
        await self._commit(record.offset + 1)
        return True

    async def _commit(self, offset: int) -> None:
        checkpoint = ConsumerCheckpoint(topic=self.topic, partition=self.partition, offset=offset)
        try:
            await self.store.commit_offset(self.config.consumer_group, checkpoint)
        except CheckpointError as e:
            # The next successful commit on this partition covers this offset;
            # until then a restart replays from the older checkpoint.
            logger.warning(str(e))

    async def close(self) -> None:
        await self.session.close()
        logger.info(
            f"Worker {self.topic}[{self.partition}] closed "
            f"(processed={self.processed} skipped={self.skipped})"
        )


class SinkOrchestrator:
    """
    Ties the consumer, the graph materializer and the checkpoint store together.

    One PartitionWorker is created per assigned partition. Each fetched batch
    is split by partition and the workers run concurrently; ordering is only
    preserved within a partition, which is where the publisher keys every
    record of a transfer.

    Usage:
        orchestrator = SinkOrchestrator(consumer, driver, store, dead_letters, config)
        await orchestrator.start()
        await orchestrator.run(cancel_event)
    """

    def __init__(
        self,
        consumer: EventConsumer,
        driver: GraphDriver,
        store: CheckpointStore,
        dead_letters: DeadLetterSink,
        config: SinkConfig = DEFAULT_CONFIG,
    ):
        """
        Initialize the orchestrator.

        Args:
            consumer: Event consumer (not yet started)
            driver: Neo4j async driver used to open one session per worker
            store: Checkpoint store for partition offsets
            dead_letters: Publisher used for dead-letter records
            config: Sink configuration
        """
        self.consumer = consumer
        self.driver = driver
        self.store = store
        self.dead_letters = dead_letters
        self.config = config
        self.workers: Dict[Tuple[str, int], PartitionWorker] = {}
        self._batch_lock = asyncio.Lock()
        self._fetch_failures = 0

    async def start(self) -> None:
        await self.consumer.start(on_assigned=self._on_assigned, on_revoked=self._on_revoked)

    def _worker_for(self, tp: TopicPartition) -> PartitionWorker:
        key = (tp.topic, tp.partition)
        worker = self.workers.get(key)
        if worker is None:
            session_config = {"database": self.config.neo4j_database} if self.config.neo4j_database else {}
            worker = PartitionWorker(
                topic=tp.topic,
                partition=tp.partition,
                session=self.driver.session(**session_config),
                store=self.store,
                dead_letters=self.dead_letters,
                config=self.config,
            )
            self.workers[key] = worker
        return worker

    async def _on_assigned(self, assigned: List[TopicPartition]) -> None:
        for tp in assigned:
            self._worker_for(tp)

    async def _on_revoked(self, revoked: List[TopicPartition]) -> None:
        # Let the batch in progress finish before its workers go away.
        async with self._batch_lock:
            for tp in revoked:
                worker = self.workers.pop((tp.topic, tp.partition), None)
                if worker:
                    await worker.close()

    async def run_once(self, cancel: asyncio.Event) -> int:
        """
        Fetch one batch and process it.

        Returns:
            Number of records fetched
        """
        batches = await self.consumer.fetch()
        if not batches:
            return 0

        async with self._batch_lock:
            results = await asyncio.gather(*(
                self._process_partition(tp, records, cancel)
                for tp, records in batches.items()
            ), return_exceptions=True)

        errors = [r for r in results if isinstance(r, Exception)]
        if errors:
            raise errors[0]
        return sum(len(records) for records in batches.values())

    async def _process_partition(self, tp: TopicPartition, records: List[Any], cancel: asyncio.Event) -> None:
        worker = self._worker_for(tp)
        try:
            resume_at = await worker.process(records, cancel)
        except PartitionStalledError as e:
            self.consumer.rewind(tp, e.offset)
            raise
        if resume_at is not None:
            self.consumer.rewind(tp, resume_at)

    def _fetch_delay(self) -> float:
        return min(0.5 * (2 ** (self._fetch_failures - 1)), 30.0)

    async def run(self, cancel: asyncio.Event) -> None:
        """
        Consume until `cancel` is set.

        Fetch errors and unexpected batch errors are logged and retried with
        backoff. The workers and the consumer are closed however the loop ends.
        """
        logger.info(f"Sink consuming {self.config.topic} as {self.config.consumer_group}")
        try:
            while not cancel.is_set():
                try:
                    await self.run_once(cancel)
                    self._fetch_failures = 0
                    continue
                except KafkaError as e:
                    self._fetch_failures += 1
                    logger.error(f"Fetch failed ({self._fetch_failures} in a row): {e}")
                except Exception as e:
                    self._fetch_failures += 1
                    logger.exception(f"Unexpected error in sink batch: {e}")

                try:
                    await asyncio.wait_for(cancel.wait(), timeout=self._fetch_delay())
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Close every worker session and leave the consumer group."""
        async with self._batch_lock:
            for worker in list(self.workers.values()):
                await worker.close()
            self.workers.clear()
        await self.consumer.stop()


def _key_of(record: Any) -> Optional[str]:
    key = getattr(record, "key", None)
    if isinstance(key, (bytes, bytearray)):
        return key.decode("utf-8", errors="replace")
    return key


def _text_of(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    return value
