"""Ledger Extractor - polls the ledger and forwards new transfers to the log."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from checkpoint.store import CheckpointError, CheckpointStore

from .config import ConnectorConfig, DEFAULT_CONFIG
from .dedup import DedupCache
from .events import AmountOverflowError, CodecError, TransferEvent
from .ledger import LedgerClient, LedgerQueryError, TransferQuery
from .publisher import DeadLetterRecord, EventPublisher, PublishError

logger = logging.getLogger(__name__)

_NATIVE_FIELDS = ("id", "debit_account_id", "credit_account_id", "amount", "ledger", "code", "timestamp")


@dataclass
class TickResult:
    """Outcome of one poll of the ledger."""

    fetched: int = 0
    published: int = 0
    suppressed: int = 0
    dead_lettered: int = 0
    failed: int = 0
    high_water_mark: int = 0


class LedgerExtractor:
    """
    Polls the ledger for transfers newer than the high-water mark.

    Each tick queries `{ledger, code, timestamp > mark, limit}`, converts new
    records with the codec, publishes them and waits for every broker
    acknowledgment of the batch before the mark moves. The mark then becomes:

    - the largest timestamp in the batch when every record was handled
      (acknowledged, suppressed by the dedup cache, or dead-lettered), or
    - the smallest unhandled timestamp minus one, so a failed record is
      queried again on the next tick.

    Records below a gap that were already acknowledged are kept in the dedup
    cache, so the re-query does not publish them a second time while they
    are still cached. If they were evicted they are published again, which the
    sink tolerates because materialization is idempotent.

    Usage:
        extractor = LedgerExtractor(ledger, publisher, store, config)
        await extractor.run(cancel_event)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        publisher: EventPublisher,
        store: CheckpointStore,
        config: ConnectorConfig = DEFAULT_CONFIG,
        dedup: Optional[DedupCache] = None,
    ):
        """
        Initialize the extractor.

        Args:
            ledger: Ledger query client
            publisher: Publisher for transfer and dead-letter records
            store: Checkpoint store holding the high-water mark
            config: Connector configuration
            dedup: Dedup cache (created from config if not provided)
        """
        self.ledger = ledger
        self.publisher = publisher
        self.store = store
        self.config = config
        self.dedup = dedup if dedup is not None else DedupCache(config.dedup_cache_capacity)
        self.high_water_mark = 0
        self._consecutive_failures = 0

    async def load_checkpoint(self) -> int:
        """Resume from the persisted high-water mark."""
        self.high_water_mark = await self.store.load_high_water_mark(self.config.checkpoint_name)
        logger.info(
            f"Resuming {self.config.checkpoint_name} from high-water mark {self.high_water_mark}"
        )
        return self.high_water_mark

    async def tick(self) -> TickResult:
        """
        Run one poll: query, publish, await acks, advance the mark.

        Raises:
            LedgerQueryError: the ledger query failed
            CheckpointError: the new mark could not be persisted
        """
        query = TransferQuery(
            ledger=self.config.ledger_id,
            code=self.config.transfer_code,
            timestamp_min=self.high_water_mark + 1,
            limit=self.config.poll_limit,
        )
        records, limit = await self._fetch(query)
        result = TickResult(fetched=len(records), high_water_mark=self.high_water_mark)
        if not records:
            return result

        handled: List[int] = []
        unhandled: List[int] = []
        pending: List[Tuple[TransferEvent, asyncio.Future]] = []

        for record in records:
            timestamp = _timestamp_of(record)
            transfer_id = str(getattr(record, "id", "?"))

            if transfer_id in self.dedup:
                result.suppressed += 1
                _track(handled, timestamp)
                continue

            try:
                event = TransferEvent.from_ledger(record)
            except CodecError as e:
                if await self._dead_letter(record, transfer_id, e):
                    result.dead_lettered += 1
                    _track(handled, timestamp)
                else:
                    result.failed += 1
                    _track(unhandled, timestamp)
                continue

            pending.append((event, await self.publisher.publish(event)))

        if pending:
            futures = [future for _, future in pending]
            done, _ = await asyncio.wait(futures, timeout=self.config.ack_timeout_seconds)
            for event, future in pending:
                if future in done and not future.cancelled() and future.exception() is None:
                    self.dedup.add(event.id)
                    result.published += 1
                    handled.append(event.source_timestamp)
                else:
                    if future not in done:
                        logger.warning(f"No acknowledgment for transfer {event.id} within ack timeout")
                    result.failed += 1
                    unhandled.append(event.source_timestamp)

        candidate = self._candidate_mark(handled, unhandled, full_batch=len(records) >= limit)
        if candidate > self.high_water_mark:
            self.high_water_mark = await self.store.save_high_water_mark(
                self.config.checkpoint_name, candidate
            )
        result.high_water_mark = self.high_water_mark

        logger.info(
            f"Tick: fetched={result.fetched} published={result.published} "
            f"suppressed={result.suppressed} dead_lettered={result.dead_lettered} "
            f"failed={result.failed} mark={result.high_water_mark}"
        )
        return result

    async def _fetch(self, query: TransferQuery) -> Tuple[List[Any], int]:
        """
        Query the ledger, widening the limit while a full batch shares one timestamp.

        Returns:
            The records and the limit of the query that produced them
        """
        records = await self.ledger.query_transfers(query)
        limit = query.limit
        while len(records) >= limit and limit < self.config.poll_limit_max:
            timestamp = _shared_timestamp(records)
            if timestamp is None:
                break
            limit = min(limit * 2, self.config.poll_limit_max)
            logger.warning(
                f"{len(records)} transfers share timestamp {timestamp}; re-querying it with limit {limit}"
            )
            records = await self.ledger.query_transfers(TransferQuery(
                ledger=query.ledger,
                code=query.code,
                timestamp_min=timestamp,
                timestamp_max=timestamp,
                limit=limit,
            ))
        return records, limit

    def _candidate_mark(self, handled: List[int], unhandled: List[int], full_batch: bool) -> int:
        if unhandled:
            return max(self.high_water_mark, min(unhandled) - 1)
        if not handled:
            return self.high_water_mark

        top = max(handled)
        # A full batch may have stopped in the middle of a run of equal
        # timestamps; leave the top timestamp to be re-queried.
        if full_batch:
            if min(handled) == top:
                logger.critical(
                    f"At least {len(handled)} transfers share timestamp {top}; "
                    f"high-water mark held at {top - 1} until POLL_LIMIT_MAX is raised"
                )
            return max(self.high_water_mark, top - 1)
        return max(self.high_water_mark, top)

    async def _dead_letter(self, record: Any, transfer_id: str, error: CodecError) -> bool:
        reason = "amount_overflow" if isinstance(error, AmountOverflowError) else "malformed"
        logger.error(f"Rejected transfer {transfer_id}: {error}")
        dead_letter = DeadLetterRecord(
            stage="connector",
            reason=reason,
            error=str(error),
            transfer_id=transfer_id,
            payload={name: str(getattr(record, name, None)) for name in _NATIVE_FIELDS},
        )
        try:
            await self.publisher.publish_dead_letter(dead_letter)
            return True
        except PublishError as e:
            logger.error(f"Could not dead-letter transfer {transfer_id}, will retry: {e}")
            return False

    def next_delay(self) -> float:
        """Seconds until the next tick: the poll interval, doubled per consecutive failure."""
        delay = self.config.poll_interval_seconds * (2 ** self._consecutive_failures)
        return min(delay, max(self.config.poll_max_backoff_seconds, self.config.poll_interval_seconds))

    async def run(self, cancel: asyncio.Event) -> None:
        """
        Poll until `cancel` is set.

        Ledger and checkpoint failures are logged and retried with capped
        exponential backoff; they never end the loop. Setting `cancel`
        abandons the current tick at its next suspension point. The mark is
        only written at the end of a tick, so an abandoned tick leaves it
        untouched.
        """
        await self.load_checkpoint()
        logger.info(
            f"Polling ledger {self.config.ledger_id} code {self.config.transfer_code} "
            f"every {self.config.poll_interval_seconds}s (limit {self.config.poll_limit})"
        )

        while not cancel.is_set():
            tick_task = asyncio.create_task(self.tick(), name="ledger-tick")
            cancel_task = asyncio.create_task(cancel.wait(), name="ledger-cancel")
            done, _ = await asyncio.wait({tick_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)

            if tick_task not in done:
                tick_task.cancel()
                await asyncio.gather(tick_task, return_exceptions=True)
                break
            cancel_task.cancel()

            try:
                tick_task.result()
                self._consecutive_failures = 0
            except LedgerQueryError as e:
                self._consecutive_failures += 1
                logger.error(f"Ledger query failed ({self._consecutive_failures} in a row): {e}")
            except CheckpointError as e:
                self._consecutive_failures += 1
                logger.error(f"Checkpoint update failed ({self._consecutive_failures} in a row): {e}")
            except Exception as e:
                self._consecutive_failures += 1
                logger.exception(f"Unexpected error in extractor tick: {e}")

            try:
                await asyncio.wait_for(cancel.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                pass

        await self.publisher.drain()
        logger.info(f"Extractor stopped at high-water mark {self.high_water_mark}")


def _timestamp_of(record: Any) -> Optional[int]:
    value = getattr(record, "timestamp", None)
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return None


def _track(bucket: List[int], timestamp: Optional[int]) -> None:
    if timestamp is not None:
        bucket.append(timestamp)


def _shared_timestamp(records: List[Any]) -> Optional[int]:
    timestamps = {_timestamp_of(record) for record in records}
    if len(timestamps) == 1:
        return timestamps.pop()
    return None
