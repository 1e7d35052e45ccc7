"""Tests for the event publisher."""

import asyncio
import gc
import json
import pytest

from connector.events import TransferEvent
from connector.publisher import (
    DeadLetterRecord,
    DeliveryReceipt,
    EventPublisher,
    PublishError,
    PublisherSaturatedError,
)
from conftest import RecordingProducer, make_transfer


class GatedProducer(RecordingProducer):
    """Holds every send until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def send_and_wait(self, topic, value=None, key=None):
        await self.gate.wait()
        return await super().send_and_wait(topic, value=value, key=key)


def _event(id: int) -> TransferEvent:
    return TransferEvent.from_ledger(make_transfer(id))


def _publisher(producer, **kwargs) -> EventPublisher:
    kwargs.setdefault("max_attempts", 3)
    return EventPublisher(
        producer,
        topic="transactions",
        dlq_topic="transactions.dlq",
        backoff_factor=0.001,
        backoff_max_seconds=0.01,
        **kwargs,
    )


# ============================================================================
# Delivery
# ============================================================================

class TestPublish:
    """Keyed delivery with retries."""

    @pytest.mark.asyncio
    async def test_publish_resolves_with_receipt(self, producer):
        publisher = _publisher(producer)

        receipt = await (await publisher.publish(_event(12345)))

        assert isinstance(receipt, DeliveryReceipt)
        assert receipt.transfer_id == "12345"
        assert receipt.topic == "transactions"
        assert receipt.partition == producer.partition_for(b"12345")
        assert receipt.offset == 0
        assert producer.sent == [("transactions", _event(12345).to_json().encode(), b"12345")]

    @pytest.mark.asyncio
    async def test_same_key_lands_on_same_partition(self, producer):
        """Test records for one transfer stay ordered on one partition."""
        publisher = _publisher(producer)

        first = await (await publisher.publish(_event(7)))
        second = await (await publisher.publish(_event(7)))

        assert first.partition == second.partition
        assert second.offset == first.offset + 1

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, producer):
        producer.fail_next = 2
        publisher = _publisher(producer, max_attempts=5)

        receipt = await (await publisher.publish(_event(1)))

        assert receipt.transfer_id == "1"
        assert producer.attempts == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_future(self, producer):
        producer.failing_keys.add(b"1")
        publisher = _publisher(producer, max_attempts=3)

        future = await publisher.publish(_event(1))
        with pytest.raises(PublishError) as exc_info:
            await future

        assert exc_info.value.transfer_id == "1"
        assert producer.attempts == 3
        assert producer.sent == []
        assert publisher.in_flight == 0

    @pytest.mark.asyncio
    async def test_abandoned_failure_is_not_reported_as_unretrieved(self, producer):
        """Test a delivery nobody awaits anymore does not leak an unretrieved task exception."""
        loop = asyncio.get_running_loop()
        reported = []
        loop.set_exception_handler(lambda _, context: reported.append(context))
        try:
            producer.failing_keys.add(b"1")
            publisher = _publisher(producer, max_attempts=2)

            future = await publisher.publish(_event(1))
            while not future.done():
                await asyncio.sleep(0.001)
            await asyncio.sleep(0)
            assert publisher.in_flight == 0
            del future
            gc.collect()
        finally:
            loop.set_exception_handler(None)

        assert reported == []


# ============================================================================
# Backpressure
# ============================================================================

class TestBackpressure:
    """Bounded in-flight records."""

    @pytest.mark.asyncio
    async def test_non_blocking_publish_rejected_when_saturated(self):
        producer = GatedProducer()
        publisher = _publisher(producer, max_in_flight=1)

        first = await publisher.publish(_event(1))
        assert publisher.in_flight == 1

        with pytest.raises(PublisherSaturatedError):
            await publisher.publish(_event(2), block=False)

        producer.gate.set()
        await first
        assert publisher.in_flight == 0

    @pytest.mark.asyncio
    async def test_blocking_publish_waits_for_slot(self):
        producer = GatedProducer()
        publisher = _publisher(producer, max_in_flight=1)

        first = await publisher.publish(_event(1))
        waiter = asyncio.create_task(publisher.publish(_event(2)))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        producer.gate.set()
        await first
        second = await waiter
        receipt = await second

        assert receipt.transfer_id == "2"

    @pytest.mark.asyncio
    async def test_drain_waits_for_in_flight(self):
        producer = GatedProducer()
        publisher = _publisher(producer)
        for i in range(5):
            await publisher.publish(_event(i + 1))

        asyncio.get_running_loop().call_later(0.01, producer.gate.set)
        await publisher.drain()

        assert publisher.in_flight == 0
        assert len(producer.sent) == 5


# ============================================================================
# Dead letters
# ============================================================================

class TestDeadLetters:
    """Dead-letter topic writes."""

    @pytest.mark.asyncio
    async def test_dead_letter_written_to_dlq_topic(self, producer):
        publisher = _publisher(producer)
        record = DeadLetterRecord(
            stage="connector",
            reason="amount_overflow",
            error="too big",
            transfer_id="42",
            payload={"amount": str(2**64)},
        )

        receipt = await publisher.publish_dead_letter(record)

        assert receipt.topic == "transactions.dlq"
        assert producer.values("transactions") == []
        topic, value, key = producer.sent[0]
        assert key == b"42"
        body = json.loads(value)
        assert body["stage"] == "connector"
        assert body["reason"] == "amount_overflow"
        assert body["payload"] == {"amount": str(2**64)}
        assert body["failed_at"]

    @pytest.mark.asyncio
    async def test_dead_letter_failure_raises(self, producer):
        producer.failing_topics.add("transactions.dlq")
        publisher = _publisher(producer, max_attempts=2)

        with pytest.raises(PublishError):
            await publisher.publish_dead_letter(
                DeadLetterRecord(stage="sink", reason="malformed", error="bad json")
            )
