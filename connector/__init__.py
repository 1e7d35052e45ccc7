"""CDC Connector - polls the ledger and hands transfers to the event log."""

from .config import ConnectorConfig
from .dedup import DedupCache
from .events import (
    TransferEvent,
    CodecError,
    AmountOverflowError,
    MalformedRecordError,
)
from .extractor import LedgerExtractor, TickResult
from .ledger import LedgerQueryError, TransferQuery, TigerBeetleLedger
from .publisher import (
    EventPublisher,
    DeliveryReceipt,
    DeadLetterRecord,
    PublishError,
    PublisherSaturatedError,
)

__all__ = [
    "ConnectorConfig",
    "DedupCache",
    "TransferEvent",
    "CodecError",
    "AmountOverflowError",
    "MalformedRecordError",
    "LedgerExtractor",
    "TickResult",
    "LedgerQueryError",
    "TransferQuery",
    "TigerBeetleLedger",
    "EventPublisher",
    "DeliveryReceipt",
    "DeadLetterRecord",
    "PublishError",
    "PublisherSaturatedError",
]
