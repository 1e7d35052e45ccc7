"""Ledger query interface and TigerBeetle adapter."""

from dataclasses import dataclass
from typing import Any, List, Protocol
import asyncio
import logging

from .config import ConnectorConfig

logger = logging.getLogger(__name__)


class LedgerQueryError(Exception):
    """Raised when the ledger cannot be queried (connectivity, timeout)."""


@dataclass(frozen=True)
class TransferQuery:
    """Filter for one poll of the ledger."""

    ledger: int
    code: int
    timestamp_min: int  # inclusive
    limit: int
    timestamp_max: int = 0  # inclusive, 0 means unbounded


class LedgerClient(Protocol):
    """Protocol for the ledger's transfer query API."""
    async def query_transfers(self, query: TransferQuery) -> List[Any]: ...
    async def close(self) -> None: ...


class TigerBeetleLedger:
    """
    Adapter from `TransferQuery` to the TigerBeetle async client.

    TigerBeetle returns transfers in ascending timestamp order and treats
    `timestamp_min` as inclusive.
    """

    def __init__(self, client: Any, tb_module: Any, timeout: float = 10.0):
        """
        Args:
            client: `tigerbeetle.ClientAsync` instance
            tb_module: the imported `tigerbeetle` module (for QueryFilter)
            timeout: Seconds to wait for one query before giving up
        """
        self._client = client
        self._tb = tb_module
        self.timeout = timeout

    async def query_transfers(self, query: TransferQuery) -> List[Any]:
        query_filter = self._tb.QueryFilter(
            user_data_128=0,
            user_data_64=0,
            user_data_32=0,
            ledger=query.ledger,
            code=query.code,
            timestamp_min=query.timestamp_min,
            timestamp_max=query.timestamp_max,
            limit=query.limit,
            flags=self._tb.QueryFilterFlags.NONE,
        )
        try:
            return await asyncio.wait_for(
                self._client.query_transfers(query_filter), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise LedgerQueryError(f"Ledger query timed out after {self.timeout}s") from e
        except Exception as e:
            raise LedgerQueryError(f"Ledger query failed: {e}") from e

    async def close(self) -> None:
        self._client.close()
        logger.info("TigerBeetle client closed")


def connect_tigerbeetle(config: ConnectorConfig) -> TigerBeetleLedger:
    """
    Create the TigerBeetle client.

    The client library is imported here so the rest of the connector (and
    its tests) do not need the native TigerBeetle bindings installed.
    """
    import tigerbeetle as tb

    client = tb.ClientAsync(
        cluster_id=config.cluster_id,
        replica_addresses=config.ledger_address,
    )
    logger.info(f"TigerBeetle client created for {config.ledger_address}")
    return TigerBeetleLedger(client, tb, timeout=config.query_timeout_seconds)
