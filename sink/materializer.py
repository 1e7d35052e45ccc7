"""Graph Materializer - idempotent upsert of transfers into Neo4j."""

from dataclasses import dataclass
from typing import Any, Protocol
import logging

from neo4j import unit_of_work
from neo4j.exceptions import DriverError, Neo4jError

from connector.events import TransferEvent

logger = logging.getLogger(__name__)

INT64_MAX = 2**63 - 1

# Accounts are merged by id and the relationship by txId, so replaying the
# same transfer matches the existing nodes and edge instead of creating new ones.
MERGE_TRANSFER_QUERY = """
    MERGE (from:Account {id: $debit_id})
    MERGE (to:Account {id: $credit_id})
    MERGE (from)-[r:SENT_TO {txId: $tx_id}]->(to)
    ON CREATE SET r.amount = $amount, r.ledger = $ledger
"""

SCHEMA_QUERIES = (
    "CREATE CONSTRAINT account_id IF NOT EXISTS FOR (a:Account) REQUIRE a.id IS UNIQUE",
    "CREATE INDEX sent_to_tx_id IF NOT EXISTS FOR ()-[r:SENT_TO]-() ON (r.txId)",
)


class MaterializeError(Exception):
    """Raised when the graph transaction for a transfer did not commit."""

    def __init__(self, transfer_id: str, cause: Exception):
        super().__init__(f"Failed to materialize transfer {transfer_id}: {cause}")
        self.transfer_id = transfer_id
        self.cause = cause


class GraphSession(Protocol):
    """Protocol for the subset of `neo4j.AsyncSession` we use."""
    async def execute_write(self, transaction_function, *args, **kwargs) -> Any: ...
    async def run(self, query: str, parameters: dict = None, **kwargs) -> Any: ...


@dataclass(frozen=True)
class MaterializeResult:
    """Write counters for one transfer; zero relationships created means a replay."""

    transfer_id: str
    nodes_created: int
    relationships_created: int

    @property
    def is_replay(self) -> bool:
        return self.relationships_created == 0


@unit_of_work(timeout=30.0)
async def _merge_transfer(tx, params: dict):
    result = await tx.run(MERGE_TRANSFER_QUERY, params)
    return await result.consume()


def transfer_parameters(event: TransferEvent) -> dict:
    """Cypher parameters for one transfer."""
    # Neo4j integers are signed 64-bit; larger uint64 amounts are kept exact as strings.
    amount = event.amount if event.amount <= INT64_MAX else str(event.amount)
    return {
        "debit_id": event.debit_account_id,
        "credit_id": event.credit_account_id,
        "tx_id": event.id,
        "amount": amount,
        "ledger": event.ledger,
    }


class GraphMaterializer:
    """
    Writes a transfer into the graph as one managed transaction.

    The transaction merges the debit account, the credit account and the
    SENT_TO relationship keyed by transfer id. All three commit or roll back
    together, and delivering the same transfer again leaves the graph as it
    was. The instance holds no state besides the session it writes through.
    """

    def __init__(self, session: GraphSession):
        """
        Args:
            session: Neo4j async session owned by the calling worker
        """
        self.session = session

    async def materialize(self, event: TransferEvent) -> MaterializeResult:
        """
        Upsert a transfer.

        Raises:
            MaterializeError: the transaction failed and was rolled back
        """
        try:
            summary = await self.session.execute_write(_merge_transfer, transfer_parameters(event))
        except (Neo4jError, DriverError, ValueError, OverflowError) as e:
            raise MaterializeError(event.id, e) from e

        counters = summary.counters
        result = MaterializeResult(
            transfer_id=event.id,
            nodes_created=counters.nodes_created,
            relationships_created=counters.relationships_created,
        )

        if result.is_replay:
            logger.debug(f"Transfer {event.id} already in graph (replay)")
        else:
            logger.debug(
                f"Written transfer {event.id} to graph "
                f"(from:{event.debit_account_id} to:{event.credit_account_id} amount:{event.amount})"
            )
        return result


async def ensure_schema(session: GraphSession) -> None:
    """Create the account uniqueness constraint and the txId index if missing."""
    for query in SCHEMA_QUERIES:
        result = await session.run(query)
        await result.consume()
    logger.info("Graph schema ready (Account.id unique, SENT_TO.txId indexed)")
