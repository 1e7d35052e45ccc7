"""Shared fakes for the bridge tests: ledger, checkpoints, broker, graph."""

from types import SimpleNamespace
from typing import Dict, List, Optional, Set, Tuple

import pytest
from aiokafka.errors import KafkaTimeoutError
from neo4j.exceptions import ServiceUnavailable

from checkpoint import ConsumerCheckpoint


# ============================================================================
# Ledger
# ============================================================================

def make_transfer(id, debit=1, credit=2, amount=500, ledger=1, code=718, timestamp=None):
    """Native TigerBeetle-style transfer record."""
    return SimpleNamespace(
        id=id,
        debit_account_id=debit,
        credit_account_id=credit,
        amount=amount,
        ledger=ledger,
        code=code,
        timestamp=timestamp if timestamp is not None else id,
    )


class FakeLedger:
    """Answers transfer queries from an in-memory list, like TigerBeetle does."""

    def __init__(self, transfers=None):
        self.transfers = list(transfers or [])
        self.queries = []

    async def query_transfers(self, query):
        self.queries.append(query)
        matching = [
            t for t in self.transfers
            if t.ledger == query.ledger and t.code == query.code and t.timestamp >= query.timestamp_min
            and (query.timestamp_max == 0 or t.timestamp <= query.timestamp_max)
        ]
        matching.sort(key=lambda t: t.timestamp)
        return matching[: query.limit]

    async def close(self):
        pass


# ============================================================================
# Checkpoints
# ============================================================================

class MemoryCheckpointStore:
    """In-process checkpoint store with the same monotonic-mark contract as Redis."""

    def __init__(self):
        self.marks: Dict[str, int] = {}
        self.offsets: Dict[Tuple[str, str, int], int] = {}

    async def load_high_water_mark(self, name: str) -> int:
        return self.marks.get(name, 0)

    async def save_high_water_mark(self, name: str, value: int) -> int:
        if value > self.marks.get(name, 0):
            self.marks[name] = value
        return self.marks.get(name, 0)

    async def load_offset(self, group: str, topic: str, partition: int) -> Optional[int]:
        return self.offsets.get((group, topic, partition))

    async def commit_offset(self, group: str, checkpoint: ConsumerCheckpoint) -> None:
        self.offsets[(group, checkpoint.topic, checkpoint.partition)] = checkpoint.offset


# ============================================================================
# Broker
# ============================================================================

class RecordingProducer:
    """Fake producer: keeps every acknowledged record, can fail chosen keys."""

    def __init__(self, partitions: int = 3):
        self.partitions = partitions
        self.sent: List[Tuple[str, bytes, bytes]] = []
        self.offsets: Dict[Tuple[str, int], int] = {}
        self.failing_keys: Set[bytes] = set()
        self.failing_topics: Set[str] = set()
        self.fail_next = 0
        self.attempts = 0

    def partition_for(self, key) -> int:
        return sum(key or b"") % self.partitions

    async def send_and_wait(self, topic, value=None, key=None):
        self.attempts += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            raise KafkaTimeoutError()
        if key in self.failing_keys or topic in self.failing_topics:
            raise KafkaTimeoutError()

        partition = self.partition_for(key)
        offset = self.offsets.get((topic, partition), 0)
        self.offsets[(topic, partition)] = offset + 1
        self.sent.append((topic, value, key))
        return SimpleNamespace(topic=topic, partition=partition, offset=offset)

    def values(self, topic: str) -> List[bytes]:
        return [value for t, value, _ in self.sent if t == topic]


# ============================================================================
# Graph
# ============================================================================

class FakeGraph:
    """
    In-memory graph honouring MERGE semantics for the transfer query.

    Writes are staged per transaction and applied only when the transaction
    function returns, so a failing transaction leaves no trace.
    """

    def __init__(self):
        self.nodes: Set[str] = set()
        self.edges: Dict[Tuple[str, str, str], dict] = {}
        self.failures = 0
        self.sessions: List["FakeGraphSession"] = []

    def session(self, **config):
        session = FakeGraphSession(self, config)
        self.sessions.append(session)
        return session

    def edges_for(self, tx_id: str) -> List[dict]:
        return [props for (_, _, key), props in self.edges.items() if key == tx_id]


class _Result:
    def __init__(self, nodes_created=0, relationships_created=0):
        self.summary = SimpleNamespace(
            counters=SimpleNamespace(
                nodes_created=nodes_created,
                relationships_created=relationships_created,
            )
        )

    async def consume(self):
        return self.summary


class FakeTransaction:
    def __init__(self, graph: FakeGraph):
        self.graph = graph
        self.new_nodes: Set[str] = set()
        self.new_edges: Dict[Tuple[str, str, str], dict] = {}

    async def run(self, query, parameters=None, **kwargs):
        if self.graph.failures > 0:
            self.graph.failures -= 1
            raise ServiceUnavailable("graph unavailable")

        params = dict(parameters or {}, **kwargs)
        nodes_created = 0
        for node_id in (params["debit_id"], params["credit_id"]):
            if node_id not in self.graph.nodes and node_id not in self.new_nodes:
                self.new_nodes.add(node_id)
                nodes_created += 1

        edge_key = (params["debit_id"], params["credit_id"], params["tx_id"])
        relationships_created = 0
        if edge_key not in self.graph.edges and edge_key not in self.new_edges:
            self.new_edges[edge_key] = {
                "txId": params["tx_id"],
                "amount": params["amount"],
                "ledger": params["ledger"],
            }
            relationships_created = 1
        return _Result(nodes_created, relationships_created)

    def commit(self):
        self.graph.nodes |= self.new_nodes
        self.graph.edges.update(self.new_edges)


class FakeGraphSession:
    def __init__(self, graph: FakeGraph, config: dict):
        self.graph = graph
        self.config = config
        self.closed = False
        self.queries: List[str] = []

    async def execute_write(self, work, *args, **kwargs):
        tx = FakeTransaction(self.graph)
        result = await work(tx, *args, **kwargs)
        tx.commit()
        return result

    async def run(self, query, parameters=None, **kwargs):
        self.queries.append(query)
        return _Result()

    async def close(self):
        self.closed = True


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store():
    """In-memory checkpoint store."""
    return MemoryCheckpointStore()


@pytest.fixture
def producer():
    """Recording broker producer."""
    return RecordingProducer()


@pytest.fixture
def graph():
    """In-memory graph."""
    return FakeGraph()
