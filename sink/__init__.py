"""Neo4j Sink - consumes transfer events and materializes them in the graph."""

from .config import SinkConfig
from .consumer import EventConsumer
from .materializer import GraphMaterializer, MaterializeError, MaterializeResult
from .orchestrator import PartitionStalledError, PartitionWorker, SinkOrchestrator

__all__ = [
    "SinkConfig",
    "EventConsumer",
    "GraphMaterializer",
    "MaterializeError",
    "MaterializeResult",
    "PartitionStalledError",
    "PartitionWorker",
    "SinkOrchestrator",
]
