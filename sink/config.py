"""Configuration for the Neo4j Sink."""

import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


@dataclass
class SinkConfig:
    """Configuration for the consumer, graph writer and offset checkpoints."""

    # Redpanda / Kafka
    brokers: List[str] = field(default_factory=lambda: [
        b.strip() for b in os.getenv("REDPANDA_BROKERS", "localhost:19092").split(",") if b.strip()
    ])
    topic: str = field(default_factory=lambda: os.getenv("REDPANDA_TOPIC", "transactions"))
    dlq_topic: str = field(default_factory=lambda: os.getenv("REDPANDA_DLQ_TOPIC", ""))
    consumer_group: str = field(
        default_factory=lambda: os.getenv("REDPANDA_CONSUMER_GROUP", "neo4j-sink-group")
    )
    auto_offset_reset: str = "earliest"
    fetch_timeout_ms: int = field(
        default_factory=lambda: int(os.getenv("FETCH_TIMEOUT_MS", "1000"))
    )
    fetch_max_records: int = field(
        default_factory=lambda: int(os.getenv("FETCH_MAX_RECORDS", "500"))
    )
    client_id: str = "neo4j-sink"

    # Neo4j
    neo4j_uri: str = field(default_factory=lambda: os.getenv("NEO4J_URI", "bolt://localhost:7687"))
    neo4j_username: str = field(default_factory=lambda: os.getenv("NEO4J_USERNAME", "neo4j"))
    neo4j_password: str = field(default_factory=lambda: os.getenv("NEO4J_PASSWORD", "password"))
    neo4j_database: Optional[str] = field(default_factory=lambda: os.getenv("NEO4J_DATABASE") or None)
    connect_timeout_seconds: float = 10.0

    # Write retries
    write_max_attempts: int = field(
        default_factory=lambda: int(os.getenv("WRITE_MAX_ATTEMPTS", "5"))
    )
    write_backoff_factor: float = 0.5
    write_backoff_max_seconds: float = field(
        default_factory=lambda: float(os.getenv("WRITE_BACKOFF_MAX_SECONDS", "30.0"))
    )

    # Checkpoints (Redis)
    redis_host: str = field(default_factory=lambda: os.getenv("REDIS_HOST", "localhost"))
    redis_port: int = field(default_factory=lambda: int(os.getenv("REDIS_PORT", "6379")))
    redis_db: int = field(default_factory=lambda: int(os.getenv("REDIS_DB", "0")))
    checkpoint_prefix: str = field(
        default_factory=lambda: os.getenv("CHECKPOINT_PREFIX", "cdc")
    )

    def __post_init__(self):
        if not self.dlq_topic:
            self.dlq_topic = f"{self.topic}.dlq"

    @property
    def bootstrap_servers(self) -> str:
        return ",".join(self.brokers)


# Default configuration
DEFAULT_CONFIG = SinkConfig()
