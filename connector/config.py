"""Configuration for the CDC Connector."""

import os
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv

load_dotenv()


def _brokers_from_env() -> List[str]:
    raw = os.getenv("REDPANDA_BROKERS", "localhost:19092")
    return [b.strip() for b in raw.split(",") if b.strip()]


@dataclass
class ConnectorConfig:
    """Configuration for the ledger extractor and event publisher."""

    # TigerBeetle
    ledger_address: str = field(
        default_factory=lambda: os.getenv("TIGERBEETLE_ADDRESS", "3000")
    )
    cluster_id: int = field(
        default_factory=lambda: int(os.getenv("TIGERBEETLE_CLUSTER_ID", "0"))
    )

    # Query filter
    ledger_id: int = field(default_factory=lambda: int(os.getenv("LEDGER_ID", "1")))
    transfer_code: int = field(default_factory=lambda: int(os.getenv("TRANSFER_CODE", "718")))
    poll_limit: int = field(default_factory=lambda: int(os.getenv("POLL_LIMIT", "100")))
    poll_limit_max: int = field(default_factory=lambda: int(os.getenv("POLL_LIMIT_MAX", "8189")))

    # Polling loop
    poll_interval_seconds: float = field(
        default_factory=lambda: float(os.getenv("POLL_INTERVAL_SECONDS", "2.0"))
    )
    poll_max_backoff_seconds: float = field(
        default_factory=lambda: float(os.getenv("POLL_MAX_BACKOFF_SECONDS", "60.0"))
    )
    query_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("QUERY_TIMEOUT_SECONDS", "10.0"))
    )
    ack_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("ACK_TIMEOUT_SECONDS", "30.0"))
    )
    dedup_cache_capacity: int = field(
        default_factory=lambda: int(os.getenv("DEDUP_CACHE_CAPACITY", "10000"))
    )

    # Redpanda / Kafka
    brokers: List[str] = field(default_factory=_brokers_from_env)
    topic: str = field(default_factory=lambda: os.getenv("REDPANDA_TOPIC", "transactions"))
    dlq_topic: str = field(default_factory=lambda: os.getenv("REDPANDA_DLQ_TOPIC", ""))
    publish_max_attempts: int = field(
        default_factory=lambda: int(os.getenv("PUBLISH_MAX_ATTEMPTS", "5"))
    )
    publish_max_in_flight: int = field(
        default_factory=lambda: int(os.getenv("PUBLISH_MAX_IN_FLIGHT", "1000"))
    )
    publish_backoff_max_seconds: float = 10.0
    client_id: str = "cdc-connector"

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
        """Comma separated broker list as expected by the Kafka client."""
        return ",".join(self.brokers)

    @property
    def checkpoint_name(self) -> str:
        """Name of the high-water mark for this ledger/code filter."""
        return f"ledger-{self.ledger_id}-code-{self.transfer_code}"


# Default configuration
DEFAULT_CONFIG = ConnectorConfig()
