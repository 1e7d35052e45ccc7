#!/usr/bin/env python3
"""
Ledger → Log → Graph CDC Bridge

Entry point for both halves of the bridge:
- Connector: polls TigerBeetle for new transfers and publishes them to Redpanda
- Sink: consumes the transfer topic and materializes it into Neo4j

Usage:
    python main.py --mode connector     # Run the CDC connector
    python main.py --mode sink          # Run the Neo4j sink

Exit codes:
    0  graceful shutdown (SIGINT / SIGTERM)
    1  a required store could not be reached at startup
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("cdc-bridge")


class StartupError(Exception):
    """A required client could not be created or reached."""


class CDCBridge:
    """
    Owns the clients of one bridge process and runs the selected half.

    Startup is all-or-nothing: if any required store is unreachable, the
    clients created so far are closed and StartupError is raised.
    """

    def __init__(self, mode: str):
        """
        Args:
            mode: "connector" or "sink"
        """
        self.mode = mode
        self.cancel = asyncio.Event()

        # Clients (initialized in setup)
        self.redis = None
        self.producer = None
        self.ledger = None
        self.kafka_consumer = None
        self.neo4j = None

        # Components
        self.extractor = None
        self.orchestrator = None

    async def setup(self) -> None:
        """Create every client the selected mode needs."""
        logger.info(f"Setting up {self.mode}...")
        try:
            if self.mode == "connector":
                await self._setup_connector()
            else:
                await self._setup_sink()
        except StartupError:
            await self.shutdown()
            raise
        logger.info(f"✅ {self.mode} initialized")

    async def _connect_redis(self, host: str, port: int, db: int):
        import redis.asyncio as redis

        try:
            client = redis.Redis(host=host, port=port, db=db, decode_responses=True)
            await client.ping()
        except Exception as e:
            raise StartupError(f"Redis connection failed at {host}:{port}: {e}") from e
        logger.info(f"✅ Redis connected ({host}:{port})")
        return client

    async def _setup_connector(self) -> None:
        from checkpoint import RedisCheckpointStore
        from connector.config import ConnectorConfig
        from connector.extractor import LedgerExtractor
        from connector.ledger import connect_tigerbeetle
        from connector.publisher import EventPublisher, create_producer

        config = ConnectorConfig()
        logger.info(f"TigerBeetle Address: {config.ledger_address}")
        logger.info(f"Redpanda Brokers: {config.bootstrap_servers}")
        logger.info(f"Redpanda Topic: {config.topic} (dead letters: {config.dlq_topic})")

        self.redis = await self._connect_redis(config.redis_host, config.redis_port, config.redis_db)

        try:
            self.ledger = connect_tigerbeetle(config)
        except Exception as e:
            raise StartupError(f"Failed to create TigerBeetle client: {e}") from e
        logger.info("✅ TigerBeetle client ready")

        try:
            self.producer = await create_producer(config.bootstrap_servers, config.client_id)
        except Exception as e:
            raise StartupError(f"Failed to connect producer to Redpanda: {e}") from e
        logger.info("✅ Redpanda producer connected")

        publisher = EventPublisher(
            self.producer,
            topic=config.topic,
            dlq_topic=config.dlq_topic,
            max_attempts=config.publish_max_attempts,
            max_in_flight=config.publish_max_in_flight,
            backoff_max_seconds=config.publish_backoff_max_seconds,
        )
        self.extractor = LedgerExtractor(
            ledger=self.ledger,
            publisher=publisher,
            store=RedisCheckpointStore(self.redis, prefix=config.checkpoint_prefix),
            config=config,
        )

    async def _setup_sink(self) -> None:
        from neo4j import AsyncGraphDatabase

        from checkpoint import RedisCheckpointStore
        from connector.publisher import EventPublisher, create_producer
        from sink.config import SinkConfig
        from sink.consumer import EventConsumer, create_kafka_consumer
        from sink.materializer import ensure_schema
        from sink.orchestrator import SinkOrchestrator

        config = SinkConfig()
        logger.info(f"Redpanda Brokers: {config.bootstrap_servers}")
        logger.info(f"Redpanda Topic: {config.topic} (dead letters: {config.dlq_topic})")
        logger.info(f"Consumer Group: {config.consumer_group}")
        logger.info(f"Neo4j URI: {config.neo4j_uri}")

        self.redis = await self._connect_redis(config.redis_host, config.redis_port, config.redis_db)

        try:
            self.neo4j = AsyncGraphDatabase.driver(
                config.neo4j_uri,
                auth=(config.neo4j_username, config.neo4j_password),
            )
            await asyncio.wait_for(
                self.neo4j.verify_connectivity(), timeout=config.connect_timeout_seconds
            )
            session_config = {"database": config.neo4j_database} if config.neo4j_database else {}
            async with self.neo4j.session(**session_config) as session:
                await ensure_schema(session)
        except Exception as e:
            raise StartupError(f"Failed to verify Neo4j connectivity: {e}") from e
        logger.info("✅ Neo4j connected")

        try:
            self.producer = await create_producer(config.bootstrap_servers, f"{config.client_id}-dlq")
        except Exception as e:
            raise StartupError(f"Failed to connect dead-letter producer to Redpanda: {e}") from e

        dead_letters = EventPublisher(self.producer, topic=config.topic, dlq_topic=config.dlq_topic)
        store = RedisCheckpointStore(self.redis, prefix=config.checkpoint_prefix)
        self.kafka_consumer = create_kafka_consumer(config)
        self.orchestrator = SinkOrchestrator(
            consumer=EventConsumer(self.kafka_consumer, store, config),
            driver=self.neo4j,
            store=store,
            dead_letters=dead_letters,
            config=config,
        )
        try:
            await self.orchestrator.start()
        except Exception as e:
            self.orchestrator = None
            raise StartupError(f"Failed to join consumer group {config.consumer_group}: {e}") from e
        logger.info("✅ Redpanda consumer connected")

    async def run(self) -> None:
        """Run until the cancel event is set, then shut down."""
        try:
            if self.mode == "connector":
                await self.extractor.run(self.cancel)
            else:
                await self.orchestrator.run(self.cancel)
        finally:
            await self.shutdown()

    def request_stop(self) -> None:
        if not self.cancel.is_set():
            logger.info("Interrupt received, shutting down...")
            self.cancel.set()

    async def shutdown(self) -> None:
        """Close every client that was created."""
        if self.kafka_consumer and not self.orchestrator:
            await self.kafka_consumer.stop()
            self.kafka_consumer = None
        if self.producer:
            await self.producer.stop()
            self.producer = None
        if self.ledger:
            await self.ledger.close()
            self.ledger = None
        if self.neo4j:
            await self.neo4j.close()
            self.neo4j = None
        if self.redis:
            await self.redis.aclose()
            self.redis = None
        logger.info("👋 Shutdown complete")


async def _serve(mode: str) -> int:
    bridge = CDCBridge(mode)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, bridge.request_stop)

    try:
        await bridge.setup()
    except StartupError as e:
        logger.critical(f"❌ {e}")
        return 1

    await bridge.run()
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Ledger to graph CDC bridge")
    parser.add_argument(
        "--mode",
        choices=["connector", "sink"],
        required=True,
        help="connector (ledger -> log) or sink (log -> graph)",
    )
    args = parser.parse_args(argv)

    try:
        return asyncio.run(_serve(args.mode))
    except KeyboardInterrupt:
        return 0


def run_connector() -> None:
    sys.exit(main(["--mode", "connector"]))


def run_sink() -> None:
    sys.exit(main(["--mode", "sink"]))


if __name__ == "__main__":
    sys.exit(main())
