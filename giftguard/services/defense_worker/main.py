# giftguard/services/defense_worker/main.py

import asyncio
from contextlib import asynccontextmanager
import logging

from aiokafka.errors import KafkaError

# Import common utilities
from giftguard.common.config import settings
from giftguard.common.db import SessionLocal
from giftguard.common.errors import JobAlreadyRunningError, StorageError
from giftguard.common.kafka_utils import build_kafka_producer
from giftguard.common.redis_utils import get_redis_client
from giftguard.services.auto_defense.alerts import KafkaAlertPublisher
from giftguard.services.detector.store import FraudStore
from giftguard.services.defense_worker.pipeline import DefensePipeline

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def run_cycle(pipeline: DefensePipeline) -> None:
    """One pass: sweep expired actions, then cluster recent signals.

    A failing step is logged and the next cycle tries again.
    """
    try:
        await pipeline.sweep_expired_actions()
    except StorageError as e:
        logger.error(f"Expiry sweep failed: {e}")
    except Exception:
        logger.exception("Unexpected error in expiry sweep")

    try:
        await pipeline.run_cluster_analysis()
    except JobAlreadyRunningError as e:
        logger.info(f"Skipping cluster analysis: {e}")
    except StorageError as e:
        logger.error(f"Cluster analysis failed: {e}")
    except Exception:
        logger.exception("Unexpected error in cluster analysis")


async def run_forever(pipeline: DefensePipeline, interval_seconds: int) -> None:
    logger.info(f"Defense worker running every {interval_seconds}s")
    try:
        while True:
            await run_cycle(pipeline)
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("Defense worker task cancelled.")


@asynccontextmanager
async def lifespan_worker(redis_client):
    """
    Handles startup and shutdown events for the worker.
    """
    logger.info("Defense worker starting...")
    config = settings.DEFENSE

    producer = build_kafka_producer()
    alert_publisher = None
    try:
        await producer.start()
        alert_publisher = KafkaAlertPublisher(producer, settings.KAFKA_FRAUD_ALERTS_TOPIC)
    except KafkaError as e:
        logger.warning(f"Kafka unavailable, fraud alerts disabled: {e}")
        producer = None

    store = FraudStore(SessionLocal, timeout_seconds=config.store_timeout_seconds)
    pipeline = DefensePipeline(store, config, redis_client=redis_client, alert_publisher=alert_publisher)
    worker_task = asyncio.create_task(run_forever(pipeline, config.analysis_interval_seconds))
    yield
    # On shutdown, cancel the worker task
    worker_task.cancel()
    try:
        await worker_task
    except asyncio.CancelledError:
        pass  # Expected when cancelled
    if producer is not None:
        await producer.stop()
    logger.info("Defense worker shutting down gracefully.")


async def _main():
    async with get_redis_client() as redis_client, lifespan_worker(redis_client):
        # Wait forever until the process is interrupted (Ctrl+C / SIGTERM)
        stop_event = asyncio.Event()
        try:
            await stop_event.wait()
        except asyncio.CancelledError:
            pass


if __name__ == "__main__":
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        logger.info("Defense worker stopped by user.")
