# giftguard/common/kafka_utils.py
from aiokafka import AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from giftguard.common.config import settings
from typing import Iterable
import logging
import json

logger = logging.getLogger(__name__)


def _key_serializer(k):
    if k is None:
        return None
    if isinstance(k, (bytes, bytearray)):
        return bytes(k)
    return str(k).encode("utf-8")


def _value_serializer(v):
    if v is None:
        return None
    if isinstance(v, (bytes, bytearray)):
        return bytes(v)
    # default=str covers UUIDs and datetimes inside alert payloads
    return json.dumps(v, default=str).encode("utf-8")


def build_kafka_producer(bootstrap_servers: str | None = None) -> AIOKafkaProducer:
    return AIOKafkaProducer(
        bootstrap_servers=bootstrap_servers or settings.KAFKA_BOOTSTRAP_SERVERS,
        key_serializer=_key_serializer,
        value_serializer=_value_serializer,
    )


async def ensure_topics(topics: Iterable[str]) -> None:
    """Create any missing topics; failures are logged so startup can continue."""
    admin = AIOKafkaAdminClient(bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS)
    try:
        await admin.start()
        existing = await admin.list_topics()
        new_topics = [
            NewTopic(name=t, num_partitions=settings.KAFKA_TOPIC_PARTITIONS, replication_factor=1)
            for t in topics if t not in existing
        ]
        if new_topics:
            await admin.create_topics(new_topics=new_topics)
            logger.info(f"Created topics: {[t.name for t in new_topics]}")
    except Exception as e:
        logger.warning(f"Failed to ensure Kafka topics on startup: {e}")
    finally:
        await admin.close()
