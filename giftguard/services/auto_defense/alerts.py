# giftguard/services/auto_defense/alerts.py
import logging
from typing import Any, Dict

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from giftguard.models.base import utcnow

logger = logging.getLogger(__name__)


class KafkaAlertPublisher:
    """Best-effort fraud alerts; a broker outage never fails the job that raised them."""

    def __init__(self, producer: AIOKafkaProducer, topic: str):
        self.producer = producer
        self.topic = topic

    async def publish(self, alert_type: str, payload: Dict[str, Any]) -> bool:
        message = {"type": alert_type, "timestamp": utcnow().isoformat(), **payload}
        try:
            await self.producer.send_and_wait(self.topic, value=message, key=alert_type)
            return True
        except KafkaError as e:
            logger.error(f"Failed to publish {alert_type} alert to {self.topic}: {e}")
            return False
