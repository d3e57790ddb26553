"""
Publishes staged ledger events from the outbox table to Kafka.
"""
import time
import logging
from sqlalchemy import select, update
from confluent_kafka import KafkaException

from common.kafka import get_producer
from common.retry import retry_sync, KAFKA_RETRY_CONFIG
from common.settings import settings
from coin_ledger_service.db import SessionLocal
from coin_ledger_service.models import Outbox

logger = logging.getLogger(__name__)

BATCH_SIZE = 50

def _publish(producer, topic: str, payload: str):
    producer.produce(topic, value=payload.encode("utf-8"))
    # flush returns the number of messages still queued
    if producer.flush(10) > 0:
        raise KafkaException("delivery timed out")

def drain_once(session_factory=SessionLocal, producer=None) -> int:
    """Publish one batch of new outbox rows; returns how many were sent."""
    producer = producer or get_producer()
    sent = 0
    with session_factory() as db:
        rows = db.execute(
            select(Outbox).where(Outbox.status == "new").order_by(Outbox.id).limit(BATCH_SIZE)
        ).scalars().all()
        for row in rows:
            try:
                retry_sync(_publish, KAFKA_RETRY_CONFIG, producer, row.topic, row.payload)
                status = "sent"
                sent += 1
            except KafkaException as e:
                logger.error(f"❌ Failed to publish outbox row {row.id}: {e}")
                status = "failed"
            db.execute(update(Outbox).where(Outbox.id == row.id).values(status=status))
            db.commit()
    return sent

def run():
    logger.info("📤 Outbox worker started")
    while True:
        try:
            drain_once()
        except Exception as e:
            logger.error(f"❌ Outbox worker iteration failed: {e}")
        time.sleep(settings.outbox_poll_interval)

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run()
