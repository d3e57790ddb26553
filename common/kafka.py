from confluent_kafka import Producer
from common.settings import settings

_producer = None

def get_producer() -> Producer:
    global _producer
    if _producer is None:
        _producer = Producer({"bootstrap.servers": settings.kafka_bootstrap, "enable.idempotence": True})
    return _producer

TOPIC_LEDGER_EVENTS = settings.ledger_events_topic
