from kafka import KafkaProducer
import json
from orderflow.core.config import settings

_producer = None

def get_producer():
    global _producer
    if _producer is None:
        _producer = KafkaProducer(
            bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda v: (v.encode("utf-8") if isinstance(v, str) else v),
            linger_ms=5,
            retries=3,
            acks="all",
        )
    return _producer

def send(topic: str, key: str, value: dict, headers: dict | None = None, timeout: float = 10.0):
    """Publish and wait for the broker ack; raises KafkaError on failure."""
    p = get_producer()
    kafka_headers = [(k, str(v).encode("utf-8")) for k, v in (headers or {}).items()]
    return p.send(topic, key=key, value=value, headers=kafka_headers or None).get(timeout=timeout)

def close():
    global _producer
    if _producer is not None:
        _producer.flush(5)
        _producer.close()
        _producer = None
