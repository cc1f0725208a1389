import threading, json
import structlog
from kafka import KafkaConsumer, TopicPartition
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from orderflow.core.config import settings
from orderflow.core.errors import OrderflowError, TransientInfrastructure
from orderflow.db.session import SessionLocal
from orderflow.inventory import ReservationManager, get_hold_store
from orderflow.services.checkout import PAYMENT_OUTCOMES, handle_payment_outcome

logger = structlog.get_logger(__name__)

RETRY_DELAY_SECONDS = 5.0

_stop_event = threading.Event()
_thread = None

def parse_payment_event(ev: dict) -> tuple[str, str, str | None] | None:
    """(session_id, outcome, intent_ref) from a gateway event, or None when it is not ours."""
    ev_type = ev.get("type", "")
    outcome = ev.get("outcome") or (ev_type.split(".", 1)[1] if ev_type.startswith("payment.") else None)
    session_id = (ev.get("metadata") or {}).get("checkout_session_id") or ev.get("checkout_session_id")
    if outcome not in PAYMENT_OUTCOMES or not session_id:
        return None
    return session_id, outcome, ev.get("intent_ref") or ev.get("payment_intent_id")

def process_event(ev: dict, db: Session, reservations: ReservationManager):
    """Apply one payment event. Business rejections are logged and swallowed;
    TransientInfrastructure propagates so the event is delivered again."""
    parsed = parse_payment_event(ev)
    if parsed is None:
        logger.debug("payment_event.ignored", type=ev.get("type"))
        return None
    session_id, outcome, intent_ref = parsed
    try:
        return handle_payment_outcome(db, reservations, session_id, outcome, intent_ref, error=ev.get("error"))
    except TransientInfrastructure:
        raise
    except OrderflowError as exc:
        logger.warning("payment_event.rejected", session_id=session_id, outcome=outcome, error=exc.code, detail=exc.message)
        return None

def handle_message(consumer, msg, reservations: ReservationManager) -> bool:
    """Process one record; the offset is committed only once it is handled.

    Returns False when the record was rewound for another attempt.
    """
    db = SessionLocal()
    try:
        process_event(msg.value, db, reservations)
    except (TransientInfrastructure, OperationalError) as exc:
        logger.warning("payment_event.retry_later", offset=msg.offset, detail=str(exc))
        consumer.seek(TopicPartition(msg.topic, msg.partition), msg.offset)
        return False
    except Exception:
        logger.exception("payment_event.failed", offset=msg.offset)
    finally:
        db.close()
    consumer.commit()
    return True

def run_loop():
    consumer = KafkaConsumer(
        settings.TOPIC_PAYMENT_EVENTS,
        bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
        group_id="order-service",
        value_deserializer=lambda v: json.loads(v.decode("utf-8")),
        enable_auto_commit=False,
        auto_offset_reset="earliest",
        consumer_timeout_ms=1000,
    )
    reservations = ReservationManager(SessionLocal, get_hold_store())
    try:
        while not _stop_event.is_set():
            for msg in consumer:
                if not handle_message(consumer, msg, reservations):
                    _stop_event.wait(RETRY_DELAY_SECONDS)
                    break
                if _stop_event.is_set(): break
    finally:
        consumer.close()

def start():
    global _thread
    if _thread and _thread.is_alive(): return
    _stop_event.clear()
    _thread = threading.Thread(target=run_loop, daemon=True)
    _thread.start()

def stop():
    _stop_event.set()
