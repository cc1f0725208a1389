import threading
import time
from datetime import datetime
from typing import Callable, Optional

import structlog
from prometheus_client import Gauge
from sqlalchemy.orm import Session

from orderflow.core.clock import utcnow
from orderflow.core.config import settings
from orderflow.outbox.handlers import HandlerRegistry, default_registry
from orderflow.outbox.store import Outbox, OutboxMetrics, get_outbox

logger = structlog.get_logger(__name__)

OUTBOX_EVENTS = Gauge("order_outbox_events", "Live outbox rows by status", ["status"])
OUTBOX_DLQ_SIZE = Gauge("order_outbox_dlq_size", "Rows in the outbox dead-letter queue")
OUTBOX_LAG_SECONDS = Gauge("order_outbox_lag_seconds", "Age of the oldest undelivered outbox row")
OUTBOX_RETRY_RATE = Gauge("order_outbox_retry_rate", "Percentage of live rows retried at least once")
OUTBOX_AVG_PROCESSING_MS = Gauge("order_outbox_avg_processing_ms", "Mean creation-to-delivery time")

CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60


def export_metrics(m: OutboxMetrics) -> None:
    for status in ("pending", "processing", "processed", "failed"):
        OUTBOX_EVENTS.labels(status=status).set(getattr(m, status))
    OUTBOX_DLQ_SIZE.set(m.dlq_size)
    OUTBOX_LAG_SECONDS.set(m.lag_ms / 1000.0)
    OUTBOX_RETRY_RATE.set(m.retry_rate)
    OUTBOX_AVG_PROCESSING_MS.set(m.avg_processing_ms)


class OutboxProcessor:
    """Single background loop delivering outbox rows to registered handlers.

    ``run_once`` is guarded so that at most one pass runs at a time; a
    trigger that arrives while a pass is active is skipped, not queued.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        outbox: Optional[Outbox] = None,
        registry: Optional[HandlerRegistry] = None,
        batch_size: int = settings.OUTBOX_BATCH_SIZE,
        poll_interval: float = settings.OUTBOX_POLL_INTERVAL_SECONDS,
        metrics_interval: float = settings.OUTBOX_METRICS_INTERVAL_SECONDS,
    ):
        self.session_factory = session_factory
        self.outbox = outbox or get_outbox()
        self.registry = registry if registry is not None else default_registry()
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.metrics_interval = metrics_interval
        self._running = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_cleanup = 0.0
        self._last_metrics = 0.0

    @property
    def busy(self) -> bool:
        return self._running.locked()

    def run_once(self, now: Optional[datetime] = None) -> Optional[dict]:
        """Deliver one batch. Returns counters, or None if a pass was already running."""
        if not self._running.acquire(blocking=False):
            logger.debug("outbox.pass_skipped")
            return None
        try:
            return self._process_batch(now)
        finally:
            self._running.release()

    def _process_batch(self, now: Optional[datetime]) -> dict:
        stats = {"polled": 0, "processed": 0, "failed": 0, "dead_lettered": 0}
        db = self.session_factory()
        try:
            events = self.outbox.poll_ready(db, self.batch_size, now=now)
            stats["polled"] = len(events)
            for ev in events:
                self.outbox.mark_processing(db, ev, now=now)
                db.commit()
                try:
                    self.registry.dispatch(ev)
                except Exception as exc:
                    logger.exception("outbox.handler_error", event_id=ev.id, event_type=ev.event_type)
                    dlq = self.outbox.mark_failed(db, ev, f"{type(exc).__name__}: {exc}", now=now)
                    stats["dead_lettered" if dlq is not None else "failed"] += 1
                else:
                    self.outbox.mark_processed(db, ev, now=now)
                    stats["processed"] += 1
                db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if stats["polled"]:
            logger.info("outbox.pass_complete", **stats)
        return stats

    def cleanup(self, now: Optional[datetime] = None) -> int:
        db = self.session_factory()
        try:
            purged = self.outbox.purge_processed(db, now=now)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info("outbox.purged", count=purged)
        return purged

    def snapshot(self, now: Optional[datetime] = None) -> OutboxMetrics:
        db = self.session_factory()
        try:
            m = self.outbox.metrics(db, now or utcnow())
        finally:
            db.close()
        export_metrics(m)
        return m

    def tick(self) -> None:
        self.run_once()
        mono = time.monotonic()
        if mono - self._last_cleanup >= CLEANUP_INTERVAL_SECONDS:
            self._last_cleanup = mono
            self.cleanup()
        if mono - self._last_metrics >= self.metrics_interval:
            self._last_metrics = mono
            logger.info("outbox.metrics", **self.snapshot().as_dict())

    def run_loop(self):
        while not self._stop_event.wait(self.poll_interval):
            try:
                self.tick()
            except Exception:
                logger.exception("outbox.tick_failed")

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._last_cleanup = self._last_metrics = time.monotonic()
        self._thread = threading.Thread(target=self.run_loop, name="outbox-processor", daemon=True)
        self._thread.start()
        logger.info("outbox.processor_started", poll_interval=self.poll_interval)

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
