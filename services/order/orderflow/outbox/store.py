"""Transactional outbox.

Events are inserted in the same transaction as the business mutation that
produced them and delivered later by the processor. Nothing in this module
commits; callers own the transaction.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.orm import Session

from orderflow.core.clock import utcnow
from orderflow.core.config import settings
from orderflow.core.errors import Conflict, NotFound
from orderflow.db.models import OutboxDLQEntry, OutboxEvent, OutboxStatus

logger = structlog.get_logger(__name__)

JITTER = 0.2

LAG_UNHEALTHY_MS = 5 * 60 * 1000
LAG_DEGRADED_MS = 60 * 1000
DLQ_DEGRADED_SIZE = 100
RETRY_RATE_DEGRADED = 50.0
PROCESSING_DEGRADED = 10


def backoff_ms(retry_count: int, initial_ms: int, max_ms: int) -> int:
    return min(initial_ms * 2 ** retry_count, max_ms)


def jittered(delay_ms: float, rng: random.Random | None = None) -> float:
    rng = rng or random
    return delay_ms + delay_ms * JITTER * (rng.random() * 2 - 1)


@dataclass
class OutboxMetrics:
    pending: int = 0
    processing: int = 0
    processed: int = 0
    failed: int = 0
    dlq_size: int = 0
    avg_processing_ms: float = 0.0
    retry_rate: float = 0.0
    lag_ms: int = 0

    def as_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class OutboxHealth:
    status: str
    alerts: list[str] = field(default_factory=list)
    metrics: Optional[OutboxMetrics] = None

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "alerts": self.alerts,
            "metrics": self.metrics.as_dict() if self.metrics else None,
        }


class Outbox:
    def __init__(
        self,
        max_retries: int = settings.OUTBOX_MAX_RETRIES,
        initial_backoff_ms: int = settings.OUTBOX_INITIAL_BACKOFF_MS,
        max_backoff_ms: int = settings.OUTBOX_MAX_BACKOFF_MS,
        processing_timeout_seconds: int = settings.OUTBOX_PROCESSING_TIMEOUT_SECONDS,
        rng: random.Random | None = None,
    ):
        self.max_retries = max_retries
        self.initial_backoff_ms = initial_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self.processing_timeout_seconds = processing_timeout_seconds
        self.rng = rng

    # --- staging ---

    def enqueue(
        self,
        db: Session,
        aggregate_kind: str,
        aggregate_id,
        event_type: str,
        payload: dict,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OutboxEvent:
        if idempotency_key:
            existing = db.execute(
                select(OutboxEvent).where(OutboxEvent.idempotency_key == idempotency_key)
            ).scalar_one_or_none()
            if existing is not None:
                logger.info("outbox.duplicate_enqueue", event_id=existing.id, idempotency_key=idempotency_key)
                return existing
        now = now or utcnow()
        ev = OutboxEvent(
            aggregate_kind=str(aggregate_kind),
            aggregate_id=str(aggregate_id),
            event_type=event_type,
            payload=payload,
            status=OutboxStatus.PENDING.value,
            retry_count=0,
            error_history=[],
            idempotency_key=idempotency_key,
            next_retry_at=now,
            created_at=now,
        )
        db.add(ev)
        db.flush()
        return ev

    def poll_ready(self, db: Session, limit: int = settings.OUTBOX_BATCH_SIZE,
                   now: Optional[datetime] = None) -> list[OutboxEvent]:
        now = now or utcnow()
        rows = db.execute(
            select(OutboxEvent)
            .where(
                or_(
                    and_(
                        OutboxEvent.status.in_([OutboxStatus.PENDING.value, OutboxStatus.FAILED.value]),
                        or_(OutboxEvent.next_retry_at.is_(None), OutboxEvent.next_retry_at <= now),
                    ),
                    # lease ran out: the pass that claimed it never finished
                    and_(OutboxEvent.status == OutboxStatus.PROCESSING.value, OutboxEvent.next_retry_at <= now),
                )
            )
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(limit)
        )
        return list(rows.scalars())

    # --- delivery bookkeeping ---

    def mark_processing(self, db: Session, ev: OutboxEvent, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        ev.status = OutboxStatus.PROCESSING.value
        ev.next_retry_at = now + timedelta(seconds=self.processing_timeout_seconds)
        db.flush()

    def mark_processed(self, db: Session, ev: OutboxEvent, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        ev.status = OutboxStatus.PROCESSED.value
        ev.processed_at = now
        ev.latency_ms = int((now - ev.created_at).total_seconds() * 1000)
        ev.error_message = None
        db.flush()

    def next_retry_at(self, retry_count: int, now: datetime) -> datetime:
        delay = jittered(backoff_ms(retry_count, self.initial_backoff_ms, self.max_backoff_ms), self.rng)
        return now + timedelta(milliseconds=delay)

    def mark_failed(self, db: Session, ev: OutboxEvent, error: str,
                    now: Optional[datetime] = None) -> Optional[OutboxDLQEntry]:
        """Record a failed attempt; returns the DLQ entry once retries are exhausted."""
        now = now or utcnow()
        ev.retry_count = (ev.retry_count or 0) + 1
        ev.error_message = error
        ev.error_history = [
            *(ev.error_history or []),
            {"attempt": ev.retry_count, "error": error, "at": now.isoformat()},
        ]
        if ev.retry_count >= self.max_retries:
            return self.move_to_dlq(db, ev, now)
        ev.status = OutboxStatus.FAILED.value
        ev.next_retry_at = self.next_retry_at(ev.retry_count, now)
        db.flush()
        logger.warning("outbox.event_failed", event_id=ev.id, event_type=ev.event_type,
                       retry=ev.retry_count, max_retries=self.max_retries,
                       next_retry_at=ev.next_retry_at.isoformat(), error=error)
        return None

    def move_to_dlq(self, db: Session, ev: OutboxEvent, now: Optional[datetime] = None) -> OutboxDLQEntry:
        now = now or utcnow()
        entry = OutboxDLQEntry(
            original_event_id=ev.id,
            aggregate_id=ev.aggregate_id,
            aggregate_kind=ev.aggregate_kind,
            event_type=ev.event_type,
            payload=ev.payload,
            error_message=ev.error_message or "",
            error_history=list(ev.error_history or []),
            retry_count=ev.retry_count,
            idempotency_key=ev.idempotency_key,
            first_failed_at=ev.created_at,
            moved_to_dlq_at=now,
            reprocessed=False,
        )
        db.add(entry)
        db.delete(ev)
        db.flush()
        logger.error("outbox.moved_to_dlq", event_id=entry.original_event_id, dlq_id=entry.id,
                     event_type=entry.event_type, retries=entry.retry_count, error=entry.error_message)
        return entry

    def replay_dlq(self, db: Session, dlq_id: int, now: Optional[datetime] = None) -> OutboxEvent:
        now = now or utcnow()
        entry = db.execute(
            select(OutboxDLQEntry)
            .where(OutboxDLQEntry.id == dlq_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if entry is None:
            raise NotFound(f"DLQ entry {dlq_id} not found", dlq_id=dlq_id)
        if entry.reprocessed:
            raise Conflict(f"DLQ entry {dlq_id} was already reprocessed", dlq_id=dlq_id)
        ev = self.enqueue(db, entry.aggregate_kind, entry.aggregate_id, entry.event_type,
                          entry.payload, now=now)
        entry.reprocessed = True
        entry.reprocessed_at = now
        db.flush()
        logger.info("outbox.dlq_replayed", dlq_id=dlq_id, event_id=ev.id, event_type=ev.event_type)
        return ev

    # --- housekeeping ---

    def purge_processed(self, db: Session, older_than_days: int = settings.OUTBOX_RETENTION_DAYS,
                        now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        result = db.execute(
            delete(OutboxEvent).where(
                OutboxEvent.status == OutboxStatus.PROCESSED.value,
                OutboxEvent.processed_at < cutoff,
            )
        )
        return result.rowcount or 0

    # --- observability ---

    def lag_ms(self, db: Session, now: Optional[datetime] = None) -> int:
        oldest = db.execute(
            select(func.min(OutboxEvent.created_at)).where(
                OutboxEvent.status.in_([OutboxStatus.PENDING.value, OutboxStatus.FAILED.value])
            )
        ).scalar()
        if oldest is None:
            return 0
        return max(0, int(((now or utcnow()) - oldest).total_seconds() * 1000))

    def metrics(self, db: Session, now: Optional[datetime] = None) -> OutboxMetrics:
        m = OutboxMetrics()
        for status, count in db.execute(
            select(OutboxEvent.status, func.count()).group_by(OutboxEvent.status)
        ):
            setattr(m, status, count)
        m.dlq_size = db.execute(select(func.count()).select_from(OutboxDLQEntry)).scalar() or 0
        avg = db.execute(
            select(func.avg(OutboxEvent.latency_ms)).where(OutboxEvent.status == OutboxStatus.PROCESSED.value)
        ).scalar()
        m.avg_processing_ms = round(float(avg or 0), 2)
        total = m.pending + m.processing + m.processed + m.failed
        retried = db.execute(
            select(func.count()).select_from(OutboxEvent).where(OutboxEvent.retry_count > 0)
        ).scalar() or 0
        m.retry_rate = round(100.0 * retried / total, 2) if total else 0.0
        m.lag_ms = self.lag_ms(db, now)
        return m

    def health(self, db: Session, now: Optional[datetime] = None) -> OutboxHealth:
        m = self.metrics(db, now)
        alerts = []
        status = "healthy"
        if m.lag_ms > LAG_UNHEALTHY_MS:
            status = "unhealthy"
            alerts.append(f"Outbox lag is {m.lag_ms // 1000}s (threshold {LAG_UNHEALTHY_MS // 1000}s)")
        elif m.lag_ms > LAG_DEGRADED_MS:
            status = "degraded"
            alerts.append(f"Outbox lag is {m.lag_ms // 1000}s (threshold {LAG_DEGRADED_MS // 1000}s)")
        if m.dlq_size > DLQ_DEGRADED_SIZE:
            status = "degraded" if status == "healthy" else status
            alerts.append(f"DLQ holds {m.dlq_size} events")
        if m.retry_rate > RETRY_RATE_DEGRADED:
            status = "degraded" if status == "healthy" else status
            alerts.append(f"Retry rate is {m.retry_rate}%")
        if m.processing > PROCESSING_DEGRADED:
            status = "degraded" if status == "healthy" else status
            alerts.append(f"{m.processing} events stuck in processing")
        return OutboxHealth(status=status, alerts=alerts, metrics=m)


_outbox = None


def get_outbox() -> Outbox:
    global _outbox
    if _outbox is None:
        _outbox = Outbox()
    return _outbox
