from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from orderflow.core.clock import utcnow
from orderflow.core.errors import InvalidTransition, NotFound, ValidationFailed
from orderflow.db.models import OrderLineItem, OrderStatusTransition
from orderflow.fsm.effects import apply_effect
from orderflow.fsm.transitions import INITIAL_STATUS, KNOWN_STATUSES, allowed_transitions
from orderflow.schemas import dump_fulfillment, parse_fulfillment

logger = structlog.get_logger(__name__)


def _history_entry(from_status, to_status, now, reason, actor, metadata) -> dict:
    return {
        "from": from_status,
        "to": to_status,
        "at": now.isoformat(),
        "reason": reason,
        "actor": actor,
        "metadata": metadata or {},
    }


def lock_item(db: Session, item_id: int) -> OrderLineItem:
    item = db.execute(
        select(OrderLineItem)
        .where(OrderLineItem.id == item_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if item is None:
        raise NotFound(f"Line item {item_id} not found", item_id=item_id)
    return item


def start_history(db: Session, item: OrderLineItem, actor: Optional[str] = None,
                  now: Optional[datetime] = None) -> None:
    """Record the creation of ``item`` in its initial status."""
    now = now or utcnow()
    item.status = INITIAL_STATUS
    item.status_history = [_history_entry(None, INITIAL_STATUS, now, "order_created", actor, None)]
    item.last_status_change = now
    db.add(OrderStatusTransition(
        order_id=item.order_id,
        line_item_id=item.id,
        from_status=None,
        to_status=INITIAL_STATUS,
        reason="order_created",
        actor=actor,
        meta={},
        created_at=now,
    ))


def transition(
    db: Session,
    item_id: int,
    to_status: str,
    metadata: Optional[dict] = None,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OrderLineItem:
    """Move one line item to ``to_status`` inside the caller's transaction.

    The row is locked for the rest of the transaction. The kind-specific
    effect runs before the status is written, so a failing effect leaves
    the item untouched. Does not commit and does not touch the order's
    aggregate status.
    """
    if to_status not in KNOWN_STATUSES:
        raise ValidationFailed(f"Unknown status {to_status!r}", to_status=to_status)
    metadata = dict(metadata or {})
    now = now or utcnow()
    reason = reason or metadata.get("reason")

    item = lock_item(db, item_id)
    from_status = item.status
    allowed = allowed_transitions(item.kind, from_status)
    if to_status not in allowed:
        raise InvalidTransition(item.kind, from_status, to_status, allowed)

    data = parse_fulfillment(item.kind, item.fulfillment_data)
    apply_effect(item, from_status, to_status, data, metadata, now)

    item.fulfillment_data = dump_fulfillment(data)
    # JSON columns only track reassignment
    item.status_history = [
        *(item.status_history or []),
        _history_entry(from_status, to_status, now, reason, actor, metadata),
    ]
    item.status = to_status
    item.last_status_change = now
    db.add(OrderStatusTransition(
        order_id=item.order_id,
        line_item_id=item.id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        actor=actor,
        meta=metadata,
        created_at=now,
    ))
    db.flush()
    logger.info("line_item.transitioned", item_id=item.id, order_id=item.order_id,
                kind=item.kind, from_status=from_status, to_status=to_status, actor=actor)
    return item


def transition_history(db: Session, item_id: int) -> list[OrderStatusTransition]:
    if db.get(OrderLineItem, item_id) is None:
        raise NotFound(f"Line item {item_id} not found", item_id=item_id)
    rows = db.execute(
        select(OrderStatusTransition)
        .where(OrderStatusTransition.line_item_id == item_id)
        .order_by(OrderStatusTransition.created_at, OrderStatusTransition.id)
    )
    return list(rows.scalars())
