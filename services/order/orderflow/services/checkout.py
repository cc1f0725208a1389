from datetime import datetime, timedelta
from typing import Iterable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from orderflow.core.clock import utcnow
from orderflow.core.config import settings
from orderflow.core.errors import AlreadyExists, Conflict, Expired, NotFound, OrderflowError, ValidationFailed
from orderflow.db.models import CheckoutSession, CheckoutStatus, Order
from orderflow.db.session import unit_of_work
from orderflow.inventory.reservations import ReservationManager, validate_lines
from orderflow.outbox.store import Outbox
from orderflow.schemas import Address, CartLine, PromoCode
from orderflow.services import orders
from orderflow.services.totals import compute_totals

logger = structlog.get_logger(__name__)

PAYMENT_OUTCOMES = ("succeeded", "failed", "canceled")


def _session_or_404(db: Session, session_id: str, lock: bool = False) -> CheckoutSession:
    stmt = select(CheckoutSession).where(CheckoutSession.id == session_id)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    cs = db.execute(stmt).scalar_one_or_none()
    if cs is None:
        raise NotFound(f"Checkout session {session_id} not found", session_id=session_id)
    return cs


def _lines(cs: CheckoutSession) -> list[CartLine]:
    return [CartLine.model_validate(raw) for raw in cs.cart_snapshot]


def start_checkout(
    db: Session,
    reservations: ReservationManager,
    items: Iterable[CartLine],
    user_id: Optional[str] = None,
    anonymous_id: Optional[str] = None,
    guest_email: Optional[str] = None,
    guest_phone: Optional[str] = None,
    shipping_address: Optional[Address] = None,
    billing_address: Optional[Address] = None,
    promo_codes: Optional[list[PromoCode]] = None,
    payment_method: Optional[str] = None,
    currency: str = "USD",
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CheckoutSession:
    """Freeze the cart, price it and hold its inventory for the session TTL."""
    lines = validate_lines(items)
    if not (user_id or anonymous_id or guest_email):
        raise ValidationFailed("A user, anonymous session or guest email is required")
    if any(line.currency != currency for line in lines):
        raise ValidationFailed(f"All cart lines must be priced in {currency}")
    now = now or utcnow()

    if idempotency_key:
        existing = db.execute(
            select(CheckoutSession).where(CheckoutSession.idempotency_key == idempotency_key)
        ).scalar_one_or_none()
        if existing is not None:
            return existing

    totals = compute_totals(lines, shipping_address, promo_codes, currency)
    with unit_of_work(db):
        cs = CheckoutSession(
            user_id=user_id,
            anonymous_id=anonymous_id,
            guest_email=guest_email,
            guest_phone=guest_phone,
            cart_snapshot=[line.model_dump(mode="json") for line in lines],
            shipping_address=shipping_address.model_dump() if shipping_address else None,
            billing_address=billing_address.model_dump() if billing_address else None,
            totals=totals.model_dump(),
            payment_method=payment_method,
            promo_codes=[p.model_dump() for p in promo_codes or ()],
            status=CheckoutStatus.IN_PROGRESS.value,
            idempotency_key=idempotency_key,
            expires_at=now + timedelta(minutes=settings.CHECKOUT_SESSION_TTL_MINUTES),
            created_at=now,
        )
        db.add(cs)

    try:
        reservations.reserve(cs.id, lines)
    except OrderflowError as exc:
        with unit_of_work(db):
            cs.status = CheckoutStatus.FAILED.value
            cs.error_message = exc.message
        logger.warning("checkout.reservation_failed", session_id=cs.id, error=exc.message)
        raise
    logger.info("checkout.started", session_id=cs.id, total_cents=totals.total_cents, lines=len(lines))
    return cs


def get_session(db: Session, reservations: ReservationManager, session_id: str,
                now: Optional[datetime] = None) -> CheckoutSession:
    """Load a session, expiring it (and dropping its holds) if its TTL has passed."""
    cs = _session_or_404(db, session_id)
    if cs.is_expired(now):
        with unit_of_work(db):
            cs.status = CheckoutStatus.EXPIRED.value
        reservations.release(session_id)
        logger.info("checkout.expired", session_id=session_id)
    return cs


def cancel_session(db: Session, reservations: ReservationManager, session_id: str) -> CheckoutSession:
    with unit_of_work(db):
        cs = _session_or_404(db, session_id, lock=True)
        if cs.status != CheckoutStatus.IN_PROGRESS.value:
            raise Conflict(f"Checkout session is {cs.status}", session_id=session_id, status=cs.status)
        cs.status = CheckoutStatus.CANCELLED.value
    reservations.release(session_id)
    logger.info("checkout.cancelled", session_id=session_id)
    return cs


def extend_session(db: Session, reservations: ReservationManager, session_id: str,
                   now: Optional[datetime] = None) -> CheckoutSession:
    now = now or utcnow()
    cs = get_session(db, reservations, session_id, now)
    if cs.status == CheckoutStatus.EXPIRED.value:
        raise Expired("Checkout session has expired", session_id=session_id)
    if cs.status != CheckoutStatus.IN_PROGRESS.value:
        raise Conflict(f"Checkout session is {cs.status}", session_id=session_id, status=cs.status)
    reservations.extend(session_id)
    with unit_of_work(db):
        cs.expires_at = now + timedelta(minutes=settings.CHECKOUT_SESSION_TTL_MINUTES)
    return cs


def handle_payment_outcome(
    db: Session,
    reservations: ReservationManager,
    session_id: str,
    outcome: str,
    payment_intent_id: Optional[str] = None,
    error: Optional[str] = None,
    outbox: Optional[Outbox] = None,
    now: Optional[datetime] = None,
) -> Optional[Order]:
    """React to the payment gateway's verdict for a checkout session.

    Safe to call repeatedly with the same verdict: a second success finds
    the existing order, commits nothing twice and returns it.
    """
    if outcome not in PAYMENT_OUTCOMES:
        raise ValidationFailed(f"Unknown payment outcome {outcome!r}", outcome=outcome)

    if outcome == "succeeded":
        try:
            order = orders.create_order_from_checkout(db, session_id, payment_intent_id, outbox=outbox, now=now)
        except AlreadyExists as exc:
            order = orders.get_order(db, exc.details["order_id"])
        cs = _session_or_404(db, session_id)
        reservations.commit(session_id, _lines(cs))
        return orders.confirm_payment(db, order.id, payment_intent_id, outbox=outbox, now=now)

    with unit_of_work(db):
        cs = _session_or_404(db, session_id, lock=True)
        if cs.status == CheckoutStatus.IN_PROGRESS.value:
            cs.status = CheckoutStatus.FAILED.value if outcome == "failed" else CheckoutStatus.CANCELLED.value
            cs.error_message = error or f"payment {outcome}"
    reservations.release(session_id)
    logger.info("checkout.payment_not_completed", session_id=session_id, outcome=outcome)
    return None
