from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from orderflow.api.deps import admin_or_internal, get_db, get_reservations
from orderflow.core.errors import ValidationFailed
from orderflow.inventory import ReservationManager
from orderflow.schemas import Address, CartLine, OrderOut, PromoCode, Totals
from orderflow.services import checkout

router = APIRouter()


class StartCheckoutReq(BaseModel):
    items: List[CartLine] = Field(min_length=1)
    user_id: Optional[str] = None
    anonymous_id: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    promo_codes: List[PromoCode] = Field(default_factory=list)
    payment_method: Optional[str] = None
    currency: str = "USD"
    idempotency_key: Optional[str] = None


class SessionOut(BaseModel):
    id: str
    status: str
    totals: Totals
    expires_at: str
    order_id: Optional[int] = None
    order_number: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_session(cls, cs) -> "SessionOut":
        return cls(id=cs.id, status=cs.status, totals=Totals(**cs.totals), expires_at=cs.expires_at.isoformat(),
                   order_id=cs.order_id, order_number=cs.order_number, error_message=cs.error_message)


class PaymentCallback(BaseModel):
    intent_ref: Optional[str] = None
    outcome: Literal["succeeded", "failed", "canceled"]
    metadata: dict = Field(default_factory=dict)
    error: Optional[str] = None


@router.post("/v1/checkout/sessions", response_model=SessionOut, status_code=201)
def start(req: StartCheckoutReq, db: Session = Depends(get_db),
          reservations: ReservationManager = Depends(get_reservations)):
    cs = checkout.start_checkout(
        db, reservations, req.items,
        user_id=req.user_id, anonymous_id=req.anonymous_id,
        guest_email=req.guest_email, guest_phone=req.guest_phone,
        shipping_address=req.shipping_address, billing_address=req.billing_address,
        promo_codes=req.promo_codes, payment_method=req.payment_method,
        currency=req.currency, idempotency_key=req.idempotency_key,
    )
    return SessionOut.from_session(cs)


@router.get("/v1/checkout/sessions/{session_id}", response_model=SessionOut)
def get(session_id: str, db: Session = Depends(get_db),
        reservations: ReservationManager = Depends(get_reservations)):
    return SessionOut.from_session(checkout.get_session(db, reservations, session_id))


@router.post("/v1/checkout/sessions/{session_id}/cancel", response_model=SessionOut)
def cancel(session_id: str, db: Session = Depends(get_db),
           reservations: ReservationManager = Depends(get_reservations)):
    return SessionOut.from_session(checkout.cancel_session(db, reservations, session_id))


@router.post("/v1/checkout/sessions/{session_id}/extend", response_model=SessionOut)
def extend(session_id: str, db: Session = Depends(get_db),
           reservations: ReservationManager = Depends(get_reservations)):
    return SessionOut.from_session(checkout.extend_session(db, reservations, session_id))


@router.post("/v1/checkout/payment-callback")
def payment_callback(req: PaymentCallback, db: Session = Depends(get_db),
                     reservations: ReservationManager = Depends(get_reservations),
                     _=Depends(admin_or_internal)):
    session_id = req.metadata.get("checkout_session_id")
    if not session_id:
        raise ValidationFailed("metadata.checkout_session_id is required")
    order = checkout.handle_payment_outcome(db, reservations, session_id, req.outcome,
                                            req.intent_ref, error=req.error)
    return {"status": req.outcome, "order": OrderOut.from_order(order).model_dump() if order else None}
