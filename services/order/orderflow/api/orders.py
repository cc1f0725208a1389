from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from orderflow.api.deps import actor_identity, admin_or_internal, get_db
from orderflow.core.errors import NotFound
from orderflow.schemas import LineItemOut, OrderOut, OrderPage, TrackingOut
from orderflow.services import orders

router = APIRouter()


class FromCheckoutReq(BaseModel):
    checkout_session_id: str
    payment_intent_id: Optional[str] = None


class TransitionReq(BaseModel):
    to_status: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ReasonReq(BaseModel):
    reason: Optional[str] = None


class TransitionOut(BaseModel):
    from_status: Optional[str]
    to_status: str
    reason: Optional[str]
    actor: Optional[str]
    created_at: str


@router.post("/v1/orders/from-checkout", response_model=OrderOut, status_code=201)
def create_from_checkout(req: FromCheckoutReq, db: Session = Depends(get_db), _=Depends(admin_or_internal)):
    order = orders.create_order_from_checkout(db, req.checkout_session_id, req.payment_intent_id)
    return OrderOut.from_order(order)


@router.get("/v1/orders", response_model=OrderPage)
def my_orders(page: int = 1, limit: int = 10, status: Optional[str] = None,
              db: Session = Depends(get_db), identity: dict = Depends(actor_identity)):
    result = orders.list_user_orders(db, identity.get("sub"), page=page, limit=min(limit, 100), status=status)
    return OrderPage(**{**result, "orders": [OrderOut.from_order(o) for o in result["orders"]]})


@router.get("/v1/orders/by-number/{order_number}", response_model=OrderOut)
def get_by_number(order_number: str, db: Session = Depends(get_db), identity: dict = Depends(actor_identity)):
    order = orders.get_order_by_number(db, order_number)
    if identity.get("role") not in ("admin", "internal") and order.user_id != identity.get("sub"):
        raise HTTPException(status_code=403, detail="You do not have access to this order")
    return OrderOut.from_order(order)


@router.get("/v1/orders/track/{order_number}", response_model=TrackingOut)
def track(order_number: str, email: Optional[str] = None, db: Session = Depends(get_db)):
    return orders.track_order(db, order_number, email=email)


@router.get("/v1/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: int, db: Session = Depends(get_db), _=Depends(actor_identity)):
    return OrderOut.from_order(orders.get_order(db, order_id))


@router.post("/v1/orders/{order_id}/items/{item_id}/transition", response_model=LineItemOut)
def transition_item(order_id: int, item_id: int, req: TransitionReq,
                    db: Session = Depends(get_db), identity: dict = Depends(actor_identity)):
    item = orders.transition_line_item(db, item_id, req.to_status, req.metadata,
                                       actor=identity.get("sub"), order_id=order_id)
    return LineItemOut.model_validate(item, from_attributes=True)


@router.get("/v1/orders/{order_id}/items/{item_id}/history", response_model=List[TransitionOut])
def item_history(order_id: int, item_id: int, db: Session = Depends(get_db), _=Depends(actor_identity)):
    rows = orders.transition_history(db, item_id)
    if any(r.order_id != order_id for r in rows):
        raise NotFound(f"Line item {item_id} not found", item_id=item_id)
    return [
        TransitionOut(from_status=r.from_status, to_status=r.to_status, reason=r.reason,
                      actor=r.actor, created_at=r.created_at.isoformat())
        for r in rows
    ]


@router.get("/v1/orders/{order_id}/items/{item_id}/refund-eligibility")
def refund_eligibility(order_id: int, item_id: int, db: Session = Depends(get_db), _=Depends(actor_identity)):
    return orders.check_refund(db, item_id, order_id=order_id).as_dict()


@router.post("/v1/orders/{order_id}/items/{item_id}/refund", response_model=LineItemOut)
def request_refund(order_id: int, item_id: int, req: ReasonReq,
                   db: Session = Depends(get_db), identity: dict = Depends(actor_identity)):
    item = orders.request_refund(db, item_id, req.reason, actor=identity.get("sub"), order_id=order_id)
    return LineItemOut.model_validate(item, from_attributes=True)


@router.post("/v1/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(order_id: int, req: ReasonReq, db: Session = Depends(get_db),
                 identity: dict = Depends(actor_identity)):
    order = orders.cancel_order(db, order_id, req.reason, actor=identity.get("sub"))
    return OrderOut.from_order(order)


@router.post("/v1/downloads/{item_id}")
def download(item_id: int, key: str, db: Session = Depends(get_db)):
    return orders.record_download(db, item_id, access_key=key)


def _merchant_id(identity: dict) -> str:
    if identity.get("role") != "merchant":
        raise HTTPException(status_code=403, detail="Merchant required")
    return identity.get("merchant_id") or identity["sub"]


@router.get("/v1/merchant/orders", response_model=OrderPage)
def merchant_orders(page: int = 1, limit: int = 10, db: Session = Depends(get_db),
                    identity: dict = Depends(actor_identity)):
    result = orders.list_merchant_orders(db, _merchant_id(identity), page=page, limit=min(limit, 100))
    return OrderPage(**{**result, "orders": [OrderOut.from_order(o, items) for o, items in result["orders"]]})


@router.get("/v1/merchant/orders/{order_id}/items", response_model=List[LineItemOut])
def merchant_order_items(order_id: int, db: Session = Depends(get_db), identity: dict = Depends(actor_identity)):
    items = orders.merchant_order_items(db, order_id, _merchant_id(identity))
    return [LineItemOut.model_validate(it, from_attributes=True) for it in items]
