from datetime import datetime, timezone
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from orderflow.db.models import ItemKind


class Address(BaseModel):
    country: str = Field(min_length=2, max_length=2)
    state: Optional[str] = None
    city: str
    street: str
    street2: Optional[str] = ""
    postal_code: str
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class CartLine(BaseModel):
    """One immutable line of a checkout's cart snapshot."""

    product_id: str
    variant_id: str
    qty: int
    unit_price_cents: int = Field(ge=0)
    currency: str = "USD"
    merchant_id: str
    kind: ItemKind
    title: str = ""
    sku: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def line_total_cents(self) -> int:
        return self.qty * self.unit_price_cents

    @property
    def booking_date(self) -> Optional[str]:
        return self.metadata.get("booking_date")

    @property
    def booking_slot(self) -> Optional[str]:
        return self.metadata.get("booking_slot")


class PromoCode(BaseModel):
    code: str
    discount_type: Literal["percentage", "fixed_amount"]
    discount_value: int
    minimum_purchase_cents: int = 0
    maximum_discount_cents: Optional[int] = None


class Totals(BaseModel):
    subtotal_cents: int = 0
    tax_cents: int = 0
    shipping_cents: int = 0
    discount_cents: int = 0
    total_cents: int = 0
    currency: str = "USD"
    tax_rate: float = 0.0
    tax_jurisdiction: str = "N/A"


# --- fulfillment data, tagged by item kind ---

class _Stamped(BaseModel):
    @field_validator("*")
    @classmethod
    def _naive_utc(cls, value):
        if isinstance(value, datetime) and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class PhysicalFulfillment(_Stamped):
    kind: Literal["physical"] = "physical"
    warehouse_id: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    payment_confirmed_at: Optional[datetime] = None
    packed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    out_for_delivery_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refund_requested_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class DigitalFulfillment(_Stamped):
    kind: Literal["digital"] = "digital"
    download_url: Optional[str] = None
    access_key: Optional[str] = None
    granted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    download_count: int = 0
    max_downloads: int = 0
    first_downloaded_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refund_requested_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None


class ServiceFulfillment(_Stamped):
    kind: Literal["service"] = "service"
    booking_id: Optional[str] = None
    booking_date: Optional[datetime] = None
    booking_slot: Optional[str] = None
    specialist_id: Optional[str] = None
    location: Optional[str] = None
    booking_confirmed: bool = False
    booking_confirmed_at: Optional[datetime] = None
    reminder_sent_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    no_show_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refund_requested_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


FulfillmentData = Annotated[
    Union[PhysicalFulfillment, DigitalFulfillment, ServiceFulfillment],
    Field(discriminator="kind"),
]
_fulfillment_adapter = TypeAdapter(FulfillmentData)


def parse_fulfillment(kind: str, raw: Optional[dict]) -> Union[PhysicalFulfillment, DigitalFulfillment, ServiceFulfillment]:
    data = dict(raw or {})
    data.setdefault("kind", kind)
    if data["kind"] != kind:
        raise ValueError(f"fulfillment data tagged {data['kind']!r} on a {kind} item")
    return _fulfillment_adapter.validate_python(data)


def dump_fulfillment(data: BaseModel) -> dict:
    return data.model_dump(mode="json")


def initial_fulfillment(line: CartLine) -> dict:
    if line.kind == ItemKind.PHYSICAL:
        return dump_fulfillment(PhysicalFulfillment())
    if line.kind == ItemKind.DIGITAL:
        return dump_fulfillment(DigitalFulfillment())
    return dump_fulfillment(ServiceFulfillment(
        booking_id=line.metadata.get("booking_id"),
        booking_date=line.booking_date,
        booking_slot=line.booking_slot,
        specialist_id=line.metadata.get("specialist_id"),
        location=line.metadata.get("location"),
    ))


# --- API response models ---

class LineItemOut(BaseModel):
    id: int
    order_id: int
    merchant_id: str
    product_id: str
    variant_id: Optional[str] = None
    kind: str
    status: str
    qty: int
    unit_price_cents: int
    line_total_cents: int
    currency: str
    fulfillment_data: dict
    status_history: List[dict]


class OrderOut(BaseModel):
    id: int
    order_number: str
    status: str
    payment_status: str
    currency: str
    subtotal_cents: int
    tax_cents: int
    shipping_cents: int
    discount_cents: int
    total_cents: int
    checkout_session_id: Optional[str] = None
    created_at: Optional[datetime] = None
    items: List[LineItemOut]

    @classmethod
    def from_order(cls, order, items=None) -> "OrderOut":
        return cls(
            id=order.id,
            order_number=order.order_number,
            status=order.status,
            payment_status=order.payment_status,
            currency=order.currency,
            subtotal_cents=order.subtotal_cents,
            tax_cents=order.tax_cents,
            shipping_cents=order.shipping_cents,
            discount_cents=order.discount_cents,
            total_cents=order.total_cents,
            checkout_session_id=order.checkout_session_id,
            created_at=order.created_at,
            items=[LineItemOut.model_validate(it, from_attributes=True)
                   for it in (order.items if items is None else items)],
        )


class OrderPage(BaseModel):
    orders: List[OrderOut]
    page: int
    limit: int
    total: int
    total_pages: int


class TrackedItem(BaseModel):
    title: str
    qty: int
    status: str
    tracking: Optional[dict] = None


class TrackingOut(BaseModel):
    order_number: str
    status: str
    created_at: datetime
    items: List[TrackedItem]
