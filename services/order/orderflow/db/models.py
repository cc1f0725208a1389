import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow.core.clock import utcnow
from orderflow.db.session import Base


class ItemKind(str, Enum):
    PHYSICAL = "physical"
    DIGITAL = "digital"
    SERVICE = "service"

class PhysicalStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PREPARING = "preparing"
    READY_TO_SHIP = "ready_to_ship"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"

class DigitalStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    ACCESS_GRANTED = "access_granted"
    DOWNLOADED = "downloaded"
    CANCELLED = "cancelled"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"

class ServiceStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    BOOKING_CONFIRMED = "booking_confirmed"
    REMINDER_SENT = "reminder_sent"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"

STATUSES_BY_KIND = {
    ItemKind.PHYSICAL: PhysicalStatus,
    ItemKind.DIGITAL: DigitalStatus,
    ItemKind.SERVICE: ServiceStatus,
}

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

class CheckoutStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"

class OutboxStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"

class AggregateKind(str, Enum):
    ORDER = "order"
    ORDER_LINE_ITEM = "order_line_item"

class InventoryPolicy(str, Enum):
    DENY = "deny"
    CONTINUE = "continue"


class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"
    __table_args__ = (Index("ix_checkout_sessions_status_expires", "status", "expires_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    anonymous_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    guest_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    cart_snapshot: Mapped[list] = mapped_column(JSON)
    shipping_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    billing_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    totals: Mapped[dict] = mapped_column(JSON)
    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    promo_codes: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(32), default=CheckoutStatus.IN_PROGRESS.value)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    # Plain identifiers; resolved by explicit lookup.
    order_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    order_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    expires_at: Mapped[datetime] = mapped_column(DateTime())
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow, onupdate=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.status == CheckoutStatus.IN_PROGRESS.value and (now or utcnow()) > self.expires_at


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(50), unique=True)
    user_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    guest_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default=OrderStatus.PENDING.value)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    subtotal_cents: Mapped[int] = mapped_column(BigInteger)
    tax_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    shipping_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    discount_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger)
    payment_status: Mapped[str] = mapped_column(String(32), default=PaymentStatus.PENDING.value)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    shipping_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    billing_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    checkout_session_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow, onupdate=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)

    items = relationship("OrderLineItem", back_populates="order", order_by="OrderLineItem.id")

    @property
    def merchant_ids(self) -> list[str]:
        return sorted({it.merchant_id for it in self.items})


class OrderLineItem(Base):
    __tablename__ = "order_line_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    merchant_id: Mapped[str] = mapped_column(String(64), index=True)
    product_id: Mapped[str] = mapped_column(String(64))
    variant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    kind: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(32), default="pending", index=True)
    title_snapshot: Mapped[str] = mapped_column(String(255), default="")
    sku_snapshot: Mapped[str | None] = mapped_column(String(100), nullable=True)
    qty: Mapped[int] = mapped_column(Integer)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger)
    line_total_cents: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    fulfillment_data: Mapped[dict] = mapped_column(JSON, default=dict)
    status_history: Mapped[list] = mapped_column(JSON, default=list)
    last_status_change: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="items")


class OrderStatusTransition(Base):
    __tablename__ = "order_status_transitions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(Integer, index=True)
    line_item_id: Mapped[int] = mapped_column(Integer, index=True)
    from_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32))
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor: Mapped[str | None] = mapped_column(String(64), nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)


@event.listens_for(OrderStatusTransition, "before_update")
@event.listens_for(OrderStatusTransition, "before_delete")
def _audit_rows_are_write_once(mapper, connection, target):
    raise ValueError("order_status_transitions rows are append-only")


class OutboxEvent(Base):
    __tablename__ = "order_outbox"
    __table_args__ = (
        Index("ix_order_outbox_status_created", "status", "created_at"),
        Index("ix_order_outbox_aggregate", "aggregate_kind", "aggregate_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    aggregate_id: Mapped[str] = mapped_column(String(64))
    aggregate_kind: Mapped[str] = mapped_column(String(32))
    event_type: Mapped[str] = mapped_column(String(100), index=True)
    payload: Mapped[dict] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String(16), default=OutboxStatus.PENDING.value)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_history: Mapped[list] = mapped_column(JSON, default=list)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class OutboxDLQEntry(Base):
    __tablename__ = "order_outbox_dlq"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    original_event_id: Mapped[int] = mapped_column(Integer, index=True)
    aggregate_id: Mapped[str] = mapped_column(String(64))
    aggregate_kind: Mapped[str] = mapped_column(String(32))
    event_type: Mapped[str] = mapped_column(String(100), index=True)
    payload: Mapped[dict] = mapped_column(JSON)
    error_message: Mapped[str] = mapped_column(Text)
    error_history: Mapped[list] = mapped_column(JSON, default=list)
    retry_count: Mapped[int] = mapped_column(Integer)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_failed_at: Mapped[datetime] = mapped_column(DateTime())
    moved_to_dlq_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)
    reprocessed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    reprocessed_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)


class OrderNumberAllocation(Base):
    __tablename__ = "order_number_allocations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    allocated_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)


class VariantStock(Base):
    __tablename__ = "variant_stock"
    variant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    inventory_policy: Mapped[str] = mapped_column(String(16), default=InventoryPolicy.DENY.value)
    slot_capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow, onupdate=utcnow)


class InventoryCommit(Base):
    __tablename__ = "inventory_commits"
    checkout_session_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    committed_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)
