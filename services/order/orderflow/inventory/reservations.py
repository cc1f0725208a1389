"""Soft inventory reservations.

Holds live in the TTL store and only ever over-count; the ``variant_stock``
ledger is changed by ``commit`` alone. Expired holds simply stop counting
the next time availability is read.
"""

from collections import OrderedDict
from typing import Callable, Iterable, Optional

import structlog
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from orderflow.core.clock import utcnow
from orderflow.core.config import settings
from orderflow.core.errors import Expired, InsufficientResource, TransientInfrastructure, ValidationFailed
from orderflow.db.models import InventoryCommit, InventoryPolicy, ItemKind, VariantStock
from orderflow.inventory.holds.port import HoldStore
from orderflow.schemas import CartLine

logger = structlog.get_logger(__name__)


def reserved_key(variant_id: str) -> str:
    return f"inventory:reserved:{variant_id}"


def slot_key(variant_id: str, booking_date: str, booking_slot: str) -> str:
    return f"booking:slot:{variant_id}:{booking_date}:{booking_slot}"


def manifest_key(session_id: str) -> str:
    return f"reservation:{session_id}:manifest"


def validate_lines(items: Iterable[CartLine]) -> list[CartLine]:
    lines = list(items)
    if not lines:
        raise ValidationFailed("Nothing to reserve")
    for line in lines:
        if line.qty <= 0:
            raise ValidationFailed(f"Quantity must be positive for variant {line.variant_id}",
                                   variant_id=line.variant_id)
        if line.kind == ItemKind.SERVICE and not (line.booking_date and line.booking_slot):
            raise ValidationFailed(f"Service variant {line.variant_id} needs a booking date and slot",
                                   variant_id=line.variant_id)
    return lines


def _stock_quantities(lines: list[CartLine]) -> "OrderedDict[str, int]":
    wanted: dict[str, int] = {}
    for line in lines:
        if line.kind != ItemKind.SERVICE:
            wanted[line.variant_id] = wanted.get(line.variant_id, 0) + line.qty
    # fixed lock order across concurrent reservations
    return OrderedDict(sorted(wanted.items()))


class ReservationManager:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        holds: HoldStore,
        ttl_seconds: int = settings.RESERVATION_TTL_SECONDS,
        slot_ttl_seconds: int = settings.BOOKING_SLOT_TTL_SECONDS,
        default_slot_capacity: int = settings.DEFAULT_SLOT_CAPACITY,
    ):
        self.session_factory = session_factory
        self.holds = holds
        self.ttl_seconds = ttl_seconds
        self.slot_ttl_seconds = slot_ttl_seconds
        self.default_slot_capacity = default_slot_capacity

    def _lock_stock(self, db: Session, variant_id: str) -> Optional[VariantStock]:
        return db.execute(
            select(VariantStock)
            .where(VariantStock.variant_id == variant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def available(self, db: Session, variant_id: str) -> int:
        stock = db.get(VariantStock, variant_id)
        if stock is None:
            return 0
        return max(0, stock.quantity - self.holds.get_int(reserved_key(variant_id)))

    def _undo(self, taken: list[tuple[str, int]]) -> None:
        for key, qty in reversed(taken):
            try:
                if qty:
                    self.holds.decr(key, qty)
                else:
                    self.holds.pop_json(key)
            except RedisError:
                logger.warning("reservation.undo_failed", key=key, qty=qty)

    def reserve(self, session_id: str, items: Iterable[CartLine]) -> dict:
        """Hold stock and booking capacity for every line, or for none of them."""
        lines = validate_lines(items)
        taken: list[tuple[str, int]] = []
        db = self.session_factory()
        try:
            db.connection(execution_options={"isolation_level": "SERIALIZABLE"})
            manifest = self._reserve_locked(db, session_id, lines, taken)
            db.commit()
        except (OperationalError, RedisError) as exc:
            self._undo(taken)
            db.rollback()
            logger.error("reservation.infrastructure_error", session_id=session_id, error=str(exc))
            raise TransientInfrastructure("Inventory store unavailable, retry later",
                                          session_id=session_id) from exc
        except Exception:
            self._undo(taken)
            db.rollback()
            raise
        finally:
            db.close()
        logger.info("reservation.created", session_id=session_id, lines=len(manifest["items"]))
        return manifest

    def _reserve_locked(self, db: Session, session_id: str, lines: list[CartLine],
                        taken: list[tuple[str, int]]) -> dict:
        errors: list[str] = []
        entries: list[dict] = []

        for variant_id, qty in _stock_quantities(lines).items():
            stock = self._lock_stock(db, variant_id)
            if stock is None:
                errors.append(f"unknown variant {variant_id}")
                continue
            key = reserved_key(variant_id)
            if stock.inventory_policy == InventoryPolicy.DENY.value:
                remaining = stock.quantity - self.holds.get_int(key)
                if qty > remaining:
                    errors.append(f"insufficient inventory for variant {variant_id}")
                    continue
            self.holds.incr(key, qty, self.ttl_seconds)
            taken.append((key, qty))
            entries.append({"key": key, "variant_id": variant_id, "qty": qty})

        for line in lines:
            if line.kind != ItemKind.SERVICE:
                continue
            stock = db.get(VariantStock, line.variant_id)
            capacity = stock.slot_capacity if stock is not None and stock.slot_capacity else self.default_slot_capacity
            key = slot_key(line.variant_id, line.booking_date, line.booking_slot)
            booked = self.holds.incr(key, line.qty, self.slot_ttl_seconds)
            taken.append((key, line.qty))
            if booked > capacity:
                errors.append(
                    f"booking slot {line.booking_date} {line.booking_slot} is full for variant {line.variant_id}"
                )
                continue
            entries.append({"key": key, "variant_id": line.variant_id, "qty": line.qty})

        if errors:
            raise InsufficientResource("Insufficient inventory", session_id=session_id, errors=errors)

        manifest = {"session_id": session_id, "items": entries, "reserved_at": utcnow().isoformat()}
        mkey = manifest_key(session_id)
        self.holds.set_json(mkey, manifest, self.ttl_seconds)
        taken.append((mkey, 0))
        return manifest

    def release(self, session_id: str) -> bool:
        """Drop every hold of the session; a missing manifest is a no-op."""
        manifest = self.holds.pop_json(manifest_key(session_id))
        if manifest is None:
            return False
        for entry in manifest["items"]:
            self.holds.decr(entry["key"], entry["qty"])
        logger.info("reservation.released", session_id=session_id)
        return True

    def commit(self, session_id: str, items: Iterable[CartLine]) -> bool:
        """Decrement the ledger for a paid session, then drop its holds.

        Runs at most once per session; later calls only release.
        """
        lines = list(items)
        db = self.session_factory()
        try:
            if db.get(InventoryCommit, session_id) is not None:
                committed = False
            else:
                for variant_id, qty in _stock_quantities(lines).items():
                    stock = self._lock_stock(db, variant_id)
                    if stock is None:
                        logger.warning("reservation.commit_unknown_variant", variant_id=variant_id)
                        continue
                    stock.quantity = max(0, stock.quantity - qty)
                db.add(InventoryCommit(checkout_session_id=session_id))
                db.commit()
                committed = True
        except IntegrityError:
            db.rollback()
            committed = False
        except OperationalError as exc:
            db.rollback()
            raise TransientInfrastructure("Inventory ledger unavailable, retry later",
                                          session_id=session_id) from exc
        finally:
            db.close()
        self.release(session_id)
        if committed:
            logger.info("reservation.committed", session_id=session_id)
        return committed

    def extend(self, session_id: str) -> dict:
        mkey = manifest_key(session_id)
        manifest = self.holds.get_json(mkey)
        if manifest is None or not self.holds.expire(mkey, self.ttl_seconds):
            raise Expired("Reservation has expired", session_id=session_id)
        for entry in manifest["items"]:
            ttl = self.slot_ttl_seconds if entry["key"].startswith("booking:") else self.ttl_seconds
            self.holds.expire(entry["key"], ttl)
        return manifest
