from typing import Optional

import jwt
from fastapi import Header, HTTPException

from orderflow.core.config import settings
from orderflow.db.session import SessionLocal
from orderflow.inventory import ReservationManager, get_hold_store

_reservations = None
_processor = None


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_reservations() -> ReservationManager:
    global _reservations
    if _reservations is None:
        _reservations = ReservationManager(SessionLocal, get_hold_store())
    return _reservations


def get_processor():
    global _processor
    if _processor is None:
        from orderflow.outbox.processor import OutboxProcessor

        _processor = OutboxProcessor(SessionLocal)
    return _processor


def _decode(auth: Optional[str]) -> dict:
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = auth.split(" ", 1)[1]
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def admin_or_internal(
    x_internal_key: Optional[str] = Header(default=None, alias="X-Internal-Key"),
    auth: Optional[str] = Header(default=None, alias="Authorization"),
) -> dict:
    # trusted service-to-service calls
    if x_internal_key and x_internal_key == (settings.SVC_INTERNAL_KEY or ""):
        return {"sub": "internal", "role": "internal"}
    payload = _decode(auth)
    if payload.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin required")
    return payload


def actor_identity(
    x_internal_key: Optional[str] = Header(default=None, alias="X-Internal-Key"),
    auth: Optional[str] = Header(default=None, alias="Authorization"),
) -> dict:
    """Any authenticated caller: merchant, customer, admin or internal service."""
    if x_internal_key and x_internal_key == (settings.SVC_INTERNAL_KEY or ""):
        return {"sub": "internal", "role": "internal"}
    payload = _decode(auth)
    if payload.get("type", "access") != "access":
        raise HTTPException(status_code=401, detail="Invalid access token")
    return payload
