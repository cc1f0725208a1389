from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from orderflow.core.clock import utcnow
from orderflow.db.models import OrderNumberAllocation


def allocate_order_number(db: Session, now: Optional[datetime] = None) -> str:
    """Next human order number, e.g. ``ORD-20250301-000042``.

    The allocation row's autoincrement key is the global sequence, so two
    concurrent transactions never receive the same number.
    """
    now = now or utcnow()
    row = OrderNumberAllocation(allocated_at=now)
    db.add(row)
    db.flush()
    return f"ORD-{now:%Y%m%d}-{row.id:06d}"
