"""Legal status transitions per line-item kind."""

from orderflow.db.models import DigitalStatus, ItemKind, PhysicalStatus, ServiceStatus

P, D, S = PhysicalStatus, DigitalStatus, ServiceStatus

TRANSITIONS: dict[ItemKind, dict[str, tuple[str, ...]]] = {
    ItemKind.PHYSICAL: {
        P.PENDING: (P.PAYMENT_CONFIRMED, P.CANCELLED),
        P.PAYMENT_CONFIRMED: (P.PREPARING, P.CANCELLED),
        P.PREPARING: (P.READY_TO_SHIP, P.CANCELLED),
        P.READY_TO_SHIP: (P.SHIPPED,),
        P.SHIPPED: (P.OUT_FOR_DELIVERY, P.DELIVERED),
        P.OUT_FOR_DELIVERY: (P.DELIVERED,),
        P.DELIVERED: (P.REFUND_REQUESTED,),
        P.REFUND_REQUESTED: (P.REFUNDED,),
        P.CANCELLED: (),
        P.REFUNDED: (),
    },
    ItemKind.DIGITAL: {
        D.PENDING: (D.PAYMENT_CONFIRMED, D.CANCELLED),
        D.PAYMENT_CONFIRMED: (D.ACCESS_GRANTED, D.CANCELLED),
        D.ACCESS_GRANTED: (D.DOWNLOADED, D.REFUND_REQUESTED),
        D.DOWNLOADED: (D.REFUND_REQUESTED,),
        D.REFUND_REQUESTED: (D.REFUNDED,),
        D.CANCELLED: (),
        D.REFUNDED: (),
    },
    ItemKind.SERVICE: {
        S.PENDING: (S.PAYMENT_CONFIRMED, S.CANCELLED),
        S.PAYMENT_CONFIRMED: (S.BOOKING_CONFIRMED, S.CANCELLED),
        S.BOOKING_CONFIRMED: (S.REMINDER_SENT, S.CANCELLED),
        S.REMINDER_SENT: (S.IN_PROGRESS, S.NO_SHOW),
        S.IN_PROGRESS: (S.COMPLETED,),
        S.COMPLETED: (S.REFUND_REQUESTED,),
        S.NO_SHOW: (S.REFUND_REQUESTED,),
        S.REFUND_REQUESTED: (S.REFUNDED,),
        S.CANCELLED: (),
        S.REFUNDED: (),
    },
}

INITIAL_STATUS = "pending"

_BY_VALUE = {
    kind.value: {src.value: [dst.value for dst in targets] for src, targets in table.items()}
    for kind, table in TRANSITIONS.items()
}
KNOWN_STATUSES = frozenset(s for table in _BY_VALUE.values() for s in table)


def allowed_transitions(kind: str, current: str) -> list[str]:
    return list(_BY_VALUE[ItemKind(kind).value].get(current, ()))


def statuses_for(kind: str) -> list[str]:
    return list(_BY_VALUE[ItemKind(kind).value])


def can_transition(kind: str, current: str, target: str) -> bool:
    return target in allowed_transitions(kind, current)


def edges(kind: ItemKind) -> list[tuple[str, str]]:
    return [(src.value, dst.value) for src, targets in TRANSITIONS[kind].items() for dst in targets]


def is_terminal(kind: str, status: str) -> bool:
    return not allowed_transitions(kind, status)
