from orderflow.fsm.aggregate import derive_order_status, recompute_order_status
from orderflow.fsm.machine import transition, transition_history
from orderflow.fsm.refunds import RefundDecision, refund_eligibility
from orderflow.fsm.transitions import allowed_transitions, can_transition

__all__ = [
    "allowed_transitions",
    "can_transition",
    "derive_order_status",
    "recompute_order_status",
    "refund_eligibility",
    "RefundDecision",
    "transition",
    "transition_history",
]
