# payments/state_machine.py
from typing import Dict, FrozenSet

from payments.enums import PaymentStatus as S
from payments.errors import IllegalTransitionError

TERMINAL: FrozenSet[S] = frozenset({S.COMPLETED, S.FAILED, S.EXPIRED, S.CANCELLED})

# candidates for matching and expiry
OPEN: FrozenSet[S] = frozenset({S.PENDING, S.SCANNING})

# forward progress may skip intermediate states
EDGES: Dict[S, FrozenSet[S]] = {
    S.PENDING: frozenset({S.SCANNING, S.PROCESSING, S.COMPLETED, S.FAILED, S.EXPIRED, S.CANCELLED}),
    S.SCANNING: frozenset({S.PROCESSING, S.COMPLETED, S.FAILED, S.EXPIRED, S.CANCELLED}),
    S.PROCESSING: frozenset({S.COMPLETED, S.FAILED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
    S.EXPIRED: frozenset(),
    S.CANCELLED: frozenset(),
}


def can_transition(current: S, target: S) -> bool:
    return target in EDGES[current]


def ensure_transition(order_id: str, current: S, target: S) -> None:
    if not can_transition(current, target):
        raise IllegalTransitionError(order_id, current, target)
