"""Request status workflow.

    pending --accept--> accepted --arrive--> arrived --complete--> completed
       |                   |                                          ^
       +--decline--> declined (terminal)  +--------complete-----------+
"""
from errors import InvalidTransition, ValidationError

PENDING = "pending"
ACCEPTED = "accepted"
DECLINED = "declined"
ARRIVED = "arrived"
COMPLETED = "completed"

STATUSES = (PENDING, ACCEPTED, DECLINED, ARRIVED, COMPLETED)

# older clients write "rejected"
STATUS_ALIASES = {"rejected": DECLINED}

TRANSITIONS = {
    PENDING: {ACCEPTED, DECLINED},
    ACCEPTED: {ARRIVED, COMPLETED},
    ARRIVED: {COMPLETED},
    DECLINED: set(),
    COMPLETED: set(),
}

ACTIVE_STATUSES = (ACCEPTED, ARRIVED)
TERMINAL_STATUSES = (DECLINED, COMPLETED)

# column stamped when a request enters the status
TIMESTAMP_FIELDS = {
    ACCEPTED: "accepted_at",
    DECLINED: "declined_at",
    ARRIVED: "arrived_at",
    COMPLETED: "completed_at",
}


def normalize_status(value: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"invalid status {value!r}")
    status = value.strip().lower()
    status = STATUS_ALIASES.get(status, status)
    if status not in STATUSES:
        raise ValidationError(f"unknown status {value!r}")
    return status


def can_transition(current: str, target: str) -> bool:
    return normalize_status(target) in TRANSITIONS[normalize_status(current)]


def check_transition(current: str, target: str) -> str:
    """Return the canonical target status or raise InvalidTransition."""
    current = normalize_status(current)
    target = normalize_status(target)
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(current, target)
    return target


def is_active(status: str) -> bool:
    return normalize_status(status) in ACTIVE_STATUSES


def is_terminal(status: str) -> bool:
    return normalize_status(status) in TERMINAL_STATUSES
