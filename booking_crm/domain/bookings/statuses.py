from __future__ import annotations

from typing import Final

from booking_crm.domain.errors import InvalidBookingState

BOOKING_STATUS_PENDING: Final[str] = "pending"
BOOKING_STATUS_CONFIRMED: Final[str] = "confirmed"
BOOKING_STATUS_CANCELLED: Final[str] = "cancelled"
BOOKING_STATUS_NO_SHOW: Final[str] = "no_show"

BOOKING_STATUSES: Final[tuple[str, ...]] = (
    BOOKING_STATUS_PENDING,
    BOOKING_STATUS_CONFIRMED,
    BOOKING_STATUS_CANCELLED,
    BOOKING_STATUS_NO_SHOW,
)

# Statuses that occupy a team member's time.
BLOCKING_STATUSES: Final[frozenset[str]] = frozenset({BOOKING_STATUS_PENDING, BOOKING_STATUS_CONFIRMED})

_ALLOWED_TRANSITIONS: Final[dict[str, set[str]]] = {
    BOOKING_STATUS_PENDING: {BOOKING_STATUS_CONFIRMED, BOOKING_STATUS_CANCELLED},
    BOOKING_STATUS_CONFIRMED: {BOOKING_STATUS_CANCELLED, BOOKING_STATUS_NO_SHOW},
    BOOKING_STATUS_CANCELLED: set(),
    BOOKING_STATUS_NO_SHOW: set(),
}


def is_valid_status(value: str) -> bool:
    return value in BOOKING_STATUSES


def allowed_next_statuses(current: str) -> set[str]:
    return _ALLOWED_TRANSITIONS.get(current, set())


def assert_valid_transition(current: str, target: str) -> None:
    if not is_valid_status(target):
        raise ValueError(f"Unknown booking status: {target}")
    if current == target:
        return
    allowed = allowed_next_statuses(current)
    if not allowed:
        raise InvalidBookingState(detail=f"Booking is already in terminal status: {current}")
    if target not in allowed:
        raise InvalidBookingState(detail=f"Cannot transition booking from {current} to {target}")
