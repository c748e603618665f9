from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List

PROBLEM_BASE = "https://example.com/problems"


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = f"{PROBLEM_BASE}/domain-error"
    errors: List[dict] | None = None

    def __str__(self) -> str:
        return self.detail


@dataclass
class NotFound(DomainError):
    title: str = "Not Found"
    type: str = f"{PROBLEM_BASE}/not-found"


@dataclass
class PolicyViolation(DomainError):
    """A business rule rejected the request; the message is shown to the end user verbatim."""

    title: str = "Booking Policy Violation"
    type: str = f"{PROBLEM_BASE}/policy-violation"
    reason: str = "policy_violation"


@dataclass
class BookingDisabled(PolicyViolation):
    reason: str = "booking_disabled"


@dataclass
class CrossMidnightBooking(PolicyViolation):
    reason: str = "cross_midnight"


@dataclass
class OutsideBusinessHours(PolicyViolation):
    reason: str = "outside_business_hours"


@dataclass
class EmergencyBlocked(PolicyViolation):
    reason: str = "emergency_blocked"


@dataclass
class ServiceRestrictionViolation(PolicyViolation):
    reason: str = "service_restriction"
    rule: str | None = None


@dataclass
class TeamMemberUnavailable(PolicyViolation):
    reason: str = "team_member_unavailable"


@dataclass
class BookingConflict(PolicyViolation):
    title: str = "Booking Conflict"
    type: str = f"{PROBLEM_BASE}/booking-conflict"
    reason: str = "conflict"
    conflicting_titles: list[str] = field(default_factory=list)


@dataclass
class ContactSuspended(PolicyViolation):
    reason: str = "contact_suspended"
    until: datetime | None = None


@dataclass
class OutstandingBalance(PolicyViolation):
    reason: str = "outstanding_balance"
    balance: Decimal | None = None


@dataclass
class InvalidBookingState(PolicyViolation):
    reason: str = "invalid_state"


@dataclass
class PersistenceFailure(DomainError):
    title: str = "Booking Persistence Failed"
    type: str = f"{PROBLEM_BASE}/persistence-failure"
    calendar_event_id: str | None = None


@dataclass
class SideEffectFailure(DomainError):
    title: str = "Booking Side Effect Failed"
    type: str = f"{PROBLEM_BASE}/side-effect-failure"
    effect: str | None = None
