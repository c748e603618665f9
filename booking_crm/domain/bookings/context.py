from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from booking_crm.domain.bookings.intervals import Interval
from booking_crm.domain.bookings.schemas import CalendarEvent


@dataclass(frozen=True)
class BookingWorkflowContext:
    """Everything validation resolved for one booking, consumed by persistence and side effects."""

    contact_id: str
    conversation_id: str | None
    event: CalendarEvent
    service_id: str | None
    team_member_id: str | None
    buffer_time_before: int
    buffer_time_after: int
    actual_start_time: datetime
    actual_end_time: datetime
    contact_name: str | None
    contact_email: str | None
    contact_phone: str | None
    calendar_id: str | None = None
    service_name: str | None = None
    discount_code: str | None = None
    discount_amount: Decimal = Decimal("0")
    promo_voucher: str | None = None
    payment_status: str = "unpaid"
    session_group_id: str | None = None
    session_number: int | None = None
    total_sessions: int | None = None

    @property
    def title(self) -> str:
        return self.event.title

    @property
    def start_time(self) -> datetime:
        return self.event.start_time

    @property
    def end_time(self) -> datetime:
        return self.event.end_time

    @property
    def interval(self) -> Interval:
        return Interval(self.actual_start_time, self.actual_end_time)
