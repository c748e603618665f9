from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from booking_crm.domain.bookings.db_models import Booking
from booking_crm.settings import settings

SideEffectStatus = Literal["success", "partial", "failed"]


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


def _normalize(value: datetime) -> datetime:
    # Naive datetimes from chat/admin callers are business-local wall times.
    if value.tzinfo is None:
        value = value.replace(tzinfo=settings.local_tz)
    return value.astimezone(timezone.utc)


class CalendarEvent(CamelModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    start_time: datetime
    end_time: datetime
    attendees: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_window(self) -> "CalendarEvent":
        self.start_time = _normalize(self.start_time)
        self.end_time = _normalize(self.end_time)
        if self.end_time <= self.start_time:
            raise ValueError("endTime must be after startTime")
        return self


class BookingOptions(CamelModel):
    service_id: str | None = None
    team_member_id: str | None = None
    discount_code: str | None = Field(None, max_length=64)
    discount_amount: Decimal = Field(Decimal("0"), ge=0)
    promo_voucher: str | None = Field(None, max_length=64)
    payment_status: str = "unpaid"
    session_group_id: str | None = None
    session_number: int | None = Field(None, ge=1)
    total_sessions: int | None = Field(None, ge=1)


class BookingCreateRequest(CamelModel):
    contact_id: str
    conversation_id: str | None = None
    event: CalendarEvent
    options: BookingOptions = Field(default_factory=BookingOptions)


class BookingUpdate(CamelModel):
    title: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    @model_validator(mode="after")
    def validate_window(self) -> "BookingUpdate":
        if (self.start_time is None) ^ (self.end_time is None):
            raise ValueError("startTime and endTime must both be provided")
        if self.start_time is not None and self.end_time is not None:
            self.start_time = _normalize(self.start_time)
            self.end_time = _normalize(self.end_time)
            if self.end_time <= self.start_time:
                raise ValueError("endTime must be after startTime")
        return self

    @property
    def reschedules(self) -> bool:
        return self.start_time is not None


class BookingRead(CamelModel):
    id: str
    contact_id: str
    conversation_id: str | None = None
    service_id: str | None = None
    team_member_id: str | None = None
    calendar_event_id: str | None = None
    title: str
    description: str | None = None
    start_time: datetime
    end_time: datetime
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    buffer_time_before: int = 0
    buffer_time_after: int = 0
    status: str
    discount_code: str | None = None
    discount_amount: Decimal = Decimal("0")
    promo_voucher: str | None = None
    payment_status: str
    penalty_applied: bool = False
    penalty_fee: Decimal = Decimal("0")
    session_group_id: str | None = None
    session_number: int | None = None
    total_sessions: int | None = None
    email_sent: bool = False
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, booking: Booking) -> "BookingRead":
        return cls(
            id=booking.booking_id,
            contact_id=booking.contact_id,
            conversation_id=booking.conversation_id,
            service_id=booking.service_id,
            team_member_id=booking.team_member_id,
            calendar_event_id=booking.calendar_event_id,
            title=booking.title,
            description=booking.description,
            start_time=booking.start_time,
            end_time=booking.end_time,
            actual_start_time=booking.actual_start_time,
            actual_end_time=booking.actual_end_time,
            buffer_time_before=booking.buffer_time_before or 0,
            buffer_time_after=booking.buffer_time_after or 0,
            status=booking.status,
            discount_code=booking.discount_code,
            discount_amount=booking.discount_amount or Decimal("0"),
            promo_voucher=booking.promo_voucher,
            payment_status=booking.payment_status,
            penalty_applied=bool(booking.penalty_applied),
            penalty_fee=booking.penalty_fee or Decimal("0"),
            session_group_id=booking.session_group_id,
            session_number=booking.session_number,
            total_sessions=booking.total_sessions,
            email_sent=bool(booking.email_sent),
            cancelled_at=booking.cancelled_at,
            cancellation_reason=booking.cancellation_reason,
            created_at=booking.created_at,
        )


class SessionRequest(CamelModel):
    start_time: datetime
    end_time: datetime
    title: str | None = Field(None, max_length=255)

    @model_validator(mode="after")
    def validate_window(self) -> "SessionRequest":
        self.start_time = _normalize(self.start_time)
        self.end_time = _normalize(self.end_time)
        if self.end_time <= self.start_time:
            raise ValueError("endTime must be after startTime")
        return self


class BatchBookingRequest(CamelModel):
    contact_id: str
    conversation_id: str | None = None
    service_id: str
    team_member_id: str | None = None
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    sessions: list[SessionRequest] = Field(min_length=1, max_length=52)
    payment_status: str = "unpaid"


class BatchBookingResult(CamelModel):
    success: bool
    session_group_id: str | None = None
    bookings: list[BookingRead] = Field(default_factory=list)
    calendar_sync_status: SideEffectStatus | None = None
    email_status: SideEffectStatus | None = None
    error: str | None = None


class CancellationRequest(CamelModel):
    reason: str | None = Field(None, max_length=1000)


class CancellationResult(CamelModel):
    penalty_applied: bool
    penalty_fee: Decimal
    refunded: bool


class NoShowRequest(CamelModel):
    notes: str | None = Field(None, max_length=1000)


class NoShowResult(CamelModel):
    booking_id: str
    strike_count: int
    suspension_until: datetime | None = None


class TimeSlot(CamelModel):
    start: datetime
    end: datetime
    available: bool


class BookingStats(CamelModel):
    total: int
    confirmed: int
    cancelled: int
    cancellation_rate: float
    penalties_applied: int
    total_penalty_fees: str
    total_discounts: str
