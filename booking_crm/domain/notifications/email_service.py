import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Sequence

from booking_crm.domain.bookings.db_models import Booking
from booking_crm.domain.bookings.ports import NotificationSink
from booking_crm.settings import settings

logger = logging.getLogger(__name__)

SECRETARY_ACTION_TITLES = {
    "new": "New Booking",
    "changed": "Booking Changed",
    "cancelled": "Booking Cancelled",
}


def _format_start_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(settings.local_tz).strftime("%A, %d %B %Y %H:%M")


def _format_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(settings.local_tz).strftime("%d.%m.%Y")


def _format_money(amount: Decimal | None) -> str:
    return f"{settings.default_currency} {Decimal(amount or 0):.2f}"


def _render_booking_confirmation(booking: Booking, contact_name: str | None) -> tuple[str, str]:
    subject = f"Appointment Confirmation - {_format_date(booking.start_time)}"
    lines = [
        f"Dear {contact_name or 'customer'},",
        "",
        "Your appointment has been confirmed:",
        f"- Service: {booking.title}",
        f"- Date & Time: {_format_start_time(booking.start_time)}",
    ]
    if booking.discount_code:
        lines.append(f"- Discount Applied: {booking.discount_code} (-{_format_money(booking.discount_amount)})")
    if booking.promo_voucher:
        lines.append(f"- Promo Voucher: {booking.promo_voucher}")
    lines += [
        "",
        "We look forward to seeing you!",
        "Please arrive 10 minutes early. Cancellations within 24 hours may incur a fee.",
    ]
    return subject, "\n".join(lines)


def _render_booking_cancellation(
    booking: Booking,
    contact_name: str | None,
    *,
    penalty_applied: bool,
    penalty_fee: Decimal,
    reason: str | None,
) -> tuple[str, str]:
    subject = f"Appointment Cancelled - {_format_date(booking.start_time)}"
    lines = [
        f"Dear {contact_name or 'customer'},",
        "",
        "Your appointment has been cancelled:",
        f"- Service: {booking.title}",
        f"- Date & Time: {_format_start_time(booking.start_time)}",
    ]
    if penalty_applied:
        lines.append(f"- Late Cancellation Fee: {_format_money(penalty_fee)}")
    if reason:
        lines += ["", f"Reason: {reason}"]
    if penalty_applied:
        lines += ["", "Due to the late cancellation a cancellation fee has been applied."]
    lines += ["", "We hope to see you again soon!"]
    return subject, "\n".join(lines)


def _render_batch_confirmation(bookings: Sequence[Booking], contact_name: str | None) -> tuple[str, str]:
    first = bookings[0]
    subject = f"Treatment Plan Confirmed - {len(bookings)} sessions"
    lines = [
        f"Dear {contact_name or 'customer'},",
        "",
        f"Your {len(bookings)} sessions for {first.title} have been booked:",
    ]
    for position, booking in enumerate(bookings, start=1):
        number = booking.session_number or position
        lines.append(f"- Session {number}: {_format_start_time(booking.start_time)}")
    lines += ["", "We look forward to seeing you!"]
    return subject, "\n".join(lines)


def _render_secretary_notification(booking: Booking, contact_name: str | None, action: str) -> tuple[str, str]:
    title = SECRETARY_ACTION_TITLES[action]
    name = contact_name or "Unknown"
    subject = f"{title} - {name}"
    lines = [
        title,
        "",
        f"Patient: {name}",
        f"Service: {booking.title}",
        f"Date & Time: {_format_start_time(booking.start_time)}",
    ]
    if booking.discount_code:
        lines.append(f"Discount: {booking.discount_code} (-{_format_money(booking.discount_amount)})")
    if booking.promo_voucher:
        lines.append(f"Promo Voucher: {booking.promo_voucher}")
    if booking.penalty_applied:
        lines.append(f"Penalty Fee: {_format_money(booking.penalty_fee)}")
    if booking.cancellation_reason:
        lines.append(f"Cancellation Reason: {booking.cancellation_reason}")
    return subject, "\n".join(lines)


async def send_booking_confirmation(
    sink: NotificationSink, booking: Booking, *, recipient: str, contact_name: str | None
) -> bool:
    subject, body = _render_booking_confirmation(booking, contact_name)
    return await sink.send_email(recipient=recipient, subject=subject, body=body)


async def send_cancellation_email(
    sink: NotificationSink,
    booking: Booking,
    *,
    recipient: str,
    contact_name: str | None,
    penalty_applied: bool,
    penalty_fee: Decimal,
    reason: str | None,
) -> bool:
    subject, body = _render_booking_cancellation(
        booking,
        contact_name,
        penalty_applied=penalty_applied,
        penalty_fee=penalty_fee,
        reason=reason,
    )
    return await sink.send_email(recipient=recipient, subject=subject, body=body)


async def send_batch_confirmation(
    sink: NotificationSink, bookings: Sequence[Booking], *, recipient: str, contact_name: str | None
) -> bool:
    subject, body = _render_batch_confirmation(bookings, contact_name)
    return await sink.send_email(recipient=recipient, subject=subject, body=body)
