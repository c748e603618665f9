import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.bookings import statuses
from booking_crm.domain.bookings.db_models import Booking
from booking_crm.domain.bookings.ports import NotificationSink
from booking_crm.domain.contacts.db_models import Contact
from booking_crm.domain.notifications.db_models import (
    DocumentDelivery,
    ReminderLog,
    ReviewRequest,
    ServiceDocument,
)
from booking_crm.domain.notifications.email_service import _render_secretary_notification
from booking_crm.domain.settings_store import service as settings_store
from booking_crm.domain.settings_store.service import SettingsStore
from booking_crm.infra.metrics import metrics
from booking_crm.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_HOURS = [24.0]
DEFAULT_REVIEW_DELAY_HOURS = 24.0
BOOKING_TIME_DOCUMENTS = ("pre_booking", "post_booking")
PRE_APPOINTMENT_LEAD = timedelta(hours=24)
_TIMING_TEXT = {
    "pre_booking": "before your appointment",
    "post_booking": "after booking",
    "pre_appointment": "before your appointment",
    "post_appointment": "after your appointment",
}


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


def _reminder_message(booking: Booking) -> str:
    local_start = booking.start_time.astimezone(settings.local_tz)
    return (
        f"Reminder: You have an appointment for {booking.title} on {local_start.strftime('%d.%m.%Y')} "
        f"at {local_start.strftime('%H:%M')}. Please arrive 10 minutes early."
    )


async def schedule_booking_reminders(
    session: AsyncSession, booking: Booking, *, now: datetime | None = None
) -> list[ReminderLog]:
    """One reminder per configured lead time that still lies in the future."""
    current = _now(now)
    lead_hours = await SettingsStore(session).get_float_list(
        settings_store.REMINDER_HOURS_BEFORE, DEFAULT_REMINDER_HOURS
    )
    message = _reminder_message(booking)
    reminders: list[ReminderLog] = []
    for hours in sorted({hours for hours in lead_hours if hours > 0}, reverse=True):
        scheduled_for = booking.start_time - timedelta(hours=hours)
        if scheduled_for <= current:
            continue
        reminders.append(
            ReminderLog(
                booking_id=booking.booking_id,
                contact_id=booking.contact_id,
                reminder_type="appointment",
                message_content=message,
                scheduled_for=scheduled_for,
                status="scheduled",
            )
        )
    session.add_all(reminders)
    await session.flush()
    return reminders


async def cancel_booking_reminders(session: AsyncSession, booking_id: str) -> int:
    result = await session.execute(
        update(ReminderLog)
        .where(ReminderLog.booking_id == booking_id, ReminderLog.status == "scheduled")
        .values(status="cancelled")
    )
    await session.execute(
        update(DocumentDelivery)
        .where(DocumentDelivery.booking_id == booking_id, DocumentDelivery.status == "scheduled")
        .values(status="cancelled")
    )
    return result.rowcount or 0


async def send_due_reminders(
    session: AsyncSession, sink: NotificationSink, *, now: datetime | None = None
) -> dict[str, int]:
    current = _now(now)
    result = await session.execute(
        select(ReminderLog, Contact.phone_number)
        .join(Contact, Contact.contact_id == ReminderLog.contact_id)
        .where(ReminderLog.status == "scheduled", ReminderLog.scheduled_for <= current)
        .order_by(ReminderLog.scheduled_for)
    )
    counts = {"sent": 0, "failed": 0}
    for reminder, phone_number in result.all():
        outcome = await sink.send_whatsapp(to_number=phone_number, body=reminder.message_content)
        if outcome.delivered:
            reminder.status = "sent"
            reminder.sent_at = current
            counts["sent"] += 1
        else:
            reminder.status = "failed"
            counts["failed"] += 1
            logger.warning(
                "reminder_send_failed",
                extra={"extra": {"reminder_id": reminder.reminder_id, "error_code": outcome.error_code}},
            )
    await session.commit()
    logger.info("reminders_processed", extra={"extra": counts})
    return counts


async def schedule_review_request(session: AsyncSession, booking: Booking) -> ReviewRequest:
    delay_hours = await SettingsStore(session).get_float(
        settings_store.REVIEW_REQUEST_DELAY_HOURS, DEFAULT_REVIEW_DELAY_HOURS
    )
    review = ReviewRequest(
        booking_id=booking.booking_id,
        contact_id=booking.contact_id,
        scheduled_for=booking.end_time + timedelta(hours=max(0.0, delay_hours)),
        status="scheduled",
    )
    session.add(review)
    await session.flush()
    return review


async def notify_secretary(
    session: AsyncSession,
    sink: NotificationSink,
    booking: Booking,
    action: str,
    *,
    contact_name: str | None,
) -> bool:
    """E-mail the configured secretary about a booking change. Never raises."""
    try:
        recipient = await SettingsStore(session).get(settings_store.SECRETARY_EMAIL)
        if not recipient:
            return False
        subject, body = _render_secretary_notification(booking, contact_name, action)
        delivered = await sink.send_email(recipient=recipient, subject=subject, body=body)
    except Exception as exc:  # noqa: BLE001
        metrics.record_side_effect("secretary", "failed")
        logger.warning(
            "secretary_notification_failed",
            extra={"extra": {"booking_id": booking.booking_id, "action": action, "error": type(exc).__name__}},
        )
        return False
    metrics.record_side_effect("secretary", "sent" if delivered else "skipped")
    return delivered


def _document_message(document: ServiceDocument, booking: Booking) -> str:
    parts = [f"*{document.title}*"]
    if document.description:
        parts.append(document.description)
    if document.url:
        parts.append(f"Document: {document.url}")
    parts.append(
        f"This is for your {booking.title} appointment ({_TIMING_TEXT.get(document.send_timing, 'for your appointment')})."
    )
    if document.is_required:
        parts.append("Please review this document, it is required for your appointment.")
    return "\n\n".join(parts)


async def _send_document(
    sink: NotificationSink,
    delivery: DocumentDelivery,
    document: ServiceDocument,
    booking: Booking,
    phone_number: str,
    now: datetime,
) -> bool:
    outcome = await sink.send_whatsapp(to_number=phone_number, body=_document_message(document, booking))
    if outcome.delivered:
        delivery.status = "sent"
        delivery.sent_at = now
        return True
    delivery.status = "failed"
    logger.warning(
        "document_delivery_failed",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "document_id": document.document_id,
                "error_code": outcome.error_code,
            }
        },
    )
    return False


async def deliver_booking_documents(
    session: AsyncSession,
    sink: NotificationSink,
    booking: Booking,
    *,
    phone_number: str | None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Send booking-time documents now and record appointment-relative ones as scheduled."""
    counts = {"sent": 0, "failed": 0, "scheduled": 0}
    if not booking.service_id:
        return counts
    current = _now(now)
    documents = (
        await session.execute(
            select(ServiceDocument)
            .where(ServiceDocument.service_id == booking.service_id, ServiceDocument.is_active.is_(True))
            .order_by(ServiceDocument.order_position)
        )
    ).scalars().all()
    if not documents:
        return counts
    already_sent = set(
        (
            await session.execute(
                select(DocumentDelivery.document_id).where(
                    DocumentDelivery.booking_id == booking.booking_id,
                    DocumentDelivery.status == "sent",
                )
            )
        ).scalars()
    )

    for document in documents:
        if document.document_id in already_sent:
            continue
        delivery = DocumentDelivery(
            booking_id=booking.booking_id,
            document_id=document.document_id,
            status="scheduled",
        )
        session.add(delivery)
        if document.send_timing in BOOKING_TIME_DOCUMENTS:
            delivery.scheduled_for = current
            if not phone_number:
                delivery.status = "failed"
                counts["failed"] += 1
                continue
            if await _send_document(sink, delivery, document, booking, phone_number, current):
                counts["sent"] += 1
            else:
                counts["failed"] += 1
        else:
            if document.send_timing == "pre_appointment":
                delivery.scheduled_for = max(current, booking.start_time - PRE_APPOINTMENT_LEAD)
            else:
                delivery.scheduled_for = booking.end_time
            counts["scheduled"] += 1
    await session.flush()
    return counts


async def deliver_due_documents(
    session: AsyncSession, sink: NotificationSink, *, now: datetime | None = None
) -> dict[str, int]:
    current = _now(now)
    result = await session.execute(
        select(DocumentDelivery, ServiceDocument, Booking, Contact.phone_number)
        .join(ServiceDocument, ServiceDocument.document_id == DocumentDelivery.document_id)
        .join(Booking, Booking.booking_id == DocumentDelivery.booking_id)
        .join(Contact, Contact.contact_id == Booking.contact_id)
        .where(
            DocumentDelivery.status == "scheduled",
            DocumentDelivery.scheduled_for <= current,
            Booking.status == statuses.BOOKING_STATUS_CONFIRMED,
        )
        .order_by(DocumentDelivery.scheduled_for)
    )
    counts = {"sent": 0, "failed": 0}
    for delivery, document, booking, phone_number in result.all():
        if await _send_document(sink, delivery, document, booking, phone_number, current):
            counts["sent"] += 1
        else:
            counts["failed"] += 1
    await session.commit()
    return counts
