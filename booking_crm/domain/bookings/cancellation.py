import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.bookings import statuses
from booking_crm.domain.bookings.db_models import Booking
from booking_crm.domain.bookings.events import BookingCancelled
from booking_crm.domain.bookings.ports import BookingCollaborators
from booking_crm.domain.bookings.schemas import CancellationResult
from booking_crm.domain.bookings.service import get_booking
from booking_crm.domain.catalog.db_models import Service
from booking_crm.domain.contacts.db_models import Contact
from booking_crm.domain.errors import PersistenceFailure
from booking_crm.domain.notifications import email_service
from booking_crm.domain.notifications import service as notification_service
from booking_crm.domain.payments import service as payment_service
from booking_crm.domain.settings_store import service as settings_store
from booking_crm.domain.settings_store.service import SettingsStore
from booking_crm.infra.metrics import metrics

logger = logging.getLogger(__name__)

DEFAULT_POLICY_HOURS = 24.0
DEFAULT_PENALTY_AMOUNT = Decimal("50")
NO_FEE = Decimal("0.00")


def hours_until(start_time: datetime, now: datetime) -> float:
    return (start_time - now).total_seconds() / 3600


def is_late_cancellation(start_time: datetime, now: datetime, policy_hours: float) -> bool:
    return hours_until(start_time, now) < policy_hours


def _step_failed(step: str, booking_id: str, exc: Exception) -> None:
    metrics.record_side_effect(f"cancel_{step}", "failed")
    logger.warning(
        "booking_cancellation_step_failed",
        extra={"extra": {"booking_id": booking_id, "step": step, "error": type(exc).__name__}},
    )


async def _recover(session: AsyncSession, *instances: object) -> None:
    await session.rollback()
    for instance in instances:
        if instance is not None:
            await session.refresh(instance)


async def cancel_booking(
    session: AsyncSession,
    collaborators: BookingCollaborators,
    booking_id: str,
    reason: str | None = None,
    *,
    now: datetime | None = None,
) -> CancellationResult:
    """Cancel a booking, charging or refunding according to the cancellation policy.

    Once the booking is found and still active the cancellation always completes;
    refund, penalty, notification and waitlist failures are logged only.
    """
    current = now or datetime.now(timezone.utc)
    booking = await get_booking(session, booking_id)
    statuses.assert_valid_transition(booking.status, statuses.BOOKING_STATUS_CANCELLED)
    contact = await session.get(Contact, booking.contact_id)

    store = SettingsStore(session)
    policy_hours = await store.get_float(settings_store.CANCELLATION_POLICY_HOURS, DEFAULT_POLICY_HOURS)
    penalty_type = await store.get(
        settings_store.LATE_CANCELLATION_PENALTY_TYPE, payment_service.PENALTY_TYPE_FIXED
    )
    penalty_amount = await store.get_decimal(
        settings_store.LATE_CANCELLATION_PENALTY_AMOUNT, DEFAULT_PENALTY_AMOUNT
    )

    late = is_late_cancellation(booking.start_time, current, policy_hours)
    penalty_fee = NO_FEE
    if late:
        price = await payment_service.get_service_price(session, booking.service_id)
        penalty_fee = payment_service.compute_penalty_fee(penalty_type, penalty_amount, price)

    refunded = False
    if booking.payment_status == "paid" and not late:
        try:
            refunded = await payment_service.handle_cancellation_refund(
                session, collaborators.payments, booking_id
            )
            await session.commit()
        except Exception as exc:  # noqa: BLE001
            _step_failed("refund", booking_id, exc)
            refunded = False
            await _recover(session, booking, contact)

    if booking.calendar_event_id:
        try:
            await collaborators.calendar.delete_event(booking.calendar_event_id, booking.calendar_id)
            booking.calendar_event_id = None
        except Exception as exc:  # noqa: BLE001
            _step_failed("calendar", booking_id, exc)

    booking.status = statuses.BOOKING_STATUS_CANCELLED
    booking.cancelled_at = current
    booking.cancellation_reason = reason
    booking.penalty_applied = late
    booking.penalty_fee = penalty_fee
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceFailure(detail=f"Booking {booking_id} could not be cancelled.") from exc

    if late and penalty_fee > 0:
        try:
            await payment_service.create_penalty_transaction(session, booking, penalty_fee)
            await session.commit()
        except Exception as exc:  # noqa: BLE001
            _step_failed("penalty_transaction", booking_id, exc)
            await _recover(session, booking, contact)
        if contact is not None:
            collaborators.spawn(
                payment_service.send_penalty_payment_link(
                    collaborators.payments,
                    collaborators.notifications,
                    payment_service.PenaltyLinkRequest.from_models(contact, booking, penalty_fee),
                )
            )

    contact_name = contact.name if contact else None
    if contact is not None and contact.email:
        try:
            await email_service.send_cancellation_email(
                collaborators.notifications,
                booking,
                recipient=contact.email,
                contact_name=contact_name,
                penalty_applied=late,
                penalty_fee=penalty_fee,
                reason=reason,
            )
        except Exception as exc:  # noqa: BLE001
            _step_failed("email", booking_id, exc)

    try:
        await notification_service.cancel_booking_reminders(session, booking_id)
        await session.commit()
    except Exception as exc:  # noqa: BLE001
        _step_failed("reminders", booking_id, exc)
        await _recover(session, booking, contact)

    await notification_service.notify_secretary(
        session, collaborators.notifications, booking, "cancelled", contact_name=contact_name
    )

    service_name = None
    if booking.service_id:
        service = await session.get(Service, booking.service_id)
        service_name = service.name if service else None
    await collaborators.events.publish_cancelled(
        session,
        BookingCancelled(
            booking_id=booking.booking_id,
            contact_id=booking.contact_id,
            title=booking.title,
            start_time=booking.start_time,
            end_time=booking.end_time,
            service_id=booking.service_id,
            service_name=service_name,
            team_member_id=booking.team_member_id,
        ),
    )

    metrics.record_booking("cancelled")
    logger.info(
        "booking_cancelled",
        extra={
            "extra": {
                "booking_id": booking_id,
                "late": late,
                "penalty_fee": str(penalty_fee),
                "refunded": refunded,
            }
        },
    )
    return CancellationResult(penalty_applied=late, penalty_fee=penalty_fee, refunded=refunded)
