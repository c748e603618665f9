import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator
from zoneinfo import ZoneInfo

from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.bookings import statuses
from booking_crm.domain.bookings.configuration_gate import check_configuration
from booking_crm.domain.bookings.conflicts import (
    conflict_message,
    find_global_conflicts,
    find_team_member_conflicts,
    is_active_slot_conflict,
    slot_lock_keys,
)
from booking_crm.domain.bookings.context import BookingWorkflowContext
from booking_crm.domain.bookings.db_models import Booking
from booking_crm.domain.bookings.intervals import Interval, apply_buffers
from booking_crm.domain.bookings.ports import BookingCollaborators
from booking_crm.domain.bookings.schemas import (
    BookingOptions,
    BookingStats,
    BookingUpdate,
    CalendarEvent,
    TimeSlot,
)
from booking_crm.domain.bookings.team_gate import check_team_member_availability
from booking_crm.domain.catalog.service import get_service, get_service_buffers
from booking_crm.domain.contacts.db_models import Contact
from booking_crm.domain.contacts.service import get_contact
from booking_crm.domain.errors import (
    BookingConflict,
    ContactSuspended,
    DomainError,
    InvalidBookingState,
    NotFound,
    PersistenceFailure,
    PolicyViolation,
    SideEffectFailure,
)
from booking_crm.domain.notifications import email_service
from booking_crm.domain.notifications import service as notification_service
from booking_crm.domain.notifications.db_models import DocumentDelivery, ReminderLog, ReviewRequest
from booking_crm.domain.payments.service import ensure_payment_allowed
from booking_crm.infra.metrics import metrics
from booking_crm.settings import settings

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def suspension_message(until: datetime | None) -> str:
    if until is None:
        return "Booking privileges are suspended. Please contact us for assistance."
    local_until = until.astimezone(settings.local_tz)
    return f"Booking privileges suspended until {local_until.strftime('%d.%m.%Y')}. Please contact us for assistance."


def _reject(exc: PolicyViolation, **fields: object) -> None:
    metrics.record_booking_rejection(exc.reason)
    logger.info("booking_rejected", extra={"extra": {"reason": exc.reason, **fields}})


async def get_booking(session: AsyncSession, booking_id: str) -> Booking:
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise NotFound(detail=f"Booking {booking_id} not found")
    return booking


async def ensure_slot_free(
    session: AsyncSession,
    candidate: Interval,
    *,
    team_member_id: str | None,
    exclude_booking_id: str | None = None,
    include_team: bool = True,
) -> None:
    conflicts = await find_global_conflicts(
        session,
        candidate,
        team_member_id=team_member_id,
        conflict_scope=settings.conflict_scope,
        exclude_booking_id=exclude_booking_id,
    )
    if include_team and team_member_id and not conflicts:
        conflicts = await find_team_member_conflicts(
            session, team_member_id, candidate, exclude_booking_id=exclude_booking_id
        )
    if conflicts:
        titles = [booking.title for booking in conflicts]
        raise BookingConflict(detail=conflict_message(titles), conflicting_titles=titles)


async def check_slot_gates(
    session: AsyncSession,
    event: CalendarEvent,
    buffered: Interval,
    *,
    service_id: str | None,
    team_member_id: str | None,
    tz: ZoneInfo,
) -> str | None:
    """Configuration gate, global conflicts, then the team gate; returns the member's calendar id.

    Shared by single and batch bookings so both reject the same slots.
    """
    await check_configuration(session, event, buffered, service_id, tz=tz)

    conflicts = await find_global_conflicts(
        session,
        buffered,
        team_member_id=team_member_id,
        conflict_scope=settings.conflict_scope,
    )
    if conflicts:
        titles = [booking.title for booking in conflicts]
        raise BookingConflict(detail=conflict_message(titles), conflicting_titles=titles)

    if team_member_id:
        return await check_team_member_availability(session, team_member_id, service_id, buffered, tz=tz)
    return None


async def validate_and_prepare(
    session: AsyncSession,
    collaborators: BookingCollaborators,
    contact_id: str,
    conversation_id: str | None,
    event: CalendarEvent,
    options: BookingOptions | None = None,
) -> BookingWorkflowContext:
    """Run every gate in order without writing anything.

    Safe to retry: the same inputs against the same state give the same decision.
    """
    options = options or BookingOptions()
    tz = settings.local_tz
    try:
        suspension = await collaborators.suspensions.is_contact_suspended(session, contact_id)
        if suspension.suspended:
            raise ContactSuspended(detail=suspension_message(suspension.until), until=suspension.until)

        contact = await get_contact(session, contact_id)
        ensure_payment_allowed(contact)

        buffers = await get_service_buffers(session, options.service_id)
        service_name = None
        if options.service_id:
            service_name = (await get_service(session, options.service_id)).name
        buffered = apply_buffers(event.start_time, event.end_time, buffers.before_minutes, buffers.after_minutes)

        calendar_id = await check_slot_gates(
            session,
            event,
            buffered,
            service_id=options.service_id,
            team_member_id=options.team_member_id,
            tz=tz,
        )
    except PolicyViolation as exc:
        _reject(exc, contact_id=contact_id, service_id=options.service_id)
        raise

    return BookingWorkflowContext(
        contact_id=contact_id,
        conversation_id=conversation_id,
        event=event,
        service_id=options.service_id,
        team_member_id=options.team_member_id,
        buffer_time_before=buffers.before_minutes,
        buffer_time_after=buffers.after_minutes,
        actual_start_time=buffered.start,
        actual_end_time=buffered.end,
        contact_name=contact.name,
        contact_email=contact.email,
        contact_phone=contact.phone_number,
        calendar_id=calendar_id,
        service_name=service_name,
        discount_code=options.discount_code,
        discount_amount=options.discount_amount,
        promo_voucher=options.promo_voucher,
        payment_status=options.payment_status,
        session_group_id=options.session_group_id,
        session_number=options.session_number,
        total_sessions=options.total_sessions,
    )


async def _raise_slot_conflict(session: AsyncSession, context: BookingWorkflowContext) -> None:
    titles: list[str] = []
    if context.team_member_id:
        existing = await find_team_member_conflicts(session, context.team_member_id, context.interval)
        titles = [booking.title for booking in existing]
    conflict = BookingConflict(detail=conflict_message(titles or ["another booking"]), conflicting_titles=titles)
    _reject(conflict, contact_id=context.contact_id)
    raise conflict


async def persist_booking(
    session: AsyncSession,
    collaborators: BookingCollaborators,
    context: BookingWorkflowContext,
) -> Booking:
    """Create the calendar event, then the booking row, under the slot lock.

    A calendar event created before a failed insert is reported on the raised
    ``PersistenceFailure``; removing it is up to the caller.
    """
    keys = slot_lock_keys(
        [context.interval],
        settings.local_tz,
        team_member_id=context.team_member_id,
        conflict_scope=settings.conflict_scope,
    )
    async with collaborators.locks.hold(session, keys):
        try:
            await ensure_slot_free(session, context.interval, team_member_id=context.team_member_id)
        except BookingConflict as exc:
            await session.rollback()
            _reject(exc, contact_id=context.contact_id)
            raise

        try:
            calendar_event_id = await collaborators.calendar.create_event(context.event, context.calendar_id)
        except Exception as exc:
            logger.warning(
                "booking_calendar_create_failed",
                extra={"extra": {"contact_id": context.contact_id, "error": type(exc).__name__}},
            )
            await session.rollback()
            raise PersistenceFailure(detail="The calendar event for this booking could not be created.") from exc

        booking = Booking(
            contact_id=context.contact_id,
            conversation_id=context.conversation_id,
            service_id=context.service_id,
            team_member_id=context.team_member_id,
            calendar_event_id=calendar_event_id,
            calendar_id=context.calendar_id,
            title=context.title,
            description=context.event.description,
            start_time=context.start_time,
            end_time=context.end_time,
            actual_start_time=context.actual_start_time,
            actual_end_time=context.actual_end_time,
            buffer_time_before=context.buffer_time_before,
            buffer_time_after=context.buffer_time_after,
            status=statuses.BOOKING_STATUS_CONFIRMED,
            discount_code=context.discount_code,
            discount_amount=context.discount_amount,
            promo_voucher=context.promo_voucher,
            payment_status=context.payment_status,
            session_group_id=context.session_group_id,
            session_number=context.session_number,
            total_sessions=context.total_sessions,
        )
        session.add(booking)
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            if is_active_slot_conflict(exc):
                await _discard_calendar_event(collaborators, calendar_event_id, context.calendar_id)
                await _raise_slot_conflict(session, context)
            raise PersistenceFailure(
                detail="The booking could not be saved.", calendar_event_id=calendar_event_id
            ) from exc
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceFailure(
                detail="The booking could not be saved.", calendar_event_id=calendar_event_id
            ) from exc

    logger.info(
        "booking_persisted",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "contact_id": booking.contact_id,
                "team_member_id": booking.team_member_id,
            }
        },
    )
    return booking


@contextmanager
def _side_effect(effect: str, booking_id: str) -> Iterator[None]:
    try:
        yield
    except DomainError:
        raise
    except Exception as exc:
        metrics.record_side_effect(effect, "failed")
        logger.warning(
            "booking_side_effect_failed",
            extra={"extra": {"booking_id": booking_id, "effect": effect, "error": type(exc).__name__}},
        )
        raise SideEffectFailure(detail=f"Booking {effect} could not be completed.", effect=effect) from exc
    metrics.record_side_effect(effect, "success")


async def _send_confirmation(
    collaborators: BookingCollaborators, booking: Booking, context: BookingWorkflowContext
) -> None:
    try:
        delivered = await email_service.send_booking_confirmation(
            collaborators.notifications,
            booking,
            recipient=context.contact_email,
            contact_name=context.contact_name,
        )
    except Exception as exc:
        metrics.record_side_effect("email", "failed")
        logger.warning(
            "booking_confirmation_email_failed",
            extra={
                "extra": {
                    "booking_id": booking.booking_id,
                    "policy": settings.email_failure_policy,
                    "error": type(exc).__name__,
                }
            },
        )
        if settings.email_failure_policy == "fatal":
            raise SideEffectFailure(
                detail="The booking confirmation e-mail could not be sent.", effect="email"
            ) from exc
        return
    booking.email_sent = delivered
    metrics.record_side_effect("email", "success" if delivered else "skipped")


async def finalize_side_effects(
    session: AsyncSession,
    collaborators: BookingCollaborators,
    booking: Booking,
    context: BookingWorkflowContext,
) -> None:
    """Confirmation, reminders, review, secretary notice and documents, in that order.

    Any exception escaping here means the booking must be rolled back.
    """
    if context.contact_email:
        await _send_confirmation(collaborators, booking, context)

    with _side_effect("reminders", booking.booking_id):
        await notification_service.schedule_booking_reminders(session, booking)
    with _side_effect("review", booking.booking_id):
        await notification_service.schedule_review_request(session, booking)

    await notification_service.notify_secretary(
        session, collaborators.notifications, booking, "new", contact_name=context.contact_name
    )

    if booking.service_id:
        with _side_effect("documents", booking.booking_id):
            await notification_service.deliver_booking_documents(
                session, collaborators.notifications, booking, phone_number=context.contact_phone
            )

    with _side_effect("finalize", booking.booking_id):
        await session.commit()


async def rollback_booking(
    session: AsyncSession,
    collaborators: BookingCollaborators,
    booking_id: str,
    calendar_event_id: str | None,
    *,
    calendar_id: str | None = None,
) -> None:
    """Delete the booking row, then its calendar event. Never raises."""
    try:
        await session.rollback()
        for model in (ReminderLog, ReviewRequest, DocumentDelivery):
            await session.execute(delete(model).where(model.booking_id == booking_id))
        await session.execute(delete(Booking).where(Booking.booking_id == booking_id))
        await session.commit()
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "booking_rollback_db_failed",
            extra={"extra": {"booking_id": booking_id, "error": type(exc).__name__}},
        )
        try:
            await session.rollback()
        except Exception as rollback_exc:  # noqa: BLE001
            logger.error(
                "booking_rollback_session_reset_failed",
                extra={"extra": {"booking_id": booking_id, "error": type(rollback_exc).__name__}},
            )

    if calendar_event_id:
        await _discard_calendar_event(collaborators, calendar_event_id, calendar_id, booking_id=booking_id)

    metrics.record_booking("rolled_back")
    logger.warning("booking_rolled_back", extra={"extra": {"booking_id": booking_id}})


async def _discard_calendar_event(
    collaborators: BookingCollaborators,
    calendar_event_id: str,
    calendar_id: str | None,
    *,
    booking_id: str | None = None,
) -> None:
    try:
        await collaborators.calendar.delete_event(calendar_event_id, calendar_id)
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "booking_calendar_cleanup_failed",
            extra={
                "extra": {
                    "booking_id": booking_id,
                    "calendar_event_id": calendar_event_id,
                    "error": type(exc).__name__,
                }
            },
        )


async def create_booking(
    session: AsyncSession,
    collaborators: BookingCollaborators,
    contact_id: str,
    conversation_id: str | None,
    event: CalendarEvent,
    options: BookingOptions | None = None,
) -> Booking:
    context = await validate_and_prepare(session, collaborators, contact_id, conversation_id, event, options)
    try:
        booking = await persist_booking(session, collaborators, context)
    except PersistenceFailure as exc:
        if exc.calendar_event_id:
            await _discard_calendar_event(collaborators, exc.calendar_event_id, context.calendar_id)
        raise

    booking_id = booking.booking_id
    calendar_event_id = booking.calendar_event_id
    try:
        await finalize_side_effects(session, collaborators, booking, context)
    except Exception:
        await rollback_booking(
            session, collaborators, booking_id, calendar_event_id, calendar_id=context.calendar_id
        )
        raise

    metrics.record_booking("created")
    logger.info(
        "booking_created",
        extra={
            "extra": {
                "booking_id": booking_id,
                "contact_id": contact_id,
                "service_id": context.service_id,
                "team_member_id": context.team_member_id,
            }
        },
    )
    return booking


async def update_booking(
    session: AsyncSession,
    collaborators: BookingCollaborators,
    booking_id: str,
    changes: BookingUpdate,
) -> Booking:
    booking = await get_booking(session, booking_id)
    if booking.status != statuses.BOOKING_STATUS_CONFIRMED:
        raise InvalidBookingState(detail=f"Only confirmed bookings can be changed (status: {booking.status}).")

    tz = settings.local_tz
    if changes.reschedules:
        event = CalendarEvent(
            title=changes.title or booking.title,
            description=changes.description if changes.description is not None else booking.description,
            start_time=changes.start_time,
            end_time=changes.end_time,
        )
        buffered = apply_buffers(
            event.start_time,
            event.end_time,
            booking.buffer_time_before or 0,
            booking.buffer_time_after or 0,
        )
        keys = slot_lock_keys(
            [buffered], tz, team_member_id=booking.team_member_id, conflict_scope=settings.conflict_scope
        )
        try:
            await check_configuration(session, event, buffered, booking.service_id, tz=tz)
            async with collaborators.locks.hold(session, keys):
                await ensure_slot_free(
                    session,
                    buffered,
                    team_member_id=booking.team_member_id,
                    exclude_booking_id=booking_id,
                    include_team=False,
                )
                if booking.team_member_id:
                    await check_team_member_availability(
                        session,
                        booking.team_member_id,
                        booking.service_id,
                        buffered,
                        tz=tz,
                        exclude_booking_id=booking_id,
                    )
                previous = _calendar_snapshot(booking)
                await _update_calendar_event(collaborators, booking, changes)
                booking.start_time = event.start_time
                booking.end_time = event.end_time
                booking.actual_start_time = buffered.start
                booking.actual_end_time = buffered.end
                _apply_text_changes(booking, changes)
                await _commit_or_revert(session, collaborators, booking, previous)
        except PolicyViolation as exc:
            await session.rollback()
            _reject(exc, booking_id=booking_id)
            raise
    else:
        previous = _calendar_snapshot(booking)
        await _update_calendar_event(collaborators, booking, changes)
        _apply_text_changes(booking, changes)
        await _commit_or_revert(session, collaborators, booking, previous)

    contact = await session.get(Contact, booking.contact_id)
    await notification_service.notify_secretary(
        session, collaborators.notifications, booking, "changed", contact_name=contact.name if contact else None
    )
    metrics.record_booking("updated")
    logger.info(
        "booking_updated",
        extra={"extra": {"booking_id": booking_id, "rescheduled": changes.reschedules}},
    )
    return booking


def _apply_text_changes(booking: Booking, changes: BookingUpdate) -> None:
    if changes.title is not None:
        booking.title = changes.title
    if changes.description is not None:
        booking.description = changes.description


async def _update_calendar_event(
    collaborators: BookingCollaborators, booking: Booking, changes: BookingUpdate
) -> None:
    if not booking.calendar_event_id:
        return
    try:
        await collaborators.calendar.update_event(booking.calendar_event_id, changes, booking.calendar_id)
    except Exception as exc:
        logger.warning(
            "booking_calendar_update_failed",
            extra={"extra": {"booking_id": booking.booking_id, "error": type(exc).__name__}},
        )
        raise PersistenceFailure(detail="The calendar event for this booking could not be updated.") from exc


def _calendar_snapshot(booking: Booking) -> tuple[str, str | None, str | None, BookingUpdate] | None:
    if not booking.calendar_event_id:
        return None
    return (
        booking.booking_id,
        booking.calendar_event_id,
        booking.calendar_id,
        BookingUpdate(
            title=booking.title,
            description=booking.description,
            start_time=booking.start_time,
            end_time=booking.end_time,
        ),
    )


async def _commit_or_revert(
    session: AsyncSession,
    collaborators: BookingCollaborators,
    booking: Booking,
    previous: tuple[str, str | None, str | None, BookingUpdate] | None,
) -> None:
    """Commit the row; if that fails, move the calendar event back to its stored state."""
    try:
        await _commit_change(session, booking)
    except DomainError:
        if previous is not None:
            booking_id, calendar_event_id, calendar_id, original = previous
            try:
                await collaborators.calendar.update_event(calendar_event_id, original, calendar_id)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "booking_calendar_revert_failed",
                    extra={
                        "extra": {
                            "booking_id": booking_id,
                            "calendar_event_id": calendar_event_id,
                            "error": type(exc).__name__,
                        }
                    },
                )
        raise


async def _commit_change(session: AsyncSession, booking: Booking) -> None:
    booking_id = booking.booking_id
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        if is_active_slot_conflict(exc):
            raise BookingConflict(detail=conflict_message(["another booking"])) from exc
        raise PersistenceFailure(detail=f"Booking {booking_id} could not be updated.") from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceFailure(detail=f"Booking {booking_id} could not be updated.") from exc


async def get_availability(
    collaborators: BookingCollaborators,
    start: datetime,
    end: datetime,
    calendar_id: str | None = None,
) -> list[TimeSlot]:
    return await collaborators.calendar.get_availability(start, end, calendar_id)


def _money(value: Decimal | None) -> str:
    return str(Decimal(value or 0).quantize(CENT))


async def get_booking_stats(
    session: AsyncSession, start: datetime | None = None, end: datetime | None = None
) -> BookingStats:
    stmt = select(
        func.count(Booking.booking_id),
        func.sum(case((Booking.status == statuses.BOOKING_STATUS_CONFIRMED, 1), else_=0)),
        func.sum(case((Booking.status == statuses.BOOKING_STATUS_CANCELLED, 1), else_=0)),
        func.sum(case((Booking.penalty_applied.is_(True), 1), else_=0)),
        func.sum(case((Booking.penalty_applied.is_(True), Booking.penalty_fee), else_=0)),
        func.sum(Booking.discount_amount),
    )
    if start is not None:
        stmt = stmt.where(Booking.created_at >= start)
    if end is not None:
        stmt = stmt.where(Booking.created_at <= end)
    total, confirmed, cancelled, penalties, penalty_fees, discounts = (await session.execute(stmt)).one()
    total = int(total or 0)
    cancelled = int(cancelled or 0)
    return BookingStats(
        total=total,
        confirmed=int(confirmed or 0),
        cancelled=cancelled,
        cancellation_rate=round(cancelled / total * 100, 2) if total else 0.0,
        penalties_applied=int(penalties or 0),
        total_penalty_fees=_money(penalty_fees),
        total_discounts=_money(discounts),
    )
