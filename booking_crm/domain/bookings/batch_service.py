"""Atomic creation of the sessions of a multi-visit treatment.

Validation runs before any write, the rows are inserted in one statement, and
side effects run after commit without ever undoing the committed rows.
"""

import logging
import uuid
from dataclasses import replace
from typing import Sequence

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.bookings import statuses
from booking_crm.domain.bookings.conflicts import find_contact_conflicts, is_active_slot_conflict, slot_lock_keys
from booking_crm.domain.bookings.db_models import Booking
from booking_crm.domain.bookings.intervals import Interval, apply_buffers
from booking_crm.domain.bookings.ports import BookingCollaborators
from booking_crm.domain.bookings.schemas import (
    BatchBookingRequest,
    BatchBookingResult,
    BookingRead,
    CalendarEvent,
    SideEffectStatus,
)
from booking_crm.domain.bookings.service import check_slot_gates, ensure_slot_free, suspension_message
from booking_crm.domain.catalog.db_models import Service
from booking_crm.domain.catalog.service import get_service
from booking_crm.domain.contacts.db_models import Contact
from booking_crm.domain.contacts.service import get_contact
from booking_crm.domain.errors import BookingConflict, ContactSuspended, DomainError, PolicyViolation
from booking_crm.domain.notifications import email_service
from booking_crm.domain.notifications import service as notification_service
from booking_crm.domain.payments.service import ensure_payment_allowed
from booking_crm.infra.metrics import metrics
from booking_crm.settings import settings

logger = logging.getLogger(__name__)


def _session_title(request: BatchBookingRequest, index: int) -> str:
    explicit = request.sessions[index].title
    if explicit:
        return explicit
    return f"{request.title} (Session {index + 1}/{len(request.sessions)})"


def aggregate_status(succeeded: int, attempted: int) -> SideEffectStatus:
    if succeeded == attempted:
        return "success"
    if succeeded == 0:
        return "failed"
    return "partial"


async def _validate_batch(
    session: AsyncSession, collaborators: BookingCollaborators, request: BatchBookingRequest
) -> tuple[Contact, Service, list[Interval], str | None]:
    """Run every booking gate for every session; nothing is written."""
    suspension = await collaborators.suspensions.is_contact_suspended(session, request.contact_id)
    if suspension.suspended:
        raise ContactSuspended(detail=suspension_message(suspension.until), until=suspension.until)

    service = await get_service(session, request.service_id)
    if not service.is_active:
        raise PolicyViolation(detail=f"The service {service.name} is currently not bookable.", reason="service_inactive")

    contact = await get_contact(session, request.contact_id)
    ensure_payment_allowed(contact)

    buffer_before = max(0, service.buffer_time_before or 0)
    buffer_after = max(0, service.buffer_time_after or 0)
    tz = settings.local_tz
    calendar_id = None
    buffered_sessions: list[Interval] = []
    for index, item in enumerate(request.sessions):
        number = index + 1
        buffered = apply_buffers(item.start_time, item.end_time, buffer_before, buffer_after)
        if any(buffered.overlaps(other) for other in buffered_sessions):
            raise BookingConflict(detail=f"Session {number} overlaps another session of this treatment.")

        existing = await find_contact_conflicts(session, request.contact_id, Interval(item.start_time, item.end_time))
        if existing:
            titles = [booking.title for booking in existing]
            raise BookingConflict(
                detail=f"Session {number} overlaps an existing appointment: {', '.join(titles)}.",
                conflicting_titles=titles,
            )

        event = CalendarEvent(
            title=_session_title(request, index),
            description=request.description,
            start_time=item.start_time,
            end_time=item.end_time,
        )
        try:
            calendar_id = await check_slot_gates(
                session,
                event,
                buffered,
                service_id=request.service_id,
                team_member_id=request.team_member_id,
                tz=tz,
            )
        except PolicyViolation as exc:
            raise replace(exc, detail=f"Session {number}: {exc.detail}") from exc
        buffered_sessions.append(buffered)
    return contact, service, buffered_sessions, calendar_id


async def _recheck_slots(
    session: AsyncSession, request: BatchBookingRequest, buffered_sessions: Sequence[Interval]
) -> None:
    for number, (item, buffered) in enumerate(zip(request.sessions, buffered_sessions), start=1):
        if await find_contact_conflicts(session, request.contact_id, Interval(item.start_time, item.end_time)):
            raise BookingConflict(detail=f"Session {number} is no longer available.")
        try:
            await ensure_slot_free(session, buffered, team_member_id=request.team_member_id)
        except BookingConflict as exc:
            raise replace(exc, detail=f"Session {number} is no longer available. {exc.detail}") from exc


def _build_rows(
    request: BatchBookingRequest,
    session_group_id: str,
    buffered_sessions: Sequence[Interval],
    buffer_before: int,
    buffer_after: int,
    calendar_id: str | None,
) -> list[dict]:
    rows = []
    total = len(request.sessions)
    for index, (item, buffered) in enumerate(zip(request.sessions, buffered_sessions)):
        rows.append(
            {
                "booking_id": str(uuid.uuid4()),
                "contact_id": request.contact_id,
                "conversation_id": request.conversation_id,
                "service_id": request.service_id,
                "team_member_id": request.team_member_id,
                "calendar_id": calendar_id,
                "title": _session_title(request, index),
                "description": request.description,
                "start_time": item.start_time,
                "end_time": item.end_time,
                "actual_start_time": buffered.start,
                "actual_end_time": buffered.end,
                "buffer_time_before": buffer_before,
                "buffer_time_after": buffer_after,
                "status": statuses.BOOKING_STATUS_CONFIRMED,
                "payment_status": request.payment_status,
                "session_group_id": session_group_id,
                "session_number": index + 1,
                "total_sessions": total,
            }
        )
    return rows


async def _sync_calendar(
    session: AsyncSession, collaborators: BookingCollaborators, bookings: Sequence[Booking]
) -> SideEffectStatus:
    synced = 0
    for booking in bookings:
        try:
            event = CalendarEvent(
                title=booking.title,
                description=booking.description,
                start_time=booking.start_time,
                end_time=booking.end_time,
            )
            booking.calendar_event_id = await collaborators.calendar.create_event(event, booking.calendar_id)
            synced += 1
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "batch_calendar_sync_failed",
                extra={"extra": {"booking_id": booking.booking_id, "error": type(exc).__name__}},
            )
    await session.commit()
    status = aggregate_status(synced, len(bookings))
    metrics.record_side_effect("batch_calendar", status)
    return status


async def _send_emails(
    session: AsyncSession,
    collaborators: BookingCollaborators,
    bookings: Sequence[Booking],
    contact: Contact,
) -> SideEffectStatus | None:
    if not contact.email:
        return None
    sink = collaborators.notifications
    try:
        delivered = await email_service.send_batch_confirmation(
            sink, bookings, recipient=contact.email, contact_name=contact.name
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "batch_confirmation_email_failed",
            extra={"extra": {"session_group_id": bookings[0].session_group_id, "error": type(exc).__name__}},
        )
    else:
        for booking in bookings:
            booking.email_sent = delivered
        await session.commit()
        if not delivered:
            metrics.record_side_effect("batch_email", "skipped")
            return None
        metrics.record_side_effect("batch_email", "success")
        return "success"

    sent = 0
    for booking in bookings:
        try:
            booking.email_sent = await email_service.send_booking_confirmation(
                sink, booking, recipient=contact.email, contact_name=contact.name
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "batch_individual_email_failed",
                extra={"extra": {"booking_id": booking.booking_id, "error": type(exc).__name__}},
            )
            continue
        if booking.email_sent:
            sent += 1
    await session.commit()
    status = aggregate_status(sent, len(bookings))
    metrics.record_side_effect("batch_email", status)
    return status


async def _schedule_reminders(session: AsyncSession, bookings: Sequence[Booking], session_group_id: str) -> None:
    try:
        for booking in bookings:
            await notification_service.schedule_booking_reminders(session, booking)
        await session.commit()
    except Exception as exc:  # noqa: BLE001
        await session.rollback()
        logger.warning(
            "batch_reminder_schedule_failed",
            extra={"extra": {"session_group_id": session_group_id, "error": type(exc).__name__}},
        )


async def create_batch_booking(
    session: AsyncSession,
    collaborators: BookingCollaborators,
    request: BatchBookingRequest,
) -> BatchBookingResult:
    try:
        contact, service, buffered_sessions, calendar_id = await _validate_batch(session, collaborators, request)
    except DomainError as exc:
        if isinstance(exc, PolicyViolation):
            metrics.record_booking_rejection(exc.reason)
        logger.info(
            "batch_booking_rejected",
            extra={"extra": {"contact_id": request.contact_id, "error": type(exc).__name__}},
        )
        return BatchBookingResult(success=False, error=exc.detail)

    session_group_id = str(uuid.uuid4())
    rows = _build_rows(
        request,
        session_group_id,
        buffered_sessions,
        max(0, service.buffer_time_before or 0),
        max(0, service.buffer_time_after or 0),
        calendar_id,
    )
    keys = slot_lock_keys(
        buffered_sessions,
        settings.local_tz,
        team_member_id=request.team_member_id,
        conflict_scope=settings.conflict_scope,
    )

    async with collaborators.locks.hold(session, keys):
        try:
            await _recheck_slots(session, request, buffered_sessions)
            result = await session.scalars(insert(Booking).returning(Booking), rows)
            bookings = list(result.all())
            if len(bookings) != len(rows):
                raise SQLAlchemyError(f"batch insert returned {len(bookings)} of {len(rows)} rows")
            await session.commit()
        except BookingConflict as exc:
            await session.rollback()
            metrics.record_booking_rejection(exc.reason)
            return BatchBookingResult(success=False, error=exc.detail)
        except SQLAlchemyError as exc:
            await session.rollback()
            if isinstance(exc, IntegrityError) and is_active_slot_conflict(exc):
                metrics.record_booking_rejection("conflict")
                return BatchBookingResult(
                    success=False, error="One of the requested sessions is no longer available."
                )
            logger.error(
                "batch_booking_persist_failed",
                extra={"extra": {"session_group_id": session_group_id, "error": type(exc).__name__}},
            )
            return BatchBookingResult(
                success=False, error="The sessions could not be saved. No appointments were created."
            )

    metrics.record_booking("batch_created", count=len(bookings))
    logger.info(
        "batch_booking_created",
        extra={
            "extra": {
                "session_group_id": session_group_id,
                "contact_id": request.contact_id,
                "sessions": len(bookings),
            }
        },
    )

    bookings.sort(key=lambda booking: booking.session_number or 0)
    calendar_status = await _sync_calendar(session, collaborators, bookings)
    email_status = await _send_emails(session, collaborators, bookings, contact)
    created = [BookingRead.from_model(booking) for booking in bookings]
    await _schedule_reminders(session, bookings, session_group_id)

    return BatchBookingResult(
        success=True,
        session_group_id=session_group_id,
        bookings=created,
        calendar_sync_status=calendar_status,
        email_status=email_status,
    )
