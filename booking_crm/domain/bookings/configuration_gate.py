from __future__ import annotations

import logging
from datetime import time
from zoneinfo import ZoneInfo

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.bookings.intervals import (
    Interval,
    crosses_day_boundary,
    fits_within_any,
    format_hhmm,
    local_time_span,
    to_local,
    weekday_name,
)
from booking_crm.domain.bookings.policy import EmergencyBlocker, ServiceTimeRestrictions
from booking_crm.domain.bookings.schemas import CalendarEvent
from booking_crm.domain.business_hours.service import get_available_windows
from booking_crm.domain.errors import (
    BookingDisabled,
    CrossMidnightBooking,
    EmergencyBlocked,
    OutsideBusinessHours,
    ServiceRestrictionViolation,
)
from booking_crm.domain.settings_store import service as settings_store
from booking_crm.domain.settings_store.service import SettingsStore

logger = logging.getLogger(__name__)

NOON = time(12, 0)
WEEKEND = frozenset({"saturday", "sunday"})
_blocker_list = TypeAdapter(list[dict])


async def check_configuration(
    session: AsyncSession,
    event: CalendarEvent,
    buffered: Interval,
    service_id: str | None,
    *,
    tz: ZoneInfo,
) -> None:
    """Run the business-configuration checks in order; the first violation raises."""
    store = SettingsStore(session)

    if not await store.get_bool(settings_store.ENABLE_BOOKING, True):
        raise BookingDisabled(
            detail="Online booking is currently disabled. Please contact us directly to make an appointment."
        )

    if crosses_day_boundary(buffered, tz):
        start_local, end_local = local_time_span(buffered, tz)
        raise CrossMidnightBooking(
            detail=(
                f"Including preparation and follow-up time the appointment would run from "
                f"{format_hhmm(start_local)} to {format_hhmm(end_local)} on the next day. "
                "Appointments cannot span midnight; please choose an earlier time."
            )
        )

    await _check_business_hours(session, buffered, tz)
    await _check_emergency_blockers(store, event, tz)
    if service_id:
        await _check_service_restrictions(store, event, service_id, tz)


async def _check_business_hours(session: AsyncSession, buffered: Interval, tz: ZoneInfo) -> None:
    local_start = to_local(buffered.start, tz)
    day_label = weekday_name(buffered.start, tz).capitalize()
    windows = await get_available_windows(session, local_start.weekday())
    if not windows:
        raise OutsideBusinessHours(detail=f"We are closed on {day_label}. Please choose another day.")
    start_time, end_time = local_time_span(buffered, tz)
    if not fits_within_any(start_time, end_time, windows):
        available = ", ".join(window.label() for window in windows)
        raise OutsideBusinessHours(
            detail=(
                f"The requested time {format_hhmm(start_time)}-{format_hhmm(end_time)} "
                f"(including buffer times) is outside our opening hours on {day_label}. "
                f"Available times: {available}."
            )
        )


async def _check_emergency_blockers(store: SettingsStore, event: CalendarEvent, tz: ZoneInfo) -> None:
    raw = await store.get_json(settings_store.EMERGENCY_BLOCKER_SLOTS, [])
    try:
        entries = _blocker_list.validate_python(raw)
    except ValidationError:
        logger.warning("emergency_blockers_malformed")
        return
    day = to_local(event.start_time, tz).date()
    for entry in entries:
        try:
            blocker = EmergencyBlocker.model_validate(entry)
        except ValidationError:
            logger.warning("emergency_blocker_skipped", extra={"extra": {"blocker_id": entry.get("id")}})
            continue
        if blocker.covers(day):
            reason = f" ({blocker.reason})" if blocker.reason else ""
            raise EmergencyBlocked(
                detail=(
                    f"Bookings are not possible between {blocker.start_date.isoformat()} and "
                    f"{blocker.end_date.isoformat()}{reason}. Please choose another date."
                )
            )


async def _check_service_restrictions(
    store: SettingsStore, event: CalendarEvent, service_id: str, tz: ZoneInfo
) -> None:
    raw = await store.get_json(settings_store.SERVICE_TIME_RESTRICTIONS, {})
    if not isinstance(raw, dict) or not raw.get(service_id):
        return
    try:
        restrictions = ServiceTimeRestrictions.model_validate(raw[service_id])
    except ValidationError:
        logger.warning("service_restrictions_malformed", extra={"extra": {"service_id": service_id}})
        return
    if restrictions.is_empty:
        return

    start_local = to_local(event.start_time, tz)
    end_local = to_local(event.end_time, tz)
    duration_hours = (event.end_time - event.start_time).total_seconds() / 3600
    day = weekday_name(event.start_time, tz)

    if restrictions.min_slot_hours is not None and duration_hours < restrictions.min_slot_hours:
        raise ServiceRestrictionViolation(
            detail=f"This service requires a booking of at least {restrictions.min_slot_hours:g} hours.",
            rule="min_slot_hours",
        )
    if restrictions.max_slot_hours is not None and duration_hours > restrictions.max_slot_hours:
        raise ServiceRestrictionViolation(
            detail=f"This service can be booked for at most {restrictions.max_slot_hours:g} hours.",
            rule="max_slot_hours",
        )
    if restrictions.only_mornings and (start_local.time() > NOON or end_local.time() > NOON):
        raise ServiceRestrictionViolation(
            detail="This service is only available in the morning (ending by 12:00).",
            rule="only_mornings",
        )
    if restrictions.only_afternoons and start_local.time() < NOON:
        raise ServiceRestrictionViolation(
            detail="This service is only available in the afternoon (starting from 12:00).",
            rule="only_afternoons",
        )
    if restrictions.only_weekdays and day in WEEKEND:
        raise ServiceRestrictionViolation(
            detail="This service is only available on weekdays (Monday to Friday).",
            rule="only_weekdays",
        )
    if day in restrictions.excluded_days:
        raise ServiceRestrictionViolation(
            detail=f"This service is not available on {day.capitalize()}.",
            rule="excluded_days",
        )
