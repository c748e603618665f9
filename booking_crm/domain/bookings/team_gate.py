from __future__ import annotations

from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.bookings.conflicts import find_team_member_conflicts
from booking_crm.domain.bookings.intervals import (
    Interval,
    fits_within_any,
    format_hhmm,
    local_time_span,
    to_local,
    weekday_name,
)
from booking_crm.domain.catalog.service import is_team_member_assigned
from booking_crm.domain.errors import BookingConflict, TeamMemberUnavailable
from booking_crm.domain.teams.db_models import TeamMember
from booking_crm.domain.teams.service import (
    availability_windows,
    describe_unavailability,
    overlapping_unavailability,
)


async def check_team_member_availability(
    session: AsyncSession,
    team_member_id: str,
    service_id: str | None,
    buffered: Interval,
    *,
    tz: ZoneInfo,
    exclude_booking_id: str | None = None,
) -> str | None:
    """Validate a team member for the buffered interval and return their calendar id."""
    member = await session.get(TeamMember, team_member_id)
    if member is None or not member.is_active:
        raise TeamMemberUnavailable(detail="The selected team member is not available for bookings.")

    if service_id and not await is_team_member_assigned(session, service_id, team_member_id):
        raise TeamMemberUnavailable(detail=f"{member.name} is not assigned to this service.")

    weekday = weekday_name(buffered.start, tz)
    windows = availability_windows(member, weekday)
    if not windows:
        raise TeamMemberUnavailable(detail=f"{member.name} does not work on {weekday.capitalize()}.")

    start_time, end_time = local_time_span(buffered, tz)
    if not fits_within_any(start_time, end_time, windows):
        available = ", ".join(window.label() for window in windows)
        raise TeamMemberUnavailable(
            detail=(
                f"{member.name} is not available from {format_hhmm(start_time)} to {format_hhmm(end_time)} "
                f"(including buffer times). Available on {weekday.capitalize()}: {available}."
            )
        )

    periods = await overlapping_unavailability(session, team_member_id, buffered.start, buffered.end)
    if periods:
        period = periods[0]
        until = to_local(period.end_at, tz).strftime("%Y-%m-%d %H:%M")
        raise TeamMemberUnavailable(
            detail=f"{member.name} is {describe_unavailability(period)} until {until}. Please choose another time."
        )

    conflicts = await find_team_member_conflicts(
        session, team_member_id, buffered, exclude_booking_id=exclude_booking_id
    )
    if conflicts:
        titles = [booking.title for booking in conflicts]
        raise BookingConflict(
            detail=(
                f"{member.name} already has a booking at this time (including buffer times): "
                f"{', '.join(titles)}. Please choose a different time slot."
            ),
            conflicting_titles=titles,
        )

    return member.calendar_id or None
