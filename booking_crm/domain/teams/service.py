import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.bookings.intervals import TimeWindow, parse_hhmm
from booking_crm.domain.teams.db_models import TeamMember, TeamMemberUnavailability

logger = logging.getLogger(__name__)

REASON_LABELS = {
    "vacation": "on vacation",
    "sick_leave": "on sick leave",
    "training": "in training",
    "personal": "unavailable for personal reasons",
    "emergency": "unavailable due to an emergency",
    "other": "unavailable",
}


def availability_windows(team_member: TeamMember, weekday: str) -> list[TimeWindow]:
    schedule = team_member.availability_schedule or {}
    windows: list[TimeWindow] = []
    for raw in schedule.get(weekday, []) or []:
        try:
            window = TimeWindow(start=parse_hhmm(raw["start"]), end=parse_hhmm(raw["end"]))
        except (KeyError, TypeError, ValueError):
            logger.warning(
                "team_schedule_window_invalid",
                extra={"extra": {"team_member_id": team_member.team_member_id, "weekday": weekday}},
            )
            continue
        if window.end > window.start:
            windows.append(window)
    return sorted(windows, key=lambda window: window.start)


async def overlapping_unavailability(
    session: AsyncSession, team_member_id: str, window_start: datetime, window_end: datetime
) -> list[TeamMemberUnavailability]:
    stmt = (
        select(TeamMemberUnavailability)
        .where(
            TeamMemberUnavailability.team_member_id == team_member_id,
            TeamMemberUnavailability.start_at < window_end,
            TeamMemberUnavailability.end_at > window_start,
        )
        .order_by(TeamMemberUnavailability.start_at)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


def describe_unavailability(period: TeamMemberUnavailability) -> str:
    return REASON_LABELS.get(period.reason, REASON_LABELS["other"])
