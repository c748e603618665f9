from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.bookings.intervals import TimeWindow
from booking_crm.domain.business_hours.db_models import BusinessOpeningHours


def windows_for_hours(hours: BusinessOpeningHours | None) -> list[TimeWindow]:
    if hours is None or hours.is_closed or hours.open_time is None or hours.close_time is None:
        return []
    if hours.close_time <= hours.open_time:
        return []
    has_break = (
        hours.break_start is not None
        and hours.break_end is not None
        and hours.open_time < hours.break_start < hours.break_end < hours.close_time
    )
    if not has_break:
        return [TimeWindow(start=hours.open_time, end=hours.close_time)]
    return [
        TimeWindow(start=hours.open_time, end=hours.break_start),
        TimeWindow(start=hours.break_end, end=hours.close_time),
    ]


async def get_opening_hours(session: AsyncSession, day_of_week: int) -> BusinessOpeningHours | None:
    return await session.scalar(
        select(BusinessOpeningHours).where(BusinessOpeningHours.day_of_week == day_of_week)
    )


async def get_available_windows(session: AsyncSession, day_of_week: int) -> list[TimeWindow]:
    """Bookable windows for a weekday: none when closed, split in two around a break."""
    return windows_for_hours(await get_opening_hours(session, day_of_week))
