from __future__ import annotations

import asyncio
import logging
import re
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import date, timedelta
from typing import AsyncIterator, Iterable
from zoneinfo import ZoneInfo

from sqlalchemy import and_, or_, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.bookings import statuses
from booking_crm.domain.bookings.db_models import Booking
from booking_crm.domain.bookings.intervals import Interval, occupied_interval, to_local

logger = logging.getLogger(__name__)

OVERLAP_CONSTRAINT_NAMES = frozenset(
    {
        "bookings_team_member_buffered_no_overlap",
        "uq_bookings_active_slot",
    }
)
_EXCLUSION_VIOLATION = "23P01"
_UNIQUE_VIOLATION = "23505"
_ACTIVE_SLOT_KEY_RE = re.compile(r"Key \((?P<columns>[^)]*)\)=")
_ACTIVE_SLOT_COLUMNS = ("team_member_id", "actual_start_time")

# Legacy rows without stored buffered times are pre-filtered by this margin.
LEGACY_BUFFER_MARGIN = timedelta(days=1)


def conflict_message(titles: Iterable[str]) -> str:
    joined = ", ".join(titles)
    return (
        f"Booking conflict detected (including buffer times). Overlaps with: {joined}. "
        "Please choose a different time slot."
    )


async def find_global_conflicts(
    session: AsyncSession,
    candidate: Interval,
    *,
    team_member_id: str | None,
    conflict_scope: str,
    exclude_booking_id: str | None = None,
) -> list[Booking]:
    """Confirmed bookings whose occupied interval overlaps ``candidate``.

    Rows written before buffered columns existed are recomputed from their raw
    times and their own buffer minutes.
    """
    if conflict_scope == "team_member" and team_member_id:
        return []

    stmt = select(Booking).where(
        Booking.status == statuses.BOOKING_STATUS_CONFIRMED,
        or_(
            and_(
                Booking.actual_start_time.is_not(None),
                Booking.actual_end_time.is_not(None),
                Booking.actual_start_time < candidate.end,
                Booking.actual_end_time > candidate.start,
            ),
            and_(
                or_(Booking.actual_start_time.is_(None), Booking.actual_end_time.is_(None)),
                Booking.start_time < candidate.end + LEGACY_BUFFER_MARGIN,
                Booking.end_time > candidate.start - LEGACY_BUFFER_MARGIN,
            ),
        ),
    )
    if conflict_scope == "team_member":
        stmt = stmt.where(Booking.team_member_id.is_(None))
    if exclude_booking_id:
        stmt = stmt.where(Booking.booking_id != exclude_booking_id)
    result = await session.execute(stmt.order_by(Booking.start_time))
    return [booking for booking in result.scalars().all() if booking_interval(booking).overlaps(candidate)]


async def find_team_member_conflicts(
    session: AsyncSession,
    team_member_id: str,
    candidate: Interval,
    *,
    exclude_booking_id: str | None = None,
) -> list[Booking]:
    stmt = select(Booking).where(
        Booking.team_member_id == team_member_id,
        Booking.status.in_(statuses.BLOCKING_STATUSES),
        Booking.actual_start_time < candidate.end,
        Booking.actual_end_time > candidate.start,
    )
    if exclude_booking_id:
        stmt = stmt.where(Booking.booking_id != exclude_booking_id)
    result = await session.execute(stmt.order_by(Booking.actual_start_time))
    return list(result.scalars().all())


async def find_contact_conflicts(
    session: AsyncSession, contact_id: str, candidate: Interval
) -> list[Booking]:
    """Active bookings of one contact overlapping the candidate's requested times."""
    stmt = select(Booking).where(
        Booking.contact_id == contact_id,
        Booking.status.in_(statuses.BLOCKING_STATUSES),
        Booking.start_time < candidate.end,
        Booking.end_time > candidate.start,
    )
    result = await session.execute(stmt.order_by(Booking.start_time))
    return list(result.scalars().all())


def booking_interval(booking: Booking) -> Interval:
    return occupied_interval(
        start_time=booking.start_time,
        end_time=booking.end_time,
        actual_start_time=booking.actual_start_time,
        actual_end_time=booking.actual_end_time,
        buffer_time_before=booking.buffer_time_before,
        buffer_time_after=booking.buffer_time_after,
    )


def slot_lock_keys(
    intervals: Iterable[Interval],
    tz: ZoneInfo,
    *,
    team_member_id: str | None,
    conflict_scope: str,
) -> list[str]:
    scope = team_member_id if team_member_id and conflict_scope == "team_member" else "global"
    days: set[date] = set()
    for interval in intervals:
        days.add(to_local(interval.start, tz).date())
        days.add(to_local(interval.end, tz).date())
    return sorted(f"booking-slot:{scope}:{day.isoformat()}" for day in days)


class BookingLockRegistry:
    """Serializes slot writes per lock key.

    In-process ``asyncio.Lock`` objects cover a single worker; on Postgres the
    transaction-scoped advisory lock covers every worker sharing the database.
    Keys are always taken in sorted order.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @property
    def active_keys(self) -> list[str]:
        return sorted(self._locks)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _release(self, key: str) -> None:
        remaining = self._holders[key] - 1
        if remaining:
            self._holders[key] = remaining
            return
        # Nobody holds or waits for this key any more.
        del self._holders[key]
        self._locks.pop(key, None)

    @asynccontextmanager
    async def hold(self, session: AsyncSession, keys: Iterable[str]) -> AsyncIterator[None]:
        ordered = sorted(set(keys))
        for key in ordered:
            self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with AsyncExitStack() as stack:
                for key in ordered:
                    await stack.enter_async_context(self._lock_for(key))
                await acquire_advisory_locks(session, ordered)
                yield
        finally:
            for key in ordered:
                self._release(key)


async def acquire_advisory_locks(session: AsyncSession, keys: list[str]) -> None:
    if session.get_bind().dialect.name != "postgresql":
        return
    for key in keys:
        await session.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key})


def _pg_error_fields(exc: IntegrityError) -> tuple[str | None, str | None, str]:
    orig = getattr(exc, "orig", None)
    diag = getattr(orig, "diag", None)
    constraint = getattr(diag, "constraint_name", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    message = str(orig) if orig is not None else str(exc)
    return constraint, sqlstate, message


def is_booking_overlap_integrity_error(exc: IntegrityError) -> bool:
    constraint, sqlstate, message = _pg_error_fields(exc)
    if constraint:
        return constraint in OVERLAP_CONSTRAINT_NAMES
    if sqlstate == _EXCLUSION_VIOLATION:
        return True
    return any(name in message for name in OVERLAP_CONSTRAINT_NAMES)


def is_active_slot_conflict(exc: IntegrityError) -> bool:
    if is_booking_overlap_integrity_error(exc):
        return True
    _, sqlstate, message = _pg_error_fields(exc)
    if sqlstate not in (None, _UNIQUE_VIOLATION):
        return False
    match = _ACTIVE_SLOT_KEY_RE.search(message)
    if match:
        columns = tuple(column.strip() for column in match.group("columns").split(","))
        return columns == _ACTIVE_SLOT_COLUMNS
    # SQLite reports the offending columns instead of the index name.
    return "UNIQUE constraint failed: bookings.team_member_id, bookings.actual_start_time" in message
