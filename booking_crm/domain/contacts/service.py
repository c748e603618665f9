import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.bookings import statuses
from booking_crm.domain.bookings.db_models import Booking
from booking_crm.domain.contacts.db_models import Contact, NoShowTracking
from booking_crm.domain.errors import InvalidBookingState, NotFound
from booking_crm.domain.settings_store import service as settings_store
from booking_crm.domain.settings_store.service import SettingsStore
from booking_crm.infra.metrics import metrics

logger = logging.getLogger(__name__)

DEFAULT_STRIKE_LIMIT = 3
DEFAULT_SUSPENSION_DAYS = 30


@dataclass(frozen=True)
class SuspensionStatus:
    suspended: bool
    until: datetime | None = None


async def get_contact(session: AsyncSession, contact_id: str) -> Contact:
    contact = await session.get(Contact, contact_id)
    if contact is None:
        raise NotFound(detail=f"Contact {contact_id} not found")
    return contact


async def is_contact_suspended(
    session: AsyncSession, contact_id: str, *, now: datetime | None = None
) -> SuspensionStatus:
    current = now or datetime.now(timezone.utc)
    until = await session.scalar(
        select(func.max(NoShowTracking.suspension_until)).where(
            NoShowTracking.contact_id == contact_id,
            NoShowTracking.suspension_until.is_not(None),
            NoShowTracking.suspension_until >= current,
        )
    )
    if until is None:
        return SuspensionStatus(suspended=False)
    if until.tzinfo is None:
        until = until.replace(tzinfo=timezone.utc)
    return SuspensionStatus(suspended=True, until=until)


async def get_contact_strike_count(session: AsyncSession, contact_id: str) -> int:
    strikes = await session.scalar(
        select(func.max(NoShowTracking.strike_count)).where(NoShowTracking.contact_id == contact_id)
    )
    return int(strikes or 0)


async def record_no_show(
    session: AsyncSession,
    booking_id: str,
    *,
    notes: str | None = None,
    now: datetime | None = None,
) -> NoShowTracking:
    current = now or datetime.now(timezone.utc)
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise NotFound(detail=f"Booking {booking_id} not found")
    if booking.status == statuses.BOOKING_STATUS_NO_SHOW:
        raise InvalidBookingState(detail=f"Booking {booking_id} is already marked as no-show")
    statuses.assert_valid_transition(booking.status, statuses.BOOKING_STATUS_NO_SHOW)

    store = SettingsStore(session)
    strike_limit = await store.get_int(settings_store.NO_SHOW_STRIKE_LIMIT, DEFAULT_STRIKE_LIMIT)
    suspension_days = await store.get_int(settings_store.NO_SHOW_SUSPENSION_DAYS, DEFAULT_SUSPENSION_DAYS)

    strike_count = await get_contact_strike_count(session, booking.contact_id) + 1
    suspension_until = None
    if strike_count >= strike_limit:
        suspension_until = current + timedelta(days=suspension_days)

    tracking = NoShowTracking(
        contact_id=booking.contact_id,
        booking_id=booking.booking_id,
        no_show_date=booking.start_time,
        strike_count=strike_count,
        suspension_until=suspension_until,
        notes=notes,
    )
    booking.status = statuses.BOOKING_STATUS_NO_SHOW
    session.add(tracking)
    await session.commit()
    metrics.record_booking("no_show")
    logger.info(
        "booking_no_show_recorded",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "contact_id": booking.contact_id,
                "strike_count": strike_count,
                "suspended": suspension_until is not None,
            }
        },
    )
    return tracking


class NoShowSuspensionOracle:
    """Suspension lookups backed by the no-show tracking table."""

    async def is_contact_suspended(self, session: AsyncSession, contact_id: str) -> SuspensionStatus:
        return await is_contact_suspended(session, contact_id)
