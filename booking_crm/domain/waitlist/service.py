import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.bookings.events import BookingCancelled, BookingCancelledHandler
from booking_crm.domain.bookings.intervals import ensure_utc
from booking_crm.domain.bookings.ports import NotificationSink
from booking_crm.domain.contacts.db_models import Contact
from booking_crm.domain.errors import NotFound
from booking_crm.domain.waitlist.db_models import WAITLIST_PRIORITIES, WaitlistEntry
from booking_crm.infra.metrics import metrics
from booking_crm.settings import settings

logger = logging.getLogger(__name__)

_PRIORITY_RANK = {priority: rank for rank, priority in enumerate(WAITLIST_PRIORITIES)}


async def add_to_waitlist(
    session: AsyncSession,
    *,
    contact_id: str,
    preferred_dates: list[tuple[datetime, datetime]] | None = None,
    service_type: str | None = None,
    priority: str = "normal",
    notes: str | None = None,
) -> WaitlistEntry:
    if priority not in _PRIORITY_RANK:
        raise ValueError(f"Unknown waitlist priority: {priority}")
    if await session.get(Contact, contact_id) is None:
        raise NotFound(detail=f"Contact {contact_id} not found")
    entry = WaitlistEntry(
        contact_id=contact_id,
        service_type=service_type,
        preferred_dates=[
            {"start": ensure_utc(start).isoformat(), "end": ensure_utc(end).isoformat()}
            for start, end in preferred_dates or []
        ],
        priority=priority,
        status="active",
        notes=notes,
    )
    session.add(entry)
    await session.commit()
    await session.refresh(entry)
    return entry


def _prefers(entry: WaitlistEntry, slot_start: datetime) -> bool:
    for preferred in entry.preferred_dates or []:
        try:
            range_start = ensure_utc(datetime.fromisoformat(preferred["start"]))
            range_end = ensure_utc(datetime.fromisoformat(preferred["end"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("waitlist_preferred_date_invalid", extra={"extra": {"entry_id": entry.entry_id}})
            continue
        if range_start <= slot_start <= range_end:
            return True
    return False


def _matches(entry: WaitlistEntry, slot_start: datetime, service_type: str | None) -> bool:
    if entry.service_type and service_type:
        return entry.service_type == service_type
    if entry.preferred_dates:
        return _prefers(entry, slot_start)
    return True


async def find_matches(
    session: AsyncSession,
    slot_start: datetime,
    service_type: str | None = None,
    *,
    now: datetime | None = None,
) -> list[WaitlistEntry]:
    """Active entries interested in a freed slot, highest priority and oldest first."""
    current = now or datetime.now(timezone.utc)
    slot_start = ensure_utc(slot_start)
    result = await session.execute(
        select(WaitlistEntry).where(
            WaitlistEntry.status == "active",
            WaitlistEntry.expires_at >= current,
        )
    )
    matches = [entry for entry in result.scalars().all() if _matches(entry, slot_start, service_type)]
    matches.sort(key=lambda entry: (-_PRIORITY_RANK.get(entry.priority, 0), entry.created_at))
    return matches


async def get_active_waitlist(session: AsyncSession) -> list[WaitlistEntry]:
    result = await session.execute(select(WaitlistEntry).where(WaitlistEntry.status == "active"))
    entries = list(result.scalars().all())
    entries.sort(key=lambda entry: (-_PRIORITY_RANK.get(entry.priority, 0), entry.created_at))
    return entries


async def match_to_booking(session: AsyncSession, entry_id: str, booking_id: str) -> None:
    entry = await session.get(WaitlistEntry, entry_id)
    if entry is None:
        raise NotFound(detail=f"Waitlist entry {entry_id} not found")
    entry.status = "matched"
    entry.matched_booking_id = booking_id
    await session.commit()


async def cancel_entry(session: AsyncSession, entry_id: str) -> None:
    entry = await session.get(WaitlistEntry, entry_id)
    if entry is None:
        raise NotFound(detail=f"Waitlist entry {entry_id} not found")
    entry.status = "cancelled"
    await session.commit()


async def expire_old_entries(session: AsyncSession, *, now: datetime | None = None) -> int:
    current = now or datetime.now(timezone.utc)
    result = await session.execute(
        update(WaitlistEntry)
        .where(WaitlistEntry.status == "active", WaitlistEntry.expires_at < current)
        .values(status="expired")
    )
    await session.commit()
    return result.rowcount or 0


def slot_opened_message(name: str | None, title: str | None, start: datetime) -> str:
    local_start = ensure_utc(start).astimezone(settings.local_tz)
    when = f"{local_start.strftime('%A, %B')} {local_start.day}, {local_start.year} at {local_start.strftime('%H:%M')}"
    return (
        f"Hi {name or 'there'}! A {title or 'appointment'} slot has opened up on {when}. "
        "Would you like to book it? Reply YES to confirm."
    )


async def notify_waitlist_matches(
    session: AsyncSession,
    sink: NotificationSink,
    event: BookingCancelled,
    *,
    now: datetime | None = None,
) -> int:
    """Message every match for a freed slot. Each send is independent."""
    current = now or datetime.now(timezone.utc)
    matches = await find_matches(session, event.start_time, event.service_name, now=current)
    notified = 0
    for entry in matches:
        try:
            contact = await session.get(Contact, entry.contact_id)
            if contact is None:
                continue
            outcome = await sink.send_whatsapp(
                to_number=contact.phone_number,
                body=slot_opened_message(contact.name, event.title, event.start_time),
            )
            if not outcome.delivered:
                logger.warning(
                    "waitlist_notification_failed",
                    extra={"extra": {"entry_id": entry.entry_id, "error_code": outcome.error_code}},
                )
                continue
            entry.notified_at = current
            await session.flush()
            notified += 1
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "waitlist_notification_failed",
                extra={"extra": {"entry_id": entry.entry_id, "error": type(exc).__name__}},
            )
    await session.commit()
    metrics.record_side_effect("waitlist", "sent" if notified else "skipped")
    logger.info(
        "waitlist_notified",
        extra={"extra": {"booking_id": event.booking_id, "matches": len(matches), "notified": notified}},
    )
    return notified


def build_waitlist_listener(sink: NotificationSink) -> BookingCancelledHandler:
    async def on_booking_cancelled(session: AsyncSession, event: BookingCancelled) -> None:
        await notify_waitlist_matches(session, sink, event)

    return on_booking_cancelled
