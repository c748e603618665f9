from datetime import timedelta, timezone

import pytest

from booking_crm.domain.bookings import service as booking_service
from booking_crm.domain.bookings.db_models import Booking
from booking_crm.domain.bookings.events import BookingCancelled
from booking_crm.domain.contacts.service import get_contact_strike_count, is_contact_suspended, record_no_show
from booking_crm.domain.errors import ContactSuspended, InvalidBookingState, NotFound
from booking_crm.domain.waitlist import service as waitlist_service
from booking_crm.domain.waitlist.db_models import WaitlistEntry
from tests.conftest import at, event_at


async def _past_booking(session, contact, day, *, status="confirmed"):
    booking = Booking(
        contact_id=contact.contact_id,
        title="Massage",
        start_time=at(10, day=day),
        end_time=at(11, day=day),
        actual_start_time=at(10, day=day),
        actual_end_time=at(11, day=day),
        status=status,
    )
    session.add(booking)
    await session.commit()
    return booking


def _cancelled_event(start, *, service_name=None):
    return BookingCancelled(
        booking_id="b-1",
        contact_id="c-1",
        title="Massage",
        start_time=start,
        end_time=start + timedelta(hours=1),
        service_name=service_name,
    )


@pytest.mark.anyio
async def test_strikes_accumulate_until_suspension(async_session_maker, seed):
    now = at(12, day=3)
    async with async_session_maker() as session:
        contact = await seed.contact(session)
        first = await record_no_show(session, (await _past_booking(session, contact, 0)).booking_id, now=now)
        second = await record_no_show(session, (await _past_booking(session, contact, 1)).booking_id, now=now)
        third = await record_no_show(
            session, (await _past_booking(session, contact, 2)).booking_id, notes="No answer", now=now
        )
        strikes = await get_contact_strike_count(session, contact.contact_id)
        status = await is_contact_suspended(session, contact.contact_id, now=now)
        booking = await session.get(Booking, third.booking_id)

    assert (first.strike_count, second.strike_count, third.strike_count) == (1, 2, 3)
    assert first.suspension_until is None
    assert second.suspension_until is None
    assert third.suspension_until == now + timedelta(days=30)
    assert third.notes == "No answer"
    assert strikes == 3
    assert status.suspended is True
    assert status.until == (now + timedelta(days=30)).astimezone(timezone.utc)
    assert booking.status == "no_show"


@pytest.mark.anyio
async def test_configured_strike_limit_and_suspension_length(async_session_maker, seed):
    now = at(12, day=3)
    async with async_session_maker() as session:
        await seed.setting(session, "no_show_strike_limit", "1")
        await seed.setting(session, "no_show_suspension_days", "7")
        contact = await seed.contact(session)
        tracking = await record_no_show(session, (await _past_booking(session, contact, 0)).booking_id, now=now)
    assert tracking.suspension_until == now + timedelta(days=7)


@pytest.mark.anyio
async def test_suspension_expires(async_session_maker, seed):
    now = at(12, day=3)
    async with async_session_maker() as session:
        await seed.setting(session, "no_show_strike_limit", "1")
        contact = await seed.contact(session)
        await record_no_show(session, (await _past_booking(session, contact, 0)).booking_id, now=now)
        status = await is_contact_suspended(session, contact.contact_id, now=now + timedelta(days=31))
    assert status.suspended is False


@pytest.mark.anyio
async def test_suspended_contact_is_rejected_by_booking_workflow(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        await seed.setting(session, "no_show_strike_limit", "1")
        contact = await seed.contact(session)
        # Suspension runs from now, so the window is measured from the real clock here.
        await record_no_show(session, (await _past_booking(session, contact, 0)).booking_id)
        with pytest.raises(ContactSuspended):
            await booking_service.create_booking(
                session, collaborators, contact.contact_id, None, event_at(at(10, day=1), at(11, day=1))
            )


@pytest.mark.anyio
async def test_no_show_requires_confirmed_booking(async_session_maker, seed):
    async with async_session_maker() as session:
        contact = await seed.contact(session)
        cancelled = await _past_booking(session, contact, 0, status="cancelled")
        marked = await _past_booking(session, contact, 1)
        await record_no_show(session, marked.booking_id)

        with pytest.raises(InvalidBookingState):
            await record_no_show(session, cancelled.booking_id)
        with pytest.raises(InvalidBookingState):
            await record_no_show(session, marked.booking_id)
        with pytest.raises(NotFound):
            await record_no_show(session, "missing")
        assert await get_contact_strike_count(session, contact.contact_id) == 1


@pytest.mark.anyio
async def test_waitlist_matches_are_ordered_by_priority(async_session_maker, seed):
    async with async_session_maker() as session:
        entries = {}
        for priority in ("low", "urgent", "normal"):
            contact = await seed.contact(session, name=priority)
            entries[priority] = await waitlist_service.add_to_waitlist(
                session, contact_id=contact.contact_id, priority=priority
            )
        matches = await waitlist_service.find_matches(session, at(10))
    assert [entry.priority for entry in matches] == ["urgent", "normal", "low"]


@pytest.mark.anyio
async def test_waitlist_filters_by_service_and_preferred_dates(async_session_maker, seed):
    async with async_session_maker() as session:
        anna = await seed.contact(session)
        ben = await seed.contact(session, name="Ben")
        cleo = await seed.contact(session, name="Cleo")
        massage = await waitlist_service.add_to_waitlist(session, contact_id=anna.contact_id, service_type="Massage")
        await waitlist_service.add_to_waitlist(session, contact_id=ben.contact_id, service_type="Physio")
        tuesday = await waitlist_service.add_to_waitlist(
            session, contact_id=cleo.contact_id, preferred_dates=[(at(8, day=1), at(18, day=1))]
        )

        for_massage = await waitlist_service.find_matches(session, at(10), "Massage")
        on_tuesday = await waitlist_service.find_matches(session, at(10, day=1))
        on_monday = await waitlist_service.find_matches(session, at(10))

    assert [entry.entry_id for entry in for_massage] == [massage.entry_id]
    assert tuesday.entry_id in {entry.entry_id for entry in on_tuesday}
    assert tuesday.entry_id not in {entry.entry_id for entry in on_monday}


@pytest.mark.anyio
async def test_waitlist_validates_input(async_session_maker, seed):
    async with async_session_maker() as session:
        contact = await seed.contact(session)
        with pytest.raises(ValueError):
            await waitlist_service.add_to_waitlist(session, contact_id=contact.contact_id, priority="vip")
        with pytest.raises(NotFound):
            await waitlist_service.add_to_waitlist(session, contact_id="missing")


@pytest.mark.anyio
async def test_expired_entries_are_ignored_and_marked(async_session_maker, seed):
    now = at(12)
    async with async_session_maker() as session:
        contact = await seed.contact(session)
        session.add(WaitlistEntry(contact_id=contact.contact_id, expires_at=now - timedelta(days=1)))
        await session.commit()
        live = await waitlist_service.add_to_waitlist(session, contact_id=contact.contact_id)

        matches = await waitlist_service.find_matches(session, at(14), now=now)
        expired = await waitlist_service.expire_old_entries(session, now=now)
        active = await waitlist_service.get_active_waitlist(session)

    assert [entry.entry_id for entry in matches] == [live.entry_id]
    assert expired == 1
    assert [entry.entry_id for entry in active] == [live.entry_id]


@pytest.mark.anyio
async def test_matched_and_cancelled_entries_leave_the_waitlist(async_session_maker, seed):
    async with async_session_maker() as session:
        contact = await seed.contact(session)
        booking = await _past_booking(session, contact, 1)
        matched = await waitlist_service.add_to_waitlist(session, contact_id=contact.contact_id)
        dropped = await waitlist_service.add_to_waitlist(session, contact_id=contact.contact_id)

        await waitlist_service.match_to_booking(session, matched.entry_id, booking.booking_id)
        await waitlist_service.cancel_entry(session, dropped.entry_id)
        with pytest.raises(NotFound):
            await waitlist_service.cancel_entry(session, "missing")

        assert await waitlist_service.get_active_waitlist(session) == []
    assert matched.matched_booking_id == booking.booking_id


@pytest.mark.anyio
async def test_notify_continues_after_failed_send(async_session_maker, sink, seed):
    async with async_session_maker() as session:
        unreachable = await seed.contact(session, name="Ben")
        reachable = await seed.contact(session, name="Cleo")
        await waitlist_service.add_to_waitlist(session, contact_id=unreachable.contact_id, priority="urgent")
        entry = await waitlist_service.add_to_waitlist(session, contact_id=reachable.contact_id)
        sink.whatsapp_failures.add(unreachable.phone_number)

        notified = await waitlist_service.notify_waitlist_matches(session, sink, _cancelled_event(at(10)), now=at(8))
        await session.refresh(entry)

    assert notified == 1
    assert [to for to, _ in sink.whatsapp] == [reachable.phone_number]
    assert entry.notified_at == at(8).astimezone(timezone.utc)
