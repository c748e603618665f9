import asyncio
from datetime import timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from booking_crm.domain.bookings import service as booking_service
from booking_crm.domain.bookings.cancellation import cancel_booking
from booking_crm.domain.bookings.conflicts import BookingLockRegistry
from booking_crm.domain.bookings.db_models import Booking
from booking_crm.domain.bookings.schemas import BookingOptions, BookingUpdate
from booking_crm.domain.contacts.db_models import NoShowTracking
from booking_crm.domain.errors import (
    BookingConflict,
    ContactSuspended,
    InvalidBookingState,
    NotFound,
    OutsideBusinessHours,
    OutstandingBalance,
    PersistenceFailure,
    SideEffectFailure,
)
from booking_crm.domain.notifications.db_models import ReminderLog, ReviewRequest
from booking_crm.settings import settings
from tests.conftest import at, event_at


async def _count(session, model) -> int:
    return await session.scalar(select(func.count()).select_from(model))


async def _book(session, collaborators, contact, start, end, *, title="Massage", **options):
    return await booking_service.create_booking(
        session,
        collaborators,
        contact.contact_id,
        "conv-1",
        event_at(start, end, title=title),
        BookingOptions(**options),
    )


@pytest.mark.anyio
async def test_create_booking_runs_every_side_effect(async_session_maker, collaborators, calendar, sink, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        service = await seed.service(session, buffer_time_before=10, buffer_time_after=15)
        booking = await _book(session, collaborators, contact, at(10), at(11), service_id=service.service_id)

        assert booking.status == "confirmed"
        assert booking.calendar_event_id == "evt-1"
        assert booking.email_sent is True
        assert booking.buffer_time_before == 10
        assert booking.buffer_time_after == 15
        assert booking.actual_start_time == at(9, 50).astimezone(timezone.utc)
        assert booking.actual_end_time == at(11, 15).astimezone(timezone.utc)
        assert await _count(session, ReminderLog) == 1
        assert await _count(session, ReviewRequest) == 1

    assert calendar.created[0][1].title == "Massage"
    assert sink.emails[0][0] == "anna@example.com"


@pytest.mark.anyio
async def test_overlapping_request_names_the_conflicting_booking(async_session_maker, collaborators, calendar, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        await _book(session, collaborators, contact, at(10), at(11), title="A")

        with pytest.raises(BookingConflict) as excinfo:
            await _book(session, collaborators, contact, at(10, 30), at(11, 30), title="B")

        assert await _count(session, Booking) == 1
    assert excinfo.value.conflicting_titles == ["A"]
    assert "Overlaps with: A" in excinfo.value.detail
    assert len(calendar.created) == 1


@pytest.mark.anyio
async def test_back_to_back_bookings_are_allowed(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        await _book(session, collaborators, contact, at(10), at(11), title="A")
        await _book(session, collaborators, contact, at(11), at(12), title="B")
        assert await _count(session, Booking) == 2


@pytest.mark.anyio
async def test_stored_buffers_make_adjacent_slot_conflict(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        service = await seed.service(session, buffer_time_after=15)
        await _book(session, collaborators, contact, at(10), at(11), title="A", service_id=service.service_id)

        with pytest.raises(BookingConflict):
            await _book(session, collaborators, contact, at(11), at(12), title="B")
        await _book(session, collaborators, contact, at(11, 15), at(12, 15), title="C")


@pytest.mark.anyio
async def test_team_member_scope_allows_parallel_members(async_session_maker, collaborators, seed):
    settings.conflict_scope = "team_member"
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        service = await seed.service(session)
        lea = await seed.team_member(session, service=service)
        mia = await seed.team_member(session, service=service, name="Mia", calendar_id="mia@example.com")

        first = await _book(
            session, collaborators, contact, at(10), at(11), service_id=service.service_id, team_member_id=lea.team_member_id
        )
        second = await _book(
            session, collaborators, contact, at(10), at(11), service_id=service.service_id, team_member_id=mia.team_member_id
        )
        with pytest.raises(BookingConflict):
            await _book(
                session,
                collaborators,
                contact,
                at(10, 30),
                at(11, 30),
                service_id=service.service_id,
                team_member_id=lea.team_member_id,
            )

    assert first.calendar_id == "lea@example.com"
    assert second.calendar_id == "mia@example.com"


@pytest.mark.anyio
async def test_global_scope_blocks_other_members(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        service = await seed.service(session)
        lea = await seed.team_member(session, service=service)
        mia = await seed.team_member(session, service=service, name="Mia")
        await _book(
            session, collaborators, contact, at(10), at(11), service_id=service.service_id, team_member_id=lea.team_member_id
        )
        with pytest.raises(BookingConflict):
            await _book(
                session, collaborators, contact, at(10), at(11), service_id=service.service_id, team_member_id=mia.team_member_id
            )


@pytest.mark.anyio
async def test_validation_is_repeatable_and_writes_nothing(async_session_maker, collaborators, calendar, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        service = await seed.service(session, buffer_time_before=5)
        event = event_at(at(10), at(11))
        options = BookingOptions(service_id=service.service_id)

        first = await booking_service.validate_and_prepare(session, collaborators, contact.contact_id, None, event, options)
        second = await booking_service.validate_and_prepare(session, collaborators, contact.contact_id, None, event, options)

        assert first == second
        assert first.service_name == "Massage"
        assert first.interval.start == at(9, 55).astimezone(timezone.utc)
        assert await _count(session, Booking) == 0
    assert calendar.created == []


@pytest.mark.anyio
async def test_closed_day_is_rejected_with_weekday(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session, closed_days=(6,))
        contact = await seed.contact(session)
        with pytest.raises(OutsideBusinessHours) as excinfo:
            await _book(session, collaborators, contact, at(10, day=6), at(11, day=6))
    assert "We are closed on Sunday" in excinfo.value.detail


@pytest.mark.anyio
async def test_unknown_contact_is_not_found(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        with pytest.raises(NotFound):
            await booking_service.create_booking(session, collaborators, "missing", None, event_at(at(10), at(11)))


@pytest.mark.anyio
async def test_suspended_contact_cannot_book(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        session.add(
            NoShowTracking(
                contact_id=contact.contact_id,
                no_show_date=at(10) - timedelta(days=30),
                strike_count=3,
                suspension_until=at(12, day=20),
            )
        )
        await session.commit()

        with pytest.raises(ContactSuspended) as excinfo:
            await _book(session, collaborators, contact, at(10), at(11))
    assert excinfo.value.detail.startswith("Booking privileges suspended until 23.06.2030")


@pytest.mark.anyio
async def test_outstanding_balance_blocks_until_allowance(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session, outstanding_balance_chf=Decimal("80.00"))
        with pytest.raises(OutstandingBalance) as excinfo:
            await _book(session, collaborators, contact, at(10), at(11))
        assert "CHF 80.00" in excinfo.value.detail

        contact.payment_allowance_granted = True
        await session.commit()
        booking = await _book(session, collaborators, contact, at(10), at(11))
    assert booking.status == "confirmed"


@pytest.mark.anyio
async def test_calendar_failure_leaves_no_booking(async_session_maker, collaborators, calendar, sink, seed):
    calendar.fail_create = True
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        with pytest.raises(PersistenceFailure):
            await _book(session, collaborators, contact, at(10), at(11))
        assert await _count(session, Booking) == 0
    assert sink.emails == []


@pytest.mark.anyio
async def test_fatal_email_failure_rolls_back_row_and_event(async_session_maker, collaborators, calendar, sink, seed):
    sink.fail_email = True
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        with pytest.raises(SideEffectFailure) as excinfo:
            await _book(session, collaborators, contact, at(10), at(11))
        assert await _count(session, Booking) == 0
        assert await _count(session, ReminderLog) == 0
    assert excinfo.value.effect == "email"
    assert calendar.deleted == ["evt-1"]


@pytest.mark.anyio
async def test_best_effort_email_failure_keeps_booking(async_session_maker, collaborators, sink, seed):
    settings.email_failure_policy = "best_effort"
    sink.fail_email = True
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        booking = await _book(session, collaborators, contact, at(10), at(11))
        assert await _count(session, Booking) == 1
    assert booking.email_sent is False


@pytest.mark.anyio
async def test_contact_without_email_skips_confirmation(async_session_maker, collaborators, sink, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session, email=None)
        booking = await _book(session, collaborators, contact, at(10), at(11))
    assert booking.email_sent is False
    assert sink.emails == []


@pytest.mark.anyio
async def test_secretary_is_notified_when_configured(async_session_maker, collaborators, sink, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        await seed.setting(session, "secretary_email", "desk@example.com")
        contact = await seed.contact(session)
        await _book(session, collaborators, contact, at(10), at(11))
    recipients = [recipient for recipient, _, _ in sink.emails]
    assert recipients == ["anna@example.com", "desk@example.com"]


@pytest.mark.anyio
async def test_rollback_never_raises(async_session_maker, collaborators, calendar, seed):
    calendar.fail_delete = True
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        booking = await _book(session, collaborators, contact, at(10), at(11))

        await booking_service.rollback_booking(session, collaborators, booking.booking_id, booking.calendar_event_id)
        await booking_service.rollback_booking(session, collaborators, "missing", None)

        assert await _count(session, Booking) == 0
        assert await _count(session, ReminderLog) == 0


@pytest.mark.anyio
async def test_lock_registry_serializes_same_key(async_session_maker):
    registry = BookingLockRegistry()
    order: list[str] = []

    async def hold(name: str) -> None:
        async with async_session_maker() as session:
            async with registry.hold(session, ["booking-slot:global:2030-06-03"]):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

    await asyncio.gather(hold("a"), hold("b"))
    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
    assert registry.active_keys == []


@pytest.mark.anyio
async def test_lock_registry_forgets_released_days(async_session_maker):
    registry = BookingLockRegistry()
    seen: list[list[str]] = []

    async with async_session_maker() as session:
        for day in range(1, 31):
            key = f"booking-slot:global:2030-06-{day:02d}"
            async with registry.hold(session, [key]):
                seen.append(registry.active_keys)

        with pytest.raises(RuntimeError):
            async with registry.hold(session, ["booking-slot:global:2030-07-01"]):
                raise RuntimeError("insert failed")

    assert seen[0] == ["booking-slot:global:2030-06-01"]
    assert all(len(keys) == 1 for keys in seen)
    assert registry.active_keys == []


@pytest.mark.anyio
async def test_update_text_fields_syncs_calendar(async_session_maker, collaborators, calendar, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        booking = await _book(session, collaborators, contact, at(10), at(11))
        updated = await booking_service.update_booking(
            session, collaborators, booking.booking_id, BookingUpdate(title="Deep tissue massage")
        )
    assert updated.title == "Deep tissue massage"
    assert updated.start_time == at(10).astimezone(timezone.utc)
    assert calendar.updated[0][0] == "evt-1"


@pytest.mark.anyio
async def test_reschedule_recomputes_buffered_interval(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        service = await seed.service(session, buffer_time_before=10)
        booking = await _book(session, collaborators, contact, at(10), at(11), service_id=service.service_id)
        # The stored buffer is used even if the service changes later.
        service.buffer_time_before = 30
        await session.commit()

        updated = await booking_service.update_booking(
            session, collaborators, booking.booking_id, BookingUpdate(start_time=at(14), end_time=at(15))
        )
    assert updated.actual_start_time == at(13, 50).astimezone(timezone.utc)


@pytest.mark.anyio
async def test_reschedule_into_conflict_keeps_original_times(async_session_maker, collaborators, calendar, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        await _book(session, collaborators, contact, at(10), at(11), title="A")
        other = await _book(session, collaborators, contact, at(14), at(15), title="B")

        with pytest.raises(BookingConflict):
            await booking_service.update_booking(
                session, collaborators, other.booking_id, BookingUpdate(start_time=at(10, 30), end_time=at(11, 30))
            )
        stored = await session.get(Booking, other.booking_id)
        await session.refresh(stored)
    assert stored.start_time == at(14).astimezone(timezone.utc)
    assert calendar.updated == []


@pytest.mark.anyio
async def test_failed_reschedule_commit_moves_calendar_event_back(
    async_session_maker, collaborators, calendar, seed, monkeypatch
):
    async def failing_commit():
        raise SQLAlchemyError("disk full")

    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        booking = await _book(session, collaborators, contact, at(10), at(11))
        booking_id = booking.booking_id

        monkeypatch.setattr(session, "commit", failing_commit)
        with pytest.raises(PersistenceFailure):
            await booking_service.update_booking(
                session, collaborators, booking_id, BookingUpdate(start_time=at(14), end_time=at(15))
            )
        monkeypatch.undo()

    async with async_session_maker() as session:
        stored = await session.get(Booking, booking_id)

    assert [event_id for event_id, _ in calendar.updated] == ["evt-1", "evt-1"]
    assert calendar.updated[0][1].start_time == at(14).astimezone(timezone.utc)
    assert calendar.updated[1][1].start_time == at(10).astimezone(timezone.utc)
    assert calendar.updated[1][1].end_time == at(11).astimezone(timezone.utc)
    assert stored.start_time == at(10).astimezone(timezone.utc)


@pytest.mark.anyio
async def test_cancelled_booking_cannot_be_updated(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        booking = await _book(session, collaborators, contact, at(10), at(11))
        await cancel_booking(session, collaborators, booking.booking_id, now=at(10) - timedelta(days=7))
        with pytest.raises(InvalidBookingState):
            await booking_service.update_booking(session, collaborators, booking.booking_id, BookingUpdate(title="X"))


@pytest.mark.anyio
async def test_booking_stats(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        contact = await seed.contact(session)
        await _book(session, collaborators, contact, at(9), at(10), discount_amount=Decimal("15.50"))
        late = await _book(session, collaborators, contact, at(11), at(12))
        await _book(session, collaborators, contact, at(13), at(14))
        await cancel_booking(session, collaborators, late.booking_id, now=at(11) - timedelta(hours=2))

        stats = await booking_service.get_booking_stats(session)

    assert stats.total == 3
    assert stats.confirmed == 2
    assert stats.cancelled == 1
    assert stats.cancellation_rate == 33.33
    assert stats.penalties_applied == 1
    assert stats.total_penalty_fees == "50.00"
    assert stats.total_discounts == "15.50"


@pytest.mark.anyio
async def test_empty_stats(async_session_maker):
    async with async_session_maker() as session:
        stats = await booking_service.get_booking_stats(session)
    assert stats.total == 0
    assert stats.cancellation_rate == 0.0
    assert stats.total_penalty_fees == "0.00"
