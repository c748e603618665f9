import json
from datetime import time

import pytest

from booking_crm.domain.bookings.configuration_gate import check_configuration
from booking_crm.domain.bookings.intervals import apply_buffers
from booking_crm.domain.business_hours.db_models import BusinessOpeningHours
from booking_crm.domain.errors import (
    BookingDisabled,
    CrossMidnightBooking,
    EmergencyBlocked,
    OutsideBusinessHours,
    ServiceRestrictionViolation,
)
from tests.conftest import ZURICH, at, event_at


async def _check(session, start, end, *, before=0, after=0, service_id=None):
    event = event_at(start, end)
    buffered = apply_buffers(event.start_time, event.end_time, before, after)
    await check_configuration(session, event, buffered, service_id, tz=ZURICH)


async def _monday_with_lunch_break(session):
    session.add(
        BusinessOpeningHours(
            day_of_week=0,
            is_closed=False,
            open_time=time(9),
            close_time=time(18),
            break_start=time(12),
            break_end=time(13),
        )
    )
    await session.commit()


@pytest.mark.anyio
async def test_slot_inside_opening_hours_passes(async_session_maker, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        await _check(session, at(10), at(11), before=15, after=15)


@pytest.mark.anyio
async def test_disabled_booking_is_checked_first(async_session_maker, seed):
    async with async_session_maker() as session:
        await seed.setting(session, "enable_booking", "false")
        # Would also cross midnight and fall outside opening hours.
        with pytest.raises(BookingDisabled):
            await _check(session, at(23, 45), at(0, 15, day=1))


@pytest.mark.anyio
async def test_cross_midnight_rejected_before_business_hours(async_session_maker, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session, closed_days=())
        with pytest.raises(CrossMidnightBooking) as excinfo:
            await _check(session, at(23, 45), at(0, 15, day=1), before=5, after=5)
    assert "23:40" in excinfo.value.detail
    assert "00:20" in excinfo.value.detail


@pytest.mark.anyio
async def test_buffer_alone_can_push_past_midnight(async_session_maker, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session, closed_days=(), close_at=time(23, 59))
        with pytest.raises(CrossMidnightBooking):
            await _check(session, at(23), at(23, 50), after=15)


@pytest.mark.anyio
async def test_closed_day_names_the_weekday(async_session_maker, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session, closed_days=(6,))
        with pytest.raises(OutsideBusinessHours) as excinfo:
            await _check(session, at(10, day=6), at(11, day=6))
    assert excinfo.value.detail.startswith("We are closed on Sunday")


@pytest.mark.anyio
async def test_missing_opening_hours_row_means_closed(async_session_maker):
    async with async_session_maker() as session:
        with pytest.raises(OutsideBusinessHours) as excinfo:
            await _check(session, at(10), at(11))
    assert "closed on Monday" in excinfo.value.detail


@pytest.mark.anyio
async def test_slot_spanning_lunch_break_is_rejected(async_session_maker):
    async with async_session_maker() as session:
        await _monday_with_lunch_break(session)
        with pytest.raises(OutsideBusinessHours) as excinfo:
            await _check(session, at(11, 30), at(13, 30))
    assert "Available times: 09:00-12:00, 13:00-18:00" in excinfo.value.detail


@pytest.mark.anyio
async def test_slot_filling_a_window_exactly_passes(async_session_maker):
    async with async_session_maker() as session:
        await _monday_with_lunch_break(session)
        await _check(session, at(9), at(12))
        await _check(session, at(13), at(18))


@pytest.mark.anyio
async def test_buffers_count_against_opening_hours(async_session_maker, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session, open_at=time(8), close_at=time(20))
        with pytest.raises(OutsideBusinessHours) as excinfo:
            await _check(session, at(8), at(9), before=15)
    assert "07:45-09:00" in excinfo.value.detail


@pytest.mark.anyio
async def test_emergency_blocker_rejects_covered_day(async_session_maker, seed):
    blockers = [
        {"id": "b1", "start_date": "2030-06-01", "end_date": "2030-06-03", "reason": "Renovation"},
    ]
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        await seed.setting(session, "emergency_blocker_slots", json.dumps(blockers))
        with pytest.raises(EmergencyBlocked) as excinfo:
            await _check(session, at(10), at(11))
        await _check(session, at(10, day=1), at(11, day=1))
    assert "(Renovation)" in excinfo.value.detail


@pytest.mark.anyio
async def test_malformed_blockers_are_skipped(async_session_maker, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        await seed.setting(session, "emergency_blocker_slots", json.dumps([{"id": "broken"}]))
        await _check(session, at(10), at(11))
        await seed.setting(session, "emergency_blocker_slots", "not json")
        await _check(session, at(10), at(11))


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("restriction", "start", "end", "rule"),
    [
        ({"min_slot_hours": 2}, (10, 0), (11, 0), "min_slot_hours"),
        ({"max_slot_hours": 1}, (10, 0), (12, 0), "max_slot_hours"),
        ({"only_mornings": True}, (11, 30), (12, 30), "only_mornings"),
        ({"only_afternoons": True}, (11, 0), (12, 0), "only_afternoons"),
        ({"excluded_days": ["Monday"]}, (10, 0), (11, 0), "excluded_days"),
    ],
)
async def test_service_restrictions(async_session_maker, seed, restriction, start, end, rule):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        service = await seed.service(session)
        await seed.setting(session, "service_time_restrictions", json.dumps({service.service_id: restriction}))
        with pytest.raises(ServiceRestrictionViolation) as excinfo:
            await _check(session, at(*start), at(*end), service_id=service.service_id)
    assert excinfo.value.rule == rule


@pytest.mark.anyio
async def test_weekday_only_service_rejects_saturday(async_session_maker, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        service = await seed.service(session)
        await seed.setting(
            session, "service_time_restrictions", json.dumps({service.service_id: {"only_weekdays": True}})
        )
        with pytest.raises(ServiceRestrictionViolation) as excinfo:
            await _check(session, at(10, day=5), at(11, day=5), service_id=service.service_id)
        await _check(session, at(10), at(11), service_id=service.service_id)
    assert excinfo.value.rule == "only_weekdays"


@pytest.mark.anyio
async def test_restrictions_for_other_services_do_not_apply(async_session_maker, seed):
    async with async_session_maker() as session:
        await seed.opening_hours(session)
        service = await seed.service(session)
        await seed.setting(session, "service_time_restrictions", json.dumps({"other": {"only_mornings": True}}))
        await _check(session, at(15), at(16), service_id=service.service_id)
