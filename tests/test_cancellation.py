import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from booking_crm.domain.bookings import service as booking_service
from booking_crm.domain.bookings.cancellation import cancel_booking
from booking_crm.domain.bookings.db_models import Booking
from booking_crm.domain.bookings.schemas import BookingOptions
from booking_crm.domain.errors import InvalidBookingState, NotFound
from booking_crm.domain.notifications.db_models import ReminderLog
from booking_crm.domain.payments.db_models import PaymentTransaction
from booking_crm.domain.waitlist.service import add_to_waitlist
from tests.conftest import at, event_at


async def _confirmed_booking(session, collaborators, seed, *, contact=None, **options):
    await seed.opening_hours(session)
    contact = contact or await seed.contact(session)
    return await booking_service.create_booking(
        session,
        collaborators,
        contact.contact_id,
        None,
        event_at(at(10), at(11)),
        BookingOptions(**options),
    )


async def _penalties(session) -> list[PaymentTransaction]:
    result = await session.execute(select(PaymentTransaction).where(PaymentTransaction.payment_type == "penalty"))
    return list(result.scalars().all())


@pytest.mark.anyio
async def test_early_cancellation_removes_event_without_fee(async_session_maker, collaborators, calendar, sink, seed):
    async with async_session_maker() as session:
        booking = await _confirmed_booking(session, collaborators, seed)
        result = await cancel_booking(
            session, collaborators, booking.booking_id, "Feeling better", now=at(10) - timedelta(days=3)
        )
        stored = await session.get(Booking, booking.booking_id)
        reminder_statuses = (await session.execute(select(ReminderLog.status))).scalars().all()
        penalties = await _penalties(session)

    assert result.penalty_applied is False
    assert result.penalty_fee == Decimal("0.00")
    assert result.refunded is False
    assert stored.status == "cancelled"
    assert stored.cancellation_reason == "Feeling better"
    assert stored.calendar_event_id is None
    assert calendar.deleted == ["evt-1"]
    assert reminder_statuses == ["cancelled"]
    assert penalties == []
    assert sink.emails[-1][1].startswith("Appointment Cancelled")


@pytest.mark.anyio
async def test_exactly_at_policy_boundary_is_free(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        booking = await _confirmed_booking(session, collaborators, seed)
        result = await cancel_booking(session, collaborators, booking.booking_id, now=at(10) - timedelta(hours=24))
    assert result.penalty_applied is False


@pytest.mark.anyio
async def test_late_cancellation_charges_fixed_fee(async_session_maker, collaborators, payments, sink, seed):
    async with async_session_maker() as session:
        contact = await seed.contact(session)
        booking = await _confirmed_booking(session, collaborators, seed, contact=contact)
        result = await cancel_booking(session, collaborators, booking.booking_id, now=at(8))
        await collaborators.drain()
        penalties = await _penalties(session)
        stored = await session.get(Booking, booking.booking_id)

    assert result.penalty_applied is True
    assert result.penalty_fee == Decimal("50.00")
    assert stored.penalty_applied is True
    assert stored.penalty_fee == Decimal("50.00")
    assert len(penalties) == 1
    assert penalties[0].amount == Decimal("50.00")
    assert penalties[0].status == "pending"
    assert payments.links[0]["amount"] == Decimal("50.00")
    assert payments.links[0]["metadata"] == {"booking_id": booking.booking_id, "payment_type": "penalty"}
    to_number, body = sink.whatsapp[-1]
    assert to_number == contact.phone_number
    assert "https://pay.example.com/1" in body
    assert "CHF 50.00" in body


@pytest.mark.anyio
async def test_percentage_fee_uses_service_price(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        await seed.setting(session, "late_cancellation_penalty_type", "percentage")
        await seed.setting(session, "late_cancellation_penalty_amount", "25")
        await seed.setting(session, "cancellation_policy_hours", "48")
        service = await seed.service(session, price_chf=Decimal("120.00"))
        booking = await _confirmed_booking(session, collaborators, seed, service_id=service.service_id)
        result = await cancel_booking(session, collaborators, booking.booking_id, now=at(10) - timedelta(hours=30))
    assert result.penalty_fee == Decimal("30.00")


@pytest.mark.anyio
async def test_paid_booking_is_refunded_on_early_cancellation(async_session_maker, collaborators, payments, seed):
    async with async_session_maker() as session:
        booking = await _confirmed_booking(session, collaborators, seed, payment_status="paid")
        transaction = PaymentTransaction(
            booking_id=booking.booking_id,
            contact_id=booking.contact_id,
            amount=Decimal("120.00"),
            status="succeeded",
            payment_type="booking",
            stripe_payment_intent_id="pi_123",
        )
        session.add(transaction)
        await session.commit()

        result = await cancel_booking(session, collaborators, booking.booking_id, now=at(10) - timedelta(days=2))
        await session.refresh(transaction)
        stored = await session.get(Booking, booking.booking_id)

    assert result.refunded is True
    assert payments.refunds == [("pi_123", Decimal("120.00"))]
    assert transaction.status == "refunded"
    assert transaction.stripe_refund_id == "re_1"
    assert stored.payment_status == "refunded"


@pytest.mark.anyio
async def test_paid_booking_without_stripe_payment_is_not_refunded(async_session_maker, collaborators, payments, seed):
    async with async_session_maker() as session:
        booking = await _confirmed_booking(session, collaborators, seed, payment_status="paid")
        result = await cancel_booking(session, collaborators, booking.booking_id, now=at(10) - timedelta(days=2))
    assert result.refunded is False
    assert payments.refunds == []


@pytest.mark.anyio
async def test_late_cancellation_of_paid_booking_is_not_refunded(async_session_maker, collaborators, payments, seed):
    async with async_session_maker() as session:
        booking = await _confirmed_booking(session, collaborators, seed, payment_status="paid")
        result = await cancel_booking(session, collaborators, booking.booking_id, now=at(9))
    assert result.refunded is False
    assert result.penalty_applied is True
    assert payments.refunds == []


@pytest.mark.anyio
async def test_provider_failures_do_not_stop_cancellation(
    async_session_maker, collaborators, calendar, payments, sink, seed
):
    async with async_session_maker() as session:
        booking = await _confirmed_booking(session, collaborators, seed, payment_status="paid")
        session.add(
            PaymentTransaction(
                booking_id=booking.booking_id,
                contact_id=booking.contact_id,
                amount=Decimal("120.00"),
                status="succeeded",
                stripe_payment_intent_id="pi_123",
            )
        )
        await session.commit()
        calendar.fail_delete = True
        payments.fail_refund = True
        sink.fail_email = True

        result = await cancel_booking(session, collaborators, booking.booking_id, now=at(10) - timedelta(days=2))
        stored = await session.get(Booking, booking.booking_id)

    assert result.refunded is False
    assert stored.status == "cancelled"
    assert stored.calendar_event_id == "evt-1"


@pytest.mark.anyio
async def test_payment_link_failure_keeps_penalty(async_session_maker, collaborators, payments, seed):
    payments.fail_link = True
    async with async_session_maker() as session:
        booking = await _confirmed_booking(session, collaborators, seed)
        result = await cancel_booking(session, collaborators, booking.booking_id, now=at(9))
        await collaborators.drain()
        penalties = await _penalties(session)
    assert result.penalty_applied is True
    assert len(penalties) == 1
    assert payments.links == []


@pytest.mark.anyio
async def test_slow_payment_link_does_not_delay_cancellation(async_session_maker, collaborators, payments, seed):
    release = asyncio.Event()
    create_link = payments.create_payment_link

    async def slow_create_link(**kwargs):
        await release.wait()
        return await create_link(**kwargs)

    payments.create_payment_link = slow_create_link
    async with async_session_maker() as session:
        booking = await _confirmed_booking(session, collaborators, seed)
        result = await cancel_booking(session, collaborators, booking.booking_id, now=at(9))
        stored = await session.get(Booking, booking.booking_id)

        assert stored.status == "cancelled"
        assert result.penalty_applied is True
        assert payments.links == []
        assert len(collaborators.background) == 1

        release.set()
        await collaborators.drain()

    assert len(payments.links) == 1
    assert collaborators.background == set()


@pytest.mark.anyio
async def test_cancelling_twice_is_rejected(async_session_maker, collaborators, seed):
    async with async_session_maker() as session:
        booking = await _confirmed_booking(session, collaborators, seed)
        await cancel_booking(session, collaborators, booking.booking_id, now=at(10) - timedelta(days=2))
        with pytest.raises(InvalidBookingState):
            await cancel_booking(session, collaborators, booking.booking_id, now=at(10) - timedelta(days=2))


@pytest.mark.anyio
async def test_unknown_booking_is_not_found(async_session_maker, collaborators):
    async with async_session_maker() as session:
        with pytest.raises(NotFound):
            await cancel_booking(session, collaborators, "missing")


@pytest.mark.anyio
async def test_cancellation_notifies_waitlist_and_secretary(async_session_maker, collaborators, sink, seed):
    async with async_session_maker() as session:
        await seed.setting(session, "secretary_email", "desk@example.com")
        waiting = await seed.contact(session, name="Ben", email=None)
        await add_to_waitlist(session, contact_id=waiting.contact_id, preferred_dates=[(at(8), at(18))])
        booking = await _confirmed_booking(session, collaborators, seed)
        await cancel_booking(session, collaborators, booking.booking_id, now=at(10) - timedelta(days=2))

    assert sink.whatsapp[-1][0] == waiting.phone_number
    assert sink.whatsapp[-1][1].startswith("Hi Ben! A Massage slot has opened up on Monday, June 3, 2030 at 10:00.")
    assert ("desk@example.com", "Booking Cancelled - Anna Muster") in [
        (recipient, subject) for recipient, subject, _ in sink.emails
    ]
