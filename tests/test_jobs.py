from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from booking_crm.domain.notifications.db_models import ReminderLog
from booking_crm.domain.waitlist.db_models import WaitlistEntry
from booking_crm.jobs import run


@pytest.mark.anyio
async def test_reminder_job_sends_due_reminders(async_session_maker, sink, seed):
    now = datetime.now(timezone.utc)
    async with async_session_maker() as session:
        contact = await seed.contact(session)
        session.add_all(
            [
                ReminderLog(
                    contact_id=contact.contact_id,
                    message_content="See you tomorrow",
                    scheduled_for=now - timedelta(hours=1),
                ),
                ReminderLog(
                    contact_id=contact.contact_id,
                    message_content="Later",
                    scheduled_for=now + timedelta(days=1),
                ),
            ]
        )
        await session.commit()

    outcomes = await run.run_cycle(
        async_session_maker, ["booking-reminders"], [run._job_runner("booking-reminders", sink)]
    )

    async with async_session_maker() as session:
        statuses = sorted((await session.scalars(select(ReminderLog.status))).all())

    assert outcomes == {"booking-reminders": True}
    assert sink.whatsapp == [(contact.phone_number, "See you tomorrow")]
    assert statuses == ["scheduled", "sent"]


@pytest.mark.anyio
async def test_failing_job_does_not_stop_the_cycle(async_session_maker, sink, seed):
    async with async_session_maker() as session:
        contact = await seed.contact(session)
        session.add(
            WaitlistEntry(contact_id=contact.contact_id, expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        )
        await session.commit()

    async def broken(session):
        raise RuntimeError("provider down")

    outcomes = await run.run_cycle(
        async_session_maker,
        ["booking-reminders", "waitlist-expiry"],
        [broken, run._job_runner("waitlist-expiry", sink)],
    )

    async with async_session_maker() as session:
        entry = await session.scalar(select(WaitlistEntry))

    assert outcomes == {"booking-reminders": False, "waitlist-expiry": True}
    assert entry.status == "expired"


def test_unknown_job_is_rejected(sink):
    with pytest.raises(ValueError, match="unknown_job:nightly"):
        run._job_runner("nightly", sink)
