import asyncio
import itertools
import sys
from datetime import datetime, time
from decimal import Decimal
from pathlib import Path
from zoneinfo import ZoneInfo

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from booking_crm.dependencies import get_collaborators
from booking_crm.domain.bookings.ports import BookingCollaborators
from booking_crm.domain.bookings.schemas import BookingUpdate, CalendarEvent, TimeSlot
from booking_crm.domain.business_hours.db_models import BusinessOpeningHours
from booking_crm.domain.catalog.db_models import Service, ServiceTeamMember
from booking_crm.domain.contacts.db_models import Contact
from booking_crm.domain.contacts.service import NoShowSuspensionOracle
from booking_crm.domain.settings_store.service import SettingsStore
from booking_crm.domain.teams.db_models import TeamMember
from booking_crm.infra.calendar import build_time_slots
from booking_crm.infra.communication import CommunicationResult
from booking_crm.infra.db import Base, get_db_session
from booking_crm.main import app
from booking_crm.services import register_booking_listeners
from booking_crm.settings import settings

ZURICH = ZoneInfo("Europe/Zurich")
# Monday, well in the future so reminders are always schedulable.
BOOKING_DAY = (2030, 6, 3)


def at(hour: int, minute: int = 0, *, day: int = 0) -> datetime:
    year, month, base_day = BOOKING_DAY
    return datetime(year, month, base_day + day, hour, minute, tzinfo=ZURICH)


def event_at(start: datetime, end: datetime, title: str = "Massage") -> CalendarEvent:
    return CalendarEvent(title=title, start_time=start, end_time=end)


class FakeCalendarProvider:
    def __init__(self) -> None:
        self.created: list[tuple[str, CalendarEvent, str | None]] = []
        self.updated: list[tuple[str, BookingUpdate]] = []
        self.deleted: list[str] = []
        self.busy: list[tuple[datetime, datetime]] = []
        self.fail_create = False
        self.fail_update = False
        self.fail_delete = False
        self.fail_create_after: int | None = None

    async def create_event(self, event: CalendarEvent, calendar_id: str | None = None) -> str:
        if self.fail_create:
            raise RuntimeError("calendar unavailable")
        if self.fail_create_after is not None and len(self.created) >= self.fail_create_after:
            raise RuntimeError("calendar quota exceeded")
        event_id = f"evt-{len(self.created) + 1}"
        self.created.append((event_id, event, calendar_id))
        return event_id

    async def update_event(self, event_id: str, changes: BookingUpdate, calendar_id: str | None = None) -> None:
        if self.fail_update:
            raise RuntimeError("calendar unavailable")
        self.updated.append((event_id, changes))

    async def delete_event(self, event_id: str, calendar_id: str | None = None) -> None:
        if self.fail_delete:
            raise RuntimeError("calendar unavailable")
        self.deleted.append(event_id)

    async def get_availability(
        self, start: datetime, end: datetime, calendar_id: str | None = None
    ) -> list[TimeSlot]:
        return build_time_slots(start, end, self.busy)


class FakeNotificationSink:
    def __init__(self) -> None:
        self.whatsapp: list[tuple[str, str]] = []
        self.emails: list[tuple[str, str, str]] = []
        self.fail_email = False
        self.fail_batch_email = False
        self.email_delivered = True
        self.whatsapp_failures: set[str] = set()

    async def send_whatsapp(self, *, to_number: str, body: str) -> CommunicationResult:
        if to_number in self.whatsapp_failures:
            raise RuntimeError("whatsapp unavailable")
        self.whatsapp.append((to_number, body))
        return CommunicationResult(status="sent", provider_msg_id=f"wa-{len(self.whatsapp)}")

    async def send_email(self, *, recipient: str, subject: str, body: str) -> bool:
        if self.fail_email:
            raise RuntimeError("smtp unavailable")
        if self.fail_batch_email and subject.startswith("Treatment Plan"):
            raise RuntimeError("smtp unavailable")
        self.emails.append((recipient, subject, body))
        return self.email_delivered


class FakePaymentGateway:
    def __init__(self) -> None:
        self.refunds: list[tuple[str, Decimal | None]] = []
        self.links: list[dict] = []
        self.fail_refund = False
        self.fail_link = False

    async def refund_payment(self, payment_intent_id: str, *, amount=None, idempotency_key=None) -> str:
        if self.fail_refund:
            raise RuntimeError("stripe unavailable")
        self.refunds.append((payment_intent_id, amount))
        return f"re_{len(self.refunds)}"

    async def create_payment_intent(self, *, amount, currency, metadata=None, idempotency_key=None) -> str:
        return "pi_test"

    async def create_payment_link(
        self, *, amount, currency, description, metadata=None, customer_email=None, idempotency_key=None
    ) -> str:
        if self.fail_link:
            raise RuntimeError("stripe unavailable")
        self.links.append({"amount": amount, "currency": currency, "metadata": metadata})
        return f"https://pay.example.com/{len(self.links)}"


class Seed:
    """Row factories for the booking tables."""

    def __init__(self) -> None:
        self._phones = itertools.count(1)

    async def contact(self, session, **overrides) -> Contact:
        values = {
            "name": "Anna Muster",
            "phone_number": f"+4179{next(self._phones):07d}",
            "email": "anna@example.com",
        }
        values.update(overrides)
        contact = Contact(**values)
        session.add(contact)
        await session.commit()
        return contact

    async def service(self, session, **overrides) -> Service:
        values = {
            "name": "Massage",
            "duration_minutes": 60,
            "buffer_time_before": 0,
            "buffer_time_after": 0,
            "price_chf": Decimal("120.00"),
            "is_active": True,
        }
        values.update(overrides)
        service = Service(**values)
        session.add(service)
        await session.commit()
        return service

    async def team_member(self, session, *, service: Service | None = None, **overrides) -> TeamMember:
        workday = [{"start": "08:00", "end": "18:00"}]
        values = {
            "name": "Lea",
            "calendar_id": "lea@example.com",
            "is_active": True,
            "availability_schedule": {
                day: workday for day in ("monday", "tuesday", "wednesday", "thursday", "friday")
            },
        }
        values.update(overrides)
        member = TeamMember(**values)
        session.add(member)
        await session.flush()
        if service is not None:
            session.add(
                ServiceTeamMember(service_id=service.service_id, team_member_id=member.team_member_id)
            )
        await session.commit()
        return member

    async def opening_hours(self, session, *, closed_days=(6,), open_at=time(8, 0), close_at=time(20, 0)) -> None:
        for day in range(7):
            session.add(
                BusinessOpeningHours(
                    day_of_week=day,
                    is_closed=day in closed_days,
                    open_time=None if day in closed_days else open_at,
                    close_time=None if day in closed_days else close_at,
                )
            )
        await session.commit()

    async def setting(self, session, key: str, value: str) -> None:
        await SettingsStore(session).set(key, value)
        await session.commit()


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture(autouse=True)
def restore_settings():
    original_scope = settings.conflict_scope
    original_policy = settings.email_failure_policy
    original_testing = settings.testing
    original_app_env = settings.app_env
    original_metrics_token = settings.metrics_token
    settings.testing = True
    yield
    settings.conflict_scope = original_scope
    settings.email_failure_policy = original_policy
    settings.testing = original_testing
    settings.app_env = original_app_env
    settings.metrics_token = original_metrics_token


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def calendar():
    return FakeCalendarProvider()


@pytest.fixture
def sink():
    return FakeNotificationSink()


@pytest.fixture
def payments():
    return FakePaymentGateway()


@pytest.fixture
def collaborators(calendar, sink, payments):
    return register_booking_listeners(
        BookingCollaborators(
            calendar=calendar,
            notifications=sink,
            payments=payments,
            suspensions=NoShowSuspensionOracle(),
        )
    )


@pytest.fixture
def seed():
    return Seed()


@pytest.fixture()
def client(async_session_maker, collaborators):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[get_collaborators] = lambda: collaborators
    app.state.db_session_factory = async_session_maker
    transport = httpx.ASGITransport(app=app)
    yield httpx.AsyncClient(transport=transport, base_url="http://testserver")
    app.dependency_overrides.clear()
