"""Capabilities the booking workflow consumes, bundled for injection."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Coroutine, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.bookings.conflicts import BookingLockRegistry
from booking_crm.domain.bookings.events import BookingEventDispatcher
from booking_crm.domain.bookings.schemas import BookingUpdate, CalendarEvent, TimeSlot
from booking_crm.domain.contacts.service import SuspensionStatus
from booking_crm.infra.communication import CommunicationResult


class CalendarProvider(Protocol):
    async def create_event(self, event: CalendarEvent, calendar_id: str | None = None) -> str: ...

    async def update_event(
        self, event_id: str, changes: BookingUpdate, calendar_id: str | None = None
    ) -> None: ...

    async def delete_event(self, event_id: str, calendar_id: str | None = None) -> None: ...

    async def get_availability(
        self, start: datetime, end: datetime, calendar_id: str | None = None
    ) -> list[TimeSlot]: ...


class NotificationSink(Protocol):
    async def send_whatsapp(self, *, to_number: str, body: str) -> CommunicationResult: ...

    async def send_email(self, *, recipient: str, subject: str, body: str) -> bool: ...


class PaymentGateway(Protocol):
    async def refund_payment(
        self,
        payment_intent_id: str,
        *,
        amount: Decimal | None = None,
        idempotency_key: str | None = None,
    ) -> str: ...

    async def create_payment_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> str: ...

    async def create_payment_link(
        self,
        *,
        amount: Decimal,
        currency: str,
        description: str,
        metadata: dict[str, str] | None = None,
        customer_email: str | None = None,
        idempotency_key: str | None = None,
    ) -> str: ...


class SuspensionOracle(Protocol):
    async def is_contact_suspended(self, session: AsyncSession, contact_id: str) -> SuspensionStatus: ...


@dataclass
class BookingCollaborators:
    calendar: CalendarProvider
    notifications: NotificationSink
    payments: PaymentGateway
    suspensions: SuspensionOracle
    events: BookingEventDispatcher = field(default_factory=BookingEventDispatcher)
    locks: BookingLockRegistry = field(default_factory=BookingLockRegistry)
    background: set[asyncio.Task] = field(default_factory=set)

    def spawn(self, work: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run ``work`` without blocking the caller; the task stays referenced until it finishes."""
        task = asyncio.get_running_loop().create_task(work)
        self.background.add(task)
        task.add_done_callback(self.background.discard)
        return task

    async def drain(self) -> None:
        if self.background:
            await asyncio.gather(*self.background, return_exceptions=True)
