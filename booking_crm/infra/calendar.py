from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from booking_crm.domain.bookings.schemas import BookingUpdate, CalendarEvent, TimeSlot
from booking_crm.settings import settings
from booking_crm.shared.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

GCAL_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GCAL_API_TRANSPORT: httpx.AsyncBaseTransport | None = None
SLOT_MINUTES = 30


class CalendarProviderError(RuntimeError):
    pass


class CalendarEventNotFound(CalendarProviderError):
    pass


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_iso_datetime(value: str) -> datetime:
    return _ensure_aware(datetime.fromisoformat(value.replace("Z", "+00:00")))


def build_time_slots(
    start: datetime,
    end: datetime,
    busy: list[tuple[datetime, datetime]],
    *,
    slot_minutes: int = SLOT_MINUTES,
) -> list[TimeSlot]:
    """Split ``[start, end)`` into fixed slots marked unavailable when they touch a busy period."""
    slots: list[TimeSlot] = []
    step = timedelta(minutes=slot_minutes)
    current = _ensure_aware(start)
    end = _ensure_aware(end)
    while current < end:
        slot_end = current + step
        is_busy = any(busy_start < slot_end and busy_end > current for busy_start, busy_end in busy)
        slots.append(TimeSlot(start=current, end=slot_end, available=not is_busy))
        current = slot_end
    return slots


def _event_payload(event: CalendarEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "summary": event.title,
        "description": event.description or "",
        "start": {"dateTime": event.start_time.isoformat(), "timeZone": settings.business_timezone},
        "end": {"dateTime": event.end_time.isoformat(), "timeZone": settings.business_timezone},
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": 24 * 60},
                {"method": "popup", "minutes": 120},
            ],
        },
    }
    if event.attendees:
        payload["attendees"] = [{"email": email} for email in event.attendees]
    return payload


def _patch_payload(changes: BookingUpdate) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if changes.title:
        payload["summary"] = changes.title
    if changes.description is not None:
        payload["description"] = changes.description
    if changes.start_time is not None:
        payload["start"] = {"dateTime": changes.start_time.isoformat(), "timeZone": settings.business_timezone}
    if changes.end_time is not None:
        payload["end"] = {"dateTime": changes.end_time.isoformat(), "timeZone": settings.business_timezone}
    return payload


class GoogleCalendarProvider:
    def __init__(
        self,
        access_token: str,
        *,
        default_calendar_id: str = "primary",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.default_calendar_id = default_calendar_id
        self._client = httpx.AsyncClient(
            base_url=GCAL_API_BASE_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=httpx.Timeout(settings.calendar_timeout_seconds, connect=5.0),
            transport=transport,
        )
        self._breaker = CircuitBreaker(
            name="calendar",
            failure_threshold=settings.calendar_circuit_failure_threshold,
            recovery_time=settings.calendar_circuit_recovery_seconds,
            timeout_seconds=settings.calendar_timeout_seconds,
            ignored_exceptions=(CalendarEventNotFound,),
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _calendar(self, calendar_id: str | None) -> str:
        return calendar_id or self.default_calendar_id

    async def create_event(self, event: CalendarEvent, calendar_id: str | None = None) -> str:
        target = self._calendar(calendar_id)

        async def _create() -> str:
            response = await self._client.post(f"/calendars/{target}/events", json=_event_payload(event))
            if response.status_code >= 400:
                raise CalendarProviderError(f"gcal_event_create_failed:{response.status_code}")
            return response.json()["id"]

        event_id = await self._breaker.call(_create)
        logger.info("calendar_event_created", extra={"extra": {"event_id": event_id, "calendar_id": target}})
        return event_id

    async def update_event(
        self, event_id: str, changes: BookingUpdate, calendar_id: str | None = None
    ) -> None:
        target = self._calendar(calendar_id)
        payload = _patch_payload(changes)
        if not payload:
            return

        async def _patch() -> None:
            response = await self._client.patch(f"/calendars/{target}/events/{event_id}", json=payload)
            if response.status_code in (404, 410):
                raise CalendarEventNotFound(event_id)
            if response.status_code >= 400:
                raise CalendarProviderError(f"gcal_event_update_failed:{response.status_code}")

        await self._breaker.call(_patch)

    async def delete_event(self, event_id: str, calendar_id: str | None = None) -> None:
        target = self._calendar(calendar_id)

        async def _delete() -> None:
            response = await self._client.delete(f"/calendars/{target}/events/{event_id}")
            if response.status_code in (404, 410):
                raise CalendarEventNotFound(event_id)
            if response.status_code >= 400:
                raise CalendarProviderError(f"gcal_event_delete_failed:{response.status_code}")

        try:
            await self._breaker.call(_delete)
        except CalendarEventNotFound:
            logger.info("calendar_event_already_deleted", extra={"extra": {"event_id": event_id}})

    async def get_availability(
        self, start: datetime, end: datetime, calendar_id: str | None = None
    ) -> list[TimeSlot]:
        target = self._calendar(calendar_id)

        async def _freebusy() -> list[tuple[datetime, datetime]]:
            response = await self._client.post(
                "/freeBusy",
                json={
                    "timeMin": _ensure_aware(start).isoformat(),
                    "timeMax": _ensure_aware(end).isoformat(),
                    "timeZone": settings.business_timezone,
                    "items": [{"id": target}],
                },
            )
            if response.status_code >= 400:
                raise CalendarProviderError(f"gcal_freebusy_failed:{response.status_code}")
            calendars = response.json().get("calendars", {})
            busy = calendars.get(target, {}).get("busy", [])
            return [(_parse_iso_datetime(item["start"]), _parse_iso_datetime(item["end"])) for item in busy]

        return build_time_slots(start, end, await self._breaker.call(_freebusy))


class NoopCalendarProvider:
    """Calendar stand-in for deployments without a calendar integration."""

    async def create_event(self, event: CalendarEvent, calendar_id: str | None = None) -> str:
        event_id = f"local-{uuid.uuid4()}"
        logger.info("calendar_event_skipped", extra={"extra": {"event_id": event_id, "mode": "noop"}})
        return event_id

    async def update_event(
        self, event_id: str, changes: BookingUpdate, calendar_id: str | None = None
    ) -> None:
        del event_id, changes, calendar_id

    async def delete_event(self, event_id: str, calendar_id: str | None = None) -> None:
        del event_id, calendar_id

    async def get_availability(
        self, start: datetime, end: datetime, calendar_id: str | None = None
    ) -> list[TimeSlot]:
        del calendar_id
        return build_time_slots(start, end, [])


CALENDAR_PROVIDER_FACTORY: Callable[[str], GoogleCalendarProvider] = lambda access_token: GoogleCalendarProvider(
    access_token,
    default_calendar_id=settings.google_calendar_default_id,
    transport=GCAL_API_TRANSPORT,
)


def resolve_calendar_provider(app_settings) -> GoogleCalendarProvider | NoopCalendarProvider:
    if app_settings.calendar_mode != "google" or getattr(app_settings, "testing", False):
        return NoopCalendarProvider()
    if not app_settings.google_calendar_access_token:
        logger.warning("calendar_not_configured")
        return NoopCalendarProvider()
    return CALENDAR_PROVIDER_FACTORY(app_settings.google_calendar_access_token)
