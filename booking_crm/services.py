from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from booking_crm.domain.bookings.ports import BookingCollaborators
from booking_crm.domain.contacts.service import NoShowSuspensionOracle
from booking_crm.domain.waitlist.service import build_waitlist_listener
from booking_crm.infra.calendar import GoogleCalendarProvider, NoopCalendarProvider, resolve_calendar_provider
from booking_crm.infra.communication import MessagingNotificationSink, resolve_whatsapp_adapter
from booking_crm.infra.email import resolve_email_adapter
from booking_crm.infra.metrics import Metrics, configure_metrics
from booking_crm.infra.stripe_client import StripePaymentGateway, resolve_payment_gateway


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    calendar: GoogleCalendarProvider | NoopCalendarProvider
    notifications: MessagingNotificationSink
    payments: StripePaymentGateway
    collaborators: BookingCollaborators
    metrics: Metrics

    async def close(self) -> None:
        await self.collaborators.drain()
        close = getattr(self.calendar, "close", None)
        if close is not None:
            await close()


def register_booking_listeners(collaborators: BookingCollaborators) -> BookingCollaborators:
    collaborators.events.on_cancelled(build_waitlist_listener(collaborators.notifications))
    return collaborators


def build_app_services(app_settings, *, metrics: Metrics | None = None) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    calendar = resolve_calendar_provider(app_settings)
    notifications = MessagingNotificationSink(
        whatsapp=resolve_whatsapp_adapter(app_settings),
        email=resolve_email_adapter(app_settings),
    )
    payments = resolve_payment_gateway(app_settings)
    collaborators = register_booking_listeners(
        BookingCollaborators(
            calendar=calendar,
            notifications=notifications,
            payments=payments,
            suspensions=NoShowSuspensionOracle(),
        )
    )
    return AppServices(
        calendar=calendar,
        notifications=notifications,
        payments=payments,
        collaborators=collaborators,
        metrics=metrics_client,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
