from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingCancelled:
    booking_id: str
    contact_id: str
    title: str
    start_time: datetime
    end_time: datetime
    service_id: str | None = None
    service_name: str | None = None
    team_member_id: str | None = None


BookingCancelledHandler = Callable[[AsyncSession, BookingCancelled], Awaitable[None]]


class BookingEventDispatcher:
    """In-process fan-out of booking lifecycle events to registered listeners.

    Listener failures are logged and never reach the publisher.
    """

    def __init__(self) -> None:
        self._cancelled_handlers: list[BookingCancelledHandler] = []

    def on_cancelled(self, handler: BookingCancelledHandler) -> BookingCancelledHandler:
        self._cancelled_handlers.append(handler)
        return handler

    async def publish_cancelled(self, session: AsyncSession, event: BookingCancelled) -> None:
        for handler in self._cancelled_handlers:
            try:
                await handler(session, event)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "booking_event_handler_failed",
                    extra={
                        "extra": {
                            "event": "booking_cancelled",
                            "booking_id": event.booking_id,
                            "handler": getattr(handler, "__qualname__", repr(handler)),
                            "error": type(exc).__name__,
                        }
                    },
                )
