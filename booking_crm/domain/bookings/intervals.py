"""Pure interval arithmetic shared by the booking gates.

All intervals are half-open ``[start, end)``: two bookings that touch at a
boundary do not overlap.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

WEEKDAY_NAMES: tuple[str, ...] = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


@dataclass(frozen=True)
class TimeWindow:
    start: time
    end: time

    def contains(self, start: time, end: time) -> bool:
        return self.start <= start and end <= self.end

    def label(self) -> str:
        return f"{format_hhmm(self.start)}-{format_hhmm(self.end)}"


@dataclass(frozen=True)
class Interval:
    start: datetime
    end: datetime

    def overlaps(self, other: "Interval") -> bool:
        return intervals_overlap(self.start, self.end, other.start, other.end)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def apply_buffers(start: datetime, end: datetime, before_minutes: int, after_minutes: int) -> Interval:
    return Interval(
        start=ensure_utc(start) - timedelta(minutes=before_minutes),
        end=ensure_utc(end) + timedelta(minutes=after_minutes),
    )


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and a_end > b_start


def occupied_interval(
    *,
    start_time: datetime,
    end_time: datetime,
    actual_start_time: datetime | None,
    actual_end_time: datetime | None,
    buffer_time_before: int | None,
    buffer_time_after: int | None,
) -> Interval:
    """Stored buffered interval, recomputed from raw times for rows written before buffer columns existed."""
    if actual_start_time is not None and actual_end_time is not None:
        return Interval(ensure_utc(actual_start_time), ensure_utc(actual_end_time))
    return apply_buffers(start_time, end_time, buffer_time_before or 0, buffer_time_after or 0)


def to_local(value: datetime, tz: ZoneInfo) -> datetime:
    return ensure_utc(value).astimezone(tz)


def crosses_day_boundary(interval: Interval, tz: ZoneInfo) -> bool:
    return to_local(interval.start, tz).date() != to_local(interval.end, tz).date()


def weekday_name(value: datetime, tz: ZoneInfo) -> str:
    return WEEKDAY_NAMES[to_local(value, tz).weekday()]


def local_time_span(interval: Interval, tz: ZoneInfo) -> tuple[time, time]:
    return to_local(interval.start, tz).time(), to_local(interval.end, tz).time()


def fits_within_any(start: time, end: time, windows: list[TimeWindow]) -> bool:
    return any(window.contains(start, end) for window in windows)


def parse_hhmm(value: str) -> time:
    hours, _, minutes = value.strip().partition(":")
    return time(hour=int(hours), minute=int(minutes[:2] or 0))


def format_hhmm(value: time) -> str:
    return value.strftime("%H:%M")
