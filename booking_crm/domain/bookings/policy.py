"""Typed shapes of the JSON policy settings consumed by the configuration gate."""

from datetime import date

from pydantic import BaseModel, ConfigDict, Field, field_validator

from booking_crm.domain.bookings.intervals import WEEKDAY_NAMES


class EmergencyBlocker(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    start_date: date
    end_date: date
    reason: str | None = None

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


class ServiceTimeRestrictions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    min_slot_hours: float | None = Field(None, ge=0)
    max_slot_hours: float | None = Field(None, ge=0)
    only_mornings: bool = False
    only_afternoons: bool = False
    only_weekdays: bool = False
    excluded_days: list[str] = Field(default_factory=list)

    @field_validator("excluded_days")
    @classmethod
    def normalize_days(cls, value: list[str]) -> list[str]:
        days = [day.strip().lower() for day in value if day and day.strip()]
        unknown = [day for day in days if day not in WEEKDAY_NAMES]
        if unknown:
            raise ValueError(f"Unknown weekday names: {', '.join(unknown)}")
        return days

    @property
    def is_empty(self) -> bool:
        return (
            self.min_slot_hours is None
            and self.max_slot_hours is None
            and not self.only_mornings
            and not self.only_afternoons
            and not self.only_weekdays
            and not self.excluded_days
        )
