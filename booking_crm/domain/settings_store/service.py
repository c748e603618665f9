import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.settings_store.db_models import BusinessSetting

logger = logging.getLogger(__name__)

ENABLE_BOOKING = "enable_booking"
EMERGENCY_BLOCKER_SLOTS = "emergency_blocker_slots"
SERVICE_TIME_RESTRICTIONS = "service_time_restrictions"
CANCELLATION_POLICY_HOURS = "cancellation_policy_hours"
LATE_CANCELLATION_PENALTY_TYPE = "late_cancellation_penalty_type"
LATE_CANCELLATION_PENALTY_AMOUNT = "late_cancellation_penalty_amount"
REMINDER_HOURS_BEFORE = "reminder_hours_before"
REVIEW_REQUEST_DELAY_HOURS = "review_request_delay_hours"
SECRETARY_EMAIL = "secretary_email"
NO_SHOW_STRIKE_LIMIT = "no_show_strike_limit"
NO_SHOW_SUSPENSION_DAYS = "no_show_suspension_days"

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


class SettingsStore:
    """String key/value business settings; typed readers parse on read and fall back to defaults."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, key: str, default: str | None = None) -> str | None:
        value = await self.session.scalar(select(BusinessSetting.value).where(BusinessSetting.key == key))
        if value is None:
            return default
        return value

    async def set(self, key: str, value: str | None, *, category: str | None = None) -> None:
        setting = await self.session.get(BusinessSetting, key)
        if setting is None:
            setting = BusinessSetting(key=key, value=value, category=category)
            self.session.add(setting)
        else:
            setting.value = value
            if category is not None:
                setting.category = category
        await self.session.flush()

    async def get_many(self, keys: list[str]) -> dict[str, str | None]:
        result = await self.session.execute(
            select(BusinessSetting.key, BusinessSetting.value).where(BusinessSetting.key.in_(keys))
        )
        found = {row.key: row.value for row in result}
        return {key: found.get(key) for key in keys}

    async def get_int(self, key: str, default: int) -> int:
        raw = await self.get(key)
        if raw is None or not raw.strip():
            return default
        try:
            return int(float(raw))
        except ValueError:
            _log_malformed(key)
            return default

    async def get_float(self, key: str, default: float) -> float:
        raw = await self.get(key)
        if raw is None or not raw.strip():
            return default
        try:
            return float(raw)
        except ValueError:
            _log_malformed(key)
            return default

    async def get_decimal(self, key: str, default: Decimal) -> Decimal:
        raw = await self.get(key)
        if raw is None or not raw.strip():
            return default
        try:
            return Decimal(raw.strip())
        except InvalidOperation:
            _log_malformed(key)
            return default

    async def get_bool(self, key: str, default: bool) -> bool:
        raw = await self.get(key)
        if raw is None:
            return default
        normalized = raw.strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
        _log_malformed(key)
        return default

    async def get_json(self, key: str, default: Any = None) -> Any:
        raw = await self.get(key)
        if raw is None or not raw.strip():
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            _log_malformed(key)
            return default

    async def get_float_list(self, key: str, default: list[float]) -> list[float]:
        raw = await self.get(key)
        if raw is None or not raw.strip():
            return list(default)
        values: list[float] = []
        for part in raw.split(","):
            part = part.strip()
            if not part:
                continue
            try:
                values.append(float(part))
            except ValueError:
                _log_malformed(key)
                return list(default)
        return values


def _log_malformed(key: str) -> None:
    logger.warning("setting_value_malformed", extra={"extra": {"key": key}})
