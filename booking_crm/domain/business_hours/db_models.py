from __future__ import annotations

import uuid
from datetime import time

from sqlalchemy import Boolean, Integer, String, Time
from sqlalchemy.orm import Mapped, mapped_column

from booking_crm.infra.db import Base


class BusinessOpeningHours(Base):
    __tablename__ = "business_opening_hours"

    opening_hours_id: Mapped[str] = mapped_column(
        "id",
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    # 0=Monday .. 6=Sunday, matching datetime.weekday()
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    is_closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    open_time: Mapped[time | None] = mapped_column(Time)
    close_time: Mapped[time | None] = mapped_column(Time)
    break_start: Mapped[time | None] = mapped_column(Time)
    break_end: Mapped[time | None] = mapped_column(Time)
