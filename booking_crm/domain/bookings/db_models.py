from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Index, Integer, Numeric, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from booking_crm.domain.bookings import statuses
from booking_crm.infra.db import Base, UTCDateTime


class Booking(Base):
    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(
        "id",
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    contact_id: Mapped[str] = mapped_column(
        ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    conversation_id: Mapped[str | None] = mapped_column(String(64))
    service_id: Mapped[str | None] = mapped_column(ForeignKey("services.id", ondelete="SET NULL"))
    team_member_id: Mapped[str | None] = mapped_column(
        ForeignKey("team_members.id", ondelete="SET NULL")
    )
    calendar_event_id: Mapped[str | None] = mapped_column(String(255))
    calendar_id: Mapped[str | None] = mapped_column(String(255))
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    # Buffered interval actually occupied; copied at creation, never recomputed from the service.
    actual_start_time: Mapped[datetime | None] = mapped_column(UTCDateTime())
    actual_end_time: Mapped[datetime | None] = mapped_column(UTCDateTime())
    buffer_time_before: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    buffer_time_after: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=statuses.BOOKING_STATUS_CONFIRMED
    )
    discount_code: Mapped[str | None] = mapped_column(String(64))
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0"), server_default="0"
    )
    promo_voucher: Mapped[str | None] = mapped_column(String(64))
    payment_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="unpaid", server_default="unpaid"
    )
    penalty_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    penalty_fee: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0"), server_default="0"
    )
    session_group_id: Mapped[str | None] = mapped_column(String(36), index=True)
    session_number: Mapped[int | None] = mapped_column(Integer)
    total_sessions: Mapped[int | None] = mapped_column(Integer)
    email_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Server-side timestamps are read back on flush; responses serialize them after commit.
    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        Index("ix_bookings_buffered_window", "status", "actual_start_time", "actual_end_time"),
        Index(
            "ix_bookings_team_member_buffered_window",
            "team_member_id",
            "status",
            "actual_start_time",
            "actual_end_time",
        ),
        Index(
            "uq_bookings_active_slot",
            "team_member_id",
            "actual_start_time",
            unique=True,
            postgresql_where=text("status IN ('pending', 'confirmed') AND team_member_id IS NOT NULL"),
            sqlite_where=text("status IN ('pending', 'confirmed') AND team_member_id IS NOT NULL"),
        ),
        Index("ix_bookings_contact_start", "contact_id", "start_time"),
        Index("ix_bookings_created_at", "created_at"),
    )
