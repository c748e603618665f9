"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-01 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _id() -> sa.Column:
    return sa.Column("id", sa.String(length=36), primary_key=True)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        # ORM-managed updated_at (no database trigger).
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "settings",
        sa.Column("key", sa.String(length=128), primary_key=True),
        sa.Column("value", sa.Text()),
        sa.Column("category", sa.String(length=64)),
        _updated_at(),
    )
    op.create_table(
        "contacts",
        _id(),
        sa.Column("name", sa.String(length=255)),
        sa.Column("phone_number", sa.String(length=64), nullable=False, unique=True),
        sa.Column("email", sa.String(length=255)),
        sa.Column("outstanding_balance_chf", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("payment_allowance_granted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
    )
    op.create_table(
        "services",
        _id(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("buffer_time_before", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("buffer_time_after", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_chf", sa.Numeric(10, 2)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        _updated_at(),
    )
    op.create_table(
        "team_members",
        _id(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255)),
        sa.Column("phone", sa.String(length=64)),
        sa.Column("calendar_id", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("availability_schedule", sa.JSON(), nullable=False),
        _created_at(),
        _updated_at(),
    )
    op.create_table(
        "service_team_members",
        _id(),
        sa.Column("service_id", sa.String(length=36), sa.ForeignKey("services.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "team_member_id",
            sa.String(length=36),
            sa.ForeignKey("team_members.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("is_primary_provider", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("service_id", "team_member_id", name="uq_service_team_members_pair"),
    )
    op.create_table(
        "team_member_unavailability",
        _id(),
        sa.Column(
            "team_member_id",
            sa.String(length=36),
            sa.ForeignKey("team_members.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.String(length=32), nullable=False),
        sa.Column("notes", sa.Text()),
        _created_at(),
    )
    op.create_index(
        "ix_team_member_unavailability_window",
        "team_member_unavailability",
        ["team_member_id", "start_at", "end_at"],
    )
    op.create_table(
        "business_opening_hours",
        _id(),
        sa.Column("day_of_week", sa.Integer(), nullable=False, unique=True),
        sa.Column("is_closed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("open_time", sa.Time()),
        sa.Column("close_time", sa.Time()),
        sa.Column("break_start", sa.Time()),
        sa.Column("break_end", sa.Time()),
    )

    op.create_table(
        "bookings",
        _id(),
        sa.Column("contact_id", sa.String(length=36), sa.ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("conversation_id", sa.String(length=64)),
        sa.Column("service_id", sa.String(length=36), sa.ForeignKey("services.id", ondelete="SET NULL")),
        sa.Column("team_member_id", sa.String(length=36), sa.ForeignKey("team_members.id", ondelete="SET NULL")),
        sa.Column("calendar_event_id", sa.String(length=255)),
        sa.Column("calendar_id", sa.String(length=255)),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actual_start_time", sa.DateTime(timezone=True)),
        sa.Column("actual_end_time", sa.DateTime(timezone=True)),
        sa.Column("buffer_time_before", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("buffer_time_after", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("discount_code", sa.String(length=64)),
        sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("promo_voucher", sa.String(length=64)),
        sa.Column("payment_status", sa.String(length=32), nullable=False, server_default="unpaid"),
        sa.Column("penalty_applied", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("penalty_fee", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("session_group_id", sa.String(length=36)),
        sa.Column("session_number", sa.Integer()),
        sa.Column("total_sessions", sa.Integer()),
        sa.Column("email_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancellation_reason", sa.Text()),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_bookings_contact_id", "bookings", ["contact_id"])
    op.create_index("ix_bookings_session_group_id", "bookings", ["session_group_id"])
    op.create_index("ix_bookings_buffered_window", "bookings", ["status", "actual_start_time", "actual_end_time"])
    op.create_index(
        "ix_bookings_team_member_buffered_window",
        "bookings",
        ["team_member_id", "status", "actual_start_time", "actual_end_time"],
    )
    op.create_index("ix_bookings_contact_start", "bookings", ["contact_id", "start_time"])
    op.create_index("ix_bookings_created_at", "bookings", ["created_at"])
    active_slot = sa.text("status IN ('pending', 'confirmed') AND team_member_id IS NOT NULL")
    op.create_index(
        "uq_bookings_active_slot",
        "bookings",
        ["team_member_id", "actual_start_time"],
        unique=True,
        postgresql_where=active_slot,
        sqlite_where=active_slot,
    )

    op.create_table(
        "no_show_tracking",
        _id(),
        sa.Column("contact_id", sa.String(length=36), sa.ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.id", ondelete="SET NULL")),
        sa.Column("no_show_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("strike_count", sa.Integer(), nullable=False),
        sa.Column("suspension_until", sa.DateTime(timezone=True)),
        sa.Column("penalty_applied", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("penalty_fee", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text()),
        _created_at(),
    )
    op.create_index("ix_no_show_tracking_contact_created", "no_show_tracking", ["contact_id", "created_at"])

    op.create_table(
        "payment_transactions",
        _id(),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.id", ondelete="SET NULL")),
        sa.Column("contact_id", sa.String(length=36), sa.ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("payment_type", sa.String(length=32), nullable=False),
        sa.Column("stripe_payment_intent_id", sa.String(length=255)),
        sa.Column("stripe_refund_id", sa.String(length=255)),
        sa.Column("refund_amount", sa.Numeric(10, 2)),
        sa.Column("description", sa.Text()),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_payment_transactions_booking_status", "payment_transactions", ["booking_id", "status"])

    op.create_table(
        "reminder_logs",
        _id(),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.id", ondelete="CASCADE")),
        sa.Column("contact_id", sa.String(length=36), sa.ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reminder_type", sa.String(length=32), nullable=False),
        sa.Column("message_content", sa.Text(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        _created_at(),
    )
    op.create_index("ix_reminder_logs_status_scheduled", "reminder_logs", ["status", "scheduled_for"])
    op.create_table(
        "review_requests",
        _id(),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("contact_id", sa.String(length=36), sa.ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("review_submitted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
    )
    op.create_table(
        "service_documents",
        _id(),
        sa.Column("service_id", sa.String(length=36), sa.ForeignKey("services.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("url", sa.String(length=1024)),
        sa.Column("send_timing", sa.String(length=32), nullable=False),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("order_position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "document_deliveries",
        _id(),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "document_id",
            sa.String(length=36),
            sa.ForeignKey("service_documents.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True)),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        _created_at(),
    )
    op.create_index(
        "ix_document_deliveries_booking_document", "document_deliveries", ["booking_id", "document_id"]
    )

    op.create_table(
        "waitlist",
        _id(),
        sa.Column("contact_id", sa.String(length=36), sa.ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("service_type", sa.String(length=255)),
        sa.Column("preferred_dates", sa.JSON(), nullable=False),
        sa.Column("priority", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("matched_booking_id", sa.String(length=36), sa.ForeignKey("bookings.id", ondelete="SET NULL")),
        sa.Column("notified_at", sa.DateTime(timezone=True)),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notes", sa.Text()),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_waitlist_status_expires", "waitlist", ["status", "expires_at"])


def downgrade() -> None:
    op.drop_index("ix_waitlist_status_expires", table_name="waitlist")
    op.drop_table("waitlist")
    op.drop_index("ix_document_deliveries_booking_document", table_name="document_deliveries")
    op.drop_table("document_deliveries")
    op.drop_table("service_documents")
    op.drop_table("review_requests")
    op.drop_index("ix_reminder_logs_status_scheduled", table_name="reminder_logs")
    op.drop_table("reminder_logs")
    op.drop_index("ix_payment_transactions_booking_status", table_name="payment_transactions")
    op.drop_table("payment_transactions")
    op.drop_index("ix_no_show_tracking_contact_created", table_name="no_show_tracking")
    op.drop_table("no_show_tracking")
    for index_name in (
        "uq_bookings_active_slot",
        "ix_bookings_created_at",
        "ix_bookings_contact_start",
        "ix_bookings_team_member_buffered_window",
        "ix_bookings_buffered_window",
        "ix_bookings_session_group_id",
        "ix_bookings_contact_id",
    ):
        op.drop_index(index_name, table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("business_opening_hours")
    op.drop_index("ix_team_member_unavailability_window", table_name="team_member_unavailability")
    op.drop_table("team_member_unavailability")
    op.drop_table("service_team_members")
    op.drop_table("team_members")
    op.drop_table("services")
    op.drop_table("contacts")
    op.drop_table("settings")
