"""add postgres exclusion constraint for overlapping team member bookings

Revision ID: 0002_booking_overlap_exclusion
Revises: 0001_initial
Create Date: 2026-10-01 00:00:00
"""

from __future__ import annotations

from alembic import op

revision = "0002_booking_overlap_exclusion"
down_revision = "0001_initial"
branch_labels = None
depends_on = None

EXCLUSION_CONSTRAINT_NAME = "bookings_team_member_buffered_no_overlap"


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return

    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")

    # actual_start_time/actual_end_time already include the buffers, so no
    # derived expression is needed inside the range.
    op.execute(
        f"""
        ALTER TABLE bookings
        ADD CONSTRAINT {EXCLUSION_CONSTRAINT_NAME}
        EXCLUDE USING gist (
            team_member_id WITH =,
            tstzrange(actual_start_time, actual_end_time, '[)') WITH &&
        )
        WHERE (
            status IN ('pending', 'confirmed')
            AND team_member_id IS NOT NULL
            AND actual_start_time IS NOT NULL
            AND actual_end_time IS NOT NULL
        )
        """
    )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return

    op.execute(f"ALTER TABLE bookings DROP CONSTRAINT IF EXISTS {EXCLUSION_CONSTRAINT_NAME}")
