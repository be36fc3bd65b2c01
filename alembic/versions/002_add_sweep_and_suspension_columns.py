"""Add sweep attempt stamps and provider suspension details

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("provider_earnings", sa.Column("last_payout_attempt_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index(
        "ix_earning_status_payout_attempt", "provider_earnings", ["status", "last_payout_attempt_at"]
    )
    op.add_column("bookings", sa.Column("auto_confirm_attempted_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("provider_profiles", sa.Column("suspension_reason", sa.String(500), nullable=True))
    op.add_column("provider_profiles", sa.Column("suspended_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    op.drop_column("provider_profiles", "suspended_at")
    op.drop_column("provider_profiles", "suspension_reason")
    op.drop_column("bookings", "auto_confirm_attempted_at")
    op.drop_index("ix_earning_status_payout_attempt", table_name="provider_earnings")
    op.drop_column("provider_earnings", "last_payout_attempt_at")
