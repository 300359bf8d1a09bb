"""Referral program schema

Users and trips mirror the auth and booking services. Referrals carry a
version column used for optimistic concurrency on progress updates.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = sa.dialects.postgresql.UUID(as_uuid=True)


def upgrade() -> None:
    # Users
    op.create_table(
        "users",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False, index=True),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("referral_code", sa.String(20), unique=True, nullable=True, index=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Trips
    op.create_table(
        "trips",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("rider_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("is_cancelled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("distance_km", sa.Numeric(8, 3), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("fare", sa.Integer(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("distance_km IS NULL OR distance_km >= 0", name="ck_trip_distance_positive"),
        sa.CheckConstraint("fare IS NULL OR fare >= 0", name="ck_trip_fare_positive"),
    )
    op.create_index("ix_trip_rider_created", "trips", ["rider_id", "created_at"])

    # Referrals
    op.create_table(
        "referrals",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("referrer_id", UUID, sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("referred_id", UUID, sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("referral_code", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, index=True),
        sa.Column("referred_trips_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referrer_reward_paid", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("referred_reward_paid", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("referred_device_id", sa.String(255), nullable=True, index=True),
        sa.Column("referred_ip_address", sa.String(45), nullable=True),
        sa.Column("referrer_device_id", sa.String(255), nullable=True),
        sa.Column("referrer_ip_address", sa.String(45), nullable=True),
        sa.Column("referred_signup_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("first_trip_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("twenty_trips_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("twenty_five_trips_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("referrer_id <> referred_id", name="ck_referral_not_self"),
        sa.CheckConstraint("referred_trips_completed >= 0", name="ck_referral_trips_positive"),
    )
    op.create_index("ix_referral_referrer_created", "referrals", ["referrer_id", "created_at"])
    op.create_index("ix_referral_ip_created", "referrals", ["referred_ip_address", "created_at"])

    # Reward ledger
    op.create_table(
        "referral_rewards",
        sa.Column("id", sa.String(80), primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("referral_id", UUID, sa.ForeignKey("referrals.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("referral_id", "type", name="uq_referral_reward_type"),
        sa.CheckConstraint("amount > 0", name="ck_referral_reward_amount_positive"),
    )
    op.create_index("ix_referral_reward_user_status", "referral_rewards", ["user_id", "status"])

    # Credited trips
    op.create_table(
        "referral_trip_credits",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("referral_id", UUID, sa.ForeignKey("referrals.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("trip_id", sa.String(64), nullable=False, unique=True),
        sa.Column("credited_at", sa.DateTime(timezone=True), nullable=False),
    )

    # Audit trail
    op.create_table(
        "audit_logs",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("event_type", sa.String(50), nullable=False, index=True),
        sa.Column("referral_id", UUID, nullable=True, index=True),
        sa.Column("user_id", UUID, nullable=True, index=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("referral_trip_credits")
    op.drop_index("ix_referral_reward_user_status", table_name="referral_rewards")
    op.drop_table("referral_rewards")
    op.drop_index("ix_referral_ip_created", table_name="referrals")
    op.drop_index("ix_referral_referrer_created", table_name="referrals")
    op.drop_table("referrals")
    op.drop_index("ix_trip_rider_created", table_name="trips")
    op.drop_table("trips")
    op.drop_table("users")
