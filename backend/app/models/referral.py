import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import ReferralStatus, RewardStatus, RewardType
from app.models.types import GUID


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Referral(Base):
    """A referrer/referred pair and the referred user's trip progress.

    Rows are never deleted. Every UPDATE is conditional on ``version`` so two
    concurrent progress updates cannot both succeed from the same read.
    """

    __tablename__ = "referrals"
    __table_args__ = (
        CheckConstraint("referrer_id <> referred_id", name="ck_referral_not_self"),
        CheckConstraint("referred_trips_completed >= 0", name="ck_referral_trips_positive"),
        Index("ix_referral_referrer_created", "referrer_id", "created_at"),
        Index("ix_referral_ip_created", "referred_ip_address", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    referrer_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    referred_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    referral_code: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[ReferralStatus] = mapped_column(
        String(20), nullable=False, default=ReferralStatus.PENDING, index=True
    )
    referred_trips_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    referrer_reward_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    referred_reward_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Signup fingerprints, queried by the fraud rules
    referred_device_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    referred_ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    referrer_device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    referrer_ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)

    # Milestones
    referred_signup_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    first_trip_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    twenty_trips_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    twenty_five_trips_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    rewards: Mapped[list["ReferralReward"]] = relationship(
        "ReferralReward", back_populates="referral", lazy="raise"
    )

    __mapper_args__ = {"version_id_col": version}


class ReferralReward(Base):
    """A one-time reward ledger entry. Money movement happens elsewhere."""

    __tablename__ = "referral_rewards"
    __table_args__ = (
        UniqueConstraint("referral_id", "type", name="uq_referral_reward_type"),
        CheckConstraint("amount > 0", name="ck_referral_reward_amount_positive"),
        Index("ix_referral_reward_user_status", "user_id", "status"),
    )

    # Deterministic: reward_{referral_id}_{type}
    id: Mapped[str] = mapped_column(String(80), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    referral_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("referrals.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CRC")
    type: Mapped[RewardType] = mapped_column(String(20), nullable=False)
    status: Mapped[RewardStatus] = mapped_column(String(20), nullable=False, default=RewardStatus.PENDING)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    referral: Mapped["Referral"] = relationship("Referral", back_populates="rewards", lazy="raise")


class ReferralTripCredit(Base):
    """A trip that advanced a referral counter. trip_id is unique so a
    re-delivered completion event cannot be counted twice."""

    __tablename__ = "referral_trip_credits"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    referral_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("referrals.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    trip_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    credited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
