import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.enums import TripStatus
from app.models.types import GUID


class Trip(Base):
    """Trip record written by the booking service; read-only for referrals."""

    __tablename__ = "trips"
    __table_args__ = (
        CheckConstraint("distance_km IS NULL OR distance_km >= 0", name="ck_trip_distance_positive"),
        CheckConstraint("fare IS NULL OR fare >= 0", name="ck_trip_fare_positive"),
        Index("ix_trip_rider_created", "rider_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    rider_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[TripStatus] = mapped_column(String(20), nullable=False, default=TripStatus.REQUESTED)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Measurements are nullable: a trip aborted before pickup has none.
    distance_km: Mapped[Decimal | None] = mapped_column(Numeric(8, 3), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fare: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
