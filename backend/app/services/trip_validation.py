import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ReferralProgramConfig
from app.models.enums import TripStatus
from app.models.trip import Trip

logger = structlog.get_logger()


@dataclass(frozen=True)
class TripValidationResult:
    trip_id: str
    is_valid: bool
    is_cancelled: bool
    is_fraudulent: bool
    completed_at: datetime | None
    validated_at: datetime

    @property
    def rejection_reason(self) -> str | None:
        if self.is_valid:
            return None
        if self.is_fraudulent:
            return "fraudulent"
        return "cancelled" if self.is_cancelled else "not_completed"


class TripValidator:
    """Decides whether a reported trip completion counts toward referral progress."""

    def __init__(self, db: AsyncSession, config: ReferralProgramConfig):
        self.db = db
        self.config = config

    async def validate(self, trip_id: str, rider_id: uuid.UUID | None = None) -> TripValidationResult:
        now = datetime.now(timezone.utc)
        trip = await self.db.get(Trip, trip_id)

        if trip is None:
            # Fail closed: an unknown trip never counts
            logger.warning("referral_trip_not_found", trip_id=trip_id)
            return TripValidationResult(
                trip_id=trip_id,
                is_valid=False,
                is_cancelled=False,
                is_fraudulent=True,
                completed_at=None,
                validated_at=now,
            )

        is_cancelled = bool(trip.is_cancelled) or trip.status == TripStatus.CANCELLED
        is_completed = (
            trip.status == TripStatus.COMPLETED
            and not is_cancelled
            and trip.completed_at is not None
        )
        is_fraudulent = self.is_fraudulent(trip, rider_id)

        return TripValidationResult(
            trip_id=trip_id,
            is_valid=is_completed and not is_fraudulent,
            is_cancelled=is_cancelled,
            is_fraudulent=is_fraudulent,
            completed_at=trip.completed_at,
            validated_at=now,
        )

    def is_fraudulent(self, trip: Trip, rider_id: uuid.UUID | None = None) -> bool:
        """Trip-level heuristics; any single hit marks the trip fraudulent.

        Missing measurements are unknown, not suspicious.
        """
        cfg = self.config
        if rider_id is not None and trip.rider_id != rider_id:
            logger.warning("referral_trip_rider_mismatch", trip_id=trip.id, rider_id=str(rider_id))
            return True
        if trip.distance_km is not None and trip.distance_km < cfg.min_trip_distance_km:
            return True
        if trip.duration_seconds is not None and trip.duration_seconds < cfg.min_trip_duration_seconds:
            return True
        if trip.fare is not None and trip.fare < cfg.min_trip_fare:
            return True
        return False
