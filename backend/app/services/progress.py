import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from app.config import ReferralProgramConfig
from app.metrics import TRIPS_CREDITED, TRIPS_REJECTED, VERSION_CONFLICTS
from app.models.enums import AuditEvent, ReferralStatus, RewardType
from app.models.referral import Referral, ReferralReward, ReferralTripCredit
from app.services.audit import log_audit_event
from app.services.errors import TransientStoreError
from app.services.registry import ReferralRegistry
from app.services.rewards import RewardIssuer
from app.services.trip_validation import TripValidator

logger = structlog.get_logger()

_REWARD_EVENTS = {
    RewardType.REFERRER: AuditEvent.REFERRER_REWARD_CREATED,
    RewardType.REFERRED: AuditEvent.REFERRED_REWARD_CREATED,
}


@dataclass
class ProgressResult:
    counted: bool
    referral_id: uuid.UUID | None = None
    trips_completed: int | None = None
    reason: str | None = None
    rewards: list[ReferralReward] = field(default_factory=list)


class ProgressTracker:
    """Advances a referral's trip counter and triggers rewards at the thresholds.

    The read, increment, threshold check and reward issuance for a referral
    commit together as one versioned UPDATE. A concurrent writer makes the
    UPDATE match zero rows (StaleDataError); the whole sequence is then
    replayed from a fresh read.
    """

    def __init__(
        self,
        db: AsyncSession,
        config: ReferralProgramConfig,
        registry: ReferralRegistry | None = None,
        trip_validator: TripValidator | None = None,
        issuer: RewardIssuer | None = None,
    ):
        self.db = db
        self.config = config
        self.registry = registry or ReferralRegistry(db, config)
        self.trip_validator = trip_validator or TripValidator(db, config)
        self.issuer = issuer or RewardIssuer(db, config)

    async def record_trip(self, referred_id: uuid.UUID, trip_id: str) -> ProgressResult:
        referral = await self.registry.get_by_referred_id(referred_id)
        if referral is None:
            return ProgressResult(counted=False, reason="no_referral")
        referral_id = referral.id

        validation = await self.trip_validator.validate(trip_id, rider_id=referred_id)
        if not validation.is_valid:
            reason = validation.rejection_reason
            TRIPS_REJECTED.labels(reason=reason).inc()
            await log_audit_event(
                self.db,
                AuditEvent.INVALID_TRIP_DETECTED,
                referral_id=referral_id,
                user_id=referred_id,
                trip_id=trip_id,
                reason=reason,
            )
            return ProgressResult(
                counted=False,
                referral_id=referral_id,
                trips_completed=referral.referred_trips_completed,
                reason=reason,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(StaleDataError),
            stop=stop_after_attempt(self.config.conflict_max_attempts),
            wait=wait_random_exponential(multiplier=0.05, max=1),
            reraise=False,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    result = await self._apply_trip(referral_id, trip_id)
        except RetryError as e:
            logger.error("referral_progress_conflicts_exhausted", referral_id=str(referral_id), trip_id=trip_id)
            raise TransientStoreError("Referral is too contended, try again") from e.last_attempt.exception()

        if result.counted:
            await self._audit_progress(result, referred_id, trip_id)
        return result

    async def _load_referral(self, referral_id: uuid.UUID) -> Referral:
        result = await self.db.execute(
            select(Referral)
            .where(Referral.id == referral_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _already_credited(self, trip_id: str) -> bool:
        result = await self.db.execute(
            select(ReferralTripCredit.id).where(ReferralTripCredit.trip_id == trip_id)
        )
        return result.first() is not None

    def _threshold_hit(self, count: int, threshold: int) -> bool:
        if self.config.reward_on_threshold_crossing:
            return count >= threshold
        return count == threshold

    async def _apply_trip(self, referral_id: uuid.UUID, trip_id: str) -> ProgressResult:
        """One optimistic attempt: read, increment, check thresholds, issue, commit."""
        cfg = self.config
        try:
            referral = await self._load_referral(referral_id)
            if await self._already_credited(trip_id):
                logger.info("duplicate_trip_ignored", referral_id=str(referral_id), trip_id=trip_id)
                return ProgressResult(
                    counted=False,
                    referral_id=referral_id,
                    trips_completed=referral.referred_trips_completed,
                    reason="duplicate",
                )

            new_count = referral.referred_trips_completed + 1
            referral.referred_trips_completed = new_count
            if referral.status == ReferralStatus.PENDING:
                referral.status = ReferralStatus.ACTIVE
                referral.first_trip_at = datetime.now(timezone.utc)
            self.db.add(ReferralTripCredit(referral_id=referral_id, trip_id=trip_id))

            rewards: list[ReferralReward] = []
            if self._threshold_hit(new_count, cfg.referrer_trips_required) and not referral.referrer_reward_paid:
                reward = await self.issuer.issue(referral_id, RewardType.REFERRER)
                if reward is not None:
                    rewards.append(reward)
            if self._threshold_hit(new_count, cfg.referred_trips_required) and not referral.referred_reward_paid:
                reward = await self.issuer.issue(referral_id, RewardType.REFERRED)
                if reward is not None:
                    rewards.append(reward)

            await self.db.commit()
        except StaleDataError:
            VERSION_CONFLICTS.inc()
            await self.db.rollback()
            logger.info("referral_version_conflict", referral_id=str(referral_id), trip_id=trip_id)
            raise
        except IntegrityError:
            # Another delivery of the same trip committed its credit first
            await self.db.rollback()
            logger.info("duplicate_trip_ignored", referral_id=str(referral_id), trip_id=trip_id)
            return ProgressResult(counted=False, referral_id=referral_id, reason="duplicate")

        TRIPS_CREDITED.inc()
        return ProgressResult(
            counted=True,
            referral_id=referral_id,
            trips_completed=new_count,
            rewards=rewards,
        )

    async def _audit_progress(self, result: ProgressResult, referred_id: uuid.UUID, trip_id: str) -> None:
        await log_audit_event(
            self.db,
            AuditEvent.REFERRAL_PROGRESS_UPDATED,
            referral_id=result.referral_id,
            user_id=referred_id,
            trips_completed=result.trips_completed,
            trip_id=trip_id,
        )
        for reward in result.rewards:
            await log_audit_event(
                self.db,
                _REWARD_EVENTS[RewardType(reward.type)],
                referral_id=result.referral_id,
                user_id=reward.user_id,
                reward_id=reward.id,
                amount=reward.amount,
            )
