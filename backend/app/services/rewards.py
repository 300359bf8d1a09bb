import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ReferralProgramConfig
from app.metrics import REWARD_STATUS_CHANGES, REWARDS_ISSUED
from app.models.enums import AuditEvent, ReferralStatus, RewardStatus, RewardType
from app.models.referral import Referral, ReferralReward
from app.services.audit import log_audit_event
from app.services.errors import InvalidTransitionError, NotFoundError

logger = structlog.get_logger()

# Status changes reported by the payout service
ALLOWED_REWARD_TRANSITIONS: dict[RewardStatus, set[RewardStatus]] = {
    RewardStatus.PENDING: {
        RewardStatus.PROCESSING,
        RewardStatus.PAID,
        RewardStatus.FAILED,
    },
    RewardStatus.PROCESSING: {
        RewardStatus.PAID,
        RewardStatus.FAILED,
    },
    RewardStatus.FAILED: {
        RewardStatus.PROCESSING,  # Payout retried
    },
    RewardStatus.PAID: set(),  # Terminal state
}


def reward_id_for(referral_id: uuid.UUID, reward_type: RewardType) -> str:
    return f"reward_{referral_id}_{reward_type.value}"


def validate_reward_transition(current: RewardStatus, new: RewardStatus) -> None:
    """Raises InvalidTransitionError if the payout service reports an impossible change."""
    allowed = ALLOWED_REWARD_TRANSITIONS.get(RewardStatus(current), set())
    if new not in allowed:
        raise InvalidTransitionError(
            f"Cannot transition reward from '{RewardStatus(current).value}' to '{new.value}'"
        )


class RewardIssuer:
    """Creates reward ledger entries and flips the referral's paid flags."""

    def __init__(self, db: AsyncSession, config: ReferralProgramConfig):
        self.db = db
        self.config = config

    async def issue(self, referral_id: uuid.UUID, reward_type: RewardType) -> ReferralReward | None:
        """Issue the reward for ``(referral_id, reward_type)`` at most once.

        Runs inside the caller's transaction and does not commit. Returns
        None when the referral is unknown or the reward was already issued.
        """
        referral = await self.db.get(Referral, referral_id)
        if referral is None:
            return None

        now = datetime.now(timezone.utc)
        if reward_type == RewardType.REFERRER:
            if referral.referrer_reward_paid:
                return None
            user_id = referral.referrer_id
        else:
            if referral.referred_reward_paid:
                return None
            user_id = referral.referred_id

        reward = ReferralReward(
            id=reward_id_for(referral.id, reward_type),
            user_id=user_id,
            referral_id=referral.id,
            amount=self.config.reward_amount(reward_type),
            currency=self.config.currency,
            type=reward_type,
            status=RewardStatus.PENDING,
        )
        self.db.add(reward)

        if reward_type == RewardType.REFERRER:
            referral.referrer_reward_paid = True
            referral.twenty_trips_completed_at = now
        else:
            referral.referred_reward_paid = True
            referral.twenty_five_trips_completed_at = now
            referral.status = ReferralStatus.COMPLETED
        await self.db.flush()

        REWARDS_ISSUED.labels(type=reward_type.value).inc()
        logger.info(
            "referral_reward_issued",
            reward_id=reward.id,
            referral_id=str(referral.id),
            user_id=str(user_id),
            amount=reward.amount,
        )
        return reward

    async def get(self, reward_id: str) -> ReferralReward:
        reward = await self.db.get(ReferralReward, reward_id)
        if reward is None:
            raise NotFoundError("Reward not found")
        return reward

    async def list_for_user(self, user_id: uuid.UUID) -> list[ReferralReward]:
        result = await self.db.execute(
            select(ReferralReward)
            .where(ReferralReward.user_id == user_id)
            .order_by(ReferralReward.created_at.desc())
        )
        return list(result.scalars().all())

    async def update_status(
        self,
        reward_id: str,
        new_status: RewardStatus,
        failure_reason: str | None = None,
    ) -> ReferralReward:
        """Record a payout outcome for a reward and commit it."""
        reward = await self.get(reward_id)
        previous = RewardStatus(reward.status)
        validate_reward_transition(previous, new_status)

        reward.status = new_status
        if new_status == RewardStatus.PAID:
            reward.paid_at = datetime.now(timezone.utc)
            reward.failure_reason = None
        elif new_status == RewardStatus.FAILED:
            reward.failure_reason = failure_reason
        await self.db.commit()

        REWARD_STATUS_CHANGES.labels(status=new_status.value).inc()
        logger.info(
            "referral_reward_status_changed",
            reward_id=reward_id,
            previous=previous.value,
            status=new_status.value,
        )
        await log_audit_event(
            self.db,
            AuditEvent.REWARD_STATUS_CHANGED,
            referral_id=reward.referral_id,
            user_id=reward.user_id,
            reward_id=reward_id,
            previous_status=previous.value,
            status=new_status.value,
            failure_reason=failure_reason,
        )
        return reward
