import uuid
from collections import Counter
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ReferralProgramConfig
from app.models.enums import ReferralStatus, RewardStatus
from app.models.referral import Referral, ReferralReward
from app.services.registry import ReferralRegistry
from app.services.rewards import RewardIssuer

_PENDING_REWARD_STATUSES = {RewardStatus.PENDING, RewardStatus.PROCESSING}


@dataclass
class ReferralStats:
    total_referrals: int
    pending_referrals: int
    active_referrals: int
    completed_referrals: int
    rejected_referrals: int
    total_earnings: int
    pending_earnings: int
    currency: str
    referrals: list[Referral] = field(default_factory=list)
    rewards: list[ReferralReward] = field(default_factory=list)


class StatsAggregator:
    """Per-user referral summary. Read-only."""

    def __init__(self, db: AsyncSession, config: ReferralProgramConfig):
        self.config = config
        self.registry = ReferralRegistry(db, config)
        self.issuer = RewardIssuer(db, config)

    async def get_stats(self, user_id: uuid.UUID) -> ReferralStats:
        referrals = await self.registry.get_by_referrer(user_id)
        rewards = await self.issuer.list_for_user(user_id)

        by_status = Counter(ReferralStatus(r.status) for r in referrals)
        total_earnings = sum(r.amount for r in rewards if RewardStatus(r.status) == RewardStatus.PAID)
        pending_earnings = sum(
            r.amount for r in rewards if RewardStatus(r.status) in _PENDING_REWARD_STATUSES
        )

        return ReferralStats(
            total_referrals=len(referrals),
            pending_referrals=by_status[ReferralStatus.PENDING],
            active_referrals=by_status[ReferralStatus.ACTIVE],
            completed_referrals=by_status[ReferralStatus.COMPLETED],
            rejected_referrals=by_status[ReferralStatus.REJECTED],
            total_earnings=total_earnings,
            pending_earnings=pending_earnings,
            currency=self.config.currency,
            referrals=referrals,
            rewards=rewards,
        )
