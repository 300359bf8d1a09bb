import uuid

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ReferralProgramConfig
from app.models.audit_log import AuditLog
from app.models.enums import AuditEvent, ReferralStatus, RewardStatus, RewardType
from app.models.referral import Referral, ReferralReward
from app.services.errors import InvalidTransitionError, NotFoundError
from app.services.rewards import RewardIssuer, reward_id_for, validate_reward_transition


@pytest.mark.asyncio
async def test_issue_referrer_reward(db: AsyncSession, config: ReferralProgramConfig, referral: Referral):
    issuer = RewardIssuer(db, config)

    reward = await issuer.issue(referral.id, RewardType.REFERRER)

    assert reward.id == reward_id_for(referral.id, RewardType.REFERRER)
    assert reward.user_id == referral.referrer_id
    assert reward.amount == config.referrer_reward_amount
    assert reward.status == RewardStatus.PENDING
    assert referral.referrer_reward_paid is True
    assert referral.referred_reward_paid is False
    assert referral.status == ReferralStatus.PENDING


@pytest.mark.asyncio
async def test_issue_twice_creates_one_reward(db: AsyncSession, config: ReferralProgramConfig, referral: Referral):
    issuer = RewardIssuer(db, config)

    first = await issuer.issue(referral.id, RewardType.REFERRED)
    second = await issuer.issue(referral.id, RewardType.REFERRED)

    assert first is not None
    assert second is None
    count = await db.execute(
        select(func.count(ReferralReward.id)).where(ReferralReward.referral_id == referral.id)
    )
    assert count.scalar() == 1
    assert referral.status == ReferralStatus.COMPLETED


@pytest.mark.asyncio
async def test_issue_for_unknown_referral(db: AsyncSession, config: ReferralProgramConfig):
    assert await RewardIssuer(db, config).issue(uuid.uuid4(), RewardType.REFERRER) is None


@pytest.mark.parametrize(
    ("current", "new"),
    [
        (RewardStatus.PENDING, RewardStatus.PROCESSING),
        (RewardStatus.PENDING, RewardStatus.PAID),
        (RewardStatus.PROCESSING, RewardStatus.PAID),
        (RewardStatus.PROCESSING, RewardStatus.FAILED),
        (RewardStatus.FAILED, RewardStatus.PROCESSING),
    ],
)
def test_allowed_reward_transitions(current: RewardStatus, new: RewardStatus):
    validate_reward_transition(current, new)


@pytest.mark.parametrize(
    ("current", "new"),
    [
        (RewardStatus.PAID, RewardStatus.PENDING),
        (RewardStatus.PAID, RewardStatus.FAILED),
        (RewardStatus.FAILED, RewardStatus.PAID),
        (RewardStatus.PROCESSING, RewardStatus.PENDING),
    ],
)
def test_rejected_reward_transitions(current: RewardStatus, new: RewardStatus):
    with pytest.raises(InvalidTransitionError):
        validate_reward_transition(current, new)


@pytest.mark.asyncio
async def test_mark_reward_paid(db: AsyncSession, config: ReferralProgramConfig, referral: Referral):
    issuer = RewardIssuer(db, config)
    reward = await issuer.issue(referral.id, RewardType.REFERRER)
    await db.commit()

    updated = await issuer.update_status(reward.id, RewardStatus.PAID)

    assert updated.status == RewardStatus.PAID
    assert updated.paid_at is not None
    events = (
        await db.execute(
            select(AuditLog).where(AuditLog.event_type == AuditEvent.REWARD_STATUS_CHANGED.value)
        )
    ).scalars().all()
    assert len(events) == 1
    assert events[0].payload["previous_status"] == "pending"
    assert events[0].payload["status"] == "paid"


@pytest.mark.asyncio
async def test_failed_payout_keeps_reason(db: AsyncSession, config: ReferralProgramConfig, referral: Referral):
    issuer = RewardIssuer(db, config)
    reward = await issuer.issue(referral.id, RewardType.REFERRED)
    await db.commit()

    await issuer.update_status(reward.id, RewardStatus.PROCESSING)
    failed = await issuer.update_status(reward.id, RewardStatus.FAILED, "wallet closed")

    assert failed.status == RewardStatus.FAILED
    assert failed.failure_reason == "wallet closed"
    assert failed.paid_at is None


@pytest.mark.asyncio
async def test_paid_reward_is_terminal(db: AsyncSession, config: ReferralProgramConfig, referral: Referral):
    issuer = RewardIssuer(db, config)
    reward = await issuer.issue(referral.id, RewardType.REFERRER)
    await db.commit()
    await issuer.update_status(reward.id, RewardStatus.PAID)

    with pytest.raises(InvalidTransitionError):
        await issuer.update_status(reward.id, RewardStatus.FAILED, "late failure")


@pytest.mark.asyncio
async def test_update_unknown_reward(db: AsyncSession, config: ReferralProgramConfig):
    with pytest.raises(NotFoundError):
        await RewardIssuer(db, config).update_status("reward_missing_referrer", RewardStatus.PAID)
