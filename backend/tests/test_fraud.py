from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ReferralProgramConfig
from app.models.user import User
from app.services.fraud import (
    DEVICE_REUSE_REASON,
    SELF_REFERRAL_REASON,
    SUSPICIOUS_ACTIVITY_REASON,
    FraudRiskEvaluator,
    SignupMetadata,
)
from tests.conftest import make_referral, make_user


async def _referrals_from_ip(db: AsyncSession, ip: str, count: int, **overrides) -> None:
    for _ in range(count):
        referrer = await make_user(db)
        referred = await make_user(db)
        await make_referral(db, referrer, referred, referred_ip_address=ip, **overrides)


@pytest.mark.asyncio
async def test_self_referral_scores_one(db: AsyncSession, config: ReferralProgramConfig, referrer_user: User):
    evaluator = FraudRiskEvaluator(db, config)
    result = await evaluator.evaluate(referrer_user.id, referrer_user.id, SignupMetadata())

    assert result.is_valid is False
    assert result.fraud_score == 1.0
    assert result.reason == SELF_REFERRAL_REASON
    assert result.checks.suspicious_activity is True


@pytest.mark.asyncio
async def test_clean_signup_is_valid(
    db: AsyncSession, config: ReferralProgramConfig, referrer_user: User, referred_user: User
):
    evaluator = FraudRiskEvaluator(db, config)
    result = await evaluator.evaluate(
        referrer_user.id, referred_user.id, SignupMetadata(device_id="D-fresh", ip_address="203.0.113.7")
    )

    assert result.is_valid is True
    assert result.fraud_score == 0.0
    assert result.reason is None
    assert result.checks_dict() == {
        "unique_device": True,
        "unique_ip": True,
        "valid_trips": True,
        "account_age": True,
        "suspicious_activity": False,
    }


@pytest.mark.asyncio
async def test_reused_device_is_rejected(
    db: AsyncSession, config: ReferralProgramConfig, referrer_user: User, referred_user: User
):
    """A's signup used D1; B signing up from D1 with the same code is blocked."""
    user_a = await make_user(db)
    await make_referral(db, referrer_user, user_a, referred_device_id="D1")

    evaluator = FraudRiskEvaluator(db, config)
    result = await evaluator.evaluate(referrer_user.id, referred_user.id, SignupMetadata(device_id="D1"))

    assert result.is_valid is False
    assert result.checks.unique_device is False
    assert result.fraud_score >= 0.4
    assert result.reason == DEVICE_REUSE_REASON


@pytest.mark.asyncio
async def test_reused_device_only_scores_when_not_blocking(
    db: AsyncSession, config: ReferralProgramConfig, referrer_user: User, referred_user: User
):
    user_a = await make_user(db)
    await make_referral(db, referrer_user, user_a, referred_device_id="D1")

    evaluator = FraudRiskEvaluator(db, replace(config, block_on_device_reuse=False))
    result = await evaluator.evaluate(referrer_user.id, referred_user.id, SignupMetadata(device_id="D1"))

    assert result.is_valid is True
    assert result.fraud_score == pytest.approx(0.4)
    assert result.checks.unique_device is False


@pytest.mark.asyncio
async def test_ip_velocity_adds_weight(
    db: AsyncSession, config: ReferralProgramConfig, referrer_user: User, referred_user: User
):
    await _referrals_from_ip(db, "198.51.100.9", 4)

    evaluator = FraudRiskEvaluator(db, config)
    result = await evaluator.evaluate(
        referrer_user.id, referred_user.id, SignupMetadata(ip_address="198.51.100.9")
    )

    assert result.checks.unique_ip is False
    assert result.fraud_score == pytest.approx(0.3)
    assert result.is_valid is True


@pytest.mark.asyncio
async def test_ip_velocity_at_limit_is_not_flagged(
    db: AsyncSession, config: ReferralProgramConfig, referrer_user: User, referred_user: User
):
    await _referrals_from_ip(db, "198.51.100.9", 3)

    evaluator = FraudRiskEvaluator(db, config)
    result = await evaluator.evaluate(
        referrer_user.id, referred_user.id, SignupMetadata(ip_address="198.51.100.9")
    )

    assert result.checks.unique_ip is True
    assert result.fraud_score == 0.0


@pytest.mark.asyncio
async def test_ip_velocity_ignores_old_referrals(
    db: AsyncSession, config: ReferralProgramConfig, referrer_user: User, referred_user: User
):
    old = datetime.now(timezone.utc) - timedelta(days=8)
    await _referrals_from_ip(db, "198.51.100.9", 5, created_at=old)

    evaluator = FraudRiskEvaluator(db, config)
    result = await evaluator.evaluate(
        referrer_user.id, referred_user.id, SignupMetadata(ip_address="198.51.100.9")
    )

    assert result.checks.unique_ip is True


@pytest.mark.asyncio
async def test_referrer_velocity_marks_suspicious(
    db: AsyncSession, config: ReferralProgramConfig, referrer_user: User, referred_user: User
):
    for _ in range(6):
        await make_referral(db, referrer_user, await make_user(db))

    evaluator = FraudRiskEvaluator(db, config)
    result = await evaluator.evaluate(referrer_user.id, referred_user.id, SignupMetadata())

    assert result.checks.suspicious_activity is True
    assert result.fraud_score == pytest.approx(0.3)
    assert result.is_valid is True


@pytest.mark.asyncio
async def test_device_and_ip_together_reach_threshold(
    db: AsyncSession, config: ReferralProgramConfig, referrer_user: User, referred_user: User
):
    await _referrals_from_ip(db, "198.51.100.9", 3)
    await make_referral(
        db, referrer_user, await make_user(db), referred_device_id="D1", referred_ip_address="198.51.100.9"
    )

    evaluator = FraudRiskEvaluator(db, replace(config, block_on_device_reuse=False))
    result = await evaluator.evaluate(
        referrer_user.id, referred_user.id, SignupMetadata(device_id="D1", ip_address="198.51.100.9")
    )

    assert result.fraud_score == pytest.approx(0.7)
    assert result.is_valid is False
    assert result.reason == SUSPICIOUS_ACTIVITY_REASON


@pytest.mark.asyncio
async def test_score_is_clamped_to_one(
    db: AsyncSession, referrer_user: User, referred_user: User
):
    config = ReferralProgramConfig(device_reuse_weight=ReferralProgramConfig.device_reuse_weight * 2)
    await _referrals_from_ip(db, "198.51.100.9", 3)
    await make_referral(
        db, referrer_user, await make_user(db), referred_device_id="D1", referred_ip_address="198.51.100.9"
    )
    for _ in range(5):
        await make_referral(db, referrer_user, await make_user(db))

    evaluator = FraudRiskEvaluator(db, config)
    result = await evaluator.evaluate(
        referrer_user.id, referred_user.id, SignupMetadata(device_id="D1", ip_address="198.51.100.9")
    )

    assert result.fraud_score == 1.0
    assert result.is_valid is False
