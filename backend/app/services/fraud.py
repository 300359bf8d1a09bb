import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ReferralProgramConfig
from app.metrics import FRAUD_SCORE
from app.models.referral import Referral
from app.utils.log_mask import mask_device_id, mask_ip

logger = structlog.get_logger()

SELF_REFERRAL_REASON = "Cannot refer yourself"
DEVICE_REUSE_REASON = "Device already linked to a referral"
SUSPICIOUS_ACTIVITY_REASON = "Suspicious activity detected"
INVALID_CODE_REASON = "Invalid referral code"


@dataclass
class SignupMetadata:
    """Fingerprints captured when the referred user signs up."""

    device_id: str | None = None
    ip_address: str | None = None


@dataclass
class FraudChecks:
    unique_device: bool = True
    unique_ip: bool = True
    valid_trips: bool = True
    account_age: bool = True
    suspicious_activity: bool = False


@dataclass
class ReferralValidation:
    is_valid: bool
    fraud_score: float
    checks: FraudChecks = field(default_factory=FraudChecks)
    reason: str | None = None

    def checks_dict(self) -> dict[str, bool]:
        return asdict(self.checks)

    @classmethod
    def invalid_code(cls) -> "ReferralValidation":
        return cls(
            is_valid=False,
            fraud_score=0.0,
            reason=INVALID_CODE_REASON,
            checks=FraudChecks(
                unique_device=False,
                unique_ip=False,
                valid_trips=False,
                account_age=False,
                suspicious_activity=False,
            ),
        )


class FraudRiskEvaluator:
    """Scores a prospective referral by summing independent risk signals.

    Read-only against the referral store and never cached: every call
    re-queries so a burst of signups is seen as it happens.
    """

    def __init__(self, db: AsyncSession, config: ReferralProgramConfig):
        self.db = db
        self.config = config

    async def evaluate(
        self,
        referrer_id: uuid.UUID,
        referred_id: uuid.UUID,
        metadata: SignupMetadata,
    ) -> ReferralValidation:
        cfg = self.config
        checks = FraudChecks()

        if referrer_id == referred_id:
            checks.suspicious_activity = True
            FRAUD_SCORE.observe(1.0)
            logger.info("referral_self_referral_blocked", user_id=str(referrer_id))
            return ReferralValidation(
                is_valid=False, fraud_score=1.0, reason=SELF_REFERRAL_REASON, checks=checks
            )

        score = Decimal("0")
        now = datetime.now(timezone.utc)

        if metadata.device_id and await self._device_seen(metadata.device_id):
            checks.unique_device = False
            score += cfg.device_reuse_weight

        if metadata.ip_address:
            since = now - timedelta(days=cfg.ip_window_days)
            if await self._recent_ip_count(metadata.ip_address, since) > cfg.ip_max_referrals:
                checks.unique_ip = False
                score += cfg.ip_velocity_weight

        since = now - timedelta(hours=cfg.referrer_window_hours)
        if await self._recent_referrer_count(referrer_id, since) > cfg.referrer_max_referrals:
            checks.suspicious_activity = True
            score += cfg.referrer_velocity_weight

        score = min(score, Decimal("1"))
        reason = None
        if score >= cfg.fraud_score_threshold:
            reason = SUSPICIOUS_ACTIVITY_REASON
        elif cfg.block_on_device_reuse and not checks.unique_device:
            reason = DEVICE_REUSE_REASON

        fraud_score = float(score)
        FRAUD_SCORE.observe(fraud_score)
        logger.info(
            "referral_fraud_evaluated",
            referrer_id=str(referrer_id),
            referred_id=str(referred_id),
            device=mask_device_id(metadata.device_id),
            ip=mask_ip(metadata.ip_address),
            fraud_score=fraud_score,
            is_valid=reason is None,
        )
        return ReferralValidation(
            is_valid=reason is None, fraud_score=fraud_score, reason=reason, checks=checks
        )

    async def _device_seen(self, device_id: str) -> bool:
        result = await self.db.execute(
            select(Referral.id).where(Referral.referred_device_id == device_id).limit(1)
        )
        return result.first() is not None

    async def _recent_ip_count(self, ip_address: str, since: datetime) -> int:
        result = await self.db.execute(
            select(func.count(Referral.id)).where(
                Referral.referred_ip_address == ip_address,
                Referral.created_at > since,
            )
        )
        return result.scalar() or 0

    async def _recent_referrer_count(self, referrer_id: uuid.UUID, since: datetime) -> int:
        result = await self.db.execute(
            select(func.count(Referral.id)).where(
                Referral.referrer_id == referrer_id,
                Referral.created_at > since,
            )
        )
        return result.scalar() or 0
