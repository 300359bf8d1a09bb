import uuid

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ReferralProgramConfig
from app.metrics import REFERRALS_CREATED, REFERRALS_REJECTED
from app.models.enums import AuditEvent, ReferralStatus
from app.models.referral import Referral
from app.models.user import User
from app.services.audit import log_audit_event
from app.services.errors import NotFoundError, ReferralValidationError, TransientStoreError
from app.services.fraud import FraudRiskEvaluator, ReferralValidation, SignupMetadata
from app.utils.code_generator import generate_referral_code

logger = structlog.get_logger()

MAX_REFERRAL_CODE_GENERATION_ATTEMPTS = 10


class ReferralRegistry:
    """Creates and looks up referral records."""

    def __init__(
        self,
        db: AsyncSession,
        config: ReferralProgramConfig,
        evaluator: FraudRiskEvaluator | None = None,
    ):
        self.db = db
        self.config = config
        self.evaluator = evaluator or FraudRiskEvaluator(db, config)

    async def generate_code(self, user_id: uuid.UUID) -> str:
        """Return the user's referral code, creating and storing one on first use."""
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.referral_code:
            return user.referral_code

        for _ in range(MAX_REFERRAL_CODE_GENERATION_ATTEMPTS):
            code = generate_referral_code(str(user.id))
            if await self.find_referrer_by_code(code) is None:
                break
        else:
            raise TransientStoreError("Could not generate unique referral code")

        user.referral_code = code
        await self.db.commit()
        logger.info("referral_code_generated", user_id=str(user.id), code=code)
        return code

    async def find_referrer_by_code(self, referral_code: str) -> User | None:
        result = await self.db.execute(
            select(User).where(User.referral_code == referral_code.strip().upper())
        )
        return result.scalar_one_or_none()

    async def validate(
        self, referral_code: str, referred_id: uuid.UUID, metadata: SignupMetadata
    ) -> ReferralValidation:
        """Dry run of create(): resolves the code and scores the attempt, stores nothing."""
        referrer = await self.find_referrer_by_code(referral_code)
        if referrer is None:
            return ReferralValidation.invalid_code()
        return await self.evaluator.evaluate(referrer.id, referred_id, metadata)

    async def create(
        self,
        referrer_id: uuid.UUID,
        referred_id: uuid.UUID,
        referral_code: str,
        metadata: SignupMetadata,
    ) -> Referral:
        referrer = await self.db.get(User, referrer_id)
        if referrer is None:
            raise NotFoundError("Referrer not found")

        validation = await self.evaluator.evaluate(referrer_id, referred_id, metadata)
        if not validation.is_valid:
            REFERRALS_REJECTED.labels(reason=validation.reason).inc()
            logger.info(
                "referral_rejected",
                referrer_id=str(referrer_id),
                referred_id=str(referred_id),
                reason=validation.reason,
                fraud_score=validation.fraud_score,
            )
            await log_audit_event(
                self.db,
                AuditEvent.REFERRAL_REJECTED,
                user_id=referred_id,
                referrer_id=referrer_id,
                referral_code=referral_code,
                reason=validation.reason,
                fraud_score=validation.fraud_score,
                checks=validation.checks_dict(),
            )
            raise ReferralValidationError(
                validation.reason or "Referral rejected",
                validation.fraud_score,
                validation.checks_dict(),
            )

        referral = Referral(
            id=uuid.uuid4(),
            referrer_id=referrer_id,
            referred_id=referred_id,
            referral_code=referral_code,
            status=ReferralStatus.PENDING,
            referred_trips_completed=0,
            referrer_reward_paid=False,
            referred_reward_paid=False,
            referred_device_id=metadata.device_id,
            referred_ip_address=metadata.ip_address,
        )
        self.db.add(referral)
        await self.db.commit()

        REFERRALS_CREATED.inc()
        logger.info(
            "referral_created",
            referral_id=str(referral.id),
            referrer_id=str(referrer_id),
            fraud_score=validation.fraud_score,
        )
        await log_audit_event(
            self.db,
            AuditEvent.REFERRAL_CREATED,
            referral_id=referral.id,
            user_id=referred_id,
            referrer_id=referrer_id,
            fraud_score=validation.fraud_score,
        )
        return referral

    async def get(self, referral_id: uuid.UUID) -> Referral:
        referral = await self.db.get(Referral, referral_id)
        if referral is None:
            raise NotFoundError("Referral not found")
        return referral

    async def get_for_participant(self, referral_id: uuid.UUID, user_id: uuid.UUID) -> Referral:
        """Return the referral only if ``user_id`` is one of its two parties.

        Other users get NotFound rather than a permission error so ids
        cannot be probed.
        """
        result = await self.db.execute(
            select(Referral).where(
                Referral.id == referral_id,
                or_(Referral.referrer_id == user_id, Referral.referred_id == user_id),
            )
        )
        referral = result.scalar_one_or_none()
        if referral is None:
            raise NotFoundError("Referral not found")
        return referral

    async def get_by_referred_id(self, referred_id: uuid.UUID) -> Referral | None:
        # Creation is not unique per referred user; the oldest record wins.
        result = await self.db.execute(
            select(Referral)
            .where(Referral.referred_id == referred_id)
            .order_by(Referral.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_referrer(self, referrer_id: uuid.UUID) -> list[Referral]:
        result = await self.db.execute(
            select(Referral)
            .where(Referral.referrer_id == referrer_id)
            .order_by(Referral.created_at.desc())
        )
        return list(result.scalars().all())
