import uuid

import structlog
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ReferralProgramConfig
from app.database import get_db
from app.dependencies import get_current_admin, get_current_user, get_program_config
from app.models.user import User
from app.schemas.referral import (
    ProgressRequest,
    ProgressResponse,
    ReferralCodeResponse,
    ReferralRequest,
    ReferralResponse,
    ReferralStatsResponse,
    ReferralValidationResponse,
    RewardResponse,
    RewardStatusUpdateRequest,
)
from app.services.errors import NotFoundError
from app.services.fraud import SignupMetadata
from app.services.progress import ProgressTracker
from app.services.registry import ReferralRegistry
from app.services.rewards import RewardIssuer
from app.services.stats import StatsAggregator
from app.utils.rate_limit import (
    CODE_VALIDATION_RATE_LIMIT,
    PROGRESS_RATE_LIMIT,
    REFERRAL_CREATE_RATE_LIMIT,
    limiter,
)
from app.utils.retry import with_store_retry

logger = structlog.get_logger()
router = APIRouter()


@router.post("/code", response_model=ReferralCodeResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/hour")
async def generate_referral_code(
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    config: ReferralProgramConfig = Depends(get_program_config),
):
    """Generate the current user's referral code. Returns the existing code if one exists."""
    registry = ReferralRegistry(db, config)
    code = await with_store_retry(db, lambda: registry.generate_code(user.id), name="generate_referral_code")
    return ReferralCodeResponse(code=code)


@router.post("", response_model=ReferralResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(REFERRAL_CREATE_RATE_LIMIT)
async def create_referral(
    request: Request,
    body: ReferralRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    config: ReferralProgramConfig = Depends(get_program_config),
):
    """Link the current user to the owner of ``referral_code``.

    Fails with 422 (reason + fraud score) when the fraud rules reject it.
    """
    registry = ReferralRegistry(db, config)
    referrer = await registry.find_referrer_by_code(body.referral_code)
    if referrer is None:
        raise NotFoundError("Invalid referral code")

    metadata = SignupMetadata(device_id=body.device_id, ip_address=body.ip_address)
    referral = await with_store_retry(
        db,
        lambda: registry.create(referrer.id, user.id, referrer.referral_code, metadata),
        name="create_referral",
    )
    return ReferralResponse.from_model(referral)


@router.post("/validate", response_model=ReferralValidationResponse)
@limiter.limit(CODE_VALIDATION_RATE_LIMIT)
async def validate_referral(
    request: Request,
    body: ReferralRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    config: ReferralProgramConfig = Depends(get_program_config),
):
    """Dry run of referral creation: scores the attempt without storing anything."""
    registry = ReferralRegistry(db, config)
    metadata = SignupMetadata(device_id=body.device_id, ip_address=body.ip_address)
    validation = await with_store_retry(
        db,
        lambda: registry.validate(body.referral_code, user.id, metadata),
        name="validate_referral",
    )
    return ReferralValidationResponse(
        is_valid=validation.is_valid,
        reason=validation.reason,
        fraud_score=validation.fraud_score,
        checks=validation.checks_dict(),
    )


@router.post("/progress", response_model=ProgressResponse)
@limiter.limit(PROGRESS_RATE_LIMIT)
async def update_progress(
    request: Request,
    body: ProgressRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    config: ReferralProgramConfig = Depends(get_program_config),
):
    """Count a completed trip toward the current user's referral."""
    tracker = ProgressTracker(db, config)
    result = await with_store_retry(
        db,
        lambda: tracker.record_trip(user.id, body.trip_id),
        name="update_referral_progress",
    )
    return ProgressResponse(
        counted=result.counted,
        trips_completed=result.trips_completed,
        reason=result.reason,
    )


@router.get("/stats", response_model=ReferralStatsResponse)
async def get_referral_stats(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    config: ReferralProgramConfig = Depends(get_program_config),
):
    """Referral counts and earnings for the current user as a referrer."""
    aggregator = StatsAggregator(db, config)
    stats = await with_store_retry(db, lambda: aggregator.get_stats(user.id), name="get_referral_stats")
    return ReferralStatsResponse(
        total_referrals=stats.total_referrals,
        pending_referrals=stats.pending_referrals,
        active_referrals=stats.active_referrals,
        completed_referrals=stats.completed_referrals,
        rejected_referrals=stats.rejected_referrals,
        total_earnings=stats.total_earnings,
        pending_earnings=stats.pending_earnings,
        currency=stats.currency,
        referrals=[ReferralResponse.from_model(r) for r in stats.referrals],
        rewards=[RewardResponse.model_validate(r) for r in stats.rewards],
    )


@router.post("/rewards/{reward_id}/status", response_model=RewardResponse)
async def update_reward_status(
    reward_id: str,
    body: RewardStatusUpdateRequest,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
    config: ReferralProgramConfig = Depends(get_program_config),
):
    """Record a payout outcome reported by the wallet/payment service."""
    issuer = RewardIssuer(db, config)
    reward = await issuer.update_status(reward_id, body.status, body.failure_reason)
    logger.info("reward_status_updated_by_admin", reward_id=reward_id, admin_id=str(admin.id))
    return RewardResponse.model_validate(reward)


@router.get("/{referral_id}", response_model=ReferralResponse)
async def get_referral_details(
    referral_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    config: ReferralProgramConfig = Depends(get_program_config),
):
    """A referral the current user is part of, as referrer or referred."""
    registry = ReferralRegistry(db, config)
    referral = await registry.get_for_participant(referral_id, user.id)
    return ReferralResponse.from_model(referral)
