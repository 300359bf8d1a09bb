import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from app.models.enums import ReferralStatus, RewardStatus, RewardType


class ReferralCodeResponse(BaseModel):
    code: str


class ReferralRequest(BaseModel):
    referral_code: str = Field(min_length=1, max_length=20)
    device_id: str | None = Field(default=None, max_length=255)
    ip_address: str | None = Field(default=None, max_length=45)


class ProgressRequest(BaseModel):
    trip_id: str = Field(min_length=1, max_length=64)


class ProgressResponse(BaseModel):
    success: bool = True
    counted: bool
    trips_completed: int | None = None
    reason: str | None = None


class FraudChecksResponse(BaseModel):
    unique_device: bool
    unique_ip: bool
    valid_trips: bool
    account_age: bool
    suspicious_activity: bool


class ReferralValidationResponse(BaseModel):
    is_valid: bool
    reason: str | None = None
    fraud_score: float
    checks: FraudChecksResponse


class ReferralMetadataResponse(BaseModel):
    referred_device_id: str | None = None
    referred_ip_address: str | None = None
    referrer_device_id: str | None = None
    referrer_ip_address: str | None = None
    referred_signup_date: datetime
    first_trip_date: datetime | None = None
    twenty_trips_completed_date: datetime | None = None
    twenty_five_trips_completed_date: datetime | None = None


class ReferralResponse(BaseModel):
    id: uuid.UUID
    referrer_id: uuid.UUID
    referred_id: uuid.UUID
    referral_code: str
    status: ReferralStatus
    referred_trips_completed: int
    referrer_reward_paid: bool
    referred_reward_paid: bool
    version: int
    created_at: datetime
    updated_at: datetime
    metadata: ReferralMetadataResponse

    @classmethod
    def from_model(cls, referral) -> "ReferralResponse":
        return cls(
            id=referral.id,
            referrer_id=referral.referrer_id,
            referred_id=referral.referred_id,
            referral_code=referral.referral_code,
            status=referral.status,
            referred_trips_completed=referral.referred_trips_completed,
            referrer_reward_paid=referral.referrer_reward_paid,
            referred_reward_paid=referral.referred_reward_paid,
            version=referral.version,
            created_at=referral.created_at,
            updated_at=referral.updated_at,
            metadata=ReferralMetadataResponse(
                referred_device_id=referral.referred_device_id,
                referred_ip_address=referral.referred_ip_address,
                referrer_device_id=referral.referrer_device_id,
                referrer_ip_address=referral.referrer_ip_address,
                referred_signup_date=referral.referred_signup_date,
                first_trip_date=referral.first_trip_at,
                twenty_trips_completed_date=referral.twenty_trips_completed_at,
                twenty_five_trips_completed_date=referral.twenty_five_trips_completed_at,
            ),
        )


class RewardResponse(BaseModel):
    id: str
    user_id: uuid.UUID
    referral_id: uuid.UUID
    amount: int
    currency: str
    type: RewardType
    status: RewardStatus
    failure_reason: str | None = None
    created_at: datetime
    paid_at: datetime | None = None
    model_config = {"from_attributes": True}


class RewardStatusUpdateRequest(BaseModel):
    status: RewardStatus
    failure_reason: str | None = Field(default=None, max_length=500)


class ReferralStatsResponse(BaseModel):
    total_referrals: int
    pending_referrals: int
    active_referrals: int
    completed_referrals: int
    rejected_referrals: int
    total_earnings: int
    pending_earnings: int
    currency: str
    referrals: list[ReferralResponse]
    rewards: list[RewardResponse]
