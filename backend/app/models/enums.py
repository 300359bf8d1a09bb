import enum

# These enums are stored as VARCHAR columns rather than native PG ENUM types
# so adding a value never needs an ALTER TYPE migration.


class UserRole(str, enum.Enum):
    RIDER = "rider"
    DRIVER = "driver"
    ADMIN = "admin"


class TripStatus(str, enum.Enum):
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReferralStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    REJECTED = "rejected"


class RewardType(str, enum.Enum):
    REFERRER = "referrer"
    REFERRED = "referred"


class RewardStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class AuditEvent(str, enum.Enum):
    REFERRAL_CREATED = "referral_created"
    REFERRAL_REJECTED = "referral_rejected"
    INVALID_TRIP_DETECTED = "invalid_trip_detected"
    REFERRAL_PROGRESS_UPDATED = "referral_progress_updated"
    REFERRER_REWARD_CREATED = "referrer_reward_created"
    REFERRED_REWARD_CREATED = "referred_reward_created"
    REWARD_STATUS_CHANGED = "reward_status_changed"
