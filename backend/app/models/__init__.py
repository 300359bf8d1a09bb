from app.models.audit_log import AuditLog
from app.models.referral import Referral, ReferralReward, ReferralTripCredit
from app.models.trip import Trip
from app.models.user import User

__all__ = [
    "AuditLog",
    "User",
    "Trip",
    "Referral",
    "ReferralReward",
    "ReferralTripCredit",
]
