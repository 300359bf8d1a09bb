"""Exceptions raised by the referral program services.

Services raise these instead of HTTPException so that non-HTTP callers
(trip-completion consumers, scripts) get clean exceptions without HTTP
semantics. app.main maps them to responses.
"""


class ReferralError(Exception):
    """Base class for referral program errors."""


class NotFoundError(ReferralError):
    """A referrer, trip, referral or reward does not exist (or is not visible)."""


class ReferralValidationError(ReferralError):
    """A referral was rejected by the fraud rules.

    This is an expected business outcome, not a system failure.
    """

    def __init__(self, reason: str, fraud_score: float, checks: dict[str, bool] | None = None):
        super().__init__(reason)
        self.reason = reason
        self.fraud_score = fraud_score
        self.checks = checks or {}


class InvalidTransitionError(ReferralError):
    """A reward status change is not allowed from its current status."""


class TransientStoreError(ReferralError):
    """The record store stayed unavailable after bounded retries."""
