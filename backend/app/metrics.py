"""Custom Prometheus metrics for referral program observability."""

from prometheus_client import Counter, Histogram

# Referral lifecycle counters
REFERRALS_CREATED = Counter(
    "kommute_referrals_created_total",
    "Total referrals created",
)
REFERRALS_REJECTED = Counter(
    "kommute_referrals_rejected_total",
    "Total referral attempts rejected by the fraud rules",
    ["reason"],
)
FRAUD_SCORE = Histogram(
    "kommute_referral_fraud_score",
    "Fraud score of evaluated referral attempts",
    buckets=(0.0, 0.1, 0.3, 0.4, 0.6, 0.7, 1.0),
)

# Trip progress counters
TRIPS_CREDITED = Counter(
    "kommute_referral_trips_credited_total",
    "Validated trips that advanced a referral counter",
)
TRIPS_REJECTED = Counter(
    "kommute_referral_trips_rejected_total",
    "Trips that failed validation",
    ["reason"],
)
VERSION_CONFLICTS = Counter(
    "kommute_referral_version_conflicts_total",
    "Optimistic-concurrency conflicts on referral updates",
)

# Reward counters
REWARDS_ISSUED = Counter(
    "kommute_referral_rewards_issued_total",
    "Total referral rewards created",
    ["type"],
)
REWARD_STATUS_CHANGES = Counter(
    "kommute_referral_reward_status_changes_total",
    "Reward status changes reported by the payout service",
    ["status"],
)

# HTTP metrics, fed by prometheus-fastapi-instrumentator
HTTP_REQUESTS = Counter(
    "kommute_http_requests_total",
    "HTTP requests by route and status class",
    ["method", "status", "handler"],
)
HTTP_LATENCY = Histogram(
    "kommute_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "handler"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)


def record_http_request(info) -> None:
    """Instrumentator callback.

    Used instead of metrics.default(), which fails on a non-numeric
    Content-Length header.
    """
    HTTP_REQUESTS.labels(info.method, info.modified_status, info.modified_handler).inc()
    HTTP_LATENCY.labels(info.method, info.modified_handler).observe(info.modified_duration)
