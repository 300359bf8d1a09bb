"""Log masking utilities.

Keeps signup fingerprints (IP addresses, device ids) out of INFO-level logs
which may be shipped to third-party log aggregators (Sentry, etc.).
"""


def mask_ip(ip: str | None) -> str:
    """Mask an IP address for logging: '203.0.113.42' -> '203.0.113.***'."""
    if not ip:
        return "***"
    if ":" in ip:
        groups = ip.split(":")
        return ":".join(groups[:3] + ["***"])
    parts = ip.split(".")
    if len(parts) != 4:
        return "***"
    return ".".join(parts[:3] + ["***"])


def mask_device_id(device_id: str | None) -> str:
    """Mask a device id for logging: 'abcdef123456' -> 'abcd***'."""
    if not device_id:
        return "***"
    if len(device_id) <= 4:
        return "***"
    return f"{device_id[:4]}***"
