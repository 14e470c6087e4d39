"""
Small helpers shared across modules.
"""

import hashlib
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def mask_secret(value: str | None, visible: int = 6) -> str:
    """
    Truncate an identifier or secret for log output.
    """
    if not value:
        return "<empty>"
    if len(value) <= visible * 2:
        return "***"
    return f"{value[:visible]}..."
