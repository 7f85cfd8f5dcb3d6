"""Time utilities (UTC now, naive/aware conversion for storage)."""
from __future__ import annotations
from datetime import datetime, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive values read back from the DB; convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def to_storage(value: datetime) -> datetime:
    # Stored as naive UTC so sqlite and postgres compare the same way.
    return ensure_utc(value).replace(tzinfo=None)

__all__ = ["EPOCH", "utc_now", "ensure_utc", "to_storage"]
