"""Small shared helpers."""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns' convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
