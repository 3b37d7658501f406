"""
shared/utils/clock.py
Timezone helpers. Everything the core stores or compares is UTC-aware.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def hours_since(then: datetime, now: datetime) -> float:
    return (ensure_aware(now) - ensure_aware(then)).total_seconds() / 3600
