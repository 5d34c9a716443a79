"""Date manipulation utilities"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def minutes_ago(minutes: int, now: datetime | None = None) -> datetime:
    """Point in time `minutes` before now"""
    return (now or utcnow()) - timedelta(minutes=minutes)
