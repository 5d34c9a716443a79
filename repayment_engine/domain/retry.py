"""Retry / dead-letter policy for failed queue jobs"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass
class RetryDecision:
    """Next state of a failed job"""

    status: str  # "queued" | "dead"
    scheduled_at: Optional[datetime]


def decide_retry(
    attempts: int,
    max_attempts: int,
    now: datetime,
    backoff_seconds: int = 30,
    permanent: bool = False,
) -> RetryDecision:
    """
    Decide whether a failed job is retried or dead-lettered.

    The attempt counter was already incremented by the claim, so a job on
    its last allowed attempt has attempts == max_attempts. Permanent
    failures (malformed payloads) go straight to dead.
    """
    if permanent or attempts >= max_attempts:
        return RetryDecision(status="dead", scheduled_at=None)
    return RetryDecision(status="queued", scheduled_at=now + timedelta(seconds=backoff_seconds))
