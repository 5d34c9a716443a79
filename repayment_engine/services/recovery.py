"""Stuck-job recovery"""

import logging

from repayment_engine.infrastructure.database.atomic_store import AtomicStore
from repayment_engine.infrastructure.observability.metrics import stuck_jobs_recovered_counter

logger = logging.getLogger(__name__)


def recover_stuck_jobs(store: AtomicStore) -> int:
    """Requeue jobs whose worker never finished them; returns the count"""
    recovered = store.recover_stuck_queue_jobs()
    if recovered:
        stuck_jobs_recovered_counter.inc(recovered)
        logger.warning("Recovered stuck jobs", extra={"recovered": recovered})
    return recovered
