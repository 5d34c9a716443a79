"""Periodic maintenance cycle: recover, drain, then sweep stragglers"""

import logging
from dataclasses import asdict
from typing import Any, Dict, List

from repayment_engine.config import settings

logger = logging.getLogger(__name__)


def run_cron(engine, safety_net_limit: int | None = None) -> List[Dict[str, Any]]:
    """
    Run one cron cycle and return one entry per step that ran.

    Steps are isolated: a failing step is recorded with its error and the
    cycle moves on. The safety net only runs when pending transactions
    bypassed the queue.
    """
    limit = safety_net_limit or settings.cron_safety_net_limit
    steps: List[Dict[str, Any]] = []

    try:
        steps.append({"step": "recover-stuck", "recovered": engine.recover_stuck()})
    except Exception as e:
        engine.db.rollback()
        logger.error(f"Cron recovery step failed: {e}")
        steps.append({"step": "recover-stuck", "error": str(e)})

    try:
        summary = engine.process_queue()
        steps.append({"step": "process-queue", "processed": summary.processed, "failed": summary.failed})
    except Exception as e:
        engine.db.rollback()
        logger.error(f"Cron process-queue step failed: {e}")
        steps.append({"step": "process-queue", "error": str(e)})

    try:
        pending = engine.count_pending()
        if pending > 0:
            logger.info("Cron safety net found pending transactions", extra={"pending": pending})
            batch = engine.process_pending(limit=limit)
            steps.append(
                {
                    "step": "process-pending-safety-net",
                    "count": pending,
                    "total": batch.total,
                    "succeeded": batch.succeeded,
                    "skipped": batch.skipped,
                    "failed": batch.failed,
                    "results": [asdict(r) for r in batch.results],
                }
            )
    except Exception as e:
        engine.db.rollback()
        logger.error(f"Cron safety net step failed: {e}")
        steps.append({"step": "process-pending-safety-net", "error": str(e)})

    return steps
