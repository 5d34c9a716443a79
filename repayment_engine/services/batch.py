"""Batch scanner: process pending transactions directly, bypassing the queue"""

import logging
from typing import Optional
from sqlalchemy.orm import Session

from repayment_engine.domain.models import BatchSummary
from repayment_engine.infrastructure.database.repositories import TransactionRepository
from repayment_engine.services.processor import TransactionProcessor

logger = logging.getLogger(__name__)


class BatchScanner:
    """Processes the oldest pending transactions one by one

    Every row is claimed before processing, so several scanners may run
    concurrently; rows another worker got first come back as skipped.
    """

    def __init__(self, db: Session, processor: TransactionProcessor):
        self.transactions = TransactionRepository(db)
        self.processor = processor

    def process_pending(self, tenant_id: Optional[str] = None, limit: int = 50) -> BatchSummary:
        transaction_ids = self.transactions.list_pending_ids(limit, tenant_id)
        summary = BatchSummary(worker_id=self.processor.worker_id)

        logger.info(
            "Scanning pending transactions",
            extra={"worker_id": summary.worker_id, "tenant_id": tenant_id, "found": len(transaction_ids)},
        )

        for transaction_id in transaction_ids:
            summary.results.append(self.processor.process(transaction_id))

        logger.info(
            "Batch complete",
            extra={
                "worker_id": summary.worker_id,
                "succeeded": summary.succeeded,
                "skipped": summary.skipped,
                "failed": summary.failed,
            },
        )
        return summary
