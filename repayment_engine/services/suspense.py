"""Suspense handler: parks payments whose payer cannot be resolved"""

import logging
from sqlalchemy.orm import Session

from repayment_engine.infrastructure.database.models import C2BTransaction
from repayment_engine.infrastructure.database.repositories import SuspenseRepository, TransactionRepository

logger = logging.getLogger(__name__)


class SuspenseHandler:
    """Writes an idempotent suspense record and flags the transaction"""

    def __init__(self, db: Session):
        self.suspense = SuspenseRepository(db)
        self.transactions = TransactionRepository(db)

    def park(self, tx: C2BTransaction, reason: str, tenant_id: str | None = None) -> None:
        logger.info(
            "Moving transaction to suspense",
            extra={"transaction_id": tx.transaction_id, "reason": reason},
        )
        self.suspense.upsert(tx, reason, tenant_id)
        self.transactions.mark_suspense(tx.transaction_id)
