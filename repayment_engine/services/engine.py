"""Engine facade: one worker identity wired to every processing service"""

import uuid
from typing import Optional
from sqlalchemy.orm import Session

from repayment_engine.config import settings
from repayment_engine.domain.models import BatchSummary, DrainSummary, ProcessResult
from repayment_engine.infrastructure.clients.sms import SmsClient
from repayment_engine.infrastructure.database.atomic_store import AtomicStore, SqlAlchemyAtomicStore
from repayment_engine.infrastructure.database.repositories import TransactionRepository
from repayment_engine.services.batch import BatchScanner
from repayment_engine.services.disbursement import DisbursementResultHandler
from repayment_engine.services.processor import TransactionProcessor
from repayment_engine.services.queue import QueueDrainer
from repayment_engine.services.recovery import recover_stuck_jobs
from repayment_engine.services.sms import SmsJobHandler


def new_worker_id(prefix: str | None = None) -> str:
    return f"{prefix or settings.worker_id_prefix}-{uuid.uuid4().hex[:12]}"


class RepaymentEngine:
    """Entry point for every invocation action; one instance per request"""

    def __init__(
        self,
        db: Session,
        sms_client: SmsClient,
        worker_id: str | None = None,
        store: AtomicStore | None = None,
    ):
        self.db = db
        self.worker_id = worker_id or new_worker_id()
        self.store = store or SqlAlchemyAtomicStore(db)
        self.processor = TransactionProcessor(db, self.store, self.worker_id)
        self.scanner = BatchScanner(db, self.processor)
        self.drainer = QueueDrainer(
            db,
            self.store,
            self.worker_id,
            self.processor,
            SmsJobHandler(db, sms_client),
            DisbursementResultHandler(db),
        )
        self.transactions = TransactionRepository(db)

    def process_pending(self, tenant_id: Optional[str] = None, limit: int | None = None) -> BatchSummary:
        return self.scanner.process_pending(tenant_id, limit or settings.default_batch_limit)

    def process_single(self, transaction_id: str) -> ProcessResult:
        return self.processor.process(transaction_id)

    def process_queue(self, tenant_id: Optional[str] = None) -> DrainSummary:
        return self.drainer.drain(tenant_id)

    def recover_stuck(self) -> int:
        return recover_stuck_jobs(self.store)

    def count_pending(self) -> int:
        return self.transactions.count_pending()
