"""Payment queue: job producer and the bounded drain loop"""

import logging
import time
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session

from repayment_engine.config import settings
from repayment_engine.domain.exceptions import HandlerError, PayloadMalformed
from repayment_engine.domain.intent import (
    ACCEPTED_JOB_TYPES,
    JOB_B2C_DISBURSEMENT,
    JOB_SEND_SMS,
    job_type_for_billref,
)
from repayment_engine.domain.models import DrainSummary
from repayment_engine.domain.retry import decide_retry
from repayment_engine.infrastructure.database.atomic_store import AtomicStore
from repayment_engine.infrastructure.database.models import PaymentQueueJob
from repayment_engine.infrastructure.database.repositories import QueueRepository, TransactionRepository
from repayment_engine.infrastructure.observability.logging import log_queue_drain
from repayment_engine.infrastructure.observability.metrics import record_queue_job
from repayment_engine.services.disbursement import DisbursementResultHandler
from repayment_engine.services.processor import TransactionProcessor
from repayment_engine.services.sms import SmsJobHandler
from repayment_engine.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


def enqueue_job(
    db: Session,
    tenant_id: str | None,
    job_type: str,
    payload: Dict[str, Any],
    priority: int = 5,
) -> PaymentQueueJob:
    """Insert a queued job and commit it"""
    job = QueueRepository(db).enqueue(
        tenant_id, job_type, payload, priority=priority, max_attempts=settings.default_max_attempts
    )
    db.commit()
    logger.info(
        "Job enqueued",
        extra={"job_id": str(job.id), "job_type": job_type, "tenant_id": tenant_id, "priority": priority},
    )
    return job


def enqueue_transaction(db: Session, tenant_id: str | None, transaction_id: str, billref: str | None) -> PaymentQueueJob:
    """Queue an inbound C2B payment under the job type its billref implies"""
    job_type, priority = job_type_for_billref(billref)
    return enqueue_job(db, tenant_id, job_type, {"transaction_id": transaction_id}, priority)


class QueueDrainer:
    """Claims and runs queued jobs until none is claimable"""

    def __init__(
        self,
        db: Session,
        store: AtomicStore,
        worker_id: str,
        processor: TransactionProcessor,
        sms_handler: SmsJobHandler,
        disbursement_handler: DisbursementResultHandler | None = None,
        backoff_seconds: int | None = None,
    ):
        self.db = db
        self.store = store
        self.worker_id = worker_id
        self.processor = processor
        self.sms_handler = sms_handler
        self.disbursement_handler = disbursement_handler or DisbursementResultHandler(db)
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.queue_retry_backoff_seconds
        self.jobs = QueueRepository(db)
        self.transactions = TransactionRepository(db)

    def drain(self, tenant_id: Optional[str] = None) -> DrainSummary:
        """
        Flow:
        1. Claim the next due job (priority, then age)
        2. A job of another tenant is released and the drain stops
        3. Dispatch by job type; success completes the job
        4. Failures go through the retry / dead-letter policy
        """
        start_time = time.time()
        summary = DrainSummary(worker_id=self.worker_id)

        while True:
            job = self.store.claim_queue_job(self.worker_id, ACCEPTED_JOB_TYPES)
            if job is None:
                break

            if tenant_id and job.tenant_id != tenant_id:
                self._release(job)
                break

            if self._run(job):
                summary.processed += 1
            else:
                summary.failed += 1

        log_queue_drain(summary, tenant_id, (time.time() - start_time) * 1000)
        return summary

    def _run(self, job: PaymentQueueJob) -> bool:
        job_id = job.id
        job_type = job.job_type
        try:
            self._dispatch(job)
        except Exception as e:
            self.db.rollback()
            logger.warning(
                f"Job failed: {e}",
                extra={"worker_id": self.worker_id, "job_id": str(job_id), "job_type": job_type},
            )
            self._fail(job, str(e), permanent=isinstance(e, PayloadMalformed))
            return False

        completed = self.jobs.mark_completed(job, self.worker_id)
        self.db.commit()
        if not completed:
            self._claim_lost(job_id, job_type)
            return True

        record_queue_job(job_type, "completed")
        return True

    def _dispatch(self, job: PaymentQueueJob) -> None:
        payload = job.payload or {}

        if job.job_type == JOB_B2C_DISBURSEMENT:
            self.disbursement_handler.handle(payload)
            return

        if job.job_type == JOB_SEND_SMS:
            self.sms_handler.handle(payload, job.tenant_id)
            return

        transaction_id = payload.get("transaction_id")
        if not transaction_id:
            raise PayloadMalformed("Missing transaction_id in payload")

        if job.attempts > 1 and self.transactions.reopen_failed(transaction_id):
            self.db.commit()

        result = self.processor.process(transaction_id)
        if result.status == "failed":
            raise HandlerError(result.error or "Unknown error")

    def _fail(self, job: PaymentQueueJob, error: str, permanent: bool = False) -> None:
        job_id = job.id
        job_type = job.job_type
        attempts = job.attempts
        decision = decide_retry(
            attempts,
            job.max_attempts,
            utcnow(),
            backoff_seconds=self.backoff_seconds,
            permanent=permanent,
        )
        recorded = self.jobs.mark_failed(job, self.worker_id, decision.status, error, decision.scheduled_at)
        self.db.commit()
        if not recorded:
            self._claim_lost(job_id, job_type)
            return

        record_queue_job(job_type, decision.status)

        if decision.status == "dead":
            logger.error(
                "Job dead-lettered",
                extra={"job_id": str(job_id), "job_type": job_type, "attempts": attempts, "error": error},
            )

    def _claim_lost(self, job_id, job_type: str) -> None:
        # Recovered as stuck (and possibly re-claimed) while this worker ran it
        record_queue_job(job_type, "claim_lost")
        logger.warning(
            "Job claim lost before its outcome was recorded",
            extra={"worker_id": self.worker_id, "job_id": str(job_id), "job_type": job_type},
        )

    def _release(self, job: PaymentQueueJob) -> None:
        self.jobs.release(job)
        self.db.commit()
        record_queue_job(job.job_type, "released")
        logger.info(
            "Released job of another tenant",
            extra={"worker_id": self.worker_id, "job_id": str(job.id), "job_tenant_id": job.tenant_id},
        )
