"""Data access layer for lending entities"""

import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from repayment_engine.domain.models import BucketPayment, InstallmentAllocation
from repayment_engine.infrastructure.database.atomic_store import dialect_insert
from repayment_engine.infrastructure.database.models import (
    B2CTransaction,
    C2BTransaction,
    Customer,
    Loan,
    LoanDisbursementTransaction,
    LoanInstallment,
    LoanPayment,
    PaymentQueueJob,
    SmsLog,
    SuspenseTransaction,
    TenantSmsSettings,
)
from repayment_engine.utils.date_utils import utcnow
from repayment_engine.utils.money import to_decimal


class CustomerRepository:
    """Repository for customers"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, customer_id: str, tenant_id: str | None = None) -> Optional[Customer]:
        query = self.db.query(Customer).filter(Customer.id == customer_id)
        if tenant_id:
            query = query.filter(Customer.tenant_id == tenant_id)
        return query.first()

    def find_by_id_number(self, id_number: str, tenant_id: str | None = None) -> Optional[Customer]:
        query = self.db.query(Customer).filter(Customer.id_number == id_number)
        if tenant_id:
            query = query.filter(Customer.tenant_id == tenant_id)
        return query.order_by(Customer.created_at.asc()).first()

    def find_by_mobile(self, phone_variants: Sequence[str], tenant_id: str | None = None) -> Optional[Customer]:
        """First customer whose stored mobile matches any variant"""
        if not phone_variants:
            return None
        query = self.db.query(Customer).filter(Customer.mobile.in_(list(phone_variants)))
        if tenant_id:
            query = query.filter(Customer.tenant_id == tenant_id)
        return query.order_by(Customer.created_at.asc()).first()

    def mark_registered(self, customer: Customer) -> None:
        customer.registration_fee_paid = True
        customer.is_new_customer = False
        self.db.flush()


class LoanRepository:
    """Repository for loans"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, loan_id: str, tenant_id: str | None = None, lock: bool = False) -> Optional[Loan]:
        query = self.db.query(Loan).filter(Loan.id == loan_id)
        if tenant_id:
            query = query.filter(Loan.tenant_id == tenant_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    def get_newest_pending_loan(self, customer_id: str, tenant_id: str, lock: bool = False) -> Optional[Loan]:
        """Newest loan still in the application pipeline (not rejected or disbursed)"""
        query = (
            self.db.query(Loan)
            .filter(
                Loan.customer_id == customer_id,
                Loan.tenant_id == tenant_id,
                Loan.status.notin_(["rejected", "disbursed"]),
            )
            .order_by(Loan.created_at.desc())
        )
        if lock:
            query = query.with_for_update()
        return query.first()

    def mark_fee_paid(self, loan: Loan, flag: str) -> bool:
        """
        Flip a fee flag (registration_fee_paid / processing_fee_paid) from false to true.

        Returns False when the flag was already set in the database, i.e. another
        payment settled the fee after this one read the loan.
        """
        column = getattr(Loan, flag)
        result = self.db.execute(
            update(Loan)
            .where(Loan.id == loan.id, column.is_(False))
            .values({flag: True})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        setattr(loan, flag, True)
        return True

    def get_active_loan(self, customer_id: str, tenant_id: str) -> Optional[Loan]:
        """Oldest disbursed loan still being repaid"""
        return (
            self.db.query(Loan)
            .filter(
                Loan.customer_id == customer_id,
                Loan.tenant_id == tenant_id,
                Loan.status == "disbursed",
                Loan.repayment_state.in_(["ongoing", "partial", "overdue"]),
            )
            .order_by(Loan.disbursed_at.asc())
            .first()
        )

    def outstanding_balance(self, loan: Loan) -> Decimal:
        """Total payable minus every payment ever recorded against the loan"""
        total_paid = (
            self.db.query(func.coalesce(func.sum(LoanPayment.paid_amount), 0))
            .filter(LoanPayment.loan_id == loan.id)
            .scalar()
        )
        return max(Decimal("0"), to_decimal(loan.total_payable) - to_decimal(total_paid))


class InstallmentRepository:
    """Repository for loan installments"""

    def __init__(self, db: Session):
        self.db = db

    def get_unpaid(self, loan_id: str, statuses: Sequence[str]) -> List[LoanInstallment]:
        """Unpaid installments in ascending installment number (never skip ahead)"""
        return (
            self.db.query(LoanInstallment)
            .filter(LoanInstallment.loan_id == loan_id, LoanInstallment.status.in_(list(statuses)))
            .order_by(LoanInstallment.installment_number.asc())
            .with_for_update()
            .all()
        )

    def apply_allocation(self, installment: LoanInstallment, allocation: InstallmentAllocation) -> None:
        installment.interest_paid = allocation.interest_paid
        installment.principal_paid = allocation.principal_paid
        installment.paid_amount = allocation.total_paid
        installment.status = allocation.status
        self.db.flush()

    def count_unpaid(self, loan_id: str, statuses: Sequence[str]) -> int:
        return (
            self.db.query(func.count(LoanInstallment.id))
            .filter(LoanInstallment.loan_id == loan_id, LoanInstallment.status.in_(list(statuses)))
            .scalar()
        )


class LoanPaymentRepository:
    """Repository for the loan payment ledger"""

    def __init__(self, db: Session):
        self.db = db

    def penalty_paid_for(self, installment_id: str) -> Decimal:
        """Penalty already settled on an installment, summed from the ledger"""
        total = (
            self.db.query(func.coalesce(func.sum(LoanPayment.penalty_paid), 0))
            .filter(LoanPayment.installment_id == installment_id)
            .scalar()
        )
        return to_decimal(total)

    def record_bucket(
        self,
        loan_id: str,
        installment_id: str,
        bucket: BucketPayment,
        source_reference: str,
        tenant_id: str,
        customer_id: str,
        phone_number: str | None,
    ) -> LoanPayment:
        """Insert one repayment ledger row for a waterfall bucket"""
        row = LoanPayment(
            loan_id=loan_id,
            installment_id=installment_id,
            tenant_id=tenant_id,
            customer_id=customer_id,
            paid_amount=bucket.amount,
            payment_type=bucket.payment_type,
            description=f"{bucket.payment_type.capitalize()} Repayment",
            source_reference=source_reference,
            phone_number=phone_number,
            penalty_paid=bucket.amount if bucket.payment_type == "penalty" else 0,
            interest_paid=bucket.amount if bucket.payment_type == "interest" else 0,
            principal_paid=bucket.amount if bucket.payment_type == "principal" else 0,
            balance_before=bucket.balance_before,
            balance_after=bucket.balance_after,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def record_fee(
        self,
        loan_id: str,
        amount: Decimal,
        fee_type: str,
        description: str,
        source_reference: str,
        tenant_id: str,
        customer_id: str,
    ) -> LoanPayment:
        """Insert a registration or processing fee ledger row"""
        row = LoanPayment(
            loan_id=loan_id,
            tenant_id=tenant_id,
            customer_id=customer_id,
            paid_amount=amount,
            payment_type=fee_type,
            description=description,
            source_reference=source_reference,
        )
        self.db.add(row)
        self.db.flush()
        return row


class TransactionRepository:
    """Repository for inbound C2B transactions"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, transaction_id: str, tenant_id: str | None = None) -> Optional[C2BTransaction]:
        query = self.db.query(C2BTransaction).filter(C2BTransaction.transaction_id == transaction_id)
        if tenant_id:
            query = query.filter(C2BTransaction.tenant_id == tenant_id)
        return query.first()

    def list_pending_ids(self, limit: int, tenant_id: str | None = None) -> List[str]:
        """Oldest pending transaction IDs first"""
        query = self.db.query(C2BTransaction.transaction_id).filter(C2BTransaction.status == "pending")
        if tenant_id:
            query = query.filter(C2BTransaction.tenant_id == tenant_id)
        rows = query.order_by(C2BTransaction.transaction_time.asc()).limit(limit).all()
        return [row.transaction_id for row in rows]

    def count_pending(self) -> int:
        return (
            self.db.query(func.count(C2BTransaction.id))
            .filter(C2BTransaction.status == "pending")
            .scalar()
        )

    def mark_applied(
        self,
        tx: C2BTransaction,
        description: str,
        tenant_id: str,
        customer_id: str,
        loan_id: str | None,
    ) -> None:
        tx.status = "applied"
        tx.description = description
        tx.processed_at = utcnow()
        tx.tenant_id = tenant_id
        tx.customer_id = customer_id
        if loan_id:
            tx.loan_id = loan_id
        self.db.flush()

    def mark_suspense(self, transaction_id: str) -> None:
        self.db.query(C2BTransaction).filter(
            C2BTransaction.transaction_id == transaction_id
        ).update({"status": "suspense", "processed_at": utcnow()}, synchronize_session=False)

    def mark_failed(self, transaction_id: str, error: str) -> int:
        """Record a failure only while the row is still in processing (owned by us)"""
        return (
            self.db.query(C2BTransaction)
            .filter(C2BTransaction.transaction_id == transaction_id, C2BTransaction.status == "processing")
            .update({"status": "failed", "last_error": error}, synchronize_session=False)
        )

    def reopen_failed(self, transaction_id: str) -> int:
        """failed -> pending so a queue retry can claim the transaction again"""
        return (
            self.db.query(C2BTransaction)
            .filter(C2BTransaction.transaction_id == transaction_id, C2BTransaction.status == "failed")
            .update({"status": "pending", "claimed_by": None, "claimed_at": None}, synchronize_session=False)
        )

    def mark_sms_sent(self, tx: C2BTransaction, customer_id: str | None = None) -> None:
        tx.payment_sms_sent = True
        if customer_id and not tx.customer_id:
            tx.customer_id = customer_id
        self.db.flush()


class SuspenseRepository:
    """Repository for suspense (manual review) records"""

    def __init__(self, db: Session):
        self.db = db

    def upsert(self, tx: C2BTransaction, reason: str, tenant_id: str | None = None) -> None:
        """Insert or refresh the suspense record keyed by transaction ID"""
        values = {
            "tenant_id": tenant_id or tx.tenant_id,
            "payer_name": (tx.first_name or "").strip() or "Unknown",
            "phone_number": tx.phone_number,
            "amount": tx.amount,
            "billref": tx.billref,
            "transaction_time": tx.transaction_time or utcnow(),
            "status": "suspense",
            "reason": reason,
        }
        stmt = dialect_insert(self.db, SuspenseTransaction).values(
            id=uuid.uuid4(), transaction_id=tx.transaction_id, **values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["transaction_id"],
            set_={**values, "updated_at": utcnow()},
        )
        self.db.execute(stmt)

    def get(self, transaction_id: str) -> Optional[SuspenseTransaction]:
        return (
            self.db.query(SuspenseTransaction)
            .filter(SuspenseTransaction.transaction_id == transaction_id)
            .first()
        )


class QueueRepository:
    """Repository for payment queue jobs (non-claim transitions)"""

    def __init__(self, db: Session):
        self.db = db

    def enqueue(
        self,
        tenant_id: str | None,
        job_type: str,
        payload: Dict[str, Any],
        priority: int = 5,
        max_attempts: int = 3,
    ) -> PaymentQueueJob:
        job = PaymentQueueJob(
            tenant_id=tenant_id,
            job_type=job_type,
            payload=payload,
            priority=priority,
            max_attempts=max_attempts,
            status="queued",
            scheduled_at=utcnow(),
        )
        self.db.add(job)
        self.db.flush()
        return job

    def _update_claimed(self, job: PaymentQueueJob, worker_id: str, **values) -> bool:
        """Apply values only while worker_id still holds the claim on the job"""
        result = self.db.execute(
            update(PaymentQueueJob)
            .where(
                PaymentQueueJob.id == job.id,
                PaymentQueueJob.status == "processing",
                PaymentQueueJob.claimed_by == worker_id,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.expire(job)
        return result.rowcount == 1

    def mark_completed(self, job: PaymentQueueJob, worker_id: str) -> bool:
        return self._update_claimed(job, worker_id, status="completed", completed_at=utcnow())

    def mark_failed(self, job: PaymentQueueJob, worker_id: str, status: str, error: str, scheduled_at) -> bool:
        return self._update_claimed(
            job,
            worker_id,
            status=status,
            last_error=error,
            failed_at=utcnow(),
            claimed_at=None,
            claimed_by=None,
            scheduled_at=scheduled_at,
        )

    def release(self, job: PaymentQueueJob) -> None:
        """Undo a claim, including its attempt increment"""
        job.status = "queued"
        job.claimed_at = None
        job.claimed_by = None
        job.attempts = max(0, job.attempts - 1)
        self.db.flush()


class SmsRepository:
    """Repository for SMS settings and logs"""

    def __init__(self, db: Session):
        self.db = db

    def get_settings(self, tenant_id: str) -> Optional[TenantSmsSettings]:
        return self.db.get(TenantSmsSettings, tenant_id)

    def log_sent(self, tenant_id: str, customer_id: str | None, recipient: str, message: str, message_id: str) -> SmsLog:
        log = SmsLog(
            tenant_id=tenant_id,
            customer_id=customer_id,
            recipient_phone=recipient,
            message=message,
            status="sent",
            message_id=message_id,
        )
        self.db.add(log)
        self.db.flush()
        return log


class DisbursementRepository:
    """Repository for B2C disbursement bookkeeping"""

    def __init__(self, db: Session):
        self.db = db

    def record_b2c_result(
        self,
        conversation_id: str | None,
        originator_id: str | None,
        status: str,
        result_code: Any,
        result_desc: str | None,
        provider_transaction_id: str | None,
        raw_result: Dict[str, Any],
    ) -> int:
        matchers = []
        if conversation_id:
            matchers.append(B2CTransaction.conversation_id == conversation_id)
        if originator_id:
            matchers.append(B2CTransaction.originator_id == originator_id)
        if not matchers:
            return 0
        return (
            self.db.query(B2CTransaction)
            .filter(or_(*matchers))
            .update(
                {
                    "status": status,
                    "result_code": str(result_code),
                    "result_desc": result_desc,
                    "transaction_id": provider_transaction_id or None,
                    "raw_result": raw_result,
                    "completed_at": utcnow(),
                },
                synchronize_session=False,
            )
        )

    def mark_disbursed(self, loan_id: str, provider_transaction_id: str | None) -> None:
        now = utcnow()
        self.db.query(LoanDisbursementTransaction).filter(
            LoanDisbursementTransaction.loan_id == loan_id,
            LoanDisbursementTransaction.status == "processing",
        ).update(
            {"status": "success", "transaction_id": provider_transaction_id, "processed_at": now},
            synchronize_session=False,
        )
        self.db.query(Loan).filter(
            Loan.id == loan_id,
            Loan.status == "ready_for_disbursement",
        ).update(
            {"status": "disbursed", "disbursed_at": now, "mpesa_transaction_id": provider_transaction_id},
            synchronize_session=False,
        )

    def revert_to_ready(self, loan_id: str) -> None:
        self.db.query(Loan).filter(
            Loan.id == loan_id,
            Loan.status.in_(["disbursed", "processing"]),
        ).update({"status": "ready_for_disbursement"}, synchronize_session=False)
