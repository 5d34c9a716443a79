"""Atomic storage primitives: the only serialization points between workers

Claim primitives commit immediately so competing workers observe the claim.
Ledger primitives (wallet credit/debit/drain) join the caller's unit of work
and hold the customer's wallet account row lock until the caller commits.
"""

import logging
from decimal import Decimal
from typing import Optional, Protocol, Sequence
from sqlalchemy import case, func, or_, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from repayment_engine.config import settings
from repayment_engine.domain.exceptions import InsufficientFunds, WalletError
from repayment_engine.infrastructure.database.models import (
    C2BTransaction,
    PaymentQueueJob,
    WalletAccount,
    WalletTransaction,
)
from repayment_engine.utils.date_utils import minutes_ago, utcnow
from repayment_engine.utils.money import to_decimal

logger = logging.getLogger(__name__)


class AtomicStore(Protocol):
    """Contract consumed by the processing core"""

    def claim_transaction(self, transaction_id: str, worker_id: str) -> Optional[C2BTransaction]:
        ...

    def wallet_transact(
        self,
        tenant_id: str,
        customer_id: str,
        amount: Decimal,
        direction: str,
        narration: str,
        reference: str,
        ref_type: str,
    ) -> WalletTransaction:
        ...

    def drain_wallet_for_repayment(self, tenant_id: str, customer_id: str, reference: str) -> Decimal:
        ...

    def wallet_balance(self, tenant_id: str, customer_id: str) -> Decimal:
        ...

    def claim_queue_job(self, worker_id: str, job_types: Sequence[str]) -> Optional[PaymentQueueJob]:
        ...

    def recover_stuck_queue_jobs(self) -> int:
        ...


def dialect_insert(db: Session, model):
    """INSERT construct supporting ON CONFLICT for the bound dialect"""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(model)
    if name == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT inserts are not supported on {name}")


class SqlAlchemyAtomicStore:
    """AtomicStore backed by conditional UPDATEs and row locks"""

    def __init__(
        self,
        db: Session,
        stuck_job_timeout_minutes: int | None = None,
        claim_retries: int | None = None,
    ):
        self.db = db
        self.stuck_job_timeout_minutes = stuck_job_timeout_minutes or settings.stuck_job_timeout_minutes
        self.claim_retries = claim_retries or settings.queue_claim_retries

    # ── Transactions ────────────────────────────────────────────────

    def claim_transaction(self, transaction_id: str, worker_id: str) -> Optional[C2BTransaction]:
        """pending -> processing, compare-and-swap on status. None if not ours."""
        result = self.db.execute(
            update(C2BTransaction)
            .where(C2BTransaction.transaction_id == transaction_id)
            .where(C2BTransaction.status == "pending")
            .values(status="processing", claimed_by=worker_id, claimed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount != 1:
            return None

        return (
            self.db.query(C2BTransaction)
            .filter(C2BTransaction.transaction_id == transaction_id)
            .one()
        )

    # ── Wallet ──────────────────────────────────────────────────────

    def _lock_account(self, tenant_id: str, customer_id: str) -> WalletAccount:
        self.db.execute(
            dialect_insert(self.db, WalletAccount)
            .values(tenant_id=tenant_id, customer_id=customer_id)
            .on_conflict_do_nothing(index_elements=["tenant_id", "customer_id"])
        )
        return (
            self.db.query(WalletAccount)
            .filter(WalletAccount.tenant_id == tenant_id, WalletAccount.customer_id == customer_id)
            .with_for_update()
            .one()
        )

    def _balance(self, account: WalletAccount) -> Decimal:
        signed = case(
            (WalletTransaction.direction == "credit", WalletTransaction.amount),
            else_=-WalletTransaction.amount,
        )
        total = (
            self.db.query(func.coalesce(func.sum(signed), 0))
            .filter(WalletTransaction.account_id == account.id)
            .scalar()
        )
        return to_decimal(total)

    def wallet_balance(self, tenant_id: str, customer_id: str) -> Decimal:
        """Current balance (read-only; no row lock)"""
        account = (
            self.db.query(WalletAccount)
            .filter(WalletAccount.tenant_id == tenant_id, WalletAccount.customer_id == customer_id)
            .one_or_none()
        )
        return self._balance(account) if account else Decimal("0")

    def wallet_transact(
        self,
        tenant_id: str,
        customer_id: str,
        amount: Decimal,
        direction: str,
        narration: str,
        reference: str,
        ref_type: str,
    ) -> WalletTransaction:
        """
        Append one wallet movement under the account row lock.

        Raises:
            WalletError: Non-positive amount or unknown direction
            InsufficientFunds: Debit larger than the current balance
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise WalletError(f"Wallet amount must be positive, got {amount}")
        if direction not in ("credit", "debit"):
            raise WalletError(f"Unknown wallet direction: {direction}")

        account = self._lock_account(tenant_id, customer_id)

        if direction == "debit":
            balance = self._balance(account)
            if amount > balance:
                raise InsufficientFunds(f"Wallet balance {balance} is less than debit {amount}")

        entry = WalletTransaction(
            account_id=account.id,
            tenant_id=tenant_id,
            customer_id=customer_id,
            direction=direction,
            amount=amount,
            narration=narration,
            reference=reference,
            reference_type=ref_type,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def drain_wallet_for_repayment(self, tenant_id: str, customer_id: str, reference: str) -> Decimal:
        """Debit the whole positive balance and return it (0 when empty)"""
        account = self._lock_account(tenant_id, customer_id)
        balance = self._balance(account)
        if balance <= 0:
            return Decimal("0")

        self.db.add(
            WalletTransaction(
                account_id=account.id,
                tenant_id=tenant_id,
                customer_id=customer_id,
                direction="debit",
                amount=balance,
                narration="Applied to loan repayment",
                reference=reference,
                reference_type="repayment",
            )
        )
        self.db.flush()
        return balance

    # ── Queue ───────────────────────────────────────────────────────

    def claim_queue_job(self, worker_id: str, job_types: Sequence[str]) -> Optional[PaymentQueueJob]:
        """
        Claim the next due job: lowest priority value first, then oldest.

        Candidates are picked with SKIP LOCKED where the database supports it;
        the claim itself is a conditional UPDATE so a lost race is detected
        and the next candidate is tried.
        """
        for _ in range(self.claim_retries):
            now = utcnow()
            candidate = (
                self.db.query(PaymentQueueJob.id)
                .filter(
                    PaymentQueueJob.status == "queued",
                    PaymentQueueJob.job_type.in_(list(job_types)),
                    or_(PaymentQueueJob.scheduled_at.is_(None), PaymentQueueJob.scheduled_at <= now),
                )
                .order_by(PaymentQueueJob.priority.asc(), PaymentQueueJob.created_at.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
                .first()
            )
            if candidate is None:
                self.db.commit()
                return None

            result = self.db.execute(
                update(PaymentQueueJob)
                .where(PaymentQueueJob.id == candidate.id)
                .where(PaymentQueueJob.status == "queued")
                .values(
                    status="processing",
                    claimed_by=worker_id,
                    claimed_at=now,
                    attempts=PaymentQueueJob.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()

            if result.rowcount == 1:
                return self.db.get(PaymentQueueJob, candidate.id)

            logger.info("Lost queue claim race", extra={"worker_id": worker_id, "job_id": str(candidate.id)})

        return None

    def recover_stuck_queue_jobs(self) -> int:
        """Requeue jobs left in processing longer than the stuck-job timeout"""
        cutoff = minutes_ago(self.stuck_job_timeout_minutes)
        result = self.db.execute(
            update(PaymentQueueJob)
            .where(PaymentQueueJob.status == "processing")
            .where(PaymentQueueJob.claimed_at < cutoff)
            .values(status="queued", claimed_by=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount or 0
