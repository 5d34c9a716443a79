"""Transaction processor: claim one payment, resolve it, route it, record the outcome

States: pending -> processing -> {applied, suspense, failed}. The processor
never raises; every path ends in a ProcessResult.
"""

import logging
import time
from sqlalchemy.orm import Session

from repayment_engine.domain.exceptions import (
    ClaimConflict,
    CustomerUnresolved,
    ResolutionError,
    TenantUnresolved,
)
from repayment_engine.domain.intent import parse_intent
from repayment_engine.domain.models import (
    HandlerOutcome,
    ProcessingIntent,
    ProcessResult,
    RegistrationIntent,
    RepaymentIntent,
)
from repayment_engine.infrastructure.database.atomic_store import AtomicStore
from repayment_engine.infrastructure.database.models import C2BTransaction, Customer
from repayment_engine.infrastructure.database.repositories import TransactionRepository
from repayment_engine.infrastructure.observability.logging import log_process_result
from repayment_engine.infrastructure.observability.metrics import record_process_result
from repayment_engine.services.fees import ProcessingFeeHandler, RegistrationFeeHandler
from repayment_engine.services.repayment import RepaymentAllocator
from repayment_engine.services.resolver import PayerResolver
from repayment_engine.services.suspense import SuspenseHandler
from repayment_engine.services.wallet import WalletLedger

logger = logging.getLogger(__name__)


class TransactionProcessor:
    """Processes a single C2B transaction exactly once across workers"""

    def __init__(self, db: Session, store: AtomicStore, worker_id: str):
        self.db = db
        self.store = store
        self.worker_id = worker_id
        self.transactions = TransactionRepository(db)
        self.resolver = PayerResolver(db)
        self.suspense = SuspenseHandler(db)

        wallet = WalletLedger(store)
        self.registration = RegistrationFeeHandler(db, wallet)
        self.processing = ProcessingFeeHandler(db, wallet)
        self.repayment = RepaymentAllocator(db, wallet)

    def process(self, transaction_id: str) -> ProcessResult:
        start_time = time.time()
        result = self._process(transaction_id)

        record_process_result(result.status)
        log_process_result(self.worker_id, result, (time.time() - start_time) * 1000)
        return result

    def _process(self, transaction_id: str) -> ProcessResult:
        try:
            tx = self._claim(transaction_id)
        except ClaimConflict:
            return ProcessResult(transaction_id, "skipped", reason="already_claimed_or_not_found")
        except Exception as e:
            self.db.rollback()
            logger.error(f"Claim failed: {e}", extra={"worker_id": self.worker_id, "transaction_id": transaction_id})
            return ProcessResult(transaction_id, "failed", error=str(e))

        tenant_id = None
        try:
            tenant_id = self.resolver.resolve_tenant(tx.tenant_id, tx.phone_number)
            if not tenant_id:
                raise TenantUnresolved("Could not resolve tenant")

            intent = parse_intent(tx.billref)
            customer = self.resolver.resolve_customer(tenant_id, tx.phone_number, intent)
            if customer is None:
                raise CustomerUnresolved("Customer not found in system")

            outcome = self._route(tx, customer, tenant_id, intent)

            self.transactions.mark_applied(tx, outcome.description, tenant_id, customer.id, outcome.loan_id)
            self.db.commit()
            return ProcessResult(transaction_id, "applied", result=outcome.description)

        except ResolutionError as e:
            self.db.rollback()
            return self._to_suspense(tx, tenant_id, e)

        except Exception as e:
            self.db.rollback()
            logger.error(
                f"Processing failed: {e}",
                extra={"worker_id": self.worker_id, "transaction_id": transaction_id},
            )
            return self._to_failed(transaction_id, str(e))

    def _claim(self, transaction_id: str) -> C2BTransaction:
        tx = self.store.claim_transaction(transaction_id, self.worker_id)
        if tx is None:
            raise ClaimConflict(transaction_id)
        return tx

    def _route(self, tx: C2BTransaction, customer: Customer, tenant_id: str, intent) -> HandlerOutcome:
        if isinstance(intent, RegistrationIntent):
            return self.registration.handle(tx, customer, tenant_id)
        if isinstance(intent, ProcessingIntent):
            return self.processing.handle(tx, customer, tenant_id, intent)
        if isinstance(intent, RepaymentIntent):
            return self.repayment.handle(tx, customer, tenant_id)
        raise TypeError(f"Unhandled payment intent: {intent!r}")

    def _to_suspense(self, tx: C2BTransaction, tenant_id: str | None, error: ResolutionError) -> ProcessResult:
        transaction_id = tx.transaction_id
        try:
            self.suspense.park(tx, str(error), tenant_id)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Suspense write failed: {e}", extra={"transaction_id": transaction_id})
            return self._to_failed(transaction_id, str(e))
        return ProcessResult(transaction_id, "suspense", reason=error.reason_code)

    def _to_failed(self, transaction_id: str, error: str) -> ProcessResult:
        try:
            self.transactions.mark_failed(transaction_id, error)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Could not record failure: {e}", extra={"transaction_id": transaction_id})
        return ProcessResult(transaction_id, "failed", error=error)
