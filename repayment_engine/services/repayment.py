"""Loan repayment: drain wallet, run the waterfall installment by installment, park overpayment"""

import logging
from decimal import Decimal
from sqlalchemy.orm import Session

from repayment_engine.domain.allocation import (
    ROUNDING_EPSILON,
    UNPAID_STATUSES,
    InstallmentBalance,
    allocate_installment,
)
from repayment_engine.domain.models import HandlerOutcome
from repayment_engine.infrastructure.database.models import C2BTransaction, Customer, LoanInstallment
from repayment_engine.infrastructure.database.repositories import (
    InstallmentRepository,
    LoanPaymentRepository,
    LoanRepository,
)
from repayment_engine.services.wallet import WalletLedger
from repayment_engine.utils.money import to_decimal

logger = logging.getLogger(__name__)


class RepaymentAllocator:
    """Applies a repayment (plus drained wallet balance) to the customer's active loan"""

    def __init__(self, db: Session, wallet: WalletLedger):
        self.loans = LoanRepository(db)
        self.installments = InstallmentRepository(db)
        self.payments = LoanPaymentRepository(db)
        self.wallet = wallet

    def handle(self, tx: C2BTransaction, customer: Customer, tenant_id: str) -> HandlerOutcome:
        """
        Flow:
        1. No active loan: whole amount to wallet, nothing else touched
        2. Drain the wallet into the available pool
        3. Allocate to unpaid installments in ascending order
        4. Credit whatever is left back to the wallet as overpayment
        """
        amount = to_decimal(tx.amount)
        reference = tx.transaction_id

        loan = self.loans.get_active_loan(customer.id, tenant_id)
        if loan is None:
            self.wallet.credit(tenant_id, customer.id, amount, "Payment with no active loan", reference, "mpesa")
            return HandlerOutcome(f"No active loan: KES {amount} credited to wallet")

        wallet_drained = self.wallet.drain(tenant_id, customer.id, reference)
        remaining = amount + wallet_drained
        total_applied = Decimal("0")

        logger.info(
            "Allocating repayment",
            extra={
                "transaction_id": reference,
                "loan_id": loan.id,
                "incoming": str(amount),
                "wallet_drained": str(wallet_drained),
            },
        )

        for installment in self.installments.get_unpaid(loan.id, UNPAID_STATUSES):
            if remaining <= 0:
                break
            applied = self._allocate(installment, remaining, tx, customer, tenant_id)
            remaining -= applied
            total_applied += applied

        if remaining > ROUNDING_EPSILON:
            self.wallet.credit(
                tenant_id, customer.id, remaining, f"Overpayment on loan #{loan.id}", reference, "overpayment"
            )

        if total_applied > 0 and self.installments.count_unpaid(loan.id, UNPAID_STATUSES) == 0:
            loan.repayment_state = "completed"

        description = f"Applied KES {total_applied:.2f} to loan #{loan.id}"
        if wallet_drained > 0:
            description += f" (incl. KES {wallet_drained} from wallet)"
        if remaining > ROUNDING_EPSILON:
            description += f", KES {remaining:.2f} overpayment to wallet"
        return HandlerOutcome(description, loan_id=loan.id)

    def _allocate(
        self,
        installment: LoanInstallment,
        available: Decimal,
        tx: C2BTransaction,
        customer: Customer,
        tenant_id: str,
    ) -> Decimal:
        """Run the waterfall on one installment and persist ledger rows + totals"""
        penalty_due = installment.net_penalty if installment.net_penalty is not None else installment.penalty_amount
        balance = InstallmentBalance(
            penalty_due=to_decimal(penalty_due),
            interest_due=to_decimal(installment.interest_amount),
            principal_due=to_decimal(installment.principal_amount),
            # Installments carry no penalty-paid column; the ledger is the source
            penalty_paid=self.payments.penalty_paid_for(installment.id),
            interest_paid=to_decimal(installment.interest_paid),
            principal_paid=to_decimal(installment.principal_paid),
        )

        allocation = allocate_installment(balance, available, installment.status)
        if not allocation.buckets:
            return Decimal("0")

        for bucket in allocation.buckets:
            self.payments.record_bucket(
                loan_id=installment.loan_id,
                installment_id=installment.id,
                bucket=bucket,
                source_reference=tx.transaction_id,
                tenant_id=tenant_id,
                customer_id=customer.id,
                phone_number=tx.phone_number,
            )

        self.installments.apply_allocation(installment, allocation)

        logger.info(
            "Installment allocated",
            extra={
                "transaction_id": tx.transaction_id,
                "installment_number": installment.installment_number,
                "applied": str(allocation.applied),
                "status": allocation.status,
            },
        )
        return allocation.applied
