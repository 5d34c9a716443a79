"""Registration and processing fee handlers

A fee is either charged in full or not at all. Whatever cannot be applied to
a fee is parked in the customer's wallet. Fee flags only ever flip false to true
in the database, so two payments racing for the same fee charge it once.
"""

import logging
from decimal import Decimal
from sqlalchemy.orm import Session

from repayment_engine.domain.allocation import ROUNDING_EPSILON
from repayment_engine.domain.exceptions import LoanNotFound
from repayment_engine.domain.models import HandlerOutcome, ProcessingIntent
from repayment_engine.infrastructure.database.models import C2BTransaction, Customer
from repayment_engine.infrastructure.database.repositories import (
    CustomerRepository,
    LoanPaymentRepository,
    LoanRepository,
)
from repayment_engine.services.wallet import WalletLedger
from repayment_engine.utils.money import to_decimal

logger = logging.getLogger(__name__)


class RegistrationFeeHandler:
    """Registration fee (new customers) then processing fee, excess to wallet"""

    def __init__(self, db: Session, wallet: WalletLedger):
        self.customers = CustomerRepository(db)
        self.loans = LoanRepository(db)
        self.payments = LoanPaymentRepository(db)
        self.wallet = wallet

    def handle(self, tx: C2BTransaction, customer: Customer, tenant_id: str) -> HandlerOutcome:
        paid_amount = to_decimal(tx.amount)
        reference = tx.transaction_id

        loan = self.loans.get_newest_pending_loan(customer.id, tenant_id, lock=True)
        if loan is None:
            self.wallet.credit(
                tenant_id, customer.id, paid_amount, "Registration fee: no pending loan", reference, "registration"
            )
            return HandlerOutcome("No pending loan: credited to wallet")

        remaining = paid_amount
        fees_deducted = Decimal("0")
        is_new_customer = customer.is_new_customer is not False
        registration_fee = to_decimal(loan.registration_fee)
        processing_fee = to_decimal(loan.processing_fee)

        if is_new_customer and not loan.registration_fee_paid and registration_fee > 0:
            if remaining < registration_fee:
                self.wallet.credit(
                    tenant_id, customer.id, remaining, "Insufficient for registration fee", reference, "registration"
                )
                return HandlerOutcome(
                    f"Insufficient for registration fee (KES {registration_fee}): parked in wallet"
                )

            if self.loans.mark_fee_paid(loan, "registration_fee_paid"):
                remaining -= registration_fee
                fees_deducted += registration_fee
                self.payments.record_fee(
                    loan.id, registration_fee, "registration", "Registration Fee", reference, tenant_id, customer.id
                )
                self.customers.mark_registered(customer)

        if (
            not loan.processing_fee_paid
            and processing_fee > 0
            and remaining >= processing_fee
            and self.loans.mark_fee_paid(loan, "processing_fee_paid")
        ):
            remaining -= processing_fee
            fees_deducted += processing_fee
            self.payments.record_fee(
                loan.id, processing_fee, "processing", "Loan Processing Fee", reference, tenant_id, customer.id
            )

        if remaining > ROUNDING_EPSILON:
            self.wallet.credit(tenant_id, customer.id, remaining, "Excess after fees", reference, "registration")

        logger.info(
            "Registration payment applied",
            extra={"transaction_id": reference, "loan_id": loan.id, "fees_deducted": str(fees_deducted)},
        )

        description = f"Fees deducted KES {fees_deducted}"
        if remaining > ROUNDING_EPSILON:
            description += f", KES {remaining:.2f} to wallet"
        # Only payments that reached the loan are linked to it (drives the receipt SMS)
        return HandlerOutcome(description, loan_id=loan.id if fees_deducted > 0 else None)


class ProcessingFeeHandler:
    """Standalone processing fee payment targeted at one loan"""

    def __init__(self, db: Session, wallet: WalletLedger):
        self.loans = LoanRepository(db)
        self.payments = LoanPaymentRepository(db)
        self.wallet = wallet

    def handle(
        self,
        tx: C2BTransaction,
        customer: Customer,
        tenant_id: str,
        intent: ProcessingIntent,
    ) -> HandlerOutcome:
        """
        Raises:
            LoanNotFound: Loan ID missing from the billref or unknown for the tenant
        """
        if not intent.loan_id:
            raise LoanNotFound("Loan ID missing from processing fee reference")

        loan = self.loans.get(intent.loan_id, tenant_id, lock=True)
        if loan is None:
            raise LoanNotFound(f"Loan {intent.loan_id} not found")

        # No-op: the payment is neither applied nor parked in the wallet
        if loan.processing_fee_paid:
            return HandlerOutcome("Processing fee already paid")

        paid_amount = to_decimal(tx.amount)
        fee = to_decimal(loan.processing_fee)
        reference = tx.transaction_id

        if paid_amount < fee:
            self.wallet.credit(tenant_id, customer.id, paid_amount, "Insufficient for processing fee", reference, "fee")
            return HandlerOutcome(
                f"Insufficient (paid KES {paid_amount}, need KES {fee}): credited to wallet"
            )

        if not self.loans.mark_fee_paid(loan, "processing_fee_paid"):
            return HandlerOutcome("Processing fee already paid")
        self.payments.record_fee(loan.id, fee, "processing", "Loan Processing Fee", reference, tenant_id, customer.id)

        excess = paid_amount - fee
        description = f"Processing fee KES {fee} deducted"
        if excess > ROUNDING_EPSILON:
            self.wallet.credit(tenant_id, customer.id, excess, "Excess processing fee payment", reference, "fee")
            description += f", KES {excess:.2f} to wallet"

        return HandlerOutcome(description, loan_id=loan.id)
