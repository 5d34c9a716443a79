"""Integration tests for the transaction processor against SQLite"""

import logging
from decimal import Decimal
from unittest.mock import patch
from sqlalchemy import update
from sqlalchemy.orm import Session

from repayment_engine.infrastructure.database.models import (
    C2BTransaction,
    Loan,
    LoanInstallment,
    LoanPayment,
    SuspenseTransaction,
    WalletTransaction,
)
from repayment_engine.infrastructure.database.repositories import LoanRepository
from repayment_engine.services.processor import TransactionProcessor
from repayment_engine.services.repayment import RepaymentAllocator

ONE_INSTALLMENT = [{"principal": 900, "interest": 100}]


def _processor(db, store, worker_id="worker-test"):
    return TransactionProcessor(db, store, worker_id)


def _payments(db: Session, transaction_id: str):
    rows = db.query(LoanPayment).filter(LoanPayment.source_reference == transaction_id).all()
    return sorted((row.payment_type, row.paid_amount) for row in rows)


def _reload(db: Session, transaction_id: str) -> C2BTransaction:
    return db.query(C2BTransaction).filter(C2BTransaction.transaction_id == transaction_id).one()


def _settled_by_another_payment(read, flag):
    """Wrap a loan read so the fee is settled in the database right after it"""

    def wrapper(self, *args, **kwargs):
        loan = read(self, *args, **kwargs)
        if loan is not None:
            self.db.execute(update(Loan.__table__).where(Loan.__table__.c.id == loan.id).values({flag: True}))
        return loan

    return wrapper


def test_full_repayment_pays_installment(db, store, make_customer, make_active_loan, make_transaction):
    """Test a full repayment settles the installment"""
    customer = make_customer()
    make_active_loan(customer, installments=ONE_INSTALLMENT)
    tx = make_transaction(amount="1000")

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    assert _payments(db, tx.transaction_id) == [("interest", Decimal("100")), ("principal", Decimal("900"))]
    installment = db.query(LoanInstallment).one()
    assert installment.status == "paid"
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("0")
    assert db.query(WalletTransaction).count() == 0


def test_applied_transaction_is_backfilled(db, store, make_customer, make_active_loan, make_transaction):
    """Test applied transactions record customer, loan and time"""
    customer = make_customer()
    loan = make_active_loan(customer, installments=ONE_INSTALLMENT)
    tx = make_transaction(amount="1000")

    _processor(db, store).process(tx.transaction_id)

    row = _reload(db, tx.transaction_id)
    assert row.status == "applied"
    assert row.customer_id == customer.id
    assert row.loan_id == loan.id
    assert row.processed_at is not None
    assert row.description.startswith("Applied KES 1000.00")


def test_fully_repaid_loan_is_completed(db, store, make_customer, make_active_loan, make_transaction):
    """Test the loan completes once nothing is unpaid"""
    customer = make_customer()
    loan = make_active_loan(customer, installments=ONE_INSTALLMENT)
    tx = make_transaction(amount="1000")

    _processor(db, store).process(tx.transaction_id)

    db.refresh(loan)
    assert loan.repayment_state == "completed"


def test_partial_repayment(db, store, make_customer, make_active_loan, make_transaction):
    """Test a partial repayment leaves the installment partial"""
    customer = make_customer()
    loan = make_active_loan(customer, installments=ONE_INSTALLMENT)
    tx = make_transaction(amount="500")

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    assert _payments(db, tx.transaction_id) == [("interest", Decimal("100")), ("principal", Decimal("400"))]
    installment = db.query(LoanInstallment).one()
    assert installment.status == "partial"
    assert installment.principal_paid == Decimal("400")
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("0")
    db.refresh(loan)
    assert loan.repayment_state == "ongoing"


def test_installments_are_paid_in_order(db, store, make_customer, make_active_loan, make_transaction):
    """Test installments are paid oldest first"""
    customer = make_customer()
    make_active_loan(customer, installments=[{"principal": 450, "interest": 50}, {"principal": 450, "interest": 50}])
    tx = make_transaction(amount="700")

    _processor(db, store).process(tx.transaction_id)

    first, second = db.query(LoanInstallment).order_by(LoanInstallment.installment_number).all()
    assert first.status == "paid"
    assert second.status == "partial"
    assert second.interest_paid == Decimal("50")
    assert second.principal_paid == Decimal("150")


def test_net_penalty_overrides_penalty_amount(db, store, make_customer, make_active_loan, make_transaction):
    """Test waived penalties use the net amount"""
    customer = make_customer()
    make_active_loan(
        customer,
        installments=[{"principal": 900, "interest": 100, "penalty": 80, "net_penalty": Decimal("30"), "status": "overdue"}],
    )
    tx = make_transaction(amount="1030")

    _processor(db, store).process(tx.transaction_id)

    assert _payments(db, tx.transaction_id) == [
        ("interest", Decimal("100")),
        ("penalty", Decimal("30")),
        ("principal", Decimal("900")),
    ]
    assert db.query(LoanInstallment).one().status == "paid"


def test_wallet_is_drained_and_overpayment_parked(db, store, make_customer, make_active_loan, make_transaction):
    """Test wallet balance joins the repayment and excess returns"""
    customer = make_customer()
    make_active_loan(customer, installments=ONE_INSTALLMENT)
    store.wallet_transact("tenant-a", customer.id, Decimal("300"), "credit", "Earlier excess", "OLD1", "fee")
    db.commit()
    tx = make_transaction(amount="900")

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    assert "from wallet" in result.result
    assert "overpayment to wallet" in result.result
    applied = sum(amount for _, amount in _payments(db, tx.transaction_id))
    assert applied == Decimal("1000")
    # 300 wallet + 900 incoming = 1000 applied + 200 back in the wallet
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("200")


def test_no_active_loan_credits_wallet(db, store, make_customer, make_transaction):
    """Test payments without an active loan go to the wallet"""
    customer = make_customer()
    tx = make_transaction(amount="750")

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    assert result.result.startswith("No active loan")
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("750")
    assert _reload(db, tx.transaction_id).loan_id is None


def test_second_claim_is_skipped(db, store, make_customer, make_active_loan, make_transaction):
    """Test a transaction is only processed once"""
    customer = make_customer()
    make_active_loan(customer, installments=ONE_INSTALLMENT)
    tx = make_transaction(amount="1000")

    first = _processor(db, store, "worker-a").process(tx.transaction_id)
    second = _processor(db, store, "worker-b").process(tx.transaction_id)

    assert first.status == "applied"
    assert second.status == "skipped"
    assert second.reason == "already_claimed_or_not_found"
    assert len(_payments(db, tx.transaction_id)) == 2


def test_unknown_transaction_is_skipped(db, store):
    """Test unknown transaction IDs are skipped"""
    result = _processor(db, store).process("NOPE")

    assert result.status == "skipped"


def test_unknown_customer_goes_to_suspense(db, store, make_transaction):
    """Test unmatched payers are parked in suspense"""
    tx = make_transaction(amount="300", phone_number="254799999999", first_name=None)

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "suspense"
    assert result.reason == "customer_not_found"
    record = db.query(SuspenseTransaction).one()
    assert record.reason == "Customer not found in system"
    assert record.payer_name == "Unknown"
    assert record.tenant_id == "tenant-a"
    assert _reload(db, tx.transaction_id).status == "suspense"


def test_unresolved_tenant_goes_to_suspense(db, store, make_transaction):
    """Test payments without a tenant are parked in suspense"""
    tx = make_transaction(amount="300", phone_number="254799999999", tenant_id=None)

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "suspense"
    assert result.reason == "tenant_not_resolved"
    assert db.query(SuspenseTransaction).one().reason == "Could not resolve tenant"


def test_tenant_inherited_from_phone_owner(db, store, make_customer, make_transaction):
    """Test tenant resolution through the paying phone"""
    customer = make_customer()
    tx = make_transaction(amount="100", tenant_id=None)

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    assert _reload(db, tx.transaction_id).tenant_id == "tenant-a"
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("100")


def test_customer_resolved_by_national_id(db, store, make_customer, make_active_loan, make_transaction):
    """Test customer resolution by national ID"""
    customer = make_customer(id_number="12345678")
    make_active_loan(customer, installments=ONE_INSTALLMENT)
    tx = make_transaction(amount="500", phone_number="254788888888", billref="12345678")

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    assert _reload(db, tx.transaction_id).customer_id == customer.id


def test_customers_of_other_tenants_are_not_matched(db, store, make_customer, make_transaction):
    """Test customer resolution stays inside the tenant"""
    make_customer(tenant_id="tenant-b")
    tx = make_transaction(amount="100")

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "suspense"


def test_registration_fee_exactly_paid(db, store, make_customer, make_loan, make_transaction):
    """Test an exact registration fee payment"""
    customer = make_customer(is_new_customer=True)
    loan = make_loan(customer, registration_fee=Decimal("500"), processing_fee=Decimal("200"))
    tx = make_transaction(amount="500", billref="registration_fee")

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    db.refresh(loan)
    db.refresh(customer)
    assert loan.registration_fee_paid is True
    assert loan.processing_fee_paid is False
    assert customer.registration_fee_paid is True
    assert customer.is_new_customer is False
    assert _payments(db, tx.transaction_id) == [("registration", Decimal("500"))]
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("0")
    assert _reload(db, tx.transaction_id).loan_id == loan.id


def test_registration_covers_both_fees_and_parks_excess(db, store, make_customer, make_loan, make_transaction):
    """Test registration then processing fee, excess to wallet"""
    customer = make_customer(is_new_customer=True)
    loan = make_loan(customer, registration_fee=Decimal("500"), processing_fee=Decimal("200"))
    tx = make_transaction(amount="800", billref="registration-cust-1")

    _processor(db, store).process(tx.transaction_id)

    db.refresh(loan)
    assert loan.processing_fee_paid is True
    assert _payments(db, tx.transaction_id) == [("processing", Decimal("200")), ("registration", Decimal("500"))]
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("100")


def test_registration_too_small_goes_to_wallet(db, store, make_customer, make_loan, make_transaction):
    """Test a short registration payment is parked in the wallet"""
    customer = make_customer(is_new_customer=True)
    loan = make_loan(customer, registration_fee=Decimal("500"), processing_fee=Decimal("200"))
    tx = make_transaction(amount="300", billref="registration_fee")

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    db.refresh(loan)
    assert loan.registration_fee_paid is False
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("300")
    assert _reload(db, tx.transaction_id).loan_id is None


def test_processing_fee_already_paid_is_a_no_op(db, store, make_customer, make_loan, make_transaction):
    """Test paying a settled processing fee changes nothing"""
    customer = make_customer()
    make_loan(customer, loan_id="77", processing_fee=Decimal("200"), processing_fee_paid=True)
    tx = make_transaction(amount="200", billref="processing-77")

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    assert result.result == "Processing fee already paid"
    assert _payments(db, tx.transaction_id) == []
    assert db.query(WalletTransaction).count() == 0


def test_processing_fee_paid_with_excess(db, store, make_customer, make_loan, make_transaction):
    """Test processing fee excess goes to the wallet"""
    customer = make_customer()
    loan = make_loan(customer, loan_id="77", processing_fee=Decimal("200"))
    tx = make_transaction(amount="250", billref="processing-77")

    _processor(db, store).process(tx.transaction_id)

    db.refresh(loan)
    assert loan.processing_fee_paid is True
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("50")


def test_processing_fee_unknown_loan_fails(db, store, make_customer, make_transaction):
    """Test unknown loans fail the transaction"""
    make_customer()
    tx = make_transaction(amount="200", billref="processing-404")

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "failed"
    assert "404" in result.error
    row = _reload(db, tx.transaction_id)
    assert row.status == "failed"
    assert row.last_error == result.error


def test_handler_error_rolls_back_partial_work(db, store, make_customer, make_active_loan, make_transaction):
    """Test a handler error rolls back ledger and wallet writes"""
    customer = make_customer()
    make_active_loan(customer, installments=ONE_INSTALLMENT)
    store.wallet_transact("tenant-a", customer.id, Decimal("100"), "credit", "Earlier excess", "OLD1", "fee")
    db.commit()
    tx = make_transaction(amount="500")

    original_allocate = RepaymentAllocator._allocate

    def explode(self, *args, **kwargs):
        original_allocate(self, *args, **kwargs)
        raise RuntimeError("database went away")

    with patch.object(RepaymentAllocator, "_allocate", explode):
        result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "failed"
    assert result.error == "database went away"
    assert _payments(db, tx.transaction_id) == []
    # The drain was rolled back with everything else
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("100")
    assert db.query(LoanInstallment).one().status == "pending"


def test_failure_does_not_overwrite_another_workers_result(db, store, make_transaction):
    """Test mark-failed only touches claimed transactions"""
    tx = make_transaction(amount="100", status="applied")

    processor = _processor(db, store)
    result = processor._to_failed(tx.transaction_id, "late failure")

    assert result.status == "failed"
    row = _reload(db, tx.transaction_id)
    assert row.status == "applied"
    assert row.last_error is None


def test_active_loan_without_unpaid_installments_routes_to_wallet(
    db, store, make_customer, make_active_loan, make_transaction
):
    """Test a settled schedule sends the payment and drained wallet back to the wallet"""
    customer = make_customer()
    make_active_loan(customer, installments=[{"principal": 900, "interest": 100, "status": "paid"}])
    store.wallet_transact("tenant-a", customer.id, Decimal("100"), "credit", "Earlier excess", "OLD1", "fee")
    db.commit()
    tx = make_transaction(amount="500")

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    assert _payments(db, tx.transaction_id) == []
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("600")


def test_registration_without_pending_loan_credits_wallet(db, store, make_customer, make_transaction):
    """Test a registration payment with no loan in the pipeline goes to the wallet"""
    customer = make_customer(is_new_customer=True)
    tx = make_transaction(amount="500", billref="registration_fee")

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    assert result.result == "No pending loan: credited to wallet"
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("500")
    assert _reload(db, tx.transaction_id).loan_id is None


def test_returning_customer_short_of_processing_fee(db, store, make_customer, make_loan, make_transaction):
    """Test a returning customer's payment below the processing fee is parked in the wallet"""
    customer = make_customer(is_new_customer=False)
    loan = make_loan(customer, registration_fee=Decimal("500"), processing_fee=Decimal("200"))
    tx = make_transaction(amount="150", billref="registration_fee")

    result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    db.refresh(loan)
    assert loan.registration_fee_paid is False
    assert loan.processing_fee_paid is False
    assert _payments(db, tx.transaction_id) == []
    credit = db.query(WalletTransaction).one()
    assert credit.narration == "Excess after fees"
    assert credit.amount == Decimal("150")
    assert _reload(db, tx.transaction_id).loan_id is None


def test_registration_fee_settled_concurrently_is_charged_once(db, store, make_customer, make_loan, make_transaction):
    """Test a registration fee settled by a concurrent payment is not charged again"""
    customer = make_customer(is_new_customer=True)
    loan = make_loan(customer, registration_fee=Decimal("500"), processing_fee=Decimal("200"))
    tx = make_transaction(amount="500", billref="registration_fee")

    read = _settled_by_another_payment(LoanRepository.get_newest_pending_loan, "registration_fee_paid")
    with patch.object(LoanRepository, "get_newest_pending_loan", read):
        result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    assert _payments(db, tx.transaction_id) == [("processing", Decimal("200"))]
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("300")
    db.refresh(loan)
    assert loan.registration_fee_paid is True
    assert loan.processing_fee_paid is True


def test_processing_fee_settled_concurrently_is_charged_once(db, store, make_customer, make_loan, make_transaction):
    """Test a processing fee settled by a concurrent payment is not charged again"""
    customer = make_customer()
    make_loan(customer, loan_id="77", processing_fee=Decimal("200"))
    tx = make_transaction(amount="200", billref="processing-77")

    read = _settled_by_another_payment(LoanRepository.get, "processing_fee_paid")
    with patch.object(LoanRepository, "get", read):
        result = _processor(db, store).process(tx.transaction_id)

    assert result.status == "applied"
    assert result.result == "Processing fee already paid"
    assert _payments(db, tx.transaction_id) == []
    assert db.query(WalletTransaction).count() == 0


def test_wallet_credit_logs_running_balance(db, store, make_customer, make_transaction, caplog):
    """Test wallet credits log the balance after the movement"""
    customer = make_customer()
    first = make_transaction(amount="40")
    second = make_transaction(amount="60")

    with caplog.at_level(logging.INFO, logger="repayment_engine.services.wallet"):
        _processor(db, store).process(first.transaction_id)
        _processor(db, store).process(second.transaction_id)

    balances = [Decimal(r.balance) for r in caplog.records if r.getMessage() == "Wallet credited"]
    assert balances == [Decimal("40"), Decimal("100")]
    assert store.wallet_balance("tenant-a", customer.id) == Decimal("100")
