"""SQLAlchemy ORM models for the lending ledger"""

import uuid
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    Date,
    Integer,
    Numeric,
    ForeignKey,
    Text,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

Money = Numeric(14, 2)


def _string_id() -> str:
    return str(uuid.uuid4())


class Customer(Base):
    """Borrower registered under one tenant"""

    __tablename__ = "customers"

    id = Column(String(64), primary_key=True, default=_string_id)
    tenant_id = Column(Text, nullable=False, index=True)
    first_name = Column(Text, nullable=True)
    surname = Column(Text, nullable=True)
    mobile = Column(Text, nullable=True, index=True)
    id_number = Column(Text, nullable=True, index=True)
    is_new_customer = Column(Boolean, nullable=True, default=True)
    registration_fee_paid = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    loans = relationship("Loan", back_populates="customer")


class Loan(Base):
    """Loan with fee flags and repayment state"""

    __tablename__ = "loans"

    id = Column(String(64), primary_key=True, default=_string_id)
    tenant_id = Column(Text, nullable=False, index=True)
    customer_id = Column(String(64), ForeignKey("customers.id"), nullable=False, index=True)
    status = Column(Text, nullable=False, default="pending")
    repayment_state = Column(Text, nullable=True)  # ongoing | partial | overdue | completed
    registration_fee = Column(Money, nullable=False, default=0)
    processing_fee = Column(Money, nullable=False, default=0)
    registration_fee_paid = Column(Boolean, nullable=False, default=False)
    processing_fee_paid = Column(Boolean, nullable=False, default=False)
    total_payable = Column(Money, nullable=False, default=0)
    disbursed_at = Column(DateTime(timezone=True), nullable=True)
    mpesa_transaction_id = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    customer = relationship("Customer", back_populates="loans")
    installments = relationship(
        "LoanInstallment",
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="LoanInstallment.installment_number",
    )


class LoanInstallment(Base):
    """Scheduled installment; paid amounts only ever grow"""

    __tablename__ = "loan_installments"

    id = Column(String(64), primary_key=True, default=_string_id)
    loan_id = Column(String(64), ForeignKey("loans.id", ondelete="CASCADE"), nullable=False, index=True)
    installment_number = Column(Integer, nullable=False)
    due_date = Column(Date, nullable=True)
    principal_amount = Column(Money, nullable=False, default=0)
    interest_amount = Column(Money, nullable=False, default=0)
    penalty_amount = Column(Money, nullable=False, default=0)
    net_penalty = Column(Money, nullable=True)  # penalty after waivers, when set
    principal_paid = Column(Money, nullable=False, default=0)
    interest_paid = Column(Money, nullable=False, default=0)
    paid_amount = Column(Money, nullable=False, default=0)
    status = Column(Text, nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    loan = relationship("Loan", back_populates="installments")

    __table_args__ = (UniqueConstraint("loan_id", "installment_number"),)


class LoanPayment(Base):
    """Immutable ledger row for one allocation event"""

    __tablename__ = "loan_payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(String(64), ForeignKey("loans.id"), nullable=False, index=True)
    installment_id = Column(String(64), ForeignKey("loan_installments.id"), nullable=True, index=True)
    tenant_id = Column(Text, nullable=False)
    customer_id = Column(String(64), nullable=False)
    paid_amount = Column(Money, nullable=False)
    payment_type = Column(Text, nullable=False)  # penalty | interest | principal | registration | processing
    description = Column(Text, nullable=True)
    source_reference = Column(Text, nullable=False, index=True)
    phone_number = Column(Text, nullable=True)
    payment_method = Column(Text, nullable=False, default="mpesa_c2b")
    penalty_paid = Column(Money, nullable=False, default=0)
    interest_paid = Column(Money, nullable=False, default=0)
    principal_paid = Column(Money, nullable=False, default=0)
    balance_before = Column(Money, nullable=True)
    balance_after = Column(Money, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class C2BTransaction(Base):
    """Inbound mobile-money payment notification"""

    __tablename__ = "mpesa_c2b_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(Text, nullable=False, unique=True)
    tenant_id = Column(Text, nullable=True, index=True)
    customer_id = Column(String(64), nullable=True)
    loan_id = Column(String(64), nullable=True)
    phone_number = Column(Text, nullable=True)
    first_name = Column(Text, nullable=True)
    amount = Column(Money, nullable=False)
    billref = Column(Text, nullable=True)
    transaction_time = Column(DateTime(timezone=True), nullable=True)
    status = Column(Text, nullable=False, default="pending", index=True)
    description = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)
    claimed_by = Column(Text, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    payment_sms_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WalletAccount(Base):
    """Per tenant/customer lock anchor; the balance lives in wallet_transactions"""

    __tablename__ = "wallet_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False)
    customer_id = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    transactions = relationship("WalletTransaction", back_populates="account")

    __table_args__ = (UniqueConstraint("tenant_id", "customer_id"),)


class WalletTransaction(Base):
    """Append-only wallet movement"""

    __tablename__ = "wallet_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("wallet_accounts.id"), nullable=False, index=True)
    tenant_id = Column(Text, nullable=False)
    customer_id = Column(String(64), nullable=False, index=True)
    direction = Column(Text, nullable=False)  # credit | debit
    amount = Column(Money, nullable=False)
    narration = Column(Text, nullable=True)
    reference = Column(Text, nullable=True, index=True)
    reference_type = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    account = relationship("WalletAccount", back_populates="transactions")


class PaymentQueueJob(Base):
    """Job queue with claim, retry and dead-letter tracking"""

    __tablename__ = "payment_queue"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=True, index=True)
    job_type = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False)
    priority = Column(Integer, nullable=False, default=5)
    status = Column(Text, nullable=False, default="queued", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    claimed_by = Column(Text, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SuspenseTransaction(Base):
    """Unresolved payment parked for manual review"""

    __tablename__ = "suspense_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(Text, nullable=False, unique=True)
    tenant_id = Column(Text, nullable=True)
    payer_name = Column(Text, nullable=False, default="Unknown")
    phone_number = Column(Text, nullable=True)
    amount = Column(Money, nullable=False)
    billref = Column(Text, nullable=True)
    transaction_time = Column(DateTime(timezone=True), nullable=True)
    status = Column(Text, nullable=False, default="suspense")
    reason = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())


class TenantSmsSettings(Base):
    """SMS provider credentials for one tenant"""

    __tablename__ = "tenant_sms_settings"

    tenant_id = Column(Text, primary_key=True)
    base_url = Column(Text, nullable=False)
    api_key = Column(Text, nullable=False)
    partner_id = Column(Text, nullable=False)
    shortcode = Column(Text, nullable=False)


class SmsLog(Base):
    """Record of every SMS handed to a provider"""

    __tablename__ = "sms_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False)
    customer_id = Column(String(64), nullable=True)
    recipient_phone = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    status = Column(Text, nullable=False)
    message_id = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class B2CTransaction(Base):
    """Outbound disbursement request awaiting a provider result"""

    __tablename__ = "mpesa_b2c_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(String(64), nullable=True)
    conversation_id = Column(Text, nullable=True, index=True)
    originator_id = Column(Text, nullable=True, index=True)
    status = Column(Text, nullable=False, default="pending")
    result_code = Column(Text, nullable=True)
    result_desc = Column(Text, nullable=True)
    transaction_id = Column(Text, nullable=True)
    raw_result = Column(JSON, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class LoanDisbursementTransaction(Base):
    """Disbursement attempt for a loan"""

    __tablename__ = "loan_disbursement_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(String(64), ForeignKey("loans.id"), nullable=False, index=True)
    status = Column(Text, nullable=False, default="processing")
    transaction_id = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
