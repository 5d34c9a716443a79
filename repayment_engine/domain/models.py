"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Union


@dataclass(frozen=True)
class RepaymentIntent:
    """Loan repayment, optionally keyed by an account reference (national ID)"""

    account_ref: Optional[str] = None


@dataclass(frozen=True)
class RegistrationIntent:
    """Registration fee payment, optionally naming the customer"""

    customer_id: Optional[str] = None


@dataclass(frozen=True)
class ProcessingIntent:
    """Processing fee payment for a specific loan"""

    loan_id: str


PaymentIntent = Union[RepaymentIntent, RegistrationIntent, ProcessingIntent]


@dataclass
class BucketPayment:
    """One allocation into a single obligation bucket of an installment"""

    payment_type: str  # "penalty" | "interest" | "principal"
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal


@dataclass
class InstallmentAllocation:
    """Result of running the waterfall over one installment"""

    buckets: List[BucketPayment]
    applied: Decimal
    penalty_paid: Decimal
    interest_paid: Decimal
    principal_paid: Decimal
    status: str

    @property
    def total_paid(self) -> Decimal:
        return self.penalty_paid + self.interest_paid + self.principal_paid


@dataclass
class HandlerOutcome:
    """What a fee or repayment handler did with a transaction"""

    description: str
    loan_id: Optional[str] = None


@dataclass
class ProcessResult:
    """Outcome of processing one transaction; never raised, always returned"""

    transaction_id: str
    status: str  # "applied" | "skipped" | "suspense" | "failed"
    result: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DrainSummary:
    """Counters for one queue drain invocation"""

    worker_id: str
    processed: int = 0
    failed: int = 0


@dataclass
class BatchSummary:
    """Results of scanning pending transactions directly"""

    worker_id: str
    results: List[ProcessResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.status == "applied")

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.status == "skipped")

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == "failed")
