"""Waterfall allocation of a payment across one installment's obligation buckets"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List
from repayment_engine.domain.models import BucketPayment, InstallmentAllocation

# Remainders at or below this are treated as fully paid
ROUNDING_EPSILON = Decimal("0.005")
ZERO = Decimal("0")

# Never change this order
REPAYMENT_PRIORITY = ("penalty", "interest", "principal")

UNPAID_STATUSES = ("pending", "partial", "overdue")


@dataclass
class InstallmentBalance:
    """Due and paid amounts of one installment, per bucket"""

    penalty_due: Decimal
    interest_due: Decimal
    principal_due: Decimal
    penalty_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    principal_paid: Decimal = ZERO

    def unpaid(self, bucket: str) -> Decimal:
        due = getattr(self, f"{bucket}_due")
        paid = getattr(self, f"{bucket}_paid")
        return max(ZERO, due - paid)

    @property
    def total_due(self) -> Decimal:
        return self.penalty_due + self.interest_due + self.principal_due

    @property
    def total_unpaid(self) -> Decimal:
        return sum((self.unpaid(bucket) for bucket in REPAYMENT_PRIORITY), ZERO)


def allocate_installment(
    balance: InstallmentBalance,
    available: Decimal,
    current_status: str,
) -> InstallmentAllocation:
    """
    Apply available funds to one installment: penalty -> interest -> principal.

    Each bucket is capped at its own unpaid amount and at the funds left.
    Balance bookkeeping runs from the installment's total unpaid amount at
    the start of this allocation.

    Status rules:
    - paid:    total paid reaches total due within ROUNDING_EPSILON
    - partial: something was applied but not enough
    - otherwise the current status is kept

    Example:
        principal 900, interest 100, nothing paid, available 500
        -> interest 100 (1000 -> 900), principal 400 (900 -> 500), "partial"
    """
    buckets: List[BucketPayment] = []
    paid = {
        "penalty": balance.penalty_paid,
        "interest": balance.interest_paid,
        "principal": balance.principal_paid,
    }

    budget = available
    running_balance = balance.total_unpaid

    if running_balance > ZERO:
        for bucket in REPAYMENT_PRIORITY:
            unpaid = balance.unpaid(bucket)
            if budget <= ZERO or unpaid <= ZERO:
                continue

            pay = min(budget, unpaid)
            buckets.append(
                BucketPayment(
                    payment_type=bucket,
                    amount=pay,
                    balance_before=running_balance,
                    balance_after=running_balance - pay,
                )
            )
            paid[bucket] += pay
            budget -= pay
            running_balance -= pay

    applied = sum((b.amount for b in buckets), ZERO)
    total_paid = paid["penalty"] + paid["interest"] + paid["principal"]

    if not buckets:
        status = current_status
    elif total_paid >= balance.total_due - ROUNDING_EPSILON:
        status = "paid"
    else:
        status = "partial"

    return InstallmentAllocation(
        buckets=buckets,
        applied=applied,
        penalty_paid=paid["penalty"],
        interest_paid=paid["interest"],
        principal_paid=paid["principal"],
        status=status,
    )
