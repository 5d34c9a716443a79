"""Payment intent classification from the billref attached to a C2B payment"""

from typing import Optional, Tuple
from repayment_engine.domain.models import (
    PaymentIntent,
    ProcessingIntent,
    RegistrationIntent,
    RepaymentIntent,
)

REGISTRATION_FEE_REF = "registration_fee"
REGISTRATION_PREFIX = "registration-"
PROCESSING_PREFIX = "processing-"

# Queue job types
JOB_C2B_REPAYMENT = "c2b_repayment"
JOB_REGISTRATION = "registration"
JOB_PROCESSING_FEE = "processing_fee"
JOB_B2C_DISBURSEMENT = "b2c_disbursement"
JOB_SEND_SMS = "send_sms"

TRANSACTION_JOB_TYPES = (JOB_C2B_REPAYMENT, JOB_REGISTRATION, JOB_PROCESSING_FEE)
ACCEPTED_JOB_TYPES = TRANSACTION_JOB_TYPES + (JOB_B2C_DISBURSEMENT, JOB_SEND_SMS)


def parse_intent(billref: Optional[str]) -> PaymentIntent:
    """
    Classify a billref into a payment intent.

    Grammar:
    - blank / missing          -> repayment, no account reference
    - "registration_fee"       -> registration
    - "registration-<cust>"    -> registration for customer <cust>
    - "processing-<loan>"      -> processing fee for loan <loan> (may contain hyphens)
    - anything else            -> repayment keyed by the trimmed string (national ID)

    Prefixes match case-insensitively; the captured identifiers keep their case.
    """
    if billref is None or not billref.strip():
        return RepaymentIntent()

    ref = billref.strip()
    lowered = ref.lower()

    if lowered == REGISTRATION_FEE_REF:
        return RegistrationIntent()
    if lowered.startswith(REGISTRATION_PREFIX):
        customer_id = ref[len(REGISTRATION_PREFIX):]
        return RegistrationIntent(customer_id=customer_id or None)
    if lowered.startswith(PROCESSING_PREFIX):
        return ProcessingIntent(loan_id=ref[len(PROCESSING_PREFIX):])

    return RepaymentIntent(account_ref=ref)


def job_type_for_billref(billref: Optional[str]) -> Tuple[str, int]:
    """Map a billref to the queue job type and priority used when enqueueing it"""
    ref = (billref or "").strip().lower()
    if ref.startswith("registration"):
        return JOB_REGISTRATION, 2
    if ref.startswith("processing"):
        return JOB_PROCESSING_FEE, 3
    return JOB_C2B_REPAYMENT, 5
