"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class ClaimConflict(DomainException):
    """Another worker already owns the transaction, or it does not exist"""

    pass


class ResolutionError(DomainException):
    """Payer could not be matched to a tenant or customer (goes to suspense)"""

    reason_code = "unresolved"


class TenantUnresolved(ResolutionError):
    """No tenant on the transaction and none derivable from the phone number"""

    reason_code = "tenant_not_resolved"


class CustomerUnresolved(ResolutionError):
    """No customer matched by national ID, embedded customer ID or phone"""

    reason_code = "customer_not_found"


class HandlerError(DomainException):
    """Unexpected failure while applying fees or repayments"""

    pass


class LoanNotFound(HandlerError):
    """Loan referenced by a payment does not exist for the tenant"""

    pass


class TransactionNotFound(HandlerError):
    """Transaction referenced by a job payload does not exist"""

    pass


class WalletError(HandlerError):
    """Wallet credit or debit was rejected"""

    pass


class InsufficientFunds(WalletError):
    """Wallet debit exceeds the available balance"""

    pass


class SmsDeliveryError(HandlerError):
    """SMS provider returned an error or is unavailable"""

    pass


class ConfigMissing(DomainException):
    """Tenant-level configuration required by a job is absent"""

    pass


class PayloadMalformed(DomainException):
    """Queue job payload is missing a required field; never retried"""

    pass
