"""Payment confirmation SMS job handler"""

import logging
import time
from typing import Any, Dict
from sqlalchemy.orm import Session

from repayment_engine.config import settings
from repayment_engine.domain.exceptions import (
    ConfigMissing,
    CustomerUnresolved,
    PayloadMalformed,
    TransactionNotFound,
)
from repayment_engine.infrastructure.clients.sms import SmsClient
from repayment_engine.infrastructure.database.repositories import (
    CustomerRepository,
    LoanRepository,
    SmsRepository,
    TransactionRepository,
)
from repayment_engine.utils.money import format_amount
from repayment_engine.utils.phone import normalize_phone

logger = logging.getLogger(__name__)

PAYMENT_SMS_TEMPLATE = (
    "Dear Customer,\n"
    "We have received your payment of KES {amount}.\n"
    "Your outstanding loan balance is KES {balance}.\n"
    "Thank you for being our valued client."
)


def compose_payment_sms(amount, balance) -> str:
    return PAYMENT_SMS_TEMPLATE.format(amount=format_amount(amount), balance=format_amount(balance))


class SmsJobHandler:
    """Sends at most one confirmation SMS per applied loan payment"""

    def __init__(self, db: Session, sms_client: SmsClient):
        self.db = db
        self.sms_client = sms_client
        self.transactions = TransactionRepository(db)
        self.customers = CustomerRepository(db)
        self.loans = LoanRepository(db)
        self.sms = SmsRepository(db)

    def handle(self, payload: Dict[str, Any], tenant_id: str | None) -> str:
        """
        Returns a short description of what happened.

        Raises:
            PayloadMalformed: No transaction_id in the payload
            TransactionNotFound: Unknown transaction for the tenant
            CustomerUnresolved: No mobile number (the transaction is still flagged sent)
            ConfigMissing: Tenant has no SMS gateway configured
            SmsDeliveryError: Gateway rejected the message
        """
        transaction_id = (payload or {}).get("transaction_id")
        if not transaction_id:
            raise PayloadMalformed("SMS job payload has no transaction_id")

        tx = self.transactions.get(transaction_id, tenant_id)
        if tx is None:
            raise TransactionNotFound(f"Transaction not found: {transaction_id}")
        tenant_id = tenant_id or tx.tenant_id

        if tx.payment_sms_sent:
            return "SMS already sent"

        # Wallet-only payments get no receipt
        if not tx.loan_id:
            self.transactions.mark_sms_sent(tx)
            self.db.commit()
            return "No loan associated: marked sent"

        mobile, customer_id = self._resolve_mobile(tx, tenant_id)
        if not mobile:
            # Flag it anyway so retries of this job become no-ops
            self.transactions.mark_sms_sent(tx)
            self.db.commit()
            raise CustomerUnresolved(f"No customer mobile found for transaction {transaction_id}")

        loan = self.loans.get(tx.loan_id)
        balance = self.loans.outstanding_balance(loan) if loan else 0
        message = compose_payment_sms(tx.amount, balance)

        config = self.sms.get_settings(tenant_id)
        if config is None:
            raise ConfigMissing(f"SMS config missing for tenant {tenant_id}")

        logger.info(
            "Sending payment SMS",
            extra={"transaction_id": transaction_id, "tenant_id": tenant_id, "base_url": config.base_url},
        )
        self.sms_client.send(config, mobile, message)

        self.sms.log_sent(tenant_id, customer_id, mobile, message, f"sms-{int(time.time() * 1000)}")
        self.transactions.mark_sms_sent(tx, customer_id)
        self.db.commit()
        return f"SMS sent to {mobile}"

    def _resolve_mobile(self, tx, tenant_id: str):
        """Stored customer reference first, then the payer's phone number"""
        if tx.customer_id:
            customer = self.customers.get(tx.customer_id, tenant_id)
            if customer and customer.mobile:
                return customer.mobile, customer.id

        if tx.phone_number:
            variants = normalize_phone(tx.phone_number, settings.phone_country_code)
            customer = self.customers.find_by_mobile(variants, tenant_id)
            if customer and customer.mobile:
                return customer.mobile, customer.id

        return None, tx.customer_id
