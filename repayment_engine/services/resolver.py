"""Tenant and customer resolution for inbound payments (read-only)"""

from typing import Optional
from sqlalchemy.orm import Session

from repayment_engine.config import settings
from repayment_engine.domain.models import PaymentIntent, RegistrationIntent, RepaymentIntent
from repayment_engine.infrastructure.database.models import Customer
from repayment_engine.infrastructure.database.repositories import CustomerRepository
from repayment_engine.utils.phone import normalize_phone


class PayerResolver:
    """Finds the tenant and customer a payment belongs to"""

    def __init__(self, db: Session, country_code: str | None = None):
        self.customers = CustomerRepository(db)
        self.country_code = country_code or settings.phone_country_code

    def resolve_tenant(self, tenant_hint: str | None, phone: str | None) -> Optional[str]:
        """Use the tenant on the transaction, else inherit it from the customer owning the phone"""
        if tenant_hint:
            return tenant_hint
        customer = self.customers.find_by_mobile(normalize_phone(phone, self.country_code))
        return customer.tenant_id if customer else None

    def resolve_customer(self, tenant_id: str, phone: str | None, intent: PaymentIntent) -> Optional[Customer]:
        """
        Match the payer to a customer of the tenant. First hit wins:
        1. National ID when the intent is a repayment with an account reference
        2. Customer ID embedded in a registration billref
        3. Any normalized variant of the paying phone number
        """
        if isinstance(intent, RepaymentIntent) and intent.account_ref:
            customer = self.customers.find_by_id_number(intent.account_ref, tenant_id)
            if customer:
                return customer

        if isinstance(intent, RegistrationIntent) and intent.customer_id:
            customer = self.customers.get(intent.customer_id, tenant_id)
            if customer:
                return customer

        return self.customers.find_by_mobile(normalize_phone(phone, self.country_code), tenant_id)
