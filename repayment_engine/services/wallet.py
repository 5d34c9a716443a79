"""Wallet ledger adapter over the atomic store"""

import logging
from decimal import Decimal

from repayment_engine.infrastructure.database.atomic_store import AtomicStore
from repayment_engine.infrastructure.observability.metrics import wallet_credit_counter

logger = logging.getLogger(__name__)


class WalletLedger:
    """Credits and drains customer wallets; every movement carries a reference"""

    def __init__(self, store: AtomicStore):
        self.store = store

    def credit(
        self,
        tenant_id: str,
        customer_id: str,
        amount: Decimal,
        narration: str,
        reference: str,
        ref_type: str,
    ) -> None:
        self.store.wallet_transact(
            tenant_id=tenant_id,
            customer_id=customer_id,
            amount=amount,
            direction="credit",
            narration=narration,
            reference=reference,
            ref_type=ref_type,
        )
        wallet_credit_counter.labels(ref_type=ref_type).inc()
        logger.info(
            "Wallet credited",
            extra={
                "tenant_id": tenant_id,
                "customer_id": customer_id,
                "amount": str(amount),
                "balance": str(self.store.wallet_balance(tenant_id, customer_id)),
                "ref_type": ref_type,
                "reference": reference,
            },
        )

    def drain(self, tenant_id: str, customer_id: str, reference: str) -> Decimal:
        """Move the whole wallet balance into a repayment; returns the amount drained"""
        drained = self.store.drain_wallet_for_repayment(tenant_id, customer_id, reference)
        if drained > 0:
            logger.info(
                "Wallet drained for repayment",
                extra={"tenant_id": tenant_id, "customer_id": customer_id, "amount": str(drained), "reference": reference},
            )
        return drained
