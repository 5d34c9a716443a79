"""B2C disbursement result handler"""

import logging
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session

from repayment_engine.domain.exceptions import PayloadMalformed
from repayment_engine.infrastructure.database.repositories import DisbursementRepository

logger = logging.getLogger(__name__)

LOAN_OCCASION_PREFIX = "loan-"


def loan_id_from_reference_data(reference_data: Optional[Dict[str, Any]]) -> Optional[str]:
    """Extract the loan id from the "Occasion" reference item ("loan-<id>")

    The provider sends ReferenceItem either as a list of {Key, Value} or as a
    single item.
    """
    items = (reference_data or {}).get("ReferenceItem")
    if isinstance(items, list):
        occasion = next((item.get("Value") for item in items if item.get("Key") == "Occasion"), None)
    elif isinstance(items, dict):
        occasion = items.get("Value")
    else:
        occasion = None

    if not occasion:
        return None
    occasion = str(occasion)
    if occasion.startswith(LOAN_OCCASION_PREFIX):
        occasion = occasion[len(LOAN_OCCASION_PREFIX):]
    return occasion or None


class DisbursementResultHandler:
    """Applies a provider B2C result to the disbursement and loan records"""

    def __init__(self, db: Session):
        self.db = db
        self.disbursements = DisbursementRepository(db)

    def handle(self, payload: Dict[str, Any]) -> str:
        """
        Raises:
            PayloadMalformed: Payload carries no Result object
        """
        result = (payload or {}).get("Result")
        if not isinstance(result, dict):
            raise PayloadMalformed("Invalid B2C result payload")

        result_code = result.get("ResultCode")
        succeeded = str(result_code) == "0"
        provider_tx = result.get("TransactionID") or None
        loan_id = loan_id_from_reference_data(result.get("ReferenceData"))

        self.disbursements.record_b2c_result(
            conversation_id=result.get("ConversationID"),
            originator_id=result.get("OriginatorConversationID"),
            status="completed" if succeeded else "failed",
            result_code=result_code,
            result_desc=result.get("ResultDesc"),
            provider_transaction_id=provider_tx,
            raw_result=result,
        )

        if loan_id and succeeded:
            self.disbursements.mark_disbursed(loan_id, provider_tx)
        elif loan_id:
            self.disbursements.revert_to_ready(loan_id)

        self.db.commit()

        logger.info(
            "Disbursement result applied",
            extra={"loan_id": loan_id, "result_code": result_code, "succeeded": succeeded},
        )
        if not loan_id:
            return f"B2C result {result_code} recorded (no loan reference)"
        return f"Loan {loan_id} {'disbursed' if succeeded else 'reverted to ready_for_disbursement'}"
