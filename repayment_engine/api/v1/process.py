"""POST /v1/process - single entry point for every processing action"""

import logging
from dataclasses import asdict
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from repayment_engine.api.dependencies import get_request_id, get_sms_client
from repayment_engine.api.v1.schemas import (
    BatchResponse,
    CronResponse,
    DrainResponse,
    ProcessRequest,
    ProcessResultSchema,
    RecoverResponse,
    SingleResponse,
)
from repayment_engine.infrastructure.clients.sms import SmsClient
from repayment_engine.infrastructure.database.session import get_db
from repayment_engine.services.cron import run_cron
from repayment_engine.services.engine import RepaymentEngine
from repayment_engine.utils.date_utils import utcnow

router = APIRouter()


def _respond(model: BaseModel) -> JSONResponse:
    return JSONResponse(content=model.model_dump(mode="json", exclude_none=True))


@router.post("/process")
def process(
    request_body: ProcessRequest,
    request: Request,
    db: Session = Depends(get_db),
    sms_client: SmsClient = Depends(get_sms_client),
):
    """
    Run one processing action with a fresh worker identity.

    Per-item failures are reported in the payload; only invocation-level
    problems (bad request, unreachable database) change the status code.
    """
    request_id = get_request_id(request)

    if request_body.action == "process-single" and not request_body.transaction_id:
        raise HTTPException(status_code=400, detail="transaction_id is required")

    engine = RepaymentEngine(db, sms_client)
    logging.info(
        f"Action: {request_body.action}",
        extra={"request_id": request_id, "worker_id": engine.worker_id, "tenant_id": request_body.tenant_id or "all"},
    )

    try:
        if request_body.action == "process-pending":
            summary = engine.process_pending(request_body.tenant_id, request_body.limit)
            return _respond(
                BatchResponse(
                    worker_id=summary.worker_id,
                    total=summary.total,
                    succeeded=summary.succeeded,
                    skipped=summary.skipped,
                    failed=summary.failed,
                    results=[ProcessResultSchema(**asdict(r)) for r in summary.results],
                )
            )

        if request_body.action == "process-single":
            result = engine.process_single(request_body.transaction_id)
            return _respond(SingleResponse(worker_id=engine.worker_id, **asdict(result)))

        if request_body.action == "process-queue":
            drained = engine.process_queue(request_body.tenant_id)
            return _respond(DrainResponse(worker_id=drained.worker_id, processed=drained.processed, failed=drained.failed))

        if request_body.action == "recover-stuck":
            return _respond(RecoverResponse(recovered=engine.recover_stuck()))

        return _respond(CronResponse(timestamp=utcnow(), results=run_cron(engine)))

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id, "action": request_body.action})
        return JSONResponse(status_code=500, content={"error": str(e)})
