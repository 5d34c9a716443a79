"""Pydantic schemas for API request/response validation"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

Action = Literal["process-pending", "process-single", "process-queue", "recover-stuck", "run-cron"]


class ProcessRequest(BaseModel):
    """Request body for POST /v1/process"""

    action: Action
    transaction_id: Optional[str] = Field(None, min_length=1, description="Required for process-single")
    tenant_id: Optional[str] = Field(None, min_length=1, description="Restrict work to one tenant")
    limit: int = Field(50, ge=1, le=500, description="Max pending transactions scanned")


class ProcessResultSchema(BaseModel):
    """Outcome of one transaction"""

    transaction_id: str
    status: str
    result: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None


class SingleResponse(ProcessResultSchema):
    """Response for action process-single"""

    worker_id: str


class BatchResponse(BaseModel):
    """Response for action process-pending"""

    worker_id: str
    total: int
    succeeded: int
    skipped: int
    failed: int
    results: List[ProcessResultSchema]


class DrainResponse(BaseModel):
    """Response for action process-queue"""

    worker_id: str
    processed: int
    failed: int


class RecoverResponse(BaseModel):
    """Response for action recover-stuck"""

    recovered: int


class CronResponse(BaseModel):
    """Response for action run-cron"""

    cron: bool = True
    timestamp: datetime
    results: List[Dict[str, Any]]
