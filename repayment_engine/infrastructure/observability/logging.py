"""Structured JSON logging for production observability"""

import logging
import sys
from typing import Any, Dict
from pythonjsonlogger import jsonlogger

from repayment_engine.config import settings
from repayment_engine.domain.models import DrainSummary, ProcessResult
from repayment_engine.utils.date_utils import utcnow


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = utcnow().isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_process_result(worker_id: str, result: ProcessResult, duration_ms: float) -> None:
    """Log the outcome of one processed transaction"""
    extra = {
        "worker_id": worker_id,
        "transaction_id": result.transaction_id,
        "step": "process_complete",
        "outcome": result.status,
        "duration_ms": duration_ms,
    }
    if result.reason:
        extra["reason"] = result.reason
    if result.error:
        extra["error"] = result.error

    level = logging.WARNING if result.status == "failed" else logging.INFO
    logging.log(level, "Transaction processed", extra=extra)


def log_queue_drain(summary: DrainSummary, tenant_id: str | None, duration_ms: float) -> None:
    """Log the counters of one queue drain"""
    logging.info(
        "Queue drained",
        extra={
            "worker_id": summary.worker_id,
            "tenant_id": tenant_id,
            "step": "queue_drain_complete",
            "processed": summary.processed,
            "failed": summary.failed,
            "duration_ms": duration_ms,
        },
    )
