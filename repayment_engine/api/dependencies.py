"""Dependency injection for FastAPI endpoints"""

from typing import Iterator
from fastapi import Request
from repayment_engine.infrastructure.clients.sms import SmsClient


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_sms_client() -> Iterator[SmsClient]:
    """Provide an SMS gateway client, closed after the request"""
    client = SmsClient()
    try:
        yield client
    finally:
        client.close()
