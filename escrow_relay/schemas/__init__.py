"""Pydantic schemas for API requests and responses."""

from escrow_relay.schemas.error import ErrorBody, ErrorResponse
from escrow_relay.schemas.webhook import ReconciliationTarget, WebhookReceiptData, WebhookResponse

__all__ = [
    "ErrorBody",
    "ErrorResponse",
    "ReconciliationTarget",
    "WebhookReceiptData",
    "WebhookResponse",
]
