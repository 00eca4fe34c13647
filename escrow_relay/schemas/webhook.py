"""Webhook response schemas."""

from pydantic import BaseModel, Field


class ReconciliationTarget(BaseModel):
    """Internal resource a callback was reconciled against."""

    target_type: str | None = None
    target_id: str | None = None


class WebhookReceiptData(BaseModel):
    """Result of processing or replaying a provider callback."""

    status: str = Field(..., description="processed, ignored or replayed")
    provider: str
    provider_event_id: str
    receipt_id: str
    reconciliation: ReconciliationTarget | None = None


class WebhookResponse(BaseModel):
    """Webhook response envelope."""

    data: WebhookReceiptData

    model_config = {"json_schema_extra": {
        "example": {
            "data": {
                "status": "processed",
                "provider": "QITECH",
                "provider_event_id": "evt-1",
                "receipt_id": "0b5f8f86-6a55-4f0a-9a3b-3d1d6f4d2c11",
                "reconciliation": {
                    "target_type": "EscrowPayout",
                    "target_id": "a4c2b0f4-1a7e-4b36-8f0f-5c2f7b1d9e22"
                }
            }
        }
    }}
