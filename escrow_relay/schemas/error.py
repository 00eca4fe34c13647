"""Error schemas."""

from pydantic import BaseModel, Field


class ErrorBody(BaseModel):
    """Error details."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    request_id: str | None = Field(default=None, description="Request id echoed in X-Request-Id")


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorBody

    model_config = {"json_schema_extra": {
        "example": {
            "error": {
                "code": "webhook_signature_invalid",
                "message": "Webhook signature is invalid.",
                "request_id": "5f0c6d1e-0d7e-4c1b-9a51-2b8f3f9e2a10"
            }
        }
    }}
