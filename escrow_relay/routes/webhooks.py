"""Provider webhook endpoint."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from escrow_relay.core.audit import RequestMeta
from escrow_relay.core.webhook_pipeline import WebhookPipeline
from escrow_relay.dependencies import get_request_meta, get_webhook_pipeline
from escrow_relay.schemas.error import ErrorResponse
from escrow_relay.schemas.webhook import WebhookResponse

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/{provider}/{tenant_slug}",
    response_model=WebhookResponse,
    status_code=202,
    responses={
        200: {"model": WebhookResponse, "description": "Replay of an already processed event"},
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def receive_webhook(
    provider: str,
    tenant_slug: str,
    request: Request,
    pipeline: WebhookPipeline = Depends(get_webhook_pipeline),
    request_meta: RequestMeta = Depends(get_request_meta),
) -> JSONResponse:
    """Receive a provider callback.

    Returns 202 for a newly processed event and 200 for a replay.
    Rejections are rendered by the WebhookError exception handler.
    """
    raw_body = await request.body()
    outcome = await pipeline.process(
        provider=provider,
        tenant_slug=tenant_slug,
        raw_body=raw_body,
        headers=request.headers,
        request_meta=request_meta,
    )
    return JSONResponse(status_code=outcome.http_status, content=outcome.to_response())
