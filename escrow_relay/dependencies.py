"""FastAPI dependencies and process-wide component wiring."""

from fastapi import Request

from escrow_relay.config import settings
from escrow_relay.core.audit import RequestMeta
from escrow_relay.core.event_router import EventRouter
from escrow_relay.core.handlers import HttpDeliveryHandler
from escrow_relay.core.reconciliation import ReconcilerRegistry
from escrow_relay.core.webhook_auth import WebhookAuthenticator
from escrow_relay.core.webhook_pipeline import WebhookPipeline
from escrow_relay.database import AsyncSessionLocal
from escrow_relay.logging_config import get_logger
from escrow_relay.middleware.request_context import get_request_id

logger = get_logger(__name__)

# Reconcilers are registered by the business services embedding this app
_reconciler_registry = ReconcilerRegistry()
_event_router: EventRouter | None = None


def get_reconciler_registry() -> ReconcilerRegistry:
    """Get the process-wide reconciler registry."""
    return _reconciler_registry


def build_event_router(routes: dict[str, str] | None = None) -> EventRouter:
    """Build an EventRouter posting each configured event type over HTTP."""
    routes = settings.outbox_http_routes if routes is None else routes
    router = EventRouter()
    for event_type, url in routes.items():
        router.register(
            event_type,
            HttpDeliveryHandler(url=url, timeout_seconds=settings.outbox_delivery_timeout_seconds),
        )
    logger.info("event_router_configured", event_types=router.event_types)
    return router


def get_event_router() -> EventRouter:
    """Get the process-wide event router."""
    global _event_router
    if _event_router is None:
        _event_router = build_event_router()
    return _event_router


def get_webhook_pipeline() -> WebhookPipeline:
    """Build the webhook pipeline for a request."""
    return WebhookPipeline(
        session_factory=AsyncSessionLocal,
        authenticator=WebhookAuthenticator(settings),
        reconcilers=get_reconciler_registry(),
    )


def get_request_meta(request: Request) -> RequestMeta:
    """Describe the current webhook request for audit entries."""
    return RequestMeta(
        channel="WEBHOOK",
        endpoint_path=request.url.path,
        http_method=request.method,
        request_id=get_request_id(request),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
