"""HTTP delivery handler: POSTs outbox events to a configured endpoint."""

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_relay.core.errors import DeliveryError
from escrow_relay.logging_config import get_logger
from escrow_relay.models import OutboxEvent

logger = get_logger(__name__)


def event_envelope(event: OutboxEvent) -> dict:
    return {
        "id": str(event.id),
        "tenant_id": str(event.tenant_id),
        "event_type": event.event_type,
        "aggregate_type": event.aggregate_type,
        "aggregate_id": str(event.aggregate_id),
        "payload": event.payload or {},
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


class HttpDeliveryHandler:
    """Delivers events as JSON to a single URL.

    The receiver gets an ``Idempotency-Key`` header (the event's
    idempotency key, or its id) so that redelivery after a retry is safe.
    """

    def __init__(
        self,
        url: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
        headers: dict[str, str] | None = None,
    ):
        self.url = url
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.headers = headers or {}

    async def deliver(self, event: OutboxEvent, session: AsyncSession) -> None:
        headers = {
            **self.headers,
            "Idempotency-Key": event.idempotency_key or str(event.id),
            "X-Outbox-Event-Type": event.event_type,
        }

        try:
            if self.client is not None:
                response = await self.client.post(
                    self.url, json=event_envelope(event), headers=headers, timeout=self.timeout_seconds
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.url, json=event_envelope(event), headers=headers)
        except httpx.TimeoutException as e:
            raise DeliveryError(code="delivery_timeout", message=f"Delivery to {self.url} timed out: {e}")
        except httpx.TransportError as e:
            raise DeliveryError(code="delivery_transport_error", message=f"Delivery to {self.url} failed: {e}")

        if response.is_success:
            logger.debug("outbox_http_delivered", outbox_event_id=str(event.id), status_code=response.status_code)
            return

        raise DeliveryError(
            code="delivery_rejected",
            message=f"Delivery to {self.url} was rejected with HTTP {response.status_code}.",
        )
