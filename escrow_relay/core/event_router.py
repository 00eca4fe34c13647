"""Event router: maps outbox event types to delivery handlers."""

from dataclasses import dataclass
from typing import Mapping, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from escrow_relay.core.errors import DeliveryError
from escrow_relay.logging_config import get_logger
from escrow_relay.models import OutboxEvent

logger = get_logger(__name__)


class DeliveryHandler(Protocol):
    """Capability every delivery handler implements.

    ``deliver`` returns on success and raises DeliveryError on failure.
    It runs inside the dispatcher's transaction, so any rows it writes
    commit together with the dispatch attempt.
    """

    async def deliver(self, event: OutboxEvent, session: AsyncSession) -> None:
        ...


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of routing one event to its handler."""

    error: DeliveryError | None = None
    noop: bool = False

    @property
    def delivered(self) -> bool:
        return self.error is None


class EventRouter:
    """Static lookup table from event type to handler.

    Unknown event types are treated as intentionally unrouted and succeed
    as a no-op. Any exception a handler raises is normalized into a
    DeliveryError carried by the returned DeliveryOutcome.
    """

    def __init__(self, handlers: Mapping[str, DeliveryHandler] | None = None):
        self._handlers: dict[str, DeliveryHandler] = dict(handlers or {})

    def register(self, event_type: str, handler: DeliveryHandler) -> None:
        self._handlers[event_type] = handler

    def handler_for(self, event_type: str) -> DeliveryHandler | None:
        return self._handlers.get(event_type)

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def route(self, event: OutboxEvent, session: AsyncSession) -> DeliveryOutcome:
        """Deliver an event through its registered handler.

        Args:
            event: The locked outbox event
            session: Session of the enclosing dispatch transaction

        Returns:
            DeliveryOutcome with ``error`` set when delivery failed
        """
        handler = self.handler_for(event.event_type)
        if handler is None:
            logger.debug("outbox_event_unrouted", event_type=event.event_type, outbox_event_id=str(event.id))
            return DeliveryOutcome(noop=True)

        try:
            await handler.deliver(event, session)
        except DeliveryError as e:
            return DeliveryOutcome(error=e)
        except Exception as e:
            logger.warning(
                "outbox_delivery_handler_error",
                event_type=event.event_type,
                outbox_event_id=str(event.id),
                error_class=type(e).__name__,
            )
            return DeliveryOutcome(
                error=DeliveryError(code="outbox_delivery_failed", message=str(e) or type(e).__name__)
            )

        return DeliveryOutcome()
