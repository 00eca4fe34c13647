"""Tests for EventRouter."""

from uuid import uuid4

import pytest

from escrow_relay.core.errors import DeliveryError
from escrow_relay.core.event_router import EventRouter
from escrow_relay.models import OutboxEvent


def make_event(event_type: str) -> OutboxEvent:
    return OutboxEvent(
        id=uuid4(),
        tenant_id=uuid4(),
        aggregate_type="EscrowPayout",
        aggregate_id=uuid4(),
        event_type=event_type,
        payload={},
    )


class RecordingHandler:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.delivered = []

    async def deliver(self, event, session) -> None:
        self.delivered.append(event.id)
        if self.error is not None:
            raise self.error


@pytest.mark.asyncio
async def test_routes_event_to_registered_handler():
    handler = RecordingHandler()
    router = EventRouter({"ESCROW_PAYOUT_REQUESTED": handler})
    event = make_event("ESCROW_PAYOUT_REQUESTED")

    outcome = await router.route(event, session=None)

    assert outcome.delivered
    assert outcome.noop is False
    assert handler.delivered == [event.id]


@pytest.mark.asyncio
async def test_unknown_event_type_is_a_successful_noop():
    router = EventRouter()

    outcome = await router.route(make_event("KYC_DOCUMENT_SUBMITTED"), session=None)

    assert outcome.delivered
    assert outcome.noop is True


@pytest.mark.asyncio
async def test_delivery_error_is_returned_unchanged():
    error = DeliveryError(code="provider_unavailable", message="Provider returned 503.")
    router = EventRouter({"ESCROW_PAYOUT_REQUESTED": RecordingHandler(error=error)})

    outcome = await router.route(make_event("ESCROW_PAYOUT_REQUESTED"), session=None)

    assert outcome.delivered is False
    assert outcome.error is error


@pytest.mark.asyncio
async def test_unexpected_exception_is_normalized():
    router = EventRouter({"ESCROW_PAYOUT_REQUESTED": RecordingHandler(error=RuntimeError("socket closed"))})

    outcome = await router.route(make_event("ESCROW_PAYOUT_REQUESTED"), session=None)

    assert outcome.delivered is False
    assert outcome.error.code == "outbox_delivery_failed"
    assert outcome.error.message == "socket closed"


@pytest.mark.asyncio
async def test_exception_without_message_uses_class_name():
    router = EventRouter({"ESCROW_PAYOUT_REQUESTED": RecordingHandler(error=KeyError())})

    outcome = await router.route(make_event("ESCROW_PAYOUT_REQUESTED"), session=None)

    assert outcome.error.message == "KeyError"


def test_register_replaces_handler_and_lists_event_types():
    first, second = RecordingHandler(), RecordingHandler()
    router = EventRouter({"B_EVENT": first})

    router.register("A_EVENT", first)
    router.register("B_EVENT", second)

    assert router.event_types == ["A_EVENT", "B_EVENT"]
    assert router.handler_for("B_EVENT") is second
    assert router.handler_for("C_EVENT") is None
