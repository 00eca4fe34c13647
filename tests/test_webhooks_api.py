"""Tests for the provider webhook endpoint."""

import hashlib
import json

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from escrow_relay.config import Settings
from escrow_relay.core import conflict_monitor as conflict_monitor_module
from escrow_relay.core.audit import AuditLog
from escrow_relay.core.conflict_monitor import ConflictEvent
from escrow_relay.core.errors import ReconciliationError
from escrow_relay.core.reconciliation import ReconcilerRegistry, ReconciliationResult
from escrow_relay.core.webhook_auth import WebhookAuthenticator
from escrow_relay.core.webhook_pipeline import WebhookPipeline
from escrow_relay.dependencies import get_webhook_pipeline
from escrow_relay.main import app
from escrow_relay.models import ActionLog, ProviderWebhookReceipt, ReconciliationException

from tests.helpers import QITECH_SECRET, STARKBANK_TOKEN, StubReconciler, count_rows, hmac_signature

TENANT_SLUG = "clinica-sao-paulo"
SETTLED = {"event_id": "evt-1001", "event_type": "pix_transfer.settled", "request_control_key": "rck-1"}


def encode(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


async def post_qitech(
    client: AsyncClient,
    body: bytes,
    tenant_slug: str = TENANT_SLUG,
    headers: dict | None = None,
    provider: str = "qitech",
):
    request_headers = {
        "Content-Type": "application/json",
        "X-QITECH-Signature": hmac_signature(QITECH_SECRET, body),
        **(headers or {}),
    }
    return await client.post(f"/webhooks/{provider}/{tenant_slug}", content=body, headers=request_headers)


async def load_receipts(session_factory) -> list[ProviderWebhookReceipt]:
    async with session_factory() as session:
        result = await session.execute(select(ProviderWebhookReceipt))
        return list(result.scalars().all())


async def load_exceptions(session_factory) -> list[ReconciliationException]:
    async with session_factory() as session:
        result = await session.execute(select(ReconciliationException))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_first_delivery_is_processed(client, tenant, session_factory, reconciler):
    response = await post_qitech(client, encode(SETTLED))

    assert response.status_code == 202
    data = response.json()["data"]
    assert data["status"] == "processed"
    assert data["provider"] == "QITECH"
    assert data["provider_event_id"] == "evt-1001"
    assert data["reconciliation"]["target_type"] == "EscrowPayout"

    [receipt] = await load_receipts(session_factory)
    assert str(receipt.id) == data["receipt_id"]
    assert receipt.status == "PROCESSED"
    assert receipt.event_type == "pix_transfer.settled"
    assert receipt.payload == SETTLED
    assert receipt.payload_sha256 == hashlib.sha256(encode(SETTLED)).hexdigest()
    assert receipt.request_headers["x_qitech_signature"] == hmac_signature(QITECH_SECRET, encode(SETTLED))
    assert receipt.request_headers["authorization_present"] is False

    [request] = reconciler.requests
    assert request.tenant_id == tenant.id
    assert request.provider_event_id == "evt-1001"
    assert await count_rows(session_factory, ActionLog, ActionLog.action_type == "ESCROW_WEBHOOK_RECEIVED") == 1


@pytest.mark.asyncio
async def test_duplicate_delivery_is_replayed(client, tenant, session_factory, reconciler):
    first = await post_qitech(client, encode(SETTLED))
    second = await post_qitech(client, encode(SETTLED))

    assert first.status_code == 202
    assert second.status_code == 200
    assert second.json()["data"] == {
        "status": "replayed",
        "provider": "QITECH",
        "provider_event_id": "evt-1001",
        "receipt_id": first.json()["data"]["receipt_id"],
    }
    assert len(reconciler.requests) == 1
    assert len(await load_receipts(session_factory)) == 1
    assert await count_rows(session_factory, ActionLog, ActionLog.action_type == "ESCROW_WEBHOOK_REPLAYED") == 1


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_without_side_effects(client, tenant, session_factory, reconciler):
    response = await client.post(
        f"/webhooks/qitech/{TENANT_SLUG}",
        content=encode(SETTLED),
        headers={"X-QITECH-Signature": hmac_signature("wrong-secret", encode(SETTLED))},
    )

    assert response.status_code == 401
    error = response.json()["error"]
    assert error["code"] == "webhook_signature_invalid"
    assert error["request_id"] == response.headers["X-Request-Id"]
    assert reconciler.requests == []
    assert await load_receipts(session_factory) == []


@pytest.mark.asyncio
async def test_missing_signature(client, tenant):
    response = await client.post(f"/webhooks/qitech/{TENANT_SLUG}", content=encode(SETTLED))

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "webhook_signature_missing"


@pytest.mark.asyncio
async def test_bearer_token_provider(client, tenant, session_factory):
    response = await client.post(
        f"/webhooks/stark-bank/{TENANT_SLUG}",
        content=encode({"id": "sb-1", "type": "transfer.success"}),
        headers={"Authorization": f"Bearer {STARKBANK_TOKEN}"},
    )

    assert response.status_code == 202
    [receipt] = await load_receipts(session_factory)
    assert receipt.provider == "STARKBANK"
    assert receipt.signature == "bearer"
    assert receipt.event_type == "transfer.success"
    assert receipt.request_headers["authorization_present"] is True


@pytest.mark.asyncio
async def test_reused_event_id_with_different_payload_conflicts(client, tenant, session_factory, reconciler):
    await post_qitech(client, encode(SETTLED))

    response = await post_qitech(client, encode({**SETTLED, "amount_cents": 1}))

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "webhook_event_reused_with_different_payload"
    assert len(reconciler.requests) == 1
    assert len(await load_receipts(session_factory)) == 1


@pytest.mark.asyncio
async def test_event_id_mismatch_between_payload_and_header(client, tenant, session_factory):
    response = await post_qitech(client, encode(SETTLED), headers={"X-Webhook-Id": "evt-9999"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "webhook_event_id_mismatch"
    assert await load_receipts(session_factory) == []


@pytest.mark.asyncio
async def test_event_id_from_header_when_payload_has_none(client, tenant):
    response = await post_qitech(client, encode({"status": "settled"}), headers={"X-Webhook-Id": "wh-77"})

    assert response.status_code == 202
    assert response.json()["data"]["provider_event_id"] == "wh-77"


@pytest.mark.asyncio
async def test_event_id_falls_back_to_body_hash(client, tenant):
    body = encode({"status": "settled"})

    response = await post_qitech(client, body)

    assert response.status_code == 202
    assert response.json()["data"]["provider_event_id"] == hashlib.sha256(body).hexdigest()


@pytest.mark.asyncio
async def test_invalid_json(client, tenant):
    response = await post_qitech(client, b"{not json")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "webhook_payload_invalid_json"


@pytest.mark.asyncio
async def test_payload_must_be_object(client, tenant):
    response = await post_qitech(client, encode([SETTLED]))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "webhook_payload_invalid"


@pytest.mark.asyncio
async def test_unconfigured_provider_is_503(client, tenant, webhook_pipeline):
    webhook_pipeline.authenticator = WebhookAuthenticator(Settings(_env_file=None))

    response = await post_qitech(client, encode(SETTLED))

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "webhook_auth_not_configured"


@pytest.mark.asyncio
async def test_unsupported_provider(client, tenant):
    response = await post_qitech(client, encode(SETTLED), provider="paypal")

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "unsupported_escrow_provider"


@pytest.mark.asyncio
async def test_unknown_tenant_is_unauthorized(client, tenant, reconciler):
    response = await post_qitech(client, encode(SETTLED), tenant_slug="no-such-tenant")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "webhook_signature_invalid"
    assert reconciler.requests == []


@pytest.mark.asyncio
async def test_unmatched_callback_opens_reconciliation_exception(client, tenant, session_factory, reconciler):
    reconciler.result = ReconciliationResult(status="IGNORED", metadata={"lookup": "request_control_key"})

    response = await post_qitech(client, encode(SETTLED))

    assert response.status_code == 202
    data = response.json()["data"]
    assert data["status"] == "ignored"
    assert data["reconciliation"] == {"target_type": None, "target_id": None}

    [exception] = await load_exceptions(session_factory)
    assert exception.source == "ESCROW_WEBHOOK"
    assert exception.provider == "QITECH"
    assert exception.external_event_id == "evt-1001"
    assert exception.code == "escrow_webhook_resource_not_found"
    assert exception.status == "OPEN"
    assert exception.metadata_["receipt_id"] == data["receipt_id"]
    assert exception.metadata_["reconciliation_result"] == {"lookup": "request_control_key"}
    assert await count_rows(session_factory, ActionLog, ActionLog.action_type == "ESCROW_WEBHOOK_IGNORED") == 1

    # A replay does not count as a new occurrence
    replay = await post_qitech(client, encode(SETTLED))
    assert replay.status_code == 200
    [exception] = await load_exceptions(session_factory)
    assert exception.occurrences_count == 1


@pytest.mark.asyncio
async def test_reconciliation_failure_leaves_failed_receipt(client, tenant, session_factory, reconciler):
    reconciler.error = ReconciliationError(
        code="escrow_payout_amount_mismatch",
        message="Settled amount differs from the requested payout.",
    )

    response = await post_qitech(client, encode(SETTLED))

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "escrow_payout_amount_mismatch"

    [receipt] = await load_receipts(session_factory)
    assert receipt.status == "FAILED"
    assert receipt.error_code == "escrow_payout_amount_mismatch"
    assert receipt.error_message == "Settled amount differs from the requested payout."

    [exception] = await load_exceptions(session_factory)
    assert exception.code == "escrow_payout_amount_mismatch"
    assert exception.metadata_ == {"exception_class": "ReconciliationError"}

    async with session_factory() as session:
        log = (
            await session.execute(select(ActionLog).where(ActionLog.action_type == "ESCROW_WEBHOOK_FAILED"))
        ).scalar_one()
    assert log.success is False
    assert log.channel == "WEBHOOK"
    assert log.endpoint_path == f"/webhooks/qitech/{TENANT_SLUG}"
    assert log.http_method == "POST"
    assert log.metadata_["error_code"] == "escrow_payout_amount_mismatch"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Request-Id": "req-123"})

    assert response.status_code == 200
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_readiness_tracks_conflict_spikes(client, conflict_monitor, monkeypatch):
    monkeypatch.setattr(conflict_monitor_module, "_monitor", conflict_monitor)

    ready = await client.get("/ready")
    assert ready.status_code == 200
    assert ready.json() == {"status": "ready", "checks": {"idempotency_conflicts": "ok"}}

    for _ in range(4):
        await conflict_monitor.record_conflict(
            ConflictEvent(code="idempotency_key_reused_with_different_payload", message="", service="test")
        )

    not_ready = await client.get("/ready")
    assert not_ready.status_code == 503
    assert not_ready.json()["checks"]["idempotency_conflicts"] == "error"


class CompetingDeliveryReconciler(StubReconciler):
    """Commits the same delivery from another connection while reconciling."""

    def __init__(self, competitor, payload_sha256: str):
        super().__init__()
        self.competitor = competitor
        self.payload_sha256 = payload_sha256
        self.winner_id = None

    async def reconcile(self, session, request):
        async with self.competitor() as other:
            async with other.begin():
                winner = ProviderWebhookReceipt(
                    tenant_id=request.tenant_id,
                    provider=request.provider,
                    provider_event_id=request.provider_event_id,
                    payload_sha256=self.payload_sha256,
                    payload=request.payload,
                    status="PROCESSED",
                )
                other.add(winner)
        self.winner_id = winner.id
        return await super().reconcile(session, request)


@pytest.mark.asyncio
async def test_concurrent_delivery_falls_into_replay(file_session_factories, file_tenant, webhook_settings, clock):
    primary, competitor = file_session_factories
    body = encode(SETTLED)
    reconciler = CompetingDeliveryReconciler(competitor, hashlib.sha256(body).hexdigest())
    pipeline = WebhookPipeline(
        session_factory=primary,
        authenticator=WebhookAuthenticator(webhook_settings),
        reconcilers=ReconcilerRegistry(default=reconciler),
        audit_log=AuditLog(primary),
        clock=clock,
    )
    app.dependency_overrides[get_webhook_pipeline] = lambda: pipeline

    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await post_qitech(client, body)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.json()["data"] == {
        "status": "replayed",
        "provider": "QITECH",
        "provider_event_id": "evt-1001",
        "receipt_id": str(reconciler.winner_id),
    }
    [receipt] = await load_receipts(primary)
    assert str(receipt.id) == str(reconciler.winner_id)
    assert await count_rows(primary, ActionLog, ActionLog.action_type == "ESCROW_WEBHOOK_REPLAYED") == 1
