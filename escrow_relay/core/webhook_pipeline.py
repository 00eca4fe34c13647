"""Inbound provider webhook reconciliation pipeline.

Per callback:

1. normalize the provider and resolve the tenant from its slug
2. authenticate (HMAC signature or bearer token)
3. parse the body as a JSON object and resolve the provider event id
4. in one transaction, lock-find the receipt for (tenant, provider, event id):
   - found: replay if the payload hash matches, conflict otherwise
   - not found: reconcile and write the receipt alongside its side effects
5. after commit: capture a reconciliation exception for ignored callbacks
   and write an audit entry for every outcome

Business errors from reconciliation still leave a FAILED receipt and an
open reconciliation exception behind. Those secondary writes, like the
audit entries, are best-effort and never change the response.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Callable, Mapping
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_relay.core import audit
from escrow_relay.core.audit import AuditEntry, AuditLog, RequestMeta
from escrow_relay.core.errors import (
    ReconciliationError,
    WebhookAuthError,
    WebhookBadRequestError,
    WebhookConflictError,
)
from escrow_relay.core.providers import (
    header_event_id,
    lowercase_headers,
    normalize_provider,
    payload_event_id,
)
from escrow_relay.core.reconciliation import (
    ExceptionRecorder,
    ReconcilerRegistry,
    ReconciliationRequest,
    ReconciliationResult,
)
from escrow_relay.core.webhook_auth import WebhookAuthenticator
from escrow_relay.database import utcnow
from escrow_relay.logging_config import get_logger
from escrow_relay.models import ProviderWebhookReceipt, Tenant
from escrow_relay.models.provider_webhook_receipt import FAILED

logger = get_logger(__name__)

EXCEPTION_SOURCE = "ESCROW_WEBHOOK"
RESOURCE_NOT_FOUND_CODE = "escrow_webhook_resource_not_found"
RESOURCE_NOT_FOUND_MESSAGE = "Webhook payload did not match any escrow account or payout."
ERROR_MESSAGE_MAX_LENGTH = 500


@dataclass(frozen=True)
class WebhookContext:
    """Everything known about an authenticated, parsed callback."""

    tenant_id: UUID
    provider: str
    raw_body: bytes
    payload: dict
    payload_sha256: str
    signature: str
    provider_event_id: str
    headers: dict[str, str]

    @property
    def event_type(self) -> str | None:
        for key in ("event_type", "type"):
            value = self.payload.get(key)
            if value is not None and str(value).strip():
                return str(value).strip()
        return None

    def persisted_headers(self) -> dict:
        return {
            "x_webhook_id": self.headers.get("x-webhook-id", ""),
            "x_request_id": self.headers.get("x-request-id", ""),
            "x_qitech_signature": self.headers.get("x-qitech-signature", ""),
            "x_starkbank_signature": self.headers.get("x-starkbank-signature", ""),
            "authorization_present": bool(self.headers.get("authorization", "").strip()),
            "content_type": self.headers.get("content-type", ""),
        }


@dataclass(frozen=True)
class WebhookOutcome:
    provider: str
    provider_event_id: str
    receipt_id: UUID
    receipt_status: str
    replayed: bool
    result: ReconciliationResult | None = None

    @property
    def http_status(self) -> int:
        return 200 if self.replayed else 202

    def to_response(self) -> dict:
        if self.replayed:
            return {
                "data": {
                    "status": "replayed",
                    "provider": self.provider,
                    "provider_event_id": self.provider_event_id,
                    "receipt_id": str(self.receipt_id),
                }
            }

        return {
            "data": {
                "status": self.result.status.lower(),
                "provider": self.provider,
                "provider_event_id": self.provider_event_id,
                "receipt_id": str(self.receipt_id),
                "reconciliation": {
                    "target_type": self.result.target_type,
                    "target_id": str(self.result.target_id) if self.result.target_id is not None else None,
                },
            }
        }


def _truncate(message: str) -> str:
    return message[:ERROR_MESSAGE_MAX_LENGTH]


class WebhookPipeline:
    """Authenticates, deduplicates and reconciles provider callbacks.

    Args:
        session_factory: async_sessionmaker for all transactions
        authenticator: WebhookAuthenticator verifying signatures/tokens
        reconcilers: ReconcilerRegistry resolving the per-provider reconciler
        audit_log: AuditLog for best-effort audit entries
        clock: Callable returning the current aware UTC datetime
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        authenticator: WebhookAuthenticator,
        reconcilers: ReconcilerRegistry,
        audit_log: AuditLog | None = None,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.authenticator = authenticator
        self.reconcilers = reconcilers
        self.audit_log = audit_log or AuditLog(session_factory)
        self.exceptions = ExceptionRecorder(session_factory)
        self.clock = clock

    async def process(
        self,
        provider: str,
        tenant_slug: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        request_meta: RequestMeta | None = None,
    ) -> WebhookOutcome:
        """Handle one inbound callback.

        Returns:
            WebhookOutcome (replayed or newly processed)

        Raises:
            WebhookError: Any rejection, carrying code, message and HTTP status
        """
        request_meta = request_meta or RequestMeta(channel="WEBHOOK")
        provider_code = normalize_provider(provider)

        tenant_id = await self._resolve_tenant_id(tenant_slug)
        if tenant_id is None:
            logger.warning("webhook_unknown_tenant", provider=provider_code, tenant_slug=tenant_slug)
            raise WebhookAuthError(code="webhook_signature_invalid", message="Webhook signature is invalid.")

        signature = self.authenticator.authenticate(provider_code, headers, raw_body, tenant_slug)
        context = self._build_context(tenant_id, provider_code, raw_body, headers, signature)

        try:
            outcome = await self._process(context, request_meta)
        except ReconciliationError as e:
            await self._handle_reconciliation_error(context, e, request_meta)
            raise
        except IntegrityError:
            outcome = await self._handle_insert_race(context)

        if outcome.result is not None and outcome.result.ignored:
            await self.exceptions.capture(
                tenant_id=context.tenant_id,
                source=EXCEPTION_SOURCE,
                provider=context.provider,
                external_event_id=context.provider_event_id,
                code=RESOURCE_NOT_FOUND_CODE,
                message=RESOURCE_NOT_FOUND_MESSAGE,
                payload_sha256=context.payload_sha256,
                payload=context.payload,
                metadata={
                    "receipt_id": str(outcome.receipt_id),
                    "reconciliation_result": outcome.result.metadata,
                },
                observed_at=self.clock(),
            )

        await self._audit_outcome(context, outcome, request_meta)
        return outcome

    async def _resolve_tenant_id(self, tenant_slug: str) -> UUID | None:
        slug = (tenant_slug or "").strip()
        if not slug:
            return None

        async with self.session_factory() as session:
            result = await session.execute(select(Tenant.id).where(Tenant.slug == slug))
            return result.scalar_one_or_none()

    def _build_context(
        self,
        tenant_id: UUID,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        signature: str,
    ) -> WebhookContext:
        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError):
            raise WebhookBadRequestError(
                code="webhook_payload_invalid_json",
                message="Webhook payload must be valid JSON.",
            )
        if not isinstance(payload, dict):
            raise WebhookBadRequestError(
                code="webhook_payload_invalid",
                message="Webhook payload must be a JSON object.",
            )

        request_headers = lowercase_headers(headers)
        payload_sha256 = hashlib.sha256(raw_body).hexdigest()

        from_payload = payload_event_id(payload)
        from_headers = header_event_id(request_headers)
        if from_payload and from_headers and from_payload != from_headers:
            raise WebhookBadRequestError(
                code="webhook_event_id_mismatch",
                message="Webhook event id mismatch between payload and headers.",
            )

        return WebhookContext(
            tenant_id=tenant_id,
            provider=provider,
            raw_body=raw_body,
            payload=payload,
            payload_sha256=payload_sha256,
            signature=signature,
            provider_event_id=from_payload or from_headers or payload_sha256,
            headers=request_headers,
        )

    async def _process(self, context: WebhookContext, request_meta: RequestMeta) -> WebhookOutcome:
        async with self.session_factory() as session:
            async with session.begin():
                existing = await self._find_receipt(session, context, lock=True)
                if existing is not None:
                    return self._replay(context, existing)

                reconciler = self.reconcilers.for_provider(context.provider)
                result = await reconciler.reconcile(
                    session,
                    ReconciliationRequest(
                        tenant_id=context.tenant_id,
                        provider=context.provider,
                        payload=context.payload,
                        provider_event_id=context.provider_event_id,
                        request_meta=request_meta,
                    ),
                )

                receipt = self._new_receipt(context, status=result.status)
                session.add(receipt)
                await session.flush()

                logger.info(
                    "webhook_processed",
                    tenant_id=str(context.tenant_id),
                    provider=context.provider,
                    provider_event_id=context.provider_event_id,
                    status=result.status,
                )
                return WebhookOutcome(
                    provider=context.provider,
                    provider_event_id=context.provider_event_id,
                    receipt_id=receipt.id,
                    receipt_status=receipt.status,
                    replayed=False,
                    result=result,
                )

    @staticmethod
    async def _find_receipt(
        session: AsyncSession,
        context: WebhookContext,
        lock: bool = False,
    ) -> ProviderWebhookReceipt | None:
        query = select(ProviderWebhookReceipt).where(
            ProviderWebhookReceipt.tenant_id == context.tenant_id,
            ProviderWebhookReceipt.provider == context.provider,
            ProviderWebhookReceipt.provider_event_id == context.provider_event_id,
        )
        if lock:
            query = query.with_for_update()

        result = await session.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    def _replay(context: WebhookContext, existing: ProviderWebhookReceipt) -> WebhookOutcome:
        if existing.payload_sha256 != context.payload_sha256:
            raise WebhookConflictError(
                code="webhook_event_reused_with_different_payload",
                message="Webhook event id was already used with a different payload.",
            )

        return WebhookOutcome(
            provider=context.provider,
            provider_event_id=context.provider_event_id,
            receipt_id=existing.id,
            receipt_status=existing.status,
            replayed=True,
        )

    def _new_receipt(
        self,
        context: WebhookContext,
        status: str,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> ProviderWebhookReceipt:
        return ProviderWebhookReceipt(
            tenant_id=context.tenant_id,
            provider=context.provider,
            provider_event_id=context.provider_event_id,
            event_type=context.event_type,
            signature=context.signature,
            payload_sha256=context.payload_sha256,
            payload=context.payload,
            request_headers=context.persisted_headers(),
            status=status,
            error_code=error_code,
            error_message=_truncate(error_message) if error_message else None,
            processed_at=self.clock(),
        )

    async def _handle_insert_race(self, context: WebhookContext) -> WebhookOutcome:
        async with self.session_factory() as session:
            existing = await self._find_receipt(session, context)

        if existing is None:
            raise WebhookConflictError(code="webhook_idempotency_conflict", message="Webhook event id conflict.")

        logger.info(
            "webhook_insert_race_replayed",
            tenant_id=str(context.tenant_id),
            provider=context.provider,
            provider_event_id=context.provider_event_id,
        )
        return self._replay(context, existing)

    async def _handle_reconciliation_error(
        self,
        context: WebhookContext,
        error: ReconciliationError,
        request_meta: RequestMeta,
    ) -> None:
        logger.warning(
            "webhook_reconciliation_failed",
            tenant_id=str(context.tenant_id),
            provider=context.provider,
            provider_event_id=context.provider_event_id,
            error_code=error.code,
        )

        await self._create_failed_receipt(context, error)
        await self.exceptions.capture(
            tenant_id=context.tenant_id,
            source=EXCEPTION_SOURCE,
            provider=context.provider,
            external_event_id=context.provider_event_id,
            code=error.code,
            message=error.message,
            payload_sha256=context.payload_sha256,
            payload=context.payload,
            metadata={"exception_class": type(error).__name__},
            observed_at=self.clock(),
        )
        await self.audit_log.record(
            AuditEntry(
                tenant_id=context.tenant_id,
                action_type=audit.ESCROW_WEBHOOK_FAILED,
                success=False,
                meta=request_meta,
                metadata={
                    "provider": context.provider,
                    "provider_event_id": context.provider_event_id,
                    "error_code": error.code,
                    "error_message": _truncate(error.message),
                },
                occurred_at=self.clock(),
            )
        )

    async def _create_failed_receipt(self, context: WebhookContext, error: ReconciliationError) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(
                        self._new_receipt(context, status=FAILED, error_code=error.code, error_message=error.message)
                    )
        except IntegrityError:
            # A receipt for this event already exists.
            logger.info(
                "webhook_failed_receipt_exists",
                provider=context.provider,
                provider_event_id=context.provider_event_id,
            )
        except SQLAlchemyError as e:
            logger.error(
                "webhook_failed_receipt_write_error",
                provider=context.provider,
                provider_event_id=context.provider_event_id,
                error_class=type(e).__name__,
                error_message=str(e),
            )

    async def _audit_outcome(
        self,
        context: WebhookContext,
        outcome: WebhookOutcome,
        request_meta: RequestMeta,
    ) -> None:
        metadata = {
            "provider": context.provider,
            "provider_event_id": context.provider_event_id,
            "receipt_status": outcome.receipt_status,
        }

        if outcome.replayed:
            action_type = audit.ESCROW_WEBHOOK_REPLAYED
        elif outcome.result.ignored:
            action_type = audit.ESCROW_WEBHOOK_IGNORED
            metadata["reason"] = "resource_not_found"
        else:
            action_type = audit.ESCROW_WEBHOOK_RECEIVED
            metadata["reconciliation_target_type"] = outcome.result.target_type
            metadata["reconciliation_target_id"] = (
                str(outcome.result.target_id) if outcome.result.target_id is not None else None
            )

        await self.audit_log.record(
            AuditEntry(
                tenant_id=context.tenant_id,
                action_type=action_type,
                success=True,
                meta=request_meta,
                target_type="ProviderWebhookReceipt",
                target_id=str(outcome.receipt_id),
                metadata=metadata,
                occurred_at=self.clock(),
            )
        )
