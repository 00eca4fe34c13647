"""Reconciler interface, registry, and reconciliation exception capture."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_relay.core.audit import RequestMeta
from escrow_relay.core.errors import ReconciliationError
from escrow_relay.database import utcnow
from escrow_relay.logging_config import get_logger
from escrow_relay.models import ReconciliationException
from escrow_relay.models.provider_webhook_receipt import IGNORED, PROCESSED
from escrow_relay.models.reconciliation_exception import OPEN

logger = get_logger(__name__)

MESSAGE_MAX_LENGTH = 500


@dataclass(frozen=True)
class ReconciliationRequest:
    tenant_id: UUID
    provider: str
    payload: dict
    provider_event_id: str
    request_meta: RequestMeta = field(default_factory=RequestMeta)


@dataclass(frozen=True)
class ReconciliationResult:
    """What a reconciler did with a callback.

    ``status`` is PROCESSED when an internal resource was matched and
    updated, IGNORED when the callback matched nothing.
    """

    status: str
    target_type: str | None = None
    target_id: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def ignored(self) -> bool:
        return self.status == IGNORED

    @property
    def processed(self) -> bool:
        return self.status == PROCESSED


class Reconciler(Protocol):
    """Matches a provider callback to an internal resource and applies it.

    Runs inside the webhook transaction: writes it makes (including new
    outbox events) commit together with the receipt. Business failures
    are raised as ReconciliationError.
    """

    async def reconcile(self, session: AsyncSession, request: ReconciliationRequest) -> ReconciliationResult:
        ...


class ReconcilerRegistry:
    """Per-provider reconciler lookup with an optional default."""

    def __init__(self, reconcilers: dict[str, Reconciler] | None = None, default: Reconciler | None = None):
        self._reconcilers = dict(reconcilers or {})
        self.default = default

    def register(self, provider: str, reconciler: Reconciler) -> None:
        self._reconcilers[provider] = reconciler

    def for_provider(self, provider: str) -> Reconciler:
        reconciler = self._reconcilers.get(provider, self.default)
        if reconciler is None:
            raise ReconciliationError(
                code="webhook_reconciler_not_configured",
                message=f"No webhook reconciler is configured for provider {provider}.",
            )
        return reconciler


def to_json_dict(value: Any) -> dict:
    """Coerce a mapping into JSON-safe primitives; anything else becomes {}."""
    if not isinstance(value, dict):
        return {}
    return json.loads(json.dumps(value, default=str))


async def capture_exception(
    session: AsyncSession,
    tenant_id: UUID,
    source: str,
    provider: str,
    external_event_id: str,
    code: str,
    message: str,
    payload_sha256: str | None = None,
    payload: dict | None = None,
    metadata: dict | None = None,
    observed_at: datetime | None = None,
) -> ReconciliationException:
    """Record an occurrence of an unresolved condition in the caller's transaction.

    A recurrence of the same (tenant, source, provider, external event id,
    code) reopens and updates the existing row instead of inserting.
    """
    observed_at = observed_at or utcnow()
    source = source.strip().upper()
    provider = provider.strip().upper()
    external_event_id = external_event_id.strip()
    code = code.strip()
    message = message.strip()[:MESSAGE_MAX_LENGTH]
    payload_sha256 = (payload_sha256 or "").strip() or None
    payload = to_json_dict(payload)
    metadata = to_json_dict(metadata)

    result = await session.execute(
        select(ReconciliationException)
        .where(
            ReconciliationException.tenant_id == tenant_id,
            ReconciliationException.source == source,
            ReconciliationException.provider == provider,
            ReconciliationException.external_event_id == external_event_id,
            ReconciliationException.code == code,
        )
        .with_for_update()
    )
    existing = result.scalar_one_or_none()

    if existing is not None:
        existing.message = message
        existing.payload_sha256 = payload_sha256 or existing.payload_sha256
        existing.payload = payload
        existing.metadata_ = {**(existing.metadata_ or {}), **metadata}
        existing.status = OPEN
        existing.occurrences_count += 1
        existing.last_seen_at = observed_at
        existing.resolved_at = None
        existing.resolved_by = None
        await session.flush()
        return existing

    exception = ReconciliationException(
        tenant_id=tenant_id,
        source=source,
        provider=provider,
        external_event_id=external_event_id,
        code=code,
        message=message,
        payload_sha256=payload_sha256,
        payload=payload,
        metadata_=metadata,
        status=OPEN,
        occurrences_count=1,
        first_seen_at=observed_at,
        last_seen_at=observed_at,
    )
    session.add(exception)
    await session.flush()
    return exception


async def resolve_exception(
    session: AsyncSession,
    tenant_id: UUID,
    exception_id: UUID,
    resolved_by: str,
    resolved_at: datetime | None = None,
) -> ReconciliationException | None:
    """Mark an exception RESOLVED on behalf of an operator."""
    result = await session.execute(
        select(ReconciliationException).where(
            ReconciliationException.tenant_id == tenant_id,
            ReconciliationException.id == exception_id,
        )
    )
    exception = result.scalar_one_or_none()
    if exception is None:
        return None

    exception.resolve(resolved_by=resolved_by, resolved_at=resolved_at)
    await session.flush()
    return exception


class ExceptionRecorder:
    """Best-effort exception capture in a transaction of its own."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def capture(self, **kwargs) -> ReconciliationException | None:
        """Capture an exception; failures are logged and return None.

        Accepts the keyword arguments of ``capture_exception``.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    return await capture_exception(session, **kwargs)
        except IntegrityError:
            # Concurrent capture of the same signature; the other writer's row stands.
            logger.info(
                "reconciliation_exception_capture_race",
                code=kwargs.get("code"),
                external_event_id=kwargs.get("external_event_id"),
            )
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.error(
                "reconciliation_exception_capture_error",
                code=kwargs.get("code"),
                external_event_id=kwargs.get("external_event_id"),
                error_class=type(e).__name__,
                error_message=str(e),
            )
        return None
