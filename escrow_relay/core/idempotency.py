"""Idempotent replay contract for operations that record an outbox event.

An operation that performs a business mutation and records an
OutboxEvent as its durable trace implements ``IdempotentOperation``.
When a request arrives with an idempotency key that already has a
stored event, ``ReplayValidator`` decides whether the request is a safe
replay of the original:

- the stored event type and aggregate type must match the operation
- the stored payload hash must be present and equal to the new one

``IdempotentCommandRunner`` composes the validator with the outbox
repository to give operations create-or-replay semantics.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_relay.core import audit
from escrow_relay.core.audit import AuditEntry, AuditLog, RequestMeta
from escrow_relay.core.conflict_monitor import (
    ConflictEvent,
    IdempotencyConflictMonitor,
    get_conflict_monitor,
)
from escrow_relay.core.errors import IdempotencyConflictError
from escrow_relay.core.outbox_repository import OutboxRepository
from escrow_relay.logging_config import get_logger
from escrow_relay.models import OutboxEvent

logger = get_logger(__name__)

REUSED_WITH_DIFFERENT_OPERATION = "idempotency_key_reused_with_different_operation"
REUSED_WITH_DIFFERENT_PAYLOAD = "idempotency_key_reused_with_different_payload"
REUSED_WITHOUT_PAYLOAD_HASH = "idempotency_key_reused_without_payload_hash"


class IdempotentOperation(Protocol):
    """What the validator needs to know about an idempotent operation."""

    event_type: str  # outbox event type the operation records
    target_type: str  # aggregate type of that event
    payload_hash_field: str  # payload key holding the request hash


@dataclass(frozen=True)
class IdempotencyConflict:
    code: str
    message: str


@dataclass(frozen=True)
class IdempotentResult:
    value: Any
    replayed: bool
    outbox_event_id: UUID


def normalize_payload(payload: Any) -> Any:
    """Normalize a request payload into JSON-compatible primitives."""
    return json.loads(json.dumps(payload, sort_keys=True, default=str))


def compute_payload_hash(payload: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of a payload."""
    canonical = json.dumps(normalize_payload(payload), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def service_name(operation: IdempotentOperation) -> str:
    return getattr(operation, "service_name", None) or type(operation).__name__


class ReplayValidator:
    """Checks a stored outbox event against a new request for the same key.

    Args:
        monitor: Conflict monitor receiving every rejected replay
        allow_missing_payload_hash: Optional hook returning True for stored
            events that may be replayed even though they carry no payload
            hash. Without it such events are always a conflict.
    """

    def __init__(
        self,
        monitor: IdempotencyConflictMonitor | None = None,
        allow_missing_payload_hash: Callable[[IdempotentOperation, OutboxEvent], bool] | None = None,
    ):
        self.monitor = monitor or get_conflict_monitor()
        self.allow_missing_payload_hash = allow_missing_payload_hash

    def check(
        self,
        operation: IdempotentOperation,
        existing: OutboxEvent,
        payload_hash: str,
    ) -> IdempotencyConflict | None:
        """Return the conflict that prevents replay, or None if it is safe."""
        if existing.event_type != operation.event_type or existing.aggregate_type != operation.target_type:
            return IdempotencyConflict(
                code=REUSED_WITH_DIFFERENT_OPERATION,
                message="Idempotency-Key was already used with a different operation.",
            )

        stored_hash = str((existing.payload or {}).get(operation.payload_hash_field) or "").strip()
        if not stored_hash:
            if self.allow_missing_payload_hash and self.allow_missing_payload_hash(operation, existing):
                return None
            return IdempotencyConflict(
                code=REUSED_WITHOUT_PAYLOAD_HASH,
                message="Idempotency-Key was already used but the original payload cannot be verified.",
            )

        if stored_hash != payload_hash:
            return IdempotencyConflict(
                code=REUSED_WITH_DIFFERENT_PAYLOAD,
                message="Idempotency-Key was already used with a different payload.",
            )

        return None

    async def ensure_replayable(
        self,
        operation: IdempotentOperation,
        existing: OutboxEvent,
        payload_hash: str,
        tenant_id: UUID,
        idempotency_key: str,
        request_id: str | None = None,
    ) -> None:
        """Raise IdempotencyConflictError unless the request is a safe replay.

        Every conflict is logged and reported to the conflict monitor.
        """
        conflict = self.check(operation, existing, payload_hash)
        if conflict is None:
            return

        event = ConflictEvent(
            code=conflict.code,
            message=conflict.message,
            service=service_name(operation),
            tenant_id=str(tenant_id),
            idempotency_key=idempotency_key,
            request_id=request_id,
            outbox_event_id=str(existing.id),
        )
        logger.warning("idempotency_conflict", **event.to_dict())
        await self.monitor.record_conflict(event)

        raise IdempotencyConflictError(code=conflict.code, message=conflict.message)


Mutation = Callable[[AsyncSession], Awaitable[Any]]
Loader = Callable[[AsyncSession, OutboxEvent], Awaitable[Any]]


class IdempotentCommandRunner:
    """Create-or-replay execution for idempotent operations.

    ``mutate`` performs the business write in the runner's transaction and
    returns the created aggregate (anything with an ``id``). ``load``
    rebuilds the same result from the stored outbox event on replay.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        validator: ReplayValidator | None = None,
        audit_log: AuditLog | None = None,
    ):
        self.session_factory = session_factory
        self.validator = validator or ReplayValidator()
        self.audit_log = audit_log or AuditLog(session_factory)

    async def run(
        self,
        operation: IdempotentOperation,
        tenant_id: UUID,
        idempotency_key: str,
        payload: Any,
        mutate: Mutation,
        load: Loader,
        request_id: str | None = None,
        event_payload: dict | None = None,
    ) -> IdempotentResult:
        """Run the mutation once per idempotency key.

        Args:
            operation: The idempotent operation being executed
            tenant_id: Tenant the request belongs to
            idempotency_key: Client-supplied key
            payload: Request payload used for the replay hash
            mutate: Business write, executed only on first use of the key
            load: Loads the prior result on replay
            request_id: Request id for conflict reporting and audit
            event_payload: Extra fields stored in the outbox event payload

        Returns:
            IdempotentResult with ``replayed`` set on the replay path

        Raises:
            IdempotencyConflictError: If the key was used for something else
        """
        payload_hash = compute_payload_hash(payload)

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    existing = await OutboxRepository.find_by_idempotency_key(
                        session, tenant_id, idempotency_key, lock=True
                    )
                    if existing is not None:
                        return await self._replay(
                            session, operation, existing, payload_hash,
                            tenant_id, idempotency_key, request_id, load,
                        )

                    value = await mutate(session)
                    event = await OutboxRepository.record_event(
                        session=session,
                        tenant_id=tenant_id,
                        aggregate_type=operation.target_type,
                        aggregate_id=value.id,
                        event_type=operation.event_type,
                        payload={**(event_payload or {}), operation.payload_hash_field: payload_hash},
                        idempotency_key=idempotency_key,
                    )
                    return IdempotentResult(value=value, replayed=False, outbox_event_id=event.id)
        except IntegrityError:
            # Lost an insert race: the winner's event is now committed.
            logger.info(
                "idempotent_insert_race",
                tenant_id=str(tenant_id),
                idempotency_key=idempotency_key,
                service=service_name(operation),
            )

        async with self.session_factory() as session:
            async with session.begin():
                existing = await OutboxRepository.find_by_idempotency_key(session, tenant_id, idempotency_key)
                if existing is None:
                    raise IdempotencyConflictError(
                        code="idempotency_key_conflict",
                        message="Idempotency-Key is being processed by a concurrent request.",
                    )
                return await self._replay(
                    session, operation, existing, payload_hash,
                    tenant_id, idempotency_key, request_id, load,
                )

    async def _replay(
        self,
        session: AsyncSession,
        operation: IdempotentOperation,
        existing: OutboxEvent,
        payload_hash: str,
        tenant_id: UUID,
        idempotency_key: str,
        request_id: str | None,
        load: Loader,
    ) -> IdempotentResult:
        await self.validator.ensure_replayable(
            operation, existing, payload_hash, tenant_id, idempotency_key, request_id
        )
        value = await load(session, existing)

        self.audit_log.add(
            session,
            AuditEntry(
                tenant_id=tenant_id,
                action_type=audit.IDEMPOTENT_OPERATION_REPLAYED,
                success=True,
                meta=RequestMeta(request_id=request_id),
                target_type=operation.target_type,
                target_id=str(existing.aggregate_id),
                metadata={
                    "service": service_name(operation),
                    "idempotency_key": idempotency_key,
                    "outbox_event_id": str(existing.id),
                },
            ),
        )
        return IdempotentResult(value=value, replayed=True, outbox_event_id=existing.id)
