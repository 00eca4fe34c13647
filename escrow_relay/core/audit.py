"""Persistent audit trail (action_logs)."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_relay.database import utcnow
from escrow_relay.logging_config import get_logger
from escrow_relay.models import ActionLog

logger = get_logger(__name__)

# Action types
OUTBOX_EVENT_DISPATCHED = "OUTBOX_EVENT_DISPATCHED"
OUTBOX_EVENT_RETRY_SCHEDULED = "OUTBOX_EVENT_RETRY_SCHEDULED"
OUTBOX_EVENT_DEAD_LETTERED = "OUTBOX_EVENT_DEAD_LETTERED"
ESCROW_WEBHOOK_RECEIVED = "ESCROW_WEBHOOK_RECEIVED"
ESCROW_WEBHOOK_REPLAYED = "ESCROW_WEBHOOK_REPLAYED"
ESCROW_WEBHOOK_IGNORED = "ESCROW_WEBHOOK_IGNORED"
ESCROW_WEBHOOK_FAILED = "ESCROW_WEBHOOK_FAILED"
IDEMPOTENT_OPERATION_REPLAYED = "IDEMPOTENT_OPERATION_REPLAYED"


@dataclass(frozen=True)
class RequestMeta:
    """Where an audited action came from."""

    channel: str = "API"
    endpoint_path: str | None = None
    http_method: str | None = None
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


WORKER_DISPATCH = RequestMeta(
    channel="WORKER",
    endpoint_path="/workers/outbox/dispatch_event",
    http_method="JOB",
)


@dataclass
class AuditEntry:
    tenant_id: UUID
    action_type: str
    success: bool
    meta: RequestMeta
    target_type: str | None = None
    target_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime | None = None

    def to_model(self) -> ActionLog:
        return ActionLog(
            tenant_id=self.tenant_id,
            action_type=self.action_type,
            channel=self.meta.channel,
            endpoint_path=self.meta.endpoint_path,
            http_method=self.meta.http_method,
            request_id=self.meta.request_id,
            ip_address=self.meta.ip_address or "0.0.0.0",
            user_agent=self.meta.user_agent,
            target_type=self.target_type,
            target_id=str(self.target_id) if self.target_id is not None else None,
            success=self.success,
            occurred_at=self.occurred_at or utcnow(),
            metadata_=self.metadata,
        )


class AuditLog:
    """Writes audit entries either inside a caller's transaction or on their own."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    def add(self, session: AsyncSession, entry: AuditEntry) -> ActionLog:
        """Stage an entry in the caller's transaction (commits with it)."""
        record = entry.to_model()
        session.add(record)
        return record

    async def record(self, entry: AuditEntry) -> bool:
        """Write an entry in its own transaction.

        Failures are logged and swallowed so that auditing never changes
        the outcome of the action being audited.

        Returns:
            True if the entry was persisted
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(entry.to_model())
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.error(
                "action_log_write_error",
                action_type=entry.action_type,
                tenant_id=str(entry.tenant_id),
                request_id=entry.meta.request_id,
                error_class=type(e).__name__,
                error_message=str(e),
            )
            return False
        return True
