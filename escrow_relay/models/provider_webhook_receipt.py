"""Provider webhook receipt model."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from escrow_relay.database import Base, JSONType, utcnow

PROCESSED = "PROCESSED"
IGNORED = "IGNORED"
FAILED = "FAILED"

RECEIPT_STATUSES = (PROCESSED, IGNORED, FAILED)


class ProviderWebhookReceipt(Base):
    """Dedup and audit record for one inbound provider callback.

    Unique per (tenant, provider, provider_event_id). Written once, inside
    the transaction that performs the reconciliation side effect; replays
    only read it.
    """

    __tablename__ = "provider_webhook_receipts"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id"),
        nullable=False,
        index=True
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    signature: Mapped[str | None] = mapped_column(String(512), nullable=True)
    payload_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    request_headers: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PROCESSED', 'IGNORED', 'FAILED')",
            name="provider_webhook_receipts_status_check",
        ),
        Index(
            "ix_provider_webhook_receipts_unique_event",
            "tenant_id",
            "provider",
            "provider_event_id",
            unique=True,
        ),
        Index(
            "ix_provider_webhook_receipts_lookup",
            "tenant_id",
            "provider",
            "status",
            "processed_at",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<ProviderWebhookReceipt(provider={self.provider}, "
            f"provider_event_id={self.provider_event_id}, status={self.status})>"
        )
