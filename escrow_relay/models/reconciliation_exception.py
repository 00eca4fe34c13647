"""Reconciliation exception model."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from escrow_relay.database import Base, JSONType, utcnow

OPEN = "OPEN"
RESOLVED = "RESOLVED"


class ReconciliationException(Base):
    """Operator-visible record of an unresolved callback or dispatch outcome.

    Repeated occurrences of the same (tenant, source, provider,
    external_event_id, code) bump ``occurrences_count`` and
    ``last_seen_at`` on the existing row.
    """

    __tablename__ = "reconciliation_exceptions"

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
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[str] = mapped_column(String(500), nullable=False)
    payload_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    metadata_: Mapped[dict] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OPEN)
    occurrences_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    first_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('OPEN', 'RESOLVED')", name="reconciliation_exceptions_status_check"),
        CheckConstraint("occurrences_count > 0", name="reconciliation_exceptions_occurrences_check"),
        Index(
            "ix_reconciliation_exceptions_unique_signature",
            "tenant_id",
            "source",
            "provider",
            "external_event_id",
            "code",
            unique=True,
        ),
        Index("ix_reconciliation_exceptions_open_lookup", "tenant_id", "status", "last_seen_at"),
    )

    @property
    def is_open(self) -> bool:
        return self.status == OPEN

    def resolve(self, resolved_by: str, resolved_at: datetime | None = None) -> None:
        """Mark the exception as handled by an operator."""
        self.status = RESOLVED
        self.resolved_by = resolved_by
        self.resolved_at = resolved_at or utcnow()

    def __repr__(self) -> str:
        return (
            f"<ReconciliationException(code={self.code}, external_event_id={self.external_event_id}, "
            f"occurrences={self.occurrences_count}, status={self.status})>"
        )
