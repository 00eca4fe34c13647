"""Outbox dispatch attempt model."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from escrow_relay.database import Base, JSONType, utcnow

SENT = "SENT"
RETRY_SCHEDULED = "RETRY_SCHEDULED"
DEAD_LETTER = "DEAD_LETTER"

DISPATCH_STATUSES = (SENT, RETRY_SCHEDULED, DEAD_LETTER)
TERMINAL_STATUSES = (SENT, DEAD_LETTER)


class OutboxDispatchAttempt(Base):
    """One delivery attempt for an outbox event.

    Append-only: rows are never updated after insert. Attempt numbers are
    contiguous per event starting at 1; SENT and DEAD_LETTER are terminal.
    """

    __tablename__ = "outbox_dispatch_attempts"

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
    outbox_event_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("outbox_events.id"),
        nullable=False,
        index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )  # only set for RETRY_SCHEDULED
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    metadata_: Mapped[dict] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict
    )

    outbox_event: Mapped["OutboxEvent"] = relationship(
        "OutboxEvent",
        back_populates="dispatch_attempts",
    )

    __table_args__ = (
        CheckConstraint("attempt_number > 0", name="outbox_dispatch_attempts_attempt_number_check"),
        CheckConstraint(
            "status IN ('SENT', 'RETRY_SCHEDULED', 'DEAD_LETTER')",
            name="outbox_dispatch_attempts_status_check",
        ),
        Index(
            "ix_outbox_dispatch_attempts_unique_attempt",
            "tenant_id",
            "outbox_event_id",
            "attempt_number",
            unique=True,
        ),
        Index("ix_outbox_dispatch_attempts_retry_scan", "tenant_id", "status", "next_attempt_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return (
            f"<OutboxDispatchAttempt(outbox_event_id={self.outbox_event_id}, "
            f"attempt_number={self.attempt_number}, status={self.status})>"
        )
