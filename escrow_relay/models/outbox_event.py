"""Outbox event model for transactional event delivery."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from escrow_relay.database import Base, JSONType, utcnow


class OutboxEvent(Base):
    """Outbox event model.

    An at-least-once delivery obligation written in the same transaction
    as the business mutation that produced it.

    Delivery progress is recorded by appending OutboxDispatchAttempt rows;
    the event itself only tracks an ``attempts`` counter and is never
    deleted.

    Attributes:
        id: Event identifier
        tenant_id: Owning tenant
        aggregate_type: Business entity type the event is about
        aggregate_id: Business entity id
        event_type: Dispatch key used by the event router
        status: Always PENDING; delivery state lives in dispatch attempts
        idempotency_key: Client-supplied key, unique per tenant
        payload: Opaque event data; idempotent operations store their
            payload hash here
        attempts: Number of dispatch attempts recorded so far
        created_at: When the event was recorded
    """

    __tablename__ = "outbox_events"

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
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    aggregate_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    dispatch_attempts: Mapped[list["OutboxDispatchAttempt"]] = relationship(
        "OutboxDispatchAttempt",
        back_populates="outbox_event",
        order_by="OutboxDispatchAttempt.attempt_number",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING')",
            name="outbox_events_status_check",
        ),
        Index(
            "ix_outbox_events_tenant_idempotency_key",
            "tenant_id",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
            sqlite_where=text("idempotency_key IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        return f"<OutboxEvent(id={self.id}, event_type={self.event_type}, attempts={self.attempts})>"
