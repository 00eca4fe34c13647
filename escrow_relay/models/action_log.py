"""Action log model (persistent audit trail)."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from escrow_relay.database import Base, JSONType, utcnow


class ActionLog(Base):
    """Audit entry for a worker or webhook action."""

    __tablename__ = "action_logs"

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
    action_type: Mapped[str] = mapped_column(String(100), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # WORKER, WEBHOOK, API
    endpoint_path: Mapped[str | None] = mapped_column(String(255), nullable=True)
    http_method: Mapped[str | None] = mapped_column(String(10), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False, default="0.0.0.0")
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    target_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    target_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    metadata_: Mapped[dict] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict
    )

    __table_args__ = (
        Index("ix_action_logs_tenant_occurred_at", "tenant_id", "occurred_at"),
        Index("ix_action_logs_tenant_action_type", "tenant_id", "action_type"),
    )

    def __repr__(self) -> str:
        return f"<ActionLog(action_type={self.action_type}, target_id={self.target_id}, success={self.success})>"
