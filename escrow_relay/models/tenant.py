"""Tenant model."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime, String
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from escrow_relay.database import Base, utcnow


class Tenant(Base):
    """Tenant model.

    Only the identity needed to scope webhook callbacks is modelled here;
    row-level security itself lives in the database.
    """

    __tablename__ = "tenants"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, slug={self.slug})>"
