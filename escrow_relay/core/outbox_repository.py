"""Repository for writing and reading outbox events and their dispatch attempts."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from escrow_relay.database import utcnow
from escrow_relay.models import OutboxDispatchAttempt, OutboxEvent
from escrow_relay.models.outbox_dispatch_attempt import RETRY_SCHEDULED


class OutboxRepository:
    """Repository for managing outbox_events writes and lookups.

    Events are written within the same transaction as their triggering
    business mutation, so an event exists if and only if the mutation
    committed. Every method takes the tenant explicitly.

    Usage:
        async with session.begin():
            session.add(payout)
            await OutboxRepository.record_event(
                session=session,
                tenant_id=tenant_id,
                aggregate_type="EscrowPayout",
                aggregate_id=payout.id,
                event_type="ESCROW_PAYOUT_REQUESTED",
                payload={"amount_cents": payout.amount_cents},
                idempotency_key=idempotency_key,
            )
            # Both commit atomically
    """

    @staticmethod
    async def record_event(
        session: AsyncSession,
        tenant_id: UUID,
        aggregate_type: str,
        aggregate_id: UUID,
        event_type: str,
        payload: dict,
        idempotency_key: str | None = None,
    ) -> OutboxEvent:
        """Record an event in the outbox within the current transaction.

        Args:
            session: AsyncSession to use for the write
            tenant_id: Owning tenant
            aggregate_type: Type of aggregate (e.g., "EscrowPayout")
            aggregate_id: ID of the aggregate instance
            event_type: Dispatch key (e.g., "ESCROW_PAYOUT_REQUESTED")
            payload: Event data as JSON-serializable dict
            idempotency_key: Optional client key, unique per tenant

        Returns:
            OutboxEvent: Created event record

        Note:
            This method does NOT commit. The caller is responsible for
            transaction management to ensure atomicity with domain writes.
        """
        event = OutboxEvent(
            tenant_id=tenant_id,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            payload=payload,
            idempotency_key=idempotency_key,
            status="PENDING",
            attempts=0,
        )
        session.add(event)
        await session.flush()
        return event

    @staticmethod
    async def get_event(
        session: AsyncSession,
        tenant_id: UUID,
        event_id: UUID,
        lock: bool = False,
    ) -> OutboxEvent | None:
        """Get an event by ID, optionally taking a row lock.

        Args:
            session: AsyncSession to query from
            tenant_id: Tenant the event must belong to
            event_id: ID of event to retrieve
            lock: Whether to SELECT ... FOR UPDATE

        Returns:
            OutboxEvent or None if not found for this tenant
        """
        query = select(OutboxEvent).where(
            OutboxEvent.tenant_id == tenant_id,
            OutboxEvent.id == event_id,
        )
        if lock:
            query = query.with_for_update()

        result = await session.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    async def find_by_idempotency_key(
        session: AsyncSession,
        tenant_id: UUID,
        idempotency_key: str,
        lock: bool = False,
    ) -> OutboxEvent | None:
        """Find the event previously recorded under an idempotency key."""
        query = select(OutboxEvent).where(
            OutboxEvent.tenant_id == tenant_id,
            OutboxEvent.idempotency_key == idempotency_key,
        )
        if lock:
            query = query.with_for_update()

        result = await session.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_latest_attempt(
        session: AsyncSession,
        tenant_id: UUID,
        event_id: UUID,
    ) -> OutboxDispatchAttempt | None:
        """Get the most recent dispatch attempt for an event."""
        query = (
            select(OutboxDispatchAttempt)
            .where(
                OutboxDispatchAttempt.tenant_id == tenant_id,
                OutboxDispatchAttempt.outbox_event_id == event_id,
            )
            .order_by(OutboxDispatchAttempt.attempt_number.desc())
            .limit(1)
        )
        result = await session.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_attempts(
        session: AsyncSession,
        tenant_id: UUID,
        event_id: UUID,
    ) -> list[OutboxDispatchAttempt]:
        """List all dispatch attempts for an event in attempt order."""
        query = (
            select(OutboxDispatchAttempt)
            .where(
                OutboxDispatchAttempt.tenant_id == tenant_id,
                OutboxDispatchAttempt.outbox_event_id == event_id,
            )
            .order_by(OutboxDispatchAttempt.attempt_number)
        )
        result = await session.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def get_due_events(
        session: AsyncSession,
        batch_size: int = 100,
        now: datetime | None = None,
        tenant_id: UUID | None = None,
    ) -> list[OutboxEvent]:
        """Get events that are due for a dispatch attempt.

        An event is due when it has no attempt yet, or when its latest
        attempt is RETRY_SCHEDULED with next_attempt_at at or before now.
        Events whose latest attempt is terminal are never returned.

        Args:
            session: AsyncSession to query from
            batch_size: Maximum number of events to return
            now: Reference time (defaults to current UTC time)
            tenant_id: Optional filter by tenant

        Returns:
            List of due OutboxEvent records, oldest first
        """
        now = now or utcnow()

        latest = (
            select(
                OutboxDispatchAttempt.outbox_event_id.label("outbox_event_id"),
                func.max(OutboxDispatchAttempt.attempt_number).label("attempt_number"),
            )
            .group_by(OutboxDispatchAttempt.outbox_event_id)
            .subquery()
        )
        latest_attempt = aliased(OutboxDispatchAttempt)

        query = (
            select(OutboxEvent)
            .outerjoin(latest, latest.c.outbox_event_id == OutboxEvent.id)
            .outerjoin(
                latest_attempt,
                and_(
                    latest_attempt.outbox_event_id == OutboxEvent.id,
                    latest_attempt.attempt_number == latest.c.attempt_number,
                ),
            )
            .where(
                or_(
                    latest_attempt.id.is_(None),
                    and_(
                        latest_attempt.status == RETRY_SCHEDULED,
                        latest_attempt.next_attempt_at <= now,
                    ),
                )
            )
        )

        if tenant_id:
            query = query.where(OutboxEvent.tenant_id == tenant_id)

        query = query.order_by(OutboxEvent.created_at).limit(batch_size)

        result = await session.execute(query)
        return list(result.scalars().all())
