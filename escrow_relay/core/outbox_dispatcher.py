"""Outbox dispatcher: drives one outbox event through delivery attempts.

Each call runs in a single transaction with the event row locked:

- latest attempt terminal (SENT / DEAD_LETTER): skip, nothing written
- latest attempt RETRY_SCHEDULED and not yet due: skip, nothing written
- otherwise deliver through the EventRouter and append the next attempt:
  SENT on success, DEAD_LETTER once the attempt ceiling is reached,
  RETRY_SCHEDULED with exponential backoff in between

The dispatcher never schedules itself. Callers re-invoke ``dispatch``
at or after ``next_attempt_at`` when the result is RETRY_SCHEDULED.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_relay.config import DEFAULT_MAX_DISPATCH_ATTEMPTS, settings
from escrow_relay.core import audit
from escrow_relay.core.audit import WORKER_DISPATCH, AuditEntry, AuditLog
from escrow_relay.core.errors import DeliveryError, OutboxEventNotFoundError
from escrow_relay.core.event_router import EventRouter
from escrow_relay.core.outbox_repository import OutboxRepository
from escrow_relay.database import ensure_utc, utcnow
from escrow_relay.logging_config import get_logger
from escrow_relay.models import OutboxDispatchAttempt, OutboxEvent
from escrow_relay.models.outbox_dispatch_attempt import (
    DEAD_LETTER,
    RETRY_SCHEDULED,
    SENT,
    TERMINAL_STATUSES,
)

logger = get_logger(__name__)

ERROR_MESSAGE_MAX_LENGTH = 500


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one ``dispatch`` call."""

    status: str
    attempt_number: int
    next_attempt_at: datetime | None = None
    skipped: bool = False
    reason: str | None = None

    @property
    def retry_scheduled(self) -> bool:
        return self.status == RETRY_SCHEDULED

    @property
    def sent(self) -> bool:
        return self.status == SENT

    @property
    def dead_lettered(self) -> bool:
        return self.status == DEAD_LETTER


def default_backoff_seconds(
    attempt_number: int,
    base_seconds: int = 30,
    max_seconds: int = 1800,
) -> int:
    """Exponential backoff: min(base * 2^(attempt-1), max)."""
    seconds = base_seconds * (2 ** max(attempt_number - 1, 0))
    return min(seconds, max_seconds)


def resolve_max_attempts(value: int | str | None) -> int:
    """Pick the attempt ceiling: explicit value, then settings, then the default."""
    for candidate in (value, settings.outbox_max_dispatch_attempts):
        try:
            parsed = int(candidate)
        except (TypeError, ValueError):
            continue
        if parsed > 0:
            return parsed
    return DEFAULT_MAX_DISPATCH_ATTEMPTS


def _truthy(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "t", "yes", "y", "on")
    return bool(value)


def _truncate(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:ERROR_MESSAGE_MAX_LENGTH]


class OutboxDispatcher:
    """Retry/backoff/dead-letter state machine for outbox events.

    Safe to invoke redundantly: the event row lock serializes concurrent
    calls for the same event, and the loser re-reads state and skips.

    Args:
        session_factory: async_sessionmaker used to open the dispatch transaction
        router: EventRouter performing the actual delivery
        audit_log: AuditLog receiving one entry per recorded attempt
        max_attempts: Attempt ceiling (falls back to settings, then 5)
        clock: Callable returning the current aware UTC datetime
        backoff_strategy: Callable mapping attempt number to seconds
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        router: EventRouter,
        audit_log: AuditLog | None = None,
        max_attempts: int | None = None,
        clock: Callable[[], datetime] = utcnow,
        backoff_strategy: Callable[[int], int] | None = None,
    ):
        self.session_factory = session_factory
        self.router = router
        self.audit_log = audit_log or AuditLog(session_factory)
        self.max_attempts = resolve_max_attempts(max_attempts)
        self.clock = clock
        self.backoff_strategy = backoff_strategy or self._configured_backoff

    @staticmethod
    def _configured_backoff(attempt_number: int) -> int:
        return default_backoff_seconds(
            attempt_number,
            base_seconds=settings.outbox_retry_base_seconds,
            max_seconds=settings.outbox_retry_max_seconds,
        )

    async def dispatch(self, tenant_id: UUID, outbox_event_id: UUID) -> DispatchResult:
        """Attempt delivery of one outbox event.

        Args:
            tenant_id: Tenant owning the event
            outbox_event_id: Event to dispatch

        Returns:
            DispatchResult describing the recorded (or skipped) attempt

        Raises:
            OutboxEventNotFoundError: If the event does not exist for the tenant
        """
        now = self.clock()

        async with self.session_factory() as session:
            async with session.begin():
                event = await OutboxRepository.get_event(session, tenant_id, outbox_event_id, lock=True)
                if event is None:
                    raise OutboxEventNotFoundError(outbox_event_id)

                latest = await OutboxRepository.get_latest_attempt(session, tenant_id, event.id)

                if latest is not None and latest.status in TERMINAL_STATUSES:
                    logger.debug(
                        "outbox_dispatch_skipped",
                        reason="already_terminal",
                        tenant_id=str(tenant_id),
                        outbox_event_id=str(event.id),
                        status=latest.status,
                    )
                    return DispatchResult(
                        status=latest.status,
                        attempt_number=latest.attempt_number,
                        skipped=True,
                        reason="already_terminal",
                    )

                if self._retry_not_due(latest, now):
                    return DispatchResult(
                        status=latest.status,
                        attempt_number=latest.attempt_number,
                        next_attempt_at=ensure_utc(latest.next_attempt_at),
                        skipped=True,
                        reason="retry_not_due",
                    )

                attempt_number = (latest.attempt_number if latest else 0) + 1
                error = await self._deliver(event, session)

                if error is None:
                    return self._record_sent(session, event, attempt_number, now)
                return self._record_failure(session, event, attempt_number, now, error)

    @staticmethod
    def _retry_not_due(latest: OutboxDispatchAttempt | None, now: datetime) -> bool:
        if latest is None or latest.status != RETRY_SCHEDULED:
            return False
        if latest.next_attempt_at is None:
            return False
        return ensure_utc(latest.next_attempt_at) > now

    async def _deliver(self, event: OutboxEvent, session: AsyncSession) -> DeliveryError | None:
        if _truthy((event.payload or {}).get("simulate_dispatch_failure")):
            return DeliveryError(code="simulated_dispatch_failure", message="Simulated dispatch failure.")

        outcome = await self.router.route(event, session)
        return outcome.error

    def _record_sent(
        self,
        session: AsyncSession,
        event: OutboxEvent,
        attempt_number: int,
        now: datetime,
    ) -> DispatchResult:
        self._add_attempt(session, event, attempt_number, SENT, now)
        self._add_audit(
            session,
            event,
            audit.OUTBOX_EVENT_DISPATCHED,
            success=True,
            metadata={"attempt_number": attempt_number},
        )

        logger.info(
            "outbox_event_dispatched",
            tenant_id=str(event.tenant_id),
            outbox_event_id=str(event.id),
            event_type=event.event_type,
            attempt_number=attempt_number,
        )
        return DispatchResult(status=SENT, attempt_number=attempt_number)

    def _record_failure(
        self,
        session: AsyncSession,
        event: OutboxEvent,
        attempt_number: int,
        now: datetime,
        error: DeliveryError,
    ) -> DispatchResult:
        failure_metadata = {
            "attempt_number": attempt_number,
            "error_code": error.code,
            "error_message": _truncate(error.message),
        }

        if attempt_number >= self.max_attempts:
            self._add_attempt(
                session, event, attempt_number, DEAD_LETTER, now,
                error_code=error.code,
                error_message=error.message,
            )
            self._add_audit(session, event, audit.OUTBOX_EVENT_DEAD_LETTERED, success=False, metadata=failure_metadata)

            logger.error(
                "outbox_event_dead_lettered",
                tenant_id=str(event.tenant_id),
                outbox_event_id=str(event.id),
                event_type=event.event_type,
                attempt_number=attempt_number,
                error_code=error.code,
            )
            return DispatchResult(status=DEAD_LETTER, attempt_number=attempt_number)

        backoff_seconds = int(self.backoff_strategy(attempt_number))
        next_attempt_at = now + timedelta(seconds=backoff_seconds)

        self._add_attempt(
            session, event, attempt_number, RETRY_SCHEDULED, now,
            next_attempt_at=next_attempt_at,
            error_code=error.code,
            error_message=error.message,
            metadata={"backoff_seconds": backoff_seconds},
        )
        self._add_audit(
            session,
            event,
            audit.OUTBOX_EVENT_RETRY_SCHEDULED,
            success=False,
            metadata={**failure_metadata, "next_attempt_at": next_attempt_at.isoformat()},
        )

        logger.warning(
            "outbox_event_retry_scheduled",
            tenant_id=str(event.tenant_id),
            outbox_event_id=str(event.id),
            event_type=event.event_type,
            attempt_number=attempt_number,
            backoff_seconds=backoff_seconds,
            error_code=error.code,
        )
        return DispatchResult(
            status=RETRY_SCHEDULED,
            attempt_number=attempt_number,
            next_attempt_at=next_attempt_at,
        )

    @staticmethod
    def _add_attempt(
        session: AsyncSession,
        event: OutboxEvent,
        attempt_number: int,
        status: str,
        occurred_at: datetime,
        next_attempt_at: datetime | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        metadata: dict | None = None,
    ) -> OutboxDispatchAttempt:
        attempt = OutboxDispatchAttempt(
            tenant_id=event.tenant_id,
            outbox_event_id=event.id,
            attempt_number=attempt_number,
            status=status,
            occurred_at=occurred_at,
            next_attempt_at=next_attempt_at,
            error_code=error_code,
            error_message=_truncate(error_message),
            metadata_=metadata or {},
        )
        session.add(attempt)
        event.attempts = attempt_number
        return attempt

    def _add_audit(
        self,
        session: AsyncSession,
        event: OutboxEvent,
        action_type: str,
        success: bool,
        metadata: dict,
    ) -> None:
        self.audit_log.add(
            session,
            AuditEntry(
                tenant_id=event.tenant_id,
                action_type=action_type,
                success=success,
                meta=WORKER_DISPATCH,
                target_type="OutboxEvent",
                target_id=str(event.id),
                metadata=metadata,
                occurred_at=self.clock(),
            ),
        )
