"""Outbox dispatch worker.

Polls for outbox events that are due for a dispatch attempt and drives
each through the OutboxDispatcher:

- events with no attempt yet are due immediately
- events whose latest attempt is RETRY_SCHEDULED are due at next_attempt_at
- events with a terminal attempt are never picked up again

Running several workers is safe: the dispatcher locks each event and
skips work another worker already did.
"""

import asyncio
from typing import Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from escrow_relay.core.outbox_dispatcher import DispatchResult, OutboxDispatcher
from escrow_relay.core.outbox_repository import OutboxRepository
from escrow_relay.database import utcnow
from escrow_relay.logging_config import get_logger
from escrow_relay.models.outbox_dispatch_attempt import DEAD_LETTER, RETRY_SCHEDULED, SENT

logger = get_logger(__name__)


class OutboxDispatchWorker:
    """Background scheduler for outbox dispatch.

    Configuration:
        batch_size: Number of due events to dispatch per cycle (default: 100)
        poll_interval_seconds: How often to poll for due events (default: 5)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        dispatcher: OutboxDispatcher,
        batch_size: int = 100,
        poll_interval_seconds: float = 5,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.clock = clock

        self._running = False
        self._task: asyncio.Task | None = None

        self.metrics = {
            "sent_total": 0,
            "retry_scheduled_total": 0,
            "dead_lettered_total": 0,
            "skipped_total": 0,
            "errors_total": 0,
            "due_count": 0,
        }

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the worker background task."""
        if self._running:
            logger.warning("outbox_dispatch_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("outbox_dispatch_worker_started")

    async def stop(self) -> None:
        """Stop the worker background task."""
        if not self._running:
            logger.warning("outbox_dispatch_worker_not_running")
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("outbox_dispatch_worker_stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("outbox_dispatch_worker_loop_error", error=str(e), exc_info=True)

            await asyncio.sleep(self.poll_interval_seconds)

    async def run_once(self) -> list[DispatchResult]:
        """Dispatch one batch of due events.

        Returns:
            Results for events that were dispatched without error
        """
        async with self.session_factory() as session:
            events = await OutboxRepository.get_due_events(
                session, batch_size=self.batch_size, now=self.clock()
            )
            due = [(event.tenant_id, event.id) for event in events]

        self.metrics["due_count"] = len(due)
        if due:
            logger.debug("outbox_dispatch_batch", due_count=len(due))

        results = []
        for tenant_id, event_id in due:
            try:
                result = await self.dispatcher.dispatch(tenant_id, event_id)
            except Exception as e:
                self.metrics["errors_total"] += 1
                logger.error(
                    "outbox_dispatch_error",
                    tenant_id=str(tenant_id),
                    outbox_event_id=str(event_id),
                    error=str(e),
                    exc_info=True,
                )
                continue

            self._count(result)
            results.append(result)

        return results

    def _count(self, result: DispatchResult) -> None:
        if result.skipped:
            self.metrics["skipped_total"] += 1
        elif result.status == SENT:
            self.metrics["sent_total"] += 1
        elif result.status == RETRY_SCHEDULED:
            self.metrics["retry_scheduled_total"] += 1
        elif result.status == DEAD_LETTER:
            self.metrics["dead_lettered_total"] += 1

    def get_metrics(self) -> dict:
        """Get worker metrics."""
        return self.metrics.copy()
