"""Shared test doubles and helpers."""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_relay.core.errors import ReconciliationError
from escrow_relay.core.reconciliation import ReconciliationRequest, ReconciliationResult

QITECH_SECRET = "qitech-test-secret"
STARKBANK_TOKEN = "starkbank-test-token"


class FixedClock:
    """Controllable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class StubReconciler:
    """Reconciler double recording every call."""

    def __init__(self, result: ReconciliationResult | None = None, error: ReconciliationError | None = None):
        self.result = result or ReconciliationResult(
            status="PROCESSED",
            target_type="EscrowPayout",
            target_id=str(uuid4()),
            metadata={"matched_by": "request_control_key"},
        )
        self.error = error
        self.requests: list[ReconciliationRequest] = []

    async def reconcile(self, session: AsyncSession, request: ReconciliationRequest) -> ReconciliationResult:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.result


def hmac_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


async def count_rows(session_factory: async_sessionmaker, model, *criteria) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(model).where(*criteria))
        return result.scalar_one()

