"""Idempotency conflict rate monitor.

Counts idempotency conflicts in per-minute buckets and raises a single
``security_alert`` log per window once the rolling count exceeds the
configured threshold. Backed by an in-process cache or Redis.
"""

import math
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Protocol

from cachetools import TTLCache

from escrow_relay.config import settings
from escrow_relay.database import utcnow
from escrow_relay.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_THRESHOLD = 20
DEFAULT_WINDOW_SECONDS = 300
CACHE_NAMESPACE = "security:idempotency_conflicts"


@dataclass(frozen=True)
class ConflictEvent:
    """Idempotency conflict reported by a replay validator."""

    code: str
    message: str
    service: str
    tenant_id: str | None = None
    idempotency_key: str | None = None
    request_id: str | None = None
    outbox_event_id: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class CounterCache(Protocol):
    async def get(self, key: str) -> str | int | None: ...

    async def increment(self, key: str, ttl: int) -> int: ...

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool: ...


class MemoryCache:
    """In-process counter cache bounded by size and a uniform TTL.

    Keys expire ``ttl`` seconds after their last write; the per-call
    ``ttl`` arguments of the CounterCache protocol are accepted and
    ignored.
    """

    def __init__(self, ttl: int = DEFAULT_WINDOW_SECONDS, maxsize: int = 1024, clock=time.monotonic):
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=clock)

    def __len__(self) -> int:
        self._cache.expire()
        return len(self._cache)

    async def get(self, key: str):
        return self._cache.get(key)

    async def increment(self, key: str, ttl: int) -> int:
        value = int(self._cache.get(key) or 0) + 1
        self._cache[key] = value
        return value

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        if key in self._cache:
            return False
        self._cache[key] = value
        return True

    def clear(self) -> None:
        self._cache.clear()


class IdempotencyConflictMonitor:
    """Rolling-window conflict counter with spike alerting."""

    def __init__(
        self,
        cache: CounterCache | None = None,
        enabled: bool | None = None,
        threshold: int | None = None,
        window_seconds: int | None = None,
    ):
        self.enabled = settings.security_idempotency_monitor_enabled if enabled is None else enabled
        self.threshold = _positive(
            threshold if threshold is not None else settings.security_idempotency_conflict_threshold,
            DEFAULT_THRESHOLD,
        )
        self.window_seconds = _positive(
            window_seconds if window_seconds is not None else settings.security_idempotency_conflict_window_seconds,
            DEFAULT_WINDOW_SECONDS,
        )
        self.cache = cache if cache is not None else MemoryCache(ttl=self.cache_ttl)

    @property
    def window_bucket_count(self) -> int:
        return math.ceil(self.window_seconds / 60)

    @property
    def cache_ttl(self) -> int:
        return max(self.window_seconds, 300)

    async def record_conflict(self, event: ConflictEvent, occurred_at: datetime | None = None) -> int | None:
        """Count one conflict and alert if the window threshold is crossed.

        Args:
            event: The conflict being reported
            occurred_at: When the conflict happened (defaults to now)

        Returns:
            Rolling conflict count, or None when disabled or the cache failed
        """
        if not self.enabled:
            return None

        occurred_at = occurred_at or utcnow()
        try:
            await self.cache.increment(self._bucket_key(_bucket_number(occurred_at)), self.cache_ttl)
            conflict_count = await self.rolling_conflict_count(now=occurred_at)
            await self._alert_if_threshold_crossed(conflict_count, occurred_at, event)
        except Exception as e:
            logger.error(
                "idempotency_conflict_monitor_error",
                error_class=type(e).__name__,
                error_message=str(e),
            )
            return None

        return conflict_count

    async def rolling_conflict_count(self, now: datetime | None = None) -> int:
        current = _bucket_number(now or utcnow())
        total = 0
        for offset in range(self.window_bucket_count):
            value = await self.cache.get(self._bucket_key(current - offset))
            total += int(value or 0)
        return total

    async def readiness_status(self, now: datetime | None = None) -> str:
        """Return "error" while conflicts in the window exceed the threshold."""
        if not self.enabled:
            return "ok"

        try:
            count = await self.rolling_conflict_count(now=now)
        except Exception as e:
            logger.error(
                "idempotency_conflict_readiness_error",
                error_class=type(e).__name__,
                error_message=str(e),
            )
            return "error"

        return "error" if count > self.threshold else "ok"

    async def _alert_if_threshold_crossed(
        self,
        conflict_count: int,
        occurred_at: datetime,
        event: ConflictEvent,
    ) -> None:
        if conflict_count <= self.threshold:
            return

        window_marker = _bucket_number(occurred_at) // self.window_bucket_count
        alert_key = f"{CACHE_NAMESPACE}:alerts:window:{window_marker}"
        if not await self.cache.set_if_absent(alert_key, "1", self.cache_ttl):
            return

        logger.error(
            "security_alert",
            alert_type="idempotency_conflict_spike",
            severity="warning",
            conflicts_in_window=conflict_count,
            threshold=self.threshold,
            window_seconds=self.window_seconds,
            service=event.service,
            tenant_id=event.tenant_id,
        )

    @staticmethod
    def _bucket_key(number: int) -> str:
        return f"{CACHE_NAMESPACE}:buckets:{number}"


def _bucket_number(at: datetime) -> int:
    return int(at.timestamp()) // 60


def _positive(value, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


_monitor: IdempotencyConflictMonitor | None = None


def get_conflict_monitor() -> IdempotencyConflictMonitor:
    """Get the process-wide monitor (memory-backed until configured otherwise)."""
    global _monitor
    if _monitor is None:
        _monitor = IdempotencyConflictMonitor()
    return _monitor


def configure_conflict_monitor(cache: CounterCache | None = None) -> IdempotencyConflictMonitor:
    """Replace the process-wide monitor, e.g. with a Redis-backed cache."""
    global _monitor
    _monitor = IdempotencyConflictMonitor(cache=cache)
    return _monitor
