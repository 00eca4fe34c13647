"""Health check endpoints."""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from escrow_relay.core.conflict_monitor import get_conflict_monitor

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check() -> JSONResponse:
    """Readiness check endpoint.

    Reports not ready while idempotency conflicts are spiking.
    """
    idempotency = await get_conflict_monitor().readiness_status()
    ready = idempotency == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if ready else "not_ready",
            "checks": {"idempotency_conflicts": idempotency},
        },
    )
