"""Main FastAPI application."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from escrow_relay.config import settings
from escrow_relay.core.conflict_monitor import configure_conflict_monitor
from escrow_relay.core.errors import EscrowRelayError
from escrow_relay.core.outbox_dispatcher import OutboxDispatcher
from escrow_relay.database import AsyncSessionLocal, close_db, init_db
from escrow_relay.dependencies import get_event_router
from escrow_relay.logging_config import configure_logging, get_logger
from escrow_relay.middleware.request_context import RequestContextMiddleware, get_request_id
from escrow_relay.redis_client import RedisCache, close_redis, get_redis
from escrow_relay.routes import health, webhooks
from escrow_relay.schemas.error import ErrorBody, ErrorResponse
from escrow_relay.workers.outbox_dispatch_worker import OutboxDispatchWorker

# Configure logging
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    # Startup
    logger.info("application_starting", version=settings.app_version)

    # Note: In production, use Alembic migrations instead
    if settings.debug:
        await init_db()

    if settings.security_idempotency_monitor_backend == "redis":
        redis = await get_redis()
        configure_conflict_monitor(RedisCache(redis))
        logger.info("idempotency_monitor_configured", backend="redis")

    worker = None
    if settings.outbox_worker_enabled:
        worker = OutboxDispatchWorker(
            session_factory=AsyncSessionLocal,
            dispatcher=OutboxDispatcher(session_factory=AsyncSessionLocal, router=get_event_router()),
            batch_size=settings.outbox_worker_batch_size,
            poll_interval_seconds=settings.outbox_worker_poll_interval_seconds,
        )
        await worker.start()
    app.state.outbox_dispatch_worker = worker

    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    if worker is not None:
        await worker.stop()

    await close_db()
    await close_redis()
    logger.info("application_stopped")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Escrow Relay - outbox dispatch and provider webhook reconciliation",
    docs_url="/docs",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)


@app.exception_handler(EscrowRelayError)
async def escrow_relay_error_handler(request: Request, exc: EscrowRelayError) -> JSONResponse:
    """Render domain errors as {"error": {code, message, request_id}}."""
    logger.info(
        "request_rejected",
        path=request.url.path,
        status_code=exc.status_code,
        error_code=exc.code,
    )
    body = ErrorResponse(error=ErrorBody(code=exc.code, message=exc.message, request_id=get_request_id(request)))
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))


# Include routers
app.include_router(health.router)
app.include_router(webhooks.router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "running",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "escrow_relay.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
