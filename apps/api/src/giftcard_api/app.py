from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from giftcard_api.core.settings import settings
from giftcard_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.delivery.handoff import DeliveryHandoff
from .workers import ClaimRecoveryWorker


APP_VERSION = "0.1.0"
SHUTDOWN_DRAIN_TIMEOUT_SECONDS = 30.0


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    handoff = DeliveryHandoff(async_session)
    recovery_worker = ClaimRecoveryWorker(
        session_factory=_session_factory,
        handoff=handoff,
        interval_seconds=settings.claim_recovery_interval_seconds,
        limit=settings.claim_recovery_limit,
        max_attempts=settings.claim_recovery_max_attempts,
        trigger_label=settings.claim_recovery_trigger_label,
    )

    app.state.delivery_handoff = handoff
    app.state.claim_recovery_worker = recovery_worker

    recovery_enabled = settings.claim_recovery_worker_enabled
    if recovery_enabled:
        recovery_worker.start()
        logger.info(
            "Claim recovery worker enabled",
            interval_seconds=recovery_worker.interval_seconds,
            limit=settings.claim_recovery_limit,
            max_attempts=settings.claim_recovery_max_attempts,
        )
    else:
        logger.info(
            "Claim recovery worker disabled",
            reason="claim_recovery_worker_enabled is false",
        )

    if not settings.supplier_configured:
        logger.warning("Supplier credentials missing; local pool misses resolve as out_of_stock")

    try:
        yield
    finally:
        if recovery_enabled and recovery_worker.is_running:
            await recovery_worker.stop()
        await handoff.drain(timeout=SHUTDOWN_DRAIN_TIMEOUT_SECONDS)


def create_app() -> FastAPI:
    """Application factory for the gift card fulfillment service."""
    configure_logging(
        service_name="giftcard-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Gift Card Fulfillment API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="giftcard-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
