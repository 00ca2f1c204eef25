"""FastAPI application factory"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from vcpay_gateway.api.dependencies import get_notifier, get_security_policy, get_verifier_client
from vcpay_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from vcpay_gateway.api.v1 import payments, security
from vcpay_gateway.infrastructure.database.session import SessionLocal, init_db
from vcpay_gateway.infrastructure.observability.logging import setup_logging
from vcpay_gateway.services.authorization import PaymentOrchestrator
from vcpay_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)

logger = logging.getLogger(__name__)


async def run_cleanup_once() -> None:
    """One expiry + retention pass with its own session"""
    db = SessionLocal()
    try:
        orchestrator = PaymentOrchestrator(
            db=db,
            verifier=get_verifier_client(),
            notifier=get_notifier(),
            policy=get_security_policy(),
        )
        await orchestrator.cleanup()
    except Exception as e:
        db.rollback()
        logger.error("Periodic cleanup failed", extra={"error": str(e)})
    finally:
        db.close()


async def periodic_cleanup(interval_seconds: float) -> None:
    """Run cleanup every interval until cancelled"""
    while True:
        await asyncio.sleep(interval_seconds)
        await run_cleanup_once()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables, start the periodic cleanup, stop it on shutdown"""
    init_db()
    logger.info("Database initialized")

    cleanup_task = None
    if settings.cleanup_interval_seconds > 0:
        cleanup_task = asyncio.create_task(periodic_cleanup(settings.cleanup_interval_seconds))
        logger.info("Periodic cleanup scheduled", extra={"interval_seconds": settings.cleanup_interval_seconds})

    yield

    if cleanup_task is not None:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
    logger.info("Application shutdown")


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="VCPay Gateway",
        description="Verifiable-credential payment authorization service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {
            "status": "ok",
            "service": settings.service_name,
            "verifier_configured": get_verifier_client().is_configured(),
        }

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(payments.router, prefix="/v1", tags=["payments"])
    app.include_router(security.router, prefix="/v1", tags=["security"])

    return app


app = create_app()
