"""
Billing Engine - Main FastAPI Application

This is the main entry point for the billing API service.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress

import uvicorn
from fastapi import FastAPI, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .api import billing
from .billing.settings import load_billing_settings
from .billing.stripe_client import StripeClient
from .billing.usage_tracker import UsageTracker, create_usage_tracker
from .billing.webhook_dispatcher import WebhookDispatcher
from .billing.webhook_handler import create_webhook_handler
from .database import SessionLocal, create_tables, engine
from .utils.clock import utcnow

logger = logging.getLogger(__name__)

app_version = "1.0.0"


async def _sweep_deliveries(dispatcher: WebhookDispatcher, interval: float):
    """Retry due outbound deliveries whose in-process timers were lost"""
    while True:
        try:
            await dispatcher.process_pending_deliveries()
        except SQLAlchemyError as e:
            logger.error(f"Delivery sweep failed: {e}")
        await asyncio.sleep(interval)


async def _reconcile_usage(tracker: UsageTracker, interval: float):
    """Report persisted usage to the gateway on a fixed interval"""
    while True:
        try:
            result = await asyncio.to_thread(tracker.process_usage_records)
            if result.reports_failed:
                logger.warning(f"Usage reconciliation left {result.reports_failed} report(s) pending")
        except SQLAlchemyError as e:
            logger.error(f"Usage reconciliation failed: {e}")
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting billing engine...")
    create_tables()

    settings = load_billing_settings()
    dispatcher = WebhookDispatcher(SessionLocal, settings=settings)
    app.state.dispatcher = dispatcher
    webhooks_enabled = os.getenv("STRIPE_WEBHOOKS_ENABLED", "true").lower() == "true"
    reconciliation_enabled = os.getenv("USAGE_RECONCILIATION_ENABLED", "true").lower() == "true"
    gateway = StripeClient() if webhooks_enabled or reconciliation_enabled else None

    if webhooks_enabled:
        app.state.webhook_handler = create_webhook_handler(
            SessionLocal, gateway=gateway, event_publisher=dispatcher
        )

    tasks = [asyncio.create_task(_sweep_deliveries(dispatcher, settings.sweep_interval))]
    if reconciliation_enabled:
        tracker = create_usage_tracker(SessionLocal, gateway=gateway, settings=settings)
        app.state.usage_tracker = tracker
        tasks.append(asyncio.create_task(
            _reconcile_usage(tracker, settings.usage_reconcile_interval)
        ))
    yield

    # Shutdown
    logger.info("Shutting down billing engine...")
    for task in tasks:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    await dispatcher.close()


# Create FastAPI app
app = FastAPI(
    title="Billing Engine",
    description="""
    Subscription billing computation and event reliability service.

    Features:
    - Idempotent Stripe webhook processing
    - Signed outbound webhooks with persisted retries
    """,
    version=app_version,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan
)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Billing Engine",
        "version": app_version,
        "status": "operational",
        "docs": "/api/docs"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    health_status = {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": app_version,
        "checks": {}
    }

    # Database health check
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {"status": "healthy", "type": engine.dialect.name}
    except SQLAlchemyError as e:
        health_status["checks"]["database"] = {
            "status": "unhealthy",
            "error": str(e),
            "type": engine.dialect.name
        }
        health_status["status"] = "unhealthy"
        raise HTTPException(status_code=503, detail=health_status)

    return health_status


# Include API routes
app.include_router(billing.router, prefix="/api/v1/billing")


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    uvicorn.run(
        "backend.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("ENVIRONMENT", "development") == "development"
    )
