"""Main FastAPI application for the ShelfSense warehouse alert gateway."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from sqlalchemy.orm import sessionmaker

from alert_pipeline import AlertPipeline
from config import Settings, settings
from database import SessionLocal, build_engine
from document_store import DocumentStore, create_document_store
from error_handler import DependencyError
from health_sweeper import DeviceHealthSweeper
from ingestion_gateway import IngestionGateway
from low_stock_digest import LowStockDigest
from metrics import metrics
from models import DEVICES, SignatureMode
from notification_fanout import NotificationFanout
from notification_service import NotificationService
from rate_limiter import RateLimiter
from routers import alerts as alerts_router
from routers import health as health_router
from routers import webhook as webhook_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class PreflightCORSMiddleware(CORSMiddleware):
    """CORS middleware that answers successful preflight requests with 204 No Content."""

    def preflight_response(self, request_headers):
        response = super().preflight_response(request_headers)
        if response.status_code != status.HTTP_200_OK:
            return response
        headers = {
            key: value for key, value in response.headers.items()
            if key.lower() not in ("content-length", "content-type")
        }
        return Response(status_code=status.HTTP_204_NO_CONTENT, headers=headers)


def build_store(config: Settings) -> DocumentStore:
    """Create the configured document store."""
    session_factory = None
    if config.store_backend == "sql" and config.database_url != settings.database_url:
        session_factory = sessionmaker(autocommit=False, autoflush=False, bind=build_engine(config.database_url))
    return create_document_store(config.store_backend, session_factory or SessionLocal)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup
    logger.info("Starting ShelfSense alert gateway...")
    config: Settings = app.state.config

    if config.background_jobs_enabled:
        # Start device health sweeper
        try:
            app.state.sweeper.start()
        except Exception as e:
            logger.warning(f"Failed to start health sweeper: {e}. Continuing without scheduled sweeps...")

        # Start daily low stock digest
        try:
            app.state.low_stock_digest.start()
        except Exception as e:
            logger.warning(f"Failed to start low stock digest: {e}. Continuing without daily digests...")

        # Start notification delivery worker
        try:
            app.state.notification_service.start()
        except Exception as e:
            logger.warning(f"Failed to start notification service: {e}. Notifications stay queued...")
    else:
        logger.info("Background jobs disabled")

    yield

    # Shutdown
    logger.info("Shutting down ShelfSense alert gateway...")
    app.state.sweeper.stop()
    app.state.low_stock_digest.stop()
    app.state.notification_service.stop()
    app.state.pipeline.unregister_watchers()
    app.state.store.close()


def create_app(config: Optional[Settings] = None, store: Optional[DocumentStore] = None) -> FastAPI:
    """
    Build the application and wire its components.

    Args:
        config: Settings to use, defaults to the environment settings
        store: Document store to use, defaults to the configured backend

    Returns:
        The FastAPI application
    """
    config = config or settings
    store = store or build_store(config)

    app = FastAPI(
        title="ShelfSense Warehouse Alert Gateway",
        description="""
    Warehouse IoT telemetry ingestion and alerting:
    - Authenticated device webhook with per-device rate limiting
    - Threshold detection on inventory, shelf weight, temperature and battery
    - Deduplicated alerts with role-based email/SMS/in-app fan-out
    - Scheduled device health sweeps
    - Daily low stock digest for admins and managers
    """,
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    pipeline = AlertPipeline(
        store,
        fanout=NotificationFanout(store, app_base_url=config.app_base_url),
    )
    pipeline.register_watchers()

    app.state.config = config
    app.state.store = store
    app.state.pipeline = pipeline
    app.state.rate_limiter = RateLimiter(
        max_requests=config.rate_limit_max_requests,
        window_seconds=config.rate_limit_window_seconds,
    )
    app.state.gateway = IngestionGateway(
        store,
        app.state.rate_limiter,
        default_signature_mode=SignatureMode(config.default_signature_mode),
    )
    app.state.sweeper = DeviceHealthSweeper(
        store,
        pipeline,
        stale_minutes=config.heartbeat_stale_minutes,
        cron_schedule=config.health_sweep_cron,
    )
    app.state.low_stock_digest = LowStockDigest(store, cron_schedule=config.low_stock_digest_cron)
    app.state.notification_service = NotificationService(store, config)

    # CORS middleware
    app.add_middleware(
        PreflightCORSMiddleware,
        allow_origins=[origin.strip() for origin in config.cors_allow_origins.split(",") if origin.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(webhook_router.router)
    app.include_router(
        alerts_router.router,
        prefix=f"{config.api_v1_prefix}",
    )
    app.include_router(
        health_router.router,
        prefix=f"{config.api_v1_prefix}",
    )

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "ShelfSense - Warehouse Alert Gateway",
            "version": "1.0.0",
            "status": "running"
        }

    @app.get("/health")
    def health():
        """Health check endpoint."""
        try:
            store.query(DEVICES, limit=1)
            store_ok = True
        except DependencyError as e:
            logger.error(f"Health check could not reach the document store: {e}")
            store_ok = False
        return {
            "status": "healthy" if store_ok else "degraded",
            "store_backend": config.store_backend,
            "store_reachable": store_ok,
            "background_jobs": config.background_jobs_enabled,
        }

    @app.get("/metrics")
    async def get_metrics():
        """Get ingestion and alerting metrics."""
        return metrics.get_stats()

    @app.get("/metrics/device/{device_id}")
    async def get_device_metrics(device_id: str):
        """Get metrics for a specific device."""
        device_stats = metrics.get_device_stats(device_id)
        if not device_stats:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"No metrics found for device {device_id}"
            )
        return device_stats

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=5000,
        reload=True,
        log_level=settings.log_level.lower()
    )
