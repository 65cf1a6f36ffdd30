"""
Storefront fulfillment service

Cart, order placement and admin fulfillment over HTTP, with live
inventory, order and shipment events pushed over a WebSocket.
"""

import asyncio
import os
import subprocess
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from shared.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from storefront.api.admin_routes import router as admin_router
from storefront.api.errors import install_error_handlers
from storefront.api.routes import cart_router, orders_router
from storefront.api.socket import router as socket_router
from storefront.application.dashboard import DashboardService
from storefront.core_settings import get_settings
from storefront.infrastructure.db import SessionLocal, engine, init_models
from storefront.infrastructure.realtime import EventBroadcaster, InMemorySessionRegistry

settings = get_settings()

SERVICE_NAME = settings.SERVICE_NAME
SERVICE_VERSION = settings.SERVICE_VERSION
SERVICE_DESCRIPTION = "Order placement and fulfillment with real-time updates"

setup_logging(
    service_name=SERVICE_NAME,
    level=settings.LOG_LEVEL,
    environment=settings.ENVIRONMENT,
    version=SERVICE_VERSION,
)

logger = get_logger(__name__)

def run_migrations() -> None:
    logger.info("Running database migrations")
    result = subprocess.run(
        ["alembic", "upgrade", "head"],
        cwd=os.path.join(os.path.dirname(__file__), ".."),
        capture_output=True,
        text=True,
        check=False
    )
    if result.returncode != 0:
        logger.warning(f"Migration output: {result.stderr}")
    else:
        logger.info("Database migrations completed")

def announce_low_stock(broadcaster: EventBroadcaster) -> int:
    db = SessionLocal()
    try:
        return DashboardService(db, broadcaster).announce_low_stock()
    finally:
        db.close()

async def watch_low_stock(broadcaster: EventBroadcaster, interval: float) -> None:
    """Push the low-stock list to admins every ``interval`` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(announce_low_stock, broadcaster)
        except Exception:
            logger.error("Periodic low stock check failed", exc_info=True)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {SERVICE_NAME} version {SERVICE_VERSION}")

    if settings.RUN_MIGRATIONS_ON_STARTUP:
        try:
            run_migrations()
        except Exception as e:
            logger.error(f"Migration error: {e}")

    try:
        init_models()
        logger.info("Database models initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database models: {e}")
        raise

    watcher = asyncio.create_task(
        watch_low_stock(app.state.broadcaster, settings.LOW_STOCK_CHECK_INTERVAL_SEC)
    )
    logger.info(f"{SERVICE_NAME} started successfully")

    yield

    logger.info(f"Shutting down {SERVICE_NAME}")
    watcher.cancel()
    await asyncio.gather(watcher, return_exceptions=True)

app = FastAPI(
    title=SERVICE_NAME,
    description=SERVICE_DESCRIPTION,
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.state.broadcaster = EventBroadcaster(InMemorySessionRegistry())

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

install_error_handlers(app)

def realtime_metrics() -> dict:
    broadcaster = app.state.broadcaster
    return {
        "connected_sessions": broadcaster.registry.count(),
        "online_users": broadcaster.online_users(),
        "events_published": broadcaster.events_published,
        "delivery_failures": broadcaster.delivery_failures,
    }

health_service = ServiceHealth(
    SERVICE_NAME,
    SERVICE_VERSION,
    engine=engine,
    redis_url=settings.REDIS_URL,
    metrics_provider=realtime_metrics,
)
app.include_router(health_service.create_health_router())

app.include_router(orders_router)
app.include_router(cart_router)
app.include_router(admin_router)
app.include_router(socket_router)

@app.get("/")
async def root():
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/api/docs"
    }

@app.get("/info")
async def info():
    """Service information endpoint"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": SERVICE_DESCRIPTION,
        "environment": settings.ENVIRONMENT,
        "endpoints": {
            "health": "/health",
            "ready": "/health/ready",
            "live": "/health/live",
            "metrics": "/metrics",
            "websocket": "/ws",
            "docs": "/api/docs"
        }
    }
