"""
Order Service - Main FastAPI Application
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime
from sqlalchemy import text
import logging

from ordercore.common_logging import setup_logging
from ordercore.common_instrumentation import (
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_opentelemetry,
    shutdown_opentelemetry,
)

from ordercore.api import deps, routes
from ordercore.db import database
from ordercore.db.database import init_database, create_tables
from ordercore.models.schemas import HealthResponse
from ordercore.services.errors import OrderError, RetryableError
from ordercore.services.notifications import NotificationDispatcher
from ordercore.services.transport import HttpNotificationTransport, LoggingTransport
from ordercore.config import settings

# Setup logging
setup_logging(
    service_name=settings.service_name,
    log_level=settings.log_level,
    log_format=settings.log_format
)

logger = logging.getLogger(__name__)


def build_dispatcher():
    """Notification dispatcher over the configured transport"""
    if settings.notification_gateway_url:
        transport = HttpNotificationTransport(
            settings.notification_gateway_url,
            timeout=settings.notification_timeout_seconds
        )
        logger.info(f"Notification gateway: {settings.notification_gateway_url}")
    else:
        transport = LoggingTransport()
        logger.info("No notification gateway configured, notifications go to the log")

    return NotificationDispatcher([transport], dedup_window=settings.notification_dedup_window), transport


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    logger.info(f"Starting {settings.service_name}")
    logger.info(f"Environment: {settings.environment}")

    # Initialize database
    try:
        engine = init_database(settings.database_url)
        create_tables()
        logger.info("Database initialized successfully")

        # Instrument SQLAlchemy
        if settings.otel_enabled:
            instrument_sqlalchemy(engine)

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    # Initialize notification dispatcher
    dispatcher, transport = build_dispatcher()
    deps.dispatcher = dispatcher
    logger.info("Notification dispatcher initialized")

    # Initialize OpenTelemetry
    tracer_provider = setup_opentelemetry(
        service_name=settings.otel_service_name or settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
        enabled=settings.otel_enabled,
        environment=settings.environment,
        service_version=app.version
    )

    logger.info(f"{settings.service_name} started successfully")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.service_name}")
    if isinstance(transport, HttpNotificationTransport):
        transport.close()
    shutdown_opentelemetry(tracer_provider)


# Create FastAPI app
app = FastAPI(
    title="Order Service",
    description="Order lifecycle: creation, stock reservation, status transitions and notifications",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Instrument FastAPI with OpenTelemetry
if settings.otel_enabled:
    instrument_fastapi(app)

# Include API routes
app.include_router(routes.router)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint (liveness probe)"""
    return {
        "status": "healthy",
        "service": settings.service_name,
        "version": "1.0.0",
        "timestamp": datetime.utcnow().isoformat()
    }


@app.get("/ready")
def readiness_check():
    """Readiness check endpoint (readiness probe)"""
    try:
        # Test database connection
        db = database.SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()

        return {
            "status": "ready",
            "service": settings.service_name,
            "database": "connected",
            "timestamp": datetime.utcnow().isoformat()
        }
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "service": settings.service_name,
                "database": "disconnected",
                "error": str(e),
                "timestamp": datetime.utcnow().isoformat()
            }
        )


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": settings.service_name,
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready"
    }


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    """Map service errors onto their stable code and status"""
    if isinstance(exc, RetryableError):
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")

    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "type": exc.__class__.__name__
        }
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ordercore.main:app",
        host="0.0.0.0",
        port=8002,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
