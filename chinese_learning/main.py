"""Main FastAPI application for the Chinese learning backend."""

import logging
import signal
import sys
from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chinese_learning.config import settings
from chinese_learning.api.chat import router as chat_router
from chinese_learning.api.health import router as health_router
from chinese_learning.api.pronunciation import router as pronunciation_router
from chinese_learning.api.tts import router as tts_router
from chinese_learning.clients.elevenlabs_client import get_elevenlabs_client
from chinese_learning.middleware import (
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    MetricsMiddleware,
    RateLimitMiddleware,
    get_metrics
)
from chinese_learning.models.api_models import HealthResponse
from chinese_learning.observability import (
    setup_observability,
    instrument_fastapi_app,
    TracingContextMiddleware
)
from chinese_learning.services.pronunciation_service import get_pronunciation_service

SERVICE_NAME = "chinese-learning-backend"
SERVICE_VERSION = "1.0.0"

logging.basicConfig(format="%(message)s", stream=sys.stdout, level=settings.log_level)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(ensure_ascii=False)
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Chinese learning backend", port=settings.port, host=settings.host)

    setup_observability(
        service_name=SERVICE_NAME,
        service_version=SERVICE_VERSION,
        otlp_endpoint=settings.otlp_endpoint,
        enable_console_export=settings.enable_console_export
    )
    instrument_fastapi_app(app)

    # Build every adapter now so missing credentials stop the process at startup
    try:
        service = get_pronunciation_service()
        get_elevenlabs_client()
        service.db.create_schema()
        logger.info("Configuration validated successfully")
    except Exception as e:
        logger.error("Configuration validation failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)

    yield

    logger.info("Shutting down Chinese learning backend")
    service.db.dispose()


# Create FastAPI application
app = FastAPI(
    title="Chinese Learning Backend",
    description="Pronunciation analysis, text-to-speech and conversation practice for Chinese learners",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

# Add middleware (order matters - last added is executed first)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(
    RateLimitMiddleware,
    max_requests=settings.rate_limit_requests,
    window_seconds=settings.rate_limit_window_seconds
)
app.add_middleware(TracingContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Content-Disposition"],
)

# Include API routers
app.include_router(pronunciation_router)
app.include_router(tts_router)
app.include_router(chat_router)
app.include_router(health_router)


@app.get("/healthz", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.utcnow(),
        version=SERVICE_VERSION
    )


@app.get("/metrics")
async def metrics_endpoint():
    """Application metrics endpoint."""
    return {
        "timestamp": datetime.utcnow().isoformat(),
        "metrics": get_metrics()
    }


def handle_shutdown(signum, frame):
    """Handle graceful shutdown signals."""
    logger.info("Received shutdown signal", signal=signum)
    sys.exit(0)


if __name__ == "__main__":
    import uvicorn

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    uvicorn.run(
        "chinese_learning.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False
    )
