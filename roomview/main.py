"""
Roomview Asset & Render Engine - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Storage abstraction (local + Azure)
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from roomview.core.config import settings
from roomview.core.database import create_db_and_tables, engine
from roomview.core.logging import setup_logging, get_logger, LogContext
from roomview.core.exceptions import register_exception_handlers
from roomview.core.metrics import set_app_info, record_http_request
from roomview.api.v1 import api_v1_router


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown."""
    startup_start = time.time()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    # Initialize database
    await create_db_and_tables()
    logger.info("database_initialized")

    # Redis backs the per-session rate limiter
    app.state.redis = redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True
    )
    logger.info("redis_connected", url=settings.REDIS_URL)

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    logger.info("application_ready", startup_time_seconds=time.time() - startup_start)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await app.state.redis.aclose()
    await engine.dispose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Product asset preparation and composite room renders.

    - **Assets**: background removal for merchant product photos, go-live toggle
    - **Rooms**: signed uploads of shopper room photos, object removal
    - **Renders**: quota-admitted composite renders with status polling
    - **Observability**: structured logging, Prometheus metrics

    All endpoints are versioned under `/api/v1/` and scoped by the
    `X-Tenant-ID` header.
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics; tag request logs with the tenant."""
    start_time = time.time()
    with LogContext(tenant_id=request.headers.get("X-Tenant-ID")):
        response = await call_next(request)
    duration = time.time() - start_time

    # Route template keeps label cardinality bounded
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    record_http_request(request.method, endpoint, response.status_code, duration)

    response.headers["X-Process-Time"] = str(duration)
    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_v1_router)


# =============================================================================
# Root Endpoints
# =============================================================================

@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/api/docs",
        "api_v1": "/api/v1",
        "metrics": "/api/v1/metrics"
    }


@app.get("/health", tags=["health"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


@app.get("/ready", tags=["health"])
async def ready(request: Request):
    """Readiness check - verifies dependencies are available."""
    checks = {
        "redis": False,
        "database": False,
    }

    try:
        await request.app.state.redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("readiness_check_failed", dependency="redis", error=str(e))

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.warning("readiness_check_failed", dependency="database", error=str(e))

    all_ready = all(checks.values())

    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "ready": all_ready,
            "checks": checks,
        }
    )


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "roomview.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
