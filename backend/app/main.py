import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import APIError, NotFoundError, api_error_handler, unhandled_error_handler
from app.core.logging import LoggingMiddleware, configure_logging, get_logger
from app.core.monitoring import DatabaseMetricsCollector, MetricsMiddleware, get_metrics, update_health_status
from app.core.rate_limiter import rate_limit_middleware, setup_redis_rate_limiter
from app.core.security import get_current_owner
from app.database.connection import check_database_health, create_tables, get_db, get_db_stats
from app.routers import chat

configure_logging(settings.log_level, settings.log_format)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Chat Sync API", version=settings.app_version, environment=settings.environment.value)

    create_tables()
    if settings.rate_limit_enabled and settings.redis_url:
        await setup_redis_rate_limiter(settings.redis_url)
    update_health_status("database", check_database_health())

    yield

    logger.info("Shutting down Chat Sync API")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=settings.app_description,
    lifespan=lifespan,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
)

# Added innermost first: requests pass rate limiting, logging, metrics, then CORS
app.add_middleware(CORSMiddleware, **settings.get_cors_config())
if settings.metrics_enabled:
    app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)
if settings.rate_limit_enabled:
    app.middleware("http")(rate_limit_middleware)

app.add_exception_handler(APIError, api_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)

app.include_router(chat.router)


@app.get("/")
async def root():
    return {
        "message": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment.value,
        "docs_url": app.docs_url,
        "health_url": "/health",
        "metrics_url": "/metrics" if settings.metrics_enabled else None,
    }


@app.get("/health")
async def health_check():
    """Liveness plus store connectivity; 503 when the store is unreachable"""
    db_healthy = check_database_health()
    update_health_status("database", db_healthy)
    status_label = "healthy" if db_healthy else "unhealthy"

    return JSONResponse(
        status_code=200 if db_healthy else 503,
        content={
            "status": status_label,
            "timestamp": time.time(),
            "version": settings.app_version,
            "environment": settings.environment.value,
            "services": {"database": {"status": status_label, "stats": get_db_stats()}},
        },
    )


@app.get("/metrics")
async def metrics():
    if not settings.metrics_enabled:
        raise NotFoundError("Metrics endpoint")
    return await get_metrics()


@app.get("/stats")
async def get_stats(owner_id: str = Depends(get_current_owner), db: Session = Depends(get_db)):
    """Pool statistics and enabled features; also refreshes the stored row gauges"""
    await DatabaseMetricsCollector.collect_from_db(db)
    return {
        "database": get_db_stats(),
        "application": {
            "version": settings.app_version,
            "environment": settings.environment.value,
            "features": {
                "rate_limiting": settings.rate_limit_enabled,
                "metrics": settings.metrics_enabled,
                "redis": bool(settings.redis_url),
            },
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
