"""
Prometheus metrics for the chat sync service.

Everything is registered on a private ``REGISTRY`` and served by ``/metrics``.
"""
import re
import time

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from app.core.logging import get_logger

logger = get_logger("monitoring")

REGISTRY = CollectorRegistry()

# HTTP
http_requests_total = Counter(
    "http_requests_total", "HTTP requests", ["method", "endpoint", "status_code"], registry=REGISTRY
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds", "HTTP request latency", ["method", "endpoint"], registry=REGISTRY
)
http_errors_total = Counter(
    "http_errors_total", "Requests that raised past the application", ["error_type", "endpoint"], registry=REGISTRY
)

# Chat reconciliation
chat_updates_total = Counter(
    "chat_updates_total", "Chat updates by reconciliation outcome", ["outcome"], registry=REGISTRY
)
rows_upserted_total = Counter(
    "rows_upserted_total", "Message and checkpoint rows written by upserts", ["relation"], registry=REGISTRY
)
rows_pruned_total = Counter(
    "rows_pruned_total", "Rows deleted because a snapshot no longer contained them", ["relation"], registry=REGISTRY
)
stored_rows = Gauge(
    "stored_rows", "Rows currently stored, sampled on /stats", ["relation"], registry=REGISTRY
)

# Store
database_connections = Gauge(
    "database_connections_active", "Open database connections", registry=REGISTRY
)
database_operations_total = Counter(
    "database_operations_total", "Store operations", ["operation"], registry=REGISTRY
)
database_operation_duration_seconds = Histogram(
    "database_operation_duration_seconds", "Store operation latency", ["operation"], registry=REGISTRY
)

# Identity
auth_attempts_total = Counter(
    "auth_attempts_total", "Caller resolutions by result", ["status"], registry=REGISTRY
)

health_check_status = Gauge(
    "health_check_status", "1 if the dependency is healthy, else 0", ["service"], registry=REGISTRY
)

_ID_SEGMENT = re.compile(r"/[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")


def normalize_endpoint(path: str) -> str:
    """Collapse UUID path segments so chat ids do not become label values"""
    return _ID_SEGMENT.sub("/{id}", path)


class MetricsMiddleware:
    """ASGI middleware recording request counts and latency per endpoint"""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope["path"] == "/metrics":
            await self.app(scope, receive, send)
            return

        method = scope["method"]
        endpoint = normalize_endpoint(scope["path"])
        status_code = 500
        started = time.perf_counter()

        async def send_with_status(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_with_status)
        except Exception as e:
            http_errors_total.labels(error_type=type(e).__name__, endpoint=endpoint).inc()
            raise
        finally:
            http_requests_total.labels(method=method, endpoint=endpoint, status_code=status_code).inc()
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - started
            )


def record_chat_update(outcome: str):
    chat_updates_total.labels(outcome=outcome).inc()


def record_rows_upserted(relation: str, count: int):
    if count:
        rows_upserted_total.labels(relation=relation).inc(count)


def record_rows_pruned(relation: str, count: int):
    if count:
        rows_pruned_total.labels(relation=relation).inc(count)


def record_auth_attempt(success: bool = True):
    auth_attempts_total.labels(status="success" if success else "failure").inc()


def record_database_operation(operation: str, duration: float):
    database_operations_total.labels(operation=operation).inc()
    database_operation_duration_seconds.labels(operation=operation).observe(duration)


def update_health_status(service: str, is_healthy: bool):
    health_check_status.labels(service=service).set(1 if is_healthy else 0)


async def get_metrics() -> Response:
    """Render the registry in the Prometheus text format"""
    try:
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
    except Exception as e:
        logger.error("Failed to generate metrics", error=str(e))
        return Response(content="Error generating metrics", status_code=500)


class DatabaseMetricsCollector:
    """Samples stored row counts into the ``stored_rows`` gauge"""

    @staticmethod
    async def collect_from_db(db_session):
        from app.models import Chat, Checkpoint, Message

        try:
            for relation, model in (("chats", Chat), ("messages", Message), ("checkpoints", Checkpoint)):
                stored_rows.labels(relation=relation).set(db_session.query(model).count())
        except Exception as e:
            logger.error("Failed to collect database metrics", error=str(e))
