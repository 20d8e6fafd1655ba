import logging
import sys
import time
import uuid

import structlog
from structlog.types import Processor


def _renderer(log_format: str) -> Processor:
    if log_format == "console" or sys.stderr.isatty():
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Route structlog through stdlib logging, one event per line on stdout.

    Values bound with ``structlog.contextvars`` (the request id) are merged
    into every event logged while handling that request.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        _renderer(log_format),
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LoggingMiddleware:
    """ASGI middleware: assigns a request id and logs each request's outcome.

    The id is stored on ``request.state.request_id`` so error responses can
    echo it back.
    """

    def __init__(self, app, logger_name: str = "api"):
        self.app = app
        self.logger = get_logger(logger_name)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = str(uuid.uuid4())
        scope.setdefault("state", {})["request_id"] = request_id
        client_host = (scope.get("client") or ("-",))[0]

        structlog.contextvars.bind_contextvars(request_id=request_id)
        started = time.perf_counter()
        status_code = None

        async def send_with_status(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_with_status)
        except Exception as exc:
            self.logger.error(
                "Request failed",
                method=scope["method"],
                path=scope["path"],
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        else:
            log = self.logger.warning if status_code and status_code >= 500 else self.logger.info
            log(
                "Request handled",
                method=scope["method"],
                path=scope["path"],
                status_code=status_code,
                client=client_host,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )
        finally:
            structlog.contextvars.unbind_contextvars("request_id")


security_logger = get_logger("security")
chat_logger = get_logger("chat")
persistence_logger = get_logger("persistence")
db_logger = get_logger("database")
auth_logger = get_logger("auth")
