from typing import Any, Dict, List, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger("errors")


class ErrorCodes:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    PARTIAL_APPLY = "PARTIAL_APPLY"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"


class APIError(Exception):
    """Application error rendered as a structured JSON response"""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = ErrorCodes.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(APIError):
    """Malformed or incomplete payload. Never retried."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = ErrorCodes.VALIDATION_ERROR


class AuthenticationError(APIError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = ErrorCodes.AUTHENTICATION_ERROR

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFoundError(APIError):
    """Absent or not owned; the two cases are deliberately indistinguishable."""

    status_code = status.HTTP_404_NOT_FOUND
    code = ErrorCodes.NOT_FOUND

    def __init__(self, resource: str = "Chat"):
        super().__init__(f"{resource} not found")


class StoreError(APIError):
    """Store failure before anything was applied"""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = ErrorCodes.INTERNAL_ERROR


class PartialApplyError(APIError):
    """Chat metadata was updated but the messages or checkpoints portion was not.

    Carries the chat id and the failed portion so the caller can retry only
    what did not land.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = ErrorCodes.PARTIAL_APPLY

    def __init__(self, chat_id: str, failed: str, message: Optional[str] = None):
        super().__init__(message or f"Chat metadata updated but {failed} were not saved")
        self.chat_id = chat_id
        self.failed = failed

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["chatId"] = self.chat_id
        body["failed"] = self.failed
        return body


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Render APIError subclasses with their status and machine-readable code"""
    request_id = _request_id(request)
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "API error",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
        request_id=request_id,
    )

    body = exc.to_dict()
    if request_id:
        body["requestId"] = request_id
    return JSONResponse(status_code=exc.status_code, content=body)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = _request_id(request)
    logger.error(
        "Unhandled error",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
    )

    message = str(exc) if settings.is_development else "An unexpected error occurred"
    body: Dict[str, Any] = {"error": message, "code": ErrorCodes.INTERNAL_ERROR}
    if request_id:
        body["requestId"] = request_id
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)
