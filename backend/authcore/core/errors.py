"""Exception handlers producing the shared error envelope.

Every error body is ``{error_code, message, details, request_id}``.
"""

import uuid
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from authcore.core.app_exceptions import CONFLICT, INTERNAL, NOT_ALLOWED, NOT_FOUND, UNAUTHORIZED, AppError
from authcore.core.config import settings
from authcore.core.logging import get_logger

logger = get_logger(__name__)

_CODES_BY_STATUS = {
    status.HTTP_401_UNAUTHORIZED: UNAUTHORIZED,
    status.HTTP_403_FORBIDDEN: NOT_ALLOWED,
    status.HTTP_404_NOT_FOUND: NOT_FOUND,
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
}


class ErrorResponse(BaseModel):
    error_code: str
    message: str
    details: Any | None = None
    request_id: str | None = None


def get_request_id(request: Request) -> str:
    """ID assigned by the request middleware, or a fresh one outside it."""
    return getattr(request.state, "request_id", None) or uuid.uuid4().hex


def _envelope(request: Request, status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    body = ErrorResponse(error_code=code, message=message, details=details, request_id=get_request_id(request))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(loc) for loc in error.get("loc", [])),
            "issue": error.get("msg", "Validation error"),
            "type": error.get("type", "validation_error"),
        }
        for error in exc.errors()
    ]
    return _envelope(
        request, status.HTTP_422_UNPROCESSABLE_ENTITY, "VALIDATION_ERROR", "Invalid request data", details
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Domain errors keep their code; framework errors get one from the status."""
    if isinstance(exc, AppError):
        response = _envelope(request, exc.status_code, exc.code, exc.message, exc.details)
        if exc.status_code == status.HTTP_429_TOO_MANY_REQUESTS and isinstance(exc.details, dict):
            retry_after = exc.details.get("wait_seconds") or exc.details.get("retry_after_seconds")
            if retry_after:
                response.headers["Retry-After"] = str(retry_after)
        return response

    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    code = _CODES_BY_STATUS.get(exc.status_code, "HTTP_ERROR")
    response = _envelope(request, exc.status_code, code, message)
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    return response


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """Unique-constraint races surface as CONFLICT (409)."""
    logger.warning(
        "integrity_error",
        extra={
            "request_id": get_request_id(request),
            "path": request.url.path,
            "error_type": type(exc.orig).__name__,
        },
    )
    return _envelope(
        request, status.HTTP_409_CONFLICT, CONFLICT, "The resource conflicts with an existing record"
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        extra={"request_id": get_request_id(request), "path": request.url.path, "error_type": type(exc).__name__},
        exc_info=exc,
    )
    if settings.ENV in ("prod", "staging"):
        return _envelope(
            request, status.HTTP_500_INTERNAL_SERVER_ERROR, INTERNAL, "An internal server error occurred"
        )
    return _envelope(
        request, status.HTTP_500_INTERNAL_SERVER_ERROR, INTERNAL, str(exc), {"type": type(exc).__name__}
    )
