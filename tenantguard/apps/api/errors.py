from __future__ import annotations

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.apps.api.response import error_response
from tenantguard.core.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TenantGuardError,
    TransientError,
    UnauthenticatedError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[TenantGuardError], int], ...] = (
    (UnauthenticatedError, 401),
    (ForbiddenError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (ValidationError, 400),
    (TransientError, 503),
)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def status_for(exc: TenantGuardError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def tenantguard_exception_handler(request: Request, exc: TenantGuardError) -> JSONResponse:
    status_code = status_for(exc)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    if status_code == 503:
        headers = {"Retry-After": "1"}
    payload = error_response(
        request=request,
        code=exc.code,
        message=exc.message,
        retryable=True if isinstance(exc, TransientError) else None,
    )
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    payload = error_response(
        request=request,
        code=_DEFAULT_ERROR_CODES.get(exc.status_code, "UNKNOWN_ERROR"),
        message=message,
    )
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg')}" if location else "Validation error"
    payload = error_response(request=request, code="REQUEST_VALIDATION_ERROR", message=message)
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients; the log keeps them.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
