from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    retryable: bool | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Reuse the id assigned by the request middleware when present.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    generated = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = generated
    return generated


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    return {"data": data, "meta": meta.model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    retryable: bool | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, retryable=retryable)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    status_code: {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }
    for status_code, description, code, message in (
        (400, "Bad request", "BAD_REQUEST", "Bad request"),
        (401, "Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
        (403, "Forbidden", "AUTH_FORBIDDEN", "Insufficient permissions"),
        (404, "Not found", "NOT_FOUND", "Member not found"),
        (409, "Conflict", "LAST_OWNER", "Cannot remove the last owner. Transfer ownership first"),
        (503, "Store unavailable", "STORE_UNAVAILABLE", "Store unavailable"),
    )
}
