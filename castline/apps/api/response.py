from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

DataT = TypeVar("DataT")


class ResponseMeta(BaseModel):
    """Echoed on every admin response so operators can correlate audit rows."""

    request_id: str
    api_version: str = API_VERSION

    @classmethod
    def for_request(cls, request: Request) -> "ResponseMeta":
        return cls(request_id=get_request_id(request))


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[DataT]):
    data: DataT
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The middleware stamps request.state first; handlers that fire before it fall back here.
    cached = getattr(request.state, "request_id", None)
    if not cached:
        cached = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = cached
    return cached


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return SuccessEnvelope[Any](data=data, meta=ResponseMeta.for_request(request)).model_dump()


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    envelope = ErrorEnvelope(
        error=ErrorDetail(code=code, message=message, details=details),
        meta=ResponseMeta.for_request(request),
    )
    return envelope.model_dump(exclude_none=True)
