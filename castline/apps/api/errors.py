from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from castline.apps.api.response import error_response
from castline.core.errors import (
    AudienceResolutionError,
    BroadcastNotFoundError,
    BroadcastReentrancyError,
    BroadcastValidationError,
    CastlineError,
    EmailConfigMissingError,
    InvalidTransitionError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific classes first; lookup walks this list in order.
_DOMAIN_ERRORS: list[tuple[type[CastlineError], int, str]] = [
    (BroadcastValidationError, 422, "BROADCAST_INVALID"),
    (BroadcastNotFoundError, 404, "NOT_FOUND"),
    (BroadcastReentrancyError, 409, "BROADCAST_ALREADY_RUNNING"),
    (InvalidTransitionError, 409, "BROADCAST_INVALID_TRANSITION"),
    (AudienceResolutionError, 502, "AUDIENCE_RESOLUTION_FAILED"),
    (EmailConfigMissingError, 503, "EMAIL_CONFIG_MISSING"),
]


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def map_domain_error(exc: CastlineError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


async def castline_exception_handler(request: Request, exc: CastlineError) -> JSONResponse:
    status_code, code = map_domain_error(exc)
    if status_code >= 500:
        logger.error("api_domain_error code=%s path=%s error=%s", code, request.url.path, exc)
    payload = error_response(request=request, code=code, message=str(exc) or code)
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Structured details let the admin UI point at the offending field.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients.
    logger.exception("api_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
