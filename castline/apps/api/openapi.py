from __future__ import annotations

from typing import Any

from castline.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Admin access required"),
    404: _response("Not found", code="NOT_FOUND", message="Broadcast job not found"),
    409: _response(
        "Conflict",
        code="BROADCAST_ALREADY_RUNNING",
        message="Broadcast job is already processing",
    ),
    422: _response(
        "Validation error",
        code="BROADCAST_INVALID",
        message="Select at least one plan or target all users",
    ),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _response(
        "Audience resolution failed",
        code="AUDIENCE_RESOLUTION_FAILED",
        message="identity store unavailable during audience resolution",
    ),
}
