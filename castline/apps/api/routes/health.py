from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel

from castline.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from castline.apps.api.response import SuccessEnvelope, success_response
from castline.persistence.db import pool_stats
from castline.services.broadcast.queue import get_queue_depth
from castline.services.telemetry import (
    counters_snapshot,
    external_call_stats,
    p95_latency,
    stream_duration_stats,
)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)

_METRICS_WINDOW_S = 300


class HealthResponse(BaseModel):
    status: str
    queue_depth: int | None = None
    db_pool: dict[str, Any] | None = None
    metrics: dict[str, Any] | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # A missing queue depth means Redis is unreachable; the API itself is still up.
    depth = await get_queue_depth()
    payload = HealthResponse(
        status="ok" if depth is not None else "degraded",
        queue_depth=depth,
        db_pool=pool_stats(),
        metrics={
            "admin_p95_latency_ms": p95_latency(_METRICS_WINDOW_S, path_prefix="/v1/admin"),
            "progress_streams": stream_duration_stats(),
            "external_calls": external_call_stats(_METRICS_WINDOW_S),
            "counters": counters_snapshot(),
        },
    )
    return success_response(request=request, data=payload)
