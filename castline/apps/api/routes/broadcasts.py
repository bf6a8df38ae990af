from __future__ import annotations

import json
import time
from typing import Any, AsyncGenerator, Literal

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from castline.apps.api.deps import Principal, get_admin_principal, get_db
from castline.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from castline.apps.api.response import SuccessEnvelope, get_request_id, success_response
from castline.core.config import get_settings
from castline.core.errors import AudienceResolutionError, BroadcastNotFoundError, EmailConfigMissingError
from castline.domain.models import BroadcastJob, BroadcastRecipient
from castline.domain.state import RecipientStatus
from castline.persistence.db import get_session
from castline.persistence.repos import broadcast_jobs as jobs_repo
from castline.persistence.repos import recipients as recipients_repo
from castline.services.broadcast.audience import count_users_by_plan, preview_audience
from castline.services.broadcast.jobs import create_broadcast_job, list_broadcast_jobs, parse_channel
from castline.services.broadcast.progress import get_progress, stream_progress
from castline.services.broadcast.queue import get_coordinator, reprocess_broadcast_job, trigger_broadcast_job
from castline.services.telemetry import record_stream_duration

router = APIRouter(prefix="/admin/broadcasts", tags=["broadcasts"], responses=DEFAULT_ERROR_RESPONSES)


class BroadcastCreateRequest(BaseModel):
    channel: Literal["notification", "email"]
    payload: dict[str, Any] = Field(default_factory=dict)
    target_all_users: bool = False
    target_plans: list[str] = Field(default_factory=list)
    # Bounds are enforced by the service so errors share the BROADCAST_INVALID code.
    batch_size: int | None = None
    batch_delay_ms: int | None = None
    trigger: bool = True


def _iso(value: Any) -> str | None:
    return value.isoformat() if value else None


def _job_payload(job: BroadcastJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "channel": job.channel,
        "status": job.status,
        "target_all_users": job.target_all_users,
        "target_plans": list(job.target_plans or []),
        "payload": job.payload_json,
        "batch_size": job.batch_size,
        "batch_delay_ms": job.batch_delay_ms,
        "total_recipients": job.total_recipients,
        "processed_count": job.processed_count,
        "success_count": job.success_count,
        "failed_count": job.failed_count,
        "attempt_round": job.attempt_round,
        "last_error": job.last_error,
        "created_by": job.created_by,
        "created_at": _iso(job.created_at),
        "started_at": _iso(job.started_at),
        "completed_at": _iso(job.completed_at),
        "cancelled_at": _iso(job.cancelled_at),
        "updated_at": _iso(job.updated_at),
    }


def _recipient_payload(row: BroadcastRecipient) -> dict[str, Any]:
    return {
        "id": row.id,
        "job_id": row.job_id,
        "recipient_address": row.recipient_address,
        "user_id": row.user_id,
        "locale": row.locale,
        "status": row.status,
        "error_message": row.error_message,
        "attempt_count": row.attempt_count,
        "attempted_at": _iso(row.attempted_at),
    }


async def _load_job(db: AsyncSession, job_id: str) -> BroadcastJob:
    job = await jobs_repo.get_job(db, job_id)
    if job is None:
        raise BroadcastNotFoundError(f"Broadcast job {job_id} not found")
    return job


def _sse_message(event: str, payload: dict[str, Any]) -> str:
    # One compact JSON line per event.
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"event: {event}\ndata: {data}\n\n"


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def create_broadcast(
    payload: BroadcastCreateRequest,
    request: Request,
    principal: Principal = Depends(get_admin_principal),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    job = await create_broadcast_job(
        db,
        channel=payload.channel,
        payload=payload.payload,
        target_all_users=payload.target_all_users,
        target_plans=payload.target_plans,
        batch_size=payload.batch_size,
        batch_delay_ms=payload.batch_delay_ms,
        created_by=principal.admin_id,
        request_id=get_request_id(request),
    )
    action = None
    if payload.trigger:
        try:
            action = (await trigger_broadcast_job(job.id)).action
        except (AudienceResolutionError, EmailConfigMissingError):
            # The job exists and already records the failure; report it rather than an error envelope.
            action = "failed"
        job = await _load_job(db, job.id)
    data = {"job": _job_payload(job), "trigger_action": action}
    return JSONResponse(
        content=success_response(request=request, data=data),
        status_code=status.HTTP_201_CREATED,
    )


@router.get("", response_model=SuccessEnvelope[dict[str, Any]])
async def list_broadcasts(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=10, ge=1, le=100),
    principal: Principal = Depends(get_admin_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    jobs = await list_broadcast_jobs(db, status=status_filter, limit=limit)
    return success_response(request=request, data={"items": [_job_payload(job) for job in jobs]})


@router.get("/audience", response_model=SuccessEnvelope[dict[str, Any]])
async def audience_preview(
    request: Request,
    channel: str = Query(default="notification"),
    target_all_users: bool = Query(default=False),
    plans: list[str] | None = Query(default=None),
    principal: Principal = Depends(get_admin_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Plan counts always; a deduplicated recipient count once a target is chosen.
    counts = await count_users_by_plan(db)
    recipient_count = None
    if target_all_users or plans:
        recipient_count = await preview_audience(
            target_all_users=target_all_users,
            target_plans=plans or [],
            channel=parse_channel(channel),
        )
    return success_response(request=request, data={"plans": counts, "recipient_count": recipient_count})


@router.get("/{job_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_broadcast(
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_admin_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    job = await _load_job(db, job_id)
    return success_response(request=request, data=_job_payload(job))


@router.get("/{job_id}/progress", response_model=SuccessEnvelope[dict[str, Any]])
async def get_broadcast_progress(
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_admin_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    snapshot = await get_progress(db, job_id)
    data = snapshot.as_dict()
    # Advertise the cadence polling clients should use while the job is live.
    data["poll_interval_s"] = get_settings().progress_poll_interval_s
    return success_response(request=request, data=data)


@router.get("/{job_id}/recipients", response_model=SuccessEnvelope[dict[str, Any]])
async def list_broadcast_recipients(
    job_id: str,
    request: Request,
    status_filter: RecipientStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_admin_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _load_job(db, job_id)
    rows = await recipients_repo.list_recipients(
        db,
        job_id,
        status=status_filter.value if status_filter else None,
        limit=limit,
        offset=offset,
    )
    counts = await recipients_repo.count_by_status(db, job_id)
    data = {"items": [_recipient_payload(row) for row in rows], "counts": counts, "limit": limit, "offset": offset}
    return success_response(request=request, data=data)


@router.post("/{job_id}/trigger", response_model=SuccessEnvelope[dict[str, Any]])
async def trigger_broadcast(
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_admin_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await trigger_broadcast_job(job_id)
    job = await _load_job(db, job_id)
    data = {"triggered": result.triggered, "action": result.action, "job": _job_payload(job)}
    return success_response(request=request, data=data)


@router.post("/{job_id}/reprocess", response_model=SuccessEnvelope[dict[str, Any]])
async def reprocess_broadcast(
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_admin_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await reprocess_broadcast_job(
        job_id,
        actor_id=principal.admin_id,
        request_id=get_request_id(request),
    )
    job = await _load_job(db, job_id)
    return success_response(request=request, data={"requeued": result.requeued, "job": _job_payload(job)})


@router.post("/{job_id}/cancel", response_model=SuccessEnvelope[dict[str, Any]])
async def cancel_broadcast(
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_admin_principal),
) -> dict[str, Any]:
    job = await get_coordinator().cancel(
        job_id,
        actor_id=principal.admin_id,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=_job_payload(job))


@router.get("/{job_id}/events")
async def stream_broadcast_events(
    job_id: str,
    principal: Principal = Depends(get_admin_principal),
) -> StreamingResponse:
    # Fail fast with an error envelope before the stream opens.
    async with get_session() as session:
        await _load_job(session, job_id)
    settings = get_settings()

    async def event_stream() -> AsyncGenerator[str, None]:
        started = time.monotonic()
        try:
            async for event, data in stream_progress(
                job_id,
                interval_s=settings.progress_stream_interval_s,
                heartbeat_s=settings.progress_stream_heartbeat_s,
            ):
                yield _sse_message(event, data)
            yield _sse_message("done", {"job_id": job_id})
        finally:
            record_stream_duration((time.monotonic() - started) * 1000.0)

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return StreamingResponse(event_stream(), headers=headers, media_type="text/event-stream")
