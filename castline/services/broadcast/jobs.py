from __future__ import annotations

import logging
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from castline.core.config import Settings, get_settings
from castline.core.errors import BroadcastValidationError
from castline.domain.models import BroadcastJob
from castline.domain.payloads import normalize_payload
from castline.domain.state import BroadcastChannel, JobStatus
from castline.persistence.repos import broadcast_jobs as jobs_repo
from castline.services.audit import record_broadcast_event
from castline.services.broadcast.audience import normalize_plans


logger = logging.getLogger(__name__)


def parse_channel(value: str | BroadcastChannel) -> BroadcastChannel:
    try:
        return BroadcastChannel(value)
    except ValueError as exc:
        raise BroadcastValidationError(f"Unsupported broadcast channel: {value}") from exc


def resolve_pacing(
    channel: BroadcastChannel,
    *,
    batch_size: int | None,
    batch_delay_ms: int | None,
    settings: Settings | None = None,
) -> tuple[int, int]:
    # Per-channel defaults: many small in-app inserts, few slow SMTP sends.
    settings = settings or get_settings()
    if channel is BroadcastChannel.NOTIFICATION:
        default_size, default_delay = settings.notification_batch_size, settings.notification_batch_delay_ms
    else:
        default_size, default_delay = settings.email_batch_size, settings.email_batch_delay_ms
    size = default_size if batch_size is None else int(batch_size)
    delay = default_delay if batch_delay_ms is None else int(batch_delay_ms)
    if size <= 0 or size > settings.broadcast_max_batch_size:
        raise BroadcastValidationError(
            f"batch_size must be between 1 and {settings.broadcast_max_batch_size}"
        )
    if delay < 0 or delay > settings.broadcast_max_batch_delay_ms:
        raise BroadcastValidationError(
            f"batch_delay_ms must be between 0 and {settings.broadcast_max_batch_delay_ms}"
        )
    return size, delay


async def create_broadcast_job(
    session: AsyncSession,
    *,
    channel: str | BroadcastChannel,
    payload: dict[str, Any],
    target_all_users: bool,
    target_plans: Iterable[str] = (),
    batch_size: int | None = None,
    batch_delay_ms: int | None = None,
    created_by: str | None = None,
    request_id: str | None = None,
    settings: Settings | None = None,
) -> BroadcastJob:
    # Everything is validated before the insert, so a rejected request persists nothing.
    settings = settings or get_settings()
    resolved_channel = parse_channel(channel)
    plans = normalize_plans(target_plans)
    if not target_all_users and not plans:
        raise BroadcastValidationError("Select at least one plan or target all users")
    normalized_payload = normalize_payload(resolved_channel, payload or {}, settings=settings)
    size, delay = resolve_pacing(
        resolved_channel,
        batch_size=batch_size,
        batch_delay_ms=batch_delay_ms,
        settings=settings,
    )

    job = await jobs_repo.create_job(
        session,
        job_id=uuid4().hex,
        channel=resolved_channel.value,
        target_all_users=target_all_users,
        # Plans are ignored for all-user jobs, so they are not stored.
        target_plans=[] if target_all_users else plans,
        payload_json=normalized_payload,
        batch_size=size,
        batch_delay_ms=delay,
        created_by=created_by,
    )
    await session.commit()
    logger.info(
        "broadcast_job_created job_id=%s channel=%s all_users=%s plans=%s",
        job.id,
        job.channel,
        job.target_all_users,
        job.target_plans,
    )
    await record_broadcast_event(
        job_id=job.id,
        event_type="broadcast.job.created",
        actor_id=created_by,
        request_id=request_id,
        metadata={
            "channel": job.channel,
            "target_all_users": job.target_all_users,
            "target_plans": job.target_plans,
            "batch_size": size,
            "batch_delay_ms": delay,
        },
    )
    return job


async def list_broadcast_jobs(
    session: AsyncSession,
    *,
    status: str | None = None,
    limit: int = 10,
) -> list[BroadcastJob]:
    if status is not None:
        try:
            status = JobStatus(status).value
        except ValueError as exc:
            raise BroadcastValidationError(f"Unknown job status: {status}") from exc
    return await jobs_repo.list_jobs(session, status=status, limit=min(max(1, limit), 100))
