from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from castline.domain.models import BroadcastJob, BroadcastRecipient
from castline.domain.state import JobStatus, RecipientStatus


async def create_job(
    session: AsyncSession,
    *,
    job_id: str,
    channel: str,
    target_all_users: bool,
    target_plans: list[str],
    payload_json: dict[str, Any],
    batch_size: int,
    batch_delay_ms: int,
    created_by: str | None,
) -> BroadcastJob:
    # New jobs always start pending with zeroed counters.
    job = BroadcastJob(
        id=job_id,
        channel=channel,
        status=JobStatus.PENDING.value,
        target_all_users=target_all_users,
        target_plans=target_plans,
        payload_json=payload_json,
        batch_size=batch_size,
        batch_delay_ms=batch_delay_ms,
        total_recipients=0,
        processed_count=0,
        success_count=0,
        failed_count=0,
        attempt_round=0,
        created_by=created_by,
    )
    session.add(job)
    return job


async def get_job(session: AsyncSession, job_id: str) -> BroadcastJob | None:
    # Always hit the database so pollers observe the latest persisted checkpoint.
    result = await session.execute(
        select(BroadcastJob).where(BroadcastJob.id == job_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_job_status(session: AsyncSession, job_id: str) -> tuple[str, str | None] | None:
    # Column-level read avoids identity-map caching inside long-lived driver sessions.
    row = (
        await session.execute(
            select(BroadcastJob.status, BroadcastJob.driver_token).where(BroadcastJob.id == job_id)
        )
    ).one_or_none()
    if row is None:
        return None
    return str(row[0]), row[1]


async def list_jobs(
    session: AsyncSession,
    *,
    status: str | None = None,
    limit: int = 10,
) -> list[BroadcastJob]:
    stmt = select(BroadcastJob)
    if status:
        stmt = stmt.where(BroadcastJob.status == status)
    result = await session.execute(
        stmt.order_by(BroadcastJob.created_at.desc(), BroadcastJob.id.desc()).limit(max(1, limit))
    )
    return list(result.scalars().all())


async def claim_for_start(session: AsyncSession, job_id: str, *, driver_token: str, now: datetime) -> bool:
    # Compare-and-set on status so only one caller can move a pending job into processing.
    result = await session.execute(
        update(BroadcastJob)
        .where(BroadcastJob.id == job_id, BroadcastJob.status == JobStatus.PENDING.value)
        .values(
            status=JobStatus.PROCESSING.value,
            driver_token=driver_token,
            heartbeat_at=now,
            started_at=now,
            attempt_round=BroadcastJob.attempt_round + 1,
            updated_at=now,
        )
    )
    return result.rowcount == 1


async def claim_for_reprocess(session: AsyncSession, job_id: str, *, driver_token: str, now: datetime) -> bool:
    # Reopen only failed jobs that still carry failed recipients.
    result = await session.execute(
        update(BroadcastJob)
        .where(
            BroadcastJob.id == job_id,
            BroadcastJob.status == JobStatus.FAILED.value,
            BroadcastJob.failed_count > 0,
        )
        .values(
            status=JobStatus.PROCESSING.value,
            driver_token=driver_token,
            heartbeat_at=now,
            completed_at=None,
            attempt_round=BroadcastJob.attempt_round + 1,
            updated_at=now,
        )
    )
    return result.rowcount == 1


async def take_over(
    session: AsyncSession,
    job_id: str,
    *,
    previous_token: str | None,
    driver_token: str,
    now: datetime,
) -> bool:
    # Rotate the driver token only if nobody else has already taken the job over.
    stmt = update(BroadcastJob).where(
        BroadcastJob.id == job_id,
        BroadcastJob.status == JobStatus.PROCESSING.value,
    )
    if previous_token is None:
        stmt = stmt.where(BroadcastJob.driver_token.is_(None))
    else:
        stmt = stmt.where(BroadcastJob.driver_token == previous_token)
    result = await session.execute(stmt.values(driver_token=driver_token, heartbeat_at=now, updated_at=now))
    return result.rowcount == 1


async def touch_heartbeat(session: AsyncSession, job_id: str, *, driver_token: str, now: datetime) -> bool:
    result = await session.execute(
        update(BroadcastJob)
        .where(
            BroadcastJob.id == job_id,
            BroadcastJob.status == JobStatus.PROCESSING.value,
            BroadcastJob.driver_token == driver_token,
        )
        .values(heartbeat_at=now, updated_at=now)
    )
    return result.rowcount == 1


async def record_audience(
    session: AsyncSession,
    job_id: str,
    *,
    driver_token: str,
    total_recipients: int,
    now: datetime,
) -> bool:
    # total_recipients is written exactly once, together with the ledger rows.
    result = await session.execute(
        update(BroadcastJob)
        .where(
            BroadcastJob.id == job_id,
            BroadcastJob.status == JobStatus.PROCESSING.value,
            BroadcastJob.driver_token == driver_token,
            BroadcastJob.audience_resolved_at.is_(None),
        )
        .values(total_recipients=total_recipients, audience_resolved_at=now, heartbeat_at=now, updated_at=now)
    )
    return result.rowcount == 1


async def increment_counters(session: AsyncSession, job_id: str, *, success: bool) -> None:
    # Atomic SQL increments keep counters correct without reading them back first.
    values: dict[str, Any] = {"processed_count": BroadcastJob.processed_count + 1}
    if success:
        values["success_count"] = BroadcastJob.success_count + 1
    else:
        values["failed_count"] = BroadcastJob.failed_count + 1
    await session.execute(update(BroadcastJob).where(BroadcastJob.id == job_id).values(**values))


async def sync_counters_from_ledger(session: AsyncSession, job_id: str) -> dict[str, int]:
    # Recompute rolling counters from durable ledger rows.
    rows = (
        await session.execute(
            select(BroadcastRecipient.status, func.count())
            .where(BroadcastRecipient.job_id == job_id)
            .group_by(BroadcastRecipient.status)
        )
    ).all()
    counts = {str(status): int(count) for status, count in rows}
    sent = counts.get(RecipientStatus.SENT.value, 0)
    failed = counts.get(RecipientStatus.FAILED.value, 0)
    await session.execute(
        update(BroadcastJob)
        .where(BroadcastJob.id == job_id)
        .values(processed_count=sent + failed, success_count=sent, failed_count=failed)
    )
    return {"processed_count": sent + failed, "success_count": sent, "failed_count": failed}


async def finish(
    session: AsyncSession,
    job_id: str,
    *,
    driver_token: str,
    status: JobStatus,
    now: datetime,
    last_error: str | None = None,
) -> bool:
    # Only the current driver may move a processing job to a terminal status.
    result = await session.execute(
        update(BroadcastJob)
        .where(
            BroadcastJob.id == job_id,
            BroadcastJob.status == JobStatus.PROCESSING.value,
            BroadcastJob.driver_token == driver_token,
        )
        .values(
            status=status.value,
            completed_at=now,
            driver_token=None,
            heartbeat_at=None,
            last_error=last_error,
            updated_at=now,
        )
    )
    return result.rowcount == 1


async def cancel(session: AsyncSession, job_id: str, *, now: datetime) -> bool:
    # The active driver observes the status flip between batches and stops.
    result = await session.execute(
        update(BroadcastJob)
        .where(
            BroadcastJob.id == job_id,
            BroadcastJob.status.in_((JobStatus.PENDING.value, JobStatus.PROCESSING.value)),
        )
        .values(
            status=JobStatus.CANCELLED.value,
            cancelled_at=now,
            completed_at=now,
            driver_token=None,
            heartbeat_at=None,
            updated_at=now,
        )
    )
    return result.rowcount == 1


async def list_processing(session: AsyncSession, *, limit: int) -> list[BroadcastJob]:
    # Candidates for stale-driver recovery, oldest heartbeat first.
    result = await session.execute(
        select(BroadcastJob)
        .where(BroadcastJob.status == JobStatus.PROCESSING.value)
        .order_by(BroadcastJob.heartbeat_at.asc(), BroadcastJob.created_at.asc())
        .limit(max(1, limit))
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
