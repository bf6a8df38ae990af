from __future__ import annotations

from datetime import datetime
from typing import Sequence
from uuid import uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from castline.domain.models import BroadcastJob, BroadcastRecipient
from castline.domain.state import JobStatus, RecipientStatus


async def insert_recipients(
    session: AsyncSession,
    *,
    job_id: str,
    rows: Sequence[dict[str, str | None]],
    chunk_size: int = 500,
) -> int:
    # Flush in chunks so very large audiences do not build one giant statement.
    chunk = max(1, int(chunk_size))
    inserted = 0
    for offset in range(0, len(rows), chunk):
        for row in rows[offset : offset + chunk]:
            session.add(
                BroadcastRecipient(
                    id=uuid4().hex,
                    job_id=job_id,
                    recipient_address=row["recipient_address"],
                    user_id=row["user_id"],
                    email=row.get("email"),
                    locale=row["locale"],
                    status=RecipientStatus.PENDING.value,
                    attempt_count=0,
                )
            )
            inserted += 1
        await session.flush()
    return inserted


async def fetch_pending(
    session: AsyncSession,
    job_id: str,
    *,
    after_id: str | None,
    limit: int,
) -> list[BroadcastRecipient]:
    # Keyset pagination by id keeps each pass moving forward even if a row stays pending.
    stmt = select(BroadcastRecipient).where(
        BroadcastRecipient.job_id == job_id,
        BroadcastRecipient.status == RecipientStatus.PENDING.value,
    )
    if after_id is not None:
        stmt = stmt.where(BroadcastRecipient.id > after_id)
    result = await session.execute(stmt.order_by(BroadcastRecipient.id.asc()).limit(max(1, limit)))
    return list(result.scalars().all())


async def mark_outcome(
    session: AsyncSession,
    recipient_id: str,
    *,
    job_id: str,
    driver_token: str,
    status: RecipientStatus,
    error_message: str | None,
    now: datetime,
) -> bool:
    # Only pending rows are written, so a row is counted once. A displaced driver cannot record
    # outcomes; sends already in flight when the job was cancelled still land.
    owned = (
        select(BroadcastJob.id)
        .where(
            BroadcastJob.id == job_id,
            or_(
                and_(
                    BroadcastJob.status == JobStatus.PROCESSING.value,
                    BroadcastJob.driver_token == driver_token,
                ),
                BroadcastJob.status == JobStatus.CANCELLED.value,
            ),
        )
        .exists()
    )
    result = await session.execute(
        update(BroadcastRecipient)
        .where(
            BroadcastRecipient.id == recipient_id,
            BroadcastRecipient.job_id == job_id,
            BroadcastRecipient.status == RecipientStatus.PENDING.value,
            owned,
        )
        .values(
            status=status.value,
            error_message=error_message if status is RecipientStatus.FAILED else None,
            attempted_at=now,
            attempt_count=BroadcastRecipient.attempt_count + 1,
        )
    )
    return result.rowcount == 1


async def requeue_failed(session: AsyncSession, job_id: str) -> int:
    # Sent rows are never touched; only the current failed set goes back to pending.
    result = await session.execute(
        update(BroadcastRecipient)
        .where(
            BroadcastRecipient.job_id == job_id,
            BroadcastRecipient.status == RecipientStatus.FAILED.value,
        )
        .values(status=RecipientStatus.PENDING.value, error_message=None)
    )
    return int(result.rowcount or 0)


async def count_by_status(session: AsyncSession, job_id: str) -> dict[str, int]:
    rows = (
        await session.execute(
            select(BroadcastRecipient.status, func.count())
            .where(BroadcastRecipient.job_id == job_id)
            .group_by(BroadcastRecipient.status)
        )
    ).all()
    counts = {status.value: 0 for status in RecipientStatus}
    for status, count in rows:
        counts[str(status)] = int(count)
    return counts


async def list_recipients(
    session: AsyncSession,
    job_id: str,
    *,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[BroadcastRecipient]:
    stmt = select(BroadcastRecipient).where(BroadcastRecipient.job_id == job_id)
    if status:
        stmt = stmt.where(BroadcastRecipient.status == status)
    result = await session.execute(
        stmt.order_by(BroadcastRecipient.created_at.asc(), BroadcastRecipient.id.asc())
        .limit(max(1, limit))
        .offset(max(0, offset))
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
