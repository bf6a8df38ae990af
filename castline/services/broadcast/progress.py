from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
import time
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from castline.core.errors import BroadcastNotFoundError
from castline.domain.models import BroadcastJob, BroadcastRecipient
from castline.domain.state import RecipientStatus, is_terminal
from castline.persistence.db import SessionLocal
from castline.persistence.repos import broadcast_jobs as jobs_repo
from castline.persistence.repos import recipients as recipients_repo


@dataclass(frozen=True)
class ProgressSnapshot:
    job_id: str
    status: str
    total_recipients: int
    processed_count: int
    success_count: int
    failed_count: int
    updated_at: datetime | None = None

    @property
    def terminal(self) -> bool:
        return is_terminal(self.status)

    def state_key(self) -> tuple[str, int, int, int, int]:
        return (self.status, self.total_recipients, self.processed_count, self.success_count, self.failed_count)

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        payload["is_terminal"] = self.terminal
        return payload


def snapshot_from_job(job: BroadcastJob) -> ProgressSnapshot:
    return ProgressSnapshot(
        job_id=job.id,
        status=job.status,
        total_recipients=job.total_recipients,
        processed_count=job.processed_count,
        success_count=job.success_count,
        failed_count=job.failed_count,
        updated_at=job.updated_at,
    )


async def get_progress(session: AsyncSession, job_id: str) -> ProgressSnapshot:
    # Reads the last persisted checkpoint; nothing is estimated in memory.
    job = await jobs_repo.get_job(session, job_id)
    if job is None:
        raise BroadcastNotFoundError(f"Broadcast job {job_id} not found")
    return snapshot_from_job(job)


async def list_failed_recipients(
    session: AsyncSession,
    job_id: str,
    *,
    limit: int = 100,
    offset: int = 0,
) -> list[BroadcastRecipient]:
    if await jobs_repo.get_job(session, job_id) is None:
        raise BroadcastNotFoundError(f"Broadcast job {job_id} not found")
    return await recipients_repo.list_recipients(
        session,
        job_id,
        status=RecipientStatus.FAILED.value,
        limit=limit,
        offset=offset,
    )


async def stream_progress(
    job_id: str,
    *,
    interval_s: float,
    heartbeat_s: float,
    session_factory: Callable[[], AsyncSession] = SessionLocal,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> AsyncIterator[tuple[str, dict[str, Any]]]:
    """Yield ``(event, data)`` pairs for a job until it reaches a terminal status.

    A ``progress`` event is emitted whenever the persisted snapshot changes and
    a ``heartbeat`` event when nothing changed for ``heartbeat_s`` seconds.
    """
    last_key: tuple[str, int, int, int, int] | None = None
    last_emit = clock()
    while True:
        async with session_factory() as session:
            snapshot = await get_progress(session, job_id)
        if snapshot.state_key() != last_key:
            last_key = snapshot.state_key()
            last_emit = clock()
            yield "progress", snapshot.as_dict()
        elif clock() - last_emit >= heartbeat_s:
            last_emit = clock()
            yield "heartbeat", {"job_id": job_id}
        if snapshot.terminal:
            return
        await sleep(interval_s)
