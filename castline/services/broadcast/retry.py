from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Awaitable, Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from castline.core.errors import BroadcastNotFoundError, BroadcastReentrancyError, InvalidTransitionError
from castline.domain.models import BroadcastJob
from castline.domain.state import JobStatus
from castline.persistence.db import SessionLocal
from castline.persistence.repos import broadcast_jobs as jobs_repo
from castline.persistence.repos import recipients as recipients_repo
from castline.services.audit import record_broadcast_event
from castline.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReprocessResult:
    job: BroadcastJob
    requeued: int
    driver_token: str | None = None


class RetryCoordinator:
    """Re-admits a job's failed recipients and hands the job back to a driver.

    Sent recipients are never touched, so a reprocess can only reach the
    addresses that failed in the previous pass.
    """

    def __init__(
        self,
        *,
        drive: Callable[[str, str], Awaitable[object]],
        session_factory: Callable[[], AsyncSession] = SessionLocal,
    ) -> None:
        self._drive = drive
        self._session_factory = session_factory

    async def reprocess(
        self,
        job_id: str,
        *,
        actor_id: str | None = None,
        request_id: str | None = None,
    ) -> ReprocessResult:
        token = uuid4().hex
        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, job_id)
            if job is None:
                raise BroadcastNotFoundError(f"Broadcast job {job_id} not found")
            if job.failed_count == 0:
                # Nothing failed: leave the job exactly as it is.
                return ReprocessResult(job=job, requeued=0)
            if job.status == JobStatus.PROCESSING.value:
                raise BroadcastReentrancyError(f"Broadcast job {job_id} is already processing")
            if job.status != JobStatus.FAILED.value:
                raise InvalidTransitionError(f"Cannot reprocess broadcast job {job_id} in status {job.status}")

            # Status flip, ledger reset and counter resync share one transaction.
            claimed = await jobs_repo.claim_for_reprocess(
                session,
                job_id,
                driver_token=token,
                now=datetime.now(timezone.utc),
            )
            if not claimed:
                await session.rollback()
                raise BroadcastReentrancyError(f"Broadcast job {job_id} was claimed by another caller")
            requeued = await recipients_repo.requeue_failed(session, job_id)
            await jobs_repo.sync_counters_from_ledger(session, job_id)
            await session.commit()

        logger.info("broadcast_job_reprocess job_id=%s requeued=%s", job_id, requeued)
        increment_counter("broadcast.recipients_requeued", requeued)
        await record_broadcast_event(
            job_id=job_id,
            event_type="broadcast.job.reprocessed",
            actor_id=actor_id,
            request_id=request_id,
            metadata={"requeued": requeued},
        )
        await self._drive(job_id, token)
        async with self._session_factory() as session:
            refreshed = await jobs_repo.get_job(session, job_id)
        return ReprocessResult(job=refreshed or job, requeued=requeued, driver_token=token)
