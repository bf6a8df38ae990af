from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Awaitable, Callable
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from castline.core.config import Settings, get_settings
from castline.core.errors import (
    AudienceResolutionError,
    BroadcastNotFoundError,
    BroadcastReentrancyError,
    EmailConfigMissingError,
    InvalidTransitionError,
)
from castline.domain.models import BroadcastJob, BroadcastRecipient
from castline.domain.state import BroadcastChannel, JobStatus, RecipientStatus, ensure_transition, final_status
from castline.persistence.db import SessionLocal
from castline.persistence.repos import broadcast_jobs as jobs_repo
from castline.persistence.repos import recipients as recipients_repo
from castline.services.audit import record_broadcast_event
from castline.services.broadcast.audience import AudienceResolver
from castline.services.broadcast.channels import DeliveryChannel, DeliveryResult, DeliveryTarget, get_channel
from castline.services.broadcast.pacer import BatchPacer, BatchReport
from castline.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes; everything is written in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _new_driver_token() -> str:
    return uuid4().hex


def _target_from_row(row: BroadcastRecipient) -> DeliveryTarget:
    return DeliveryTarget(
        recipient_id=row.id,
        job_id=row.job_id,
        user_id=row.user_id,
        address=row.recipient_address,
        email=row.email,
        locale=row.locale,
    )


@dataclass(frozen=True)
class TriggerResult:
    job_id: str
    # started | resumed | already_running | terminal
    action: str
    driver_token: str | None = None

    @property
    def triggered(self) -> bool:
        return self.driver_token is not None


class BroadcastCoordinator:
    """Owns the broadcast job lifecycle.

    Exactly one driver paces a job at a time. A driver is identified by the
    ``driver_token`` it wrote when claiming the job with a compare-and-set on
    ``status``; every later write (heartbeat, audience, finish) is conditioned
    on that token, so a displaced or duplicate driver can never finish a job
    it no longer owns.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession] = SessionLocal,
        resolver: AudienceResolver | None = None,
        channel_factory: Callable[[BroadcastChannel], DeliveryChannel] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        self._resolver = resolver or AudienceResolver(session_factory=session_factory, settings=self._settings)
        self._channel_factory = channel_factory or (lambda channel: get_channel(channel, settings=self._settings))
        self._sleep = sleep

    async def get_job(self, job_id: str) -> BroadcastJob:
        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, job_id)
        if job is None:
            raise BroadcastNotFoundError(f"Broadcast job {job_id} not found")
        return job

    def is_stale(self, job: BroadcastJob, *, now: datetime | None = None) -> bool:
        # The allowance covers the pacing sleep, during which no heartbeat is written.
        if job.heartbeat_at is None:
            return True
        now = now or _utc_now()
        allowance = timedelta(
            seconds=self._settings.broadcast_heartbeat_stale_after_s + job.batch_delay_ms / 1000.0
        )
        return _as_utc(job.heartbeat_at) + allowance < now

    async def claim_start(self, job_id: str) -> str:
        """Move a pending job to processing and return the new driver token."""
        token = _new_driver_token()
        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, job_id)
            if job is None:
                raise BroadcastNotFoundError(f"Broadcast job {job_id} not found")
            if job.status == JobStatus.PROCESSING.value:
                raise BroadcastReentrancyError(f"Broadcast job {job_id} is already processing")
            if job.status != JobStatus.PENDING.value:
                raise InvalidTransitionError(f"Cannot start broadcast job {job_id} from status {job.status}")
            claimed = await jobs_repo.claim_for_start(session, job_id, driver_token=token, now=_utc_now())
            if not claimed:
                await session.rollback()
                # Lost the race: report what the winner did.
                state = await jobs_repo.get_job_status(session, job_id)
                if state is not None and state[0] == JobStatus.PROCESSING.value:
                    raise BroadcastReentrancyError(f"Broadcast job {job_id} is already processing")
                raise InvalidTransitionError(f"Cannot start broadcast job {job_id}")
            await session.commit()
        logger.info("broadcast_job_started job_id=%s channel=%s", job_id, job.channel)
        increment_counter("broadcast.jobs_started")
        await record_broadcast_event(job_id=job_id, event_type="broadcast.job.started")
        return token

    async def claim_stale(self, job_id: str) -> str | None:
        # Take over a processing job whose driver stopped heartbeating.
        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, job_id)
            if job is None:
                raise BroadcastNotFoundError(f"Broadcast job {job_id} not found")
            if job.status != JobStatus.PROCESSING.value or not self.is_stale(job):
                return None
            token = _new_driver_token()
            taken = await jobs_repo.take_over(
                session,
                job_id,
                previous_token=job.driver_token,
                driver_token=token,
                now=_utc_now(),
            )
            if not taken:
                await session.rollback()
                return None
            await session.commit()
        logger.warning("broadcast_job_taken_over job_id=%s", job_id)
        increment_counter("broadcast.jobs_resumed")
        await record_broadcast_event(job_id=job_id, event_type="broadcast.job.resumed")
        return token

    async def claim_stale_jobs(self, *, limit: int | None = None) -> list[tuple[str, str]]:
        limit = limit or self._settings.broadcast_resume_batch_size
        async with self._session_factory() as session:
            candidates = await jobs_repo.list_processing(session, limit=limit)
        now = _utc_now()
        claimed: list[tuple[str, str]] = []
        for job in candidates:
            if not self.is_stale(job, now=now):
                continue
            token = await self.claim_stale(job.id)
            if token is not None:
                claimed.append((job.id, token))
        return claimed

    async def trigger(self, job_id: str) -> TriggerResult:
        """Idempotent begin-or-resume signal."""
        job = await self.get_job(job_id)
        if job.status == JobStatus.PENDING.value:
            try:
                token = await self.claim_start(job_id)
            except BroadcastReentrancyError:
                return TriggerResult(job_id=job_id, action="already_running")
            return TriggerResult(job_id=job_id, action="started", driver_token=token)
        if job.status == JobStatus.PROCESSING.value:
            token = await self.claim_stale(job_id)
            if token is None:
                return TriggerResult(job_id=job_id, action="already_running")
            return TriggerResult(job_id=job_id, action="resumed", driver_token=token)
        return TriggerResult(job_id=job_id, action="terminal")

    async def start(self, job_id: str) -> BroadcastJob:
        token = await self.claim_start(job_id)
        return await self.run_claimed(job_id, token)

    async def run_claimed(self, job_id: str, driver_token: str) -> BroadcastJob:
        # Resolve the audience once, then pace deliveries from the persisted ledger.
        job = await self.get_job(job_id)
        if job.status == JobStatus.CANCELLED.value:
            return job
        if job.status != JobStatus.PROCESSING.value or job.driver_token != driver_token:
            raise BroadcastReentrancyError(f"Broadcast job {job_id} is driven by another worker")
        if job.audience_resolved_at is None:
            await self._resolve_audience(job, driver_token)
        return await self.drive(job_id, driver_token)

    async def _resolve_audience(self, job: BroadcastJob, driver_token: str) -> None:
        channel = BroadcastChannel(job.channel)
        try:
            recipients = await self._resolver.resolve(
                target_all_users=job.target_all_users,
                target_plans=job.target_plans or [],
                channel=channel,
            )
        except AudienceResolutionError as exc:
            async with self._session_factory() as session:
                await jobs_repo.finish(
                    session,
                    job.id,
                    driver_token=driver_token,
                    status=JobStatus.FAILED,
                    now=_utc_now(),
                    last_error=str(exc),
                )
                await session.commit()
            logger.error("broadcast_audience_failed job_id=%s", job.id)
            increment_counter("broadcast.jobs_failed")
            await record_broadcast_event(
                job_id=job.id,
                event_type="broadcast.job.failed",
                outcome="failure",
                error_code="AUDIENCE_RESOLUTION_FAILED",
            )
            raise

        rows = [
            {
                "recipient_address": recipient.address(channel),
                "user_id": recipient.user_id,
                "email": recipient.email,
                "locale": recipient.locale,
            }
            for recipient in recipients
        ]
        async with self._session_factory() as session:
            try:
                await recipients_repo.insert_recipients(
                    session,
                    job_id=job.id,
                    rows=rows,
                    chunk_size=self._settings.broadcast_ledger_insert_chunk,
                )
                recorded = await jobs_repo.record_audience(
                    session,
                    job.id,
                    driver_token=driver_token,
                    total_recipients=len(rows),
                    now=_utc_now(),
                )
                if not recorded:
                    # Cancelled or taken over while resolving; the ledger is discarded.
                    await session.rollback()
                    logger.info("broadcast_audience_discarded job_id=%s", job.id)
                    return
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                logger.exception("broadcast_ledger_write_failed job_id=%s", job.id)
                raise
        logger.info("broadcast_audience_resolved job_id=%s total=%s", job.id, len(rows))
        await record_broadcast_event(
            job_id=job.id,
            event_type="broadcast.audience.resolved",
            metadata={"total_recipients": len(rows)},
        )

    async def _record_outcome(
        self,
        session: AsyncSession,
        job_id: str,
        driver_token: str,
        target: DeliveryTarget,
        result: DeliveryResult,
    ) -> None:
        # Ledger row, counters and heartbeat commit together; processed_count never runs ahead of the ledger.
        status = RecipientStatus.SENT if result.success else RecipientStatus.FAILED
        now = _utc_now()
        try:
            updated = await recipients_repo.mark_outcome(
                session,
                target.recipient_id,
                job_id=job_id,
                driver_token=driver_token,
                status=status,
                error_message=result.error,
                now=now,
            )
            if updated:
                await jobs_repo.increment_counters(session, job_id, success=result.success)
                await jobs_repo.touch_heartbeat(session, job_id, driver_token=driver_token, now=now)
            else:
                logger.warning(
                    "broadcast_outcome_discarded job_id=%s recipient_id=%s", job_id, target.recipient_id
                )
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.exception("broadcast_outcome_write_failed job_id=%s recipient_id=%s", job_id, target.recipient_id)
            raise
        increment_counter("broadcast.sent" if result.success else "broadcast.failed")

    async def drive(self, job_id: str, driver_token: str) -> BroadcastJob:
        job = await self.get_job(job_id)
        if job.status == JobStatus.CANCELLED.value:
            return job
        if job.status != JobStatus.PROCESSING.value or job.driver_token != driver_token:
            raise BroadcastReentrancyError(f"Broadcast job {job_id} is driven by another worker")

        try:
            channel = self._channel_factory(BroadcastChannel(job.channel))
        except EmailConfigMissingError as exc:
            # Without a transport the job cannot make progress; fail it instead of stalling.
            async with self._session_factory() as session:
                await jobs_repo.finish(
                    session,
                    job_id,
                    driver_token=driver_token,
                    status=JobStatus.FAILED,
                    now=_utc_now(),
                    last_error=str(exc),
                )
                await session.commit()
            logger.error("broadcast_channel_unavailable job_id=%s channel=%s", job_id, job.channel)
            raise
        payload = dict(job.payload_json or {})
        pacer: BatchPacer[DeliveryTarget] = BatchPacer(
            batch_size=job.batch_size,
            batch_delay_ms=job.batch_delay_ms,
            max_in_flight=self._settings.broadcast_max_in_flight,
            sleep=self._sleep,
        )
        lock = asyncio.Lock()

        async with self._session_factory() as ledger:

            async def fetch_batch(last: DeliveryTarget | None, limit: int) -> list[DeliveryTarget]:
                async with lock:
                    rows = await recipients_repo.fetch_pending(
                        ledger,
                        job_id,
                        after_id=last.recipient_id if last else None,
                        limit=limit,
                    )
                    await ledger.commit()
                return [_target_from_row(row) for row in rows]

            async def dispatch(target: DeliveryTarget) -> bool | None:
                # Re-assert ownership before each send; a cancelled or taken-over job sends nothing more.
                async with lock:
                    owned = await jobs_repo.touch_heartbeat(
                        ledger, job_id, driver_token=driver_token, now=_utc_now()
                    )
                    await ledger.commit()
                if not owned:
                    return None
                result = await channel.send(target, payload)
                async with lock:
                    await self._record_outcome(ledger, job_id, driver_token, target, result)
                return result.success

            async def should_continue() -> bool:
                async with lock:
                    state = await jobs_repo.get_job_status(ledger, job_id)
                    await ledger.commit()
                return state == (JobStatus.PROCESSING.value, driver_token)

            async def on_batch_complete(report: BatchReport) -> None:
                async with lock:
                    await jobs_repo.touch_heartbeat(ledger, job_id, driver_token=driver_token, now=_utc_now())
                    await ledger.commit()
                logger.info(
                    "broadcast_batch_dispatched job_id=%s batch=%s size=%s sent=%s failed=%s skipped=%s",
                    job_id,
                    report.index,
                    report.size,
                    report.sent,
                    report.failed,
                    report.skipped,
                )

            outcome = await pacer.run(
                fetch_batch=fetch_batch,
                dispatch=dispatch,
                should_continue=should_continue,
                on_batch_complete=on_batch_complete,
            )
            if outcome.stopped or any(report.skipped for report in outcome.batches):
                logger.info("broadcast_job_interrupted job_id=%s dispatched=%s", job_id, outcome.dispatched)
                return await self.get_job(job_id)
            await self._finalize(ledger, job_id, driver_token)
        return await self.get_job(job_id)

    async def _finalize(self, session: AsyncSession, job_id: str, driver_token: str) -> None:
        counts = await recipients_repo.count_by_status(session, job_id)
        if counts[RecipientStatus.PENDING.value] > 0:
            # Leave the job processing; the resume loop picks it up once the heartbeat goes stale.
            logger.warning(
                "broadcast_job_pending_after_pass job_id=%s pending=%s",
                job_id,
                counts[RecipientStatus.PENDING.value],
            )
            return
        failed = counts[RecipientStatus.FAILED.value]
        status = final_status(failed_count=failed)
        finished = await jobs_repo.finish(
            session,
            job_id,
            driver_token=driver_token,
            status=status,
            now=_utc_now(),
            last_error=f"{failed} recipient deliveries failed" if failed else None,
        )
        await session.commit()
        if not finished:
            logger.info("broadcast_job_finish_skipped job_id=%s", job_id)
            return
        logger.info(
            "broadcast_job_finished job_id=%s status=%s sent=%s failed=%s",
            job_id,
            status.value,
            counts[RecipientStatus.SENT.value],
            failed,
        )
        increment_counter(f"broadcast.jobs_{status.value}")
        await record_broadcast_event(
            job_id=job_id,
            event_type=f"broadcast.job.{status.value}",
            outcome="success" if status is JobStatus.COMPLETED else "failure",
            metadata={"success_count": counts[RecipientStatus.SENT.value], "failed_count": failed},
        )

    async def cancel(
        self,
        job_id: str,
        *,
        actor_id: str | None = None,
        request_id: str | None = None,
    ) -> BroadcastJob:
        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, job_id)
            if job is None:
                raise BroadcastNotFoundError(f"Broadcast job {job_id} not found")
            ensure_transition(job.status, JobStatus.CANCELLED)
            cancelled = await jobs_repo.cancel(session, job_id, now=_utc_now())
            if not cancelled:
                await session.rollback()
                raise InvalidTransitionError(f"Broadcast job {job_id} finished before it could be cancelled")
            await session.commit()
        logger.info("broadcast_job_cancelled job_id=%s", job_id)
        increment_counter("broadcast.jobs_cancelled")
        await record_broadcast_event(
            job_id=job_id,
            event_type="broadcast.job.cancelled",
            actor_id=actor_id,
            request_id=request_id,
        )
        return await self.get_job(job_id)
