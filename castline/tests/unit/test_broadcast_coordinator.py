from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from castline.core.config import Settings
from castline.core.errors import AudienceResolutionError, BroadcastReentrancyError, InvalidTransitionError
from castline.domain.models import BroadcastJob
from castline.services.broadcast.audience import AudienceResolver
from castline.services.broadcast.coordinator import BroadcastCoordinator
from castline.services.broadcast.retry import RetryCoordinator
from castline.tests.utils.factories import (
    RecordingChannel,
    SleepRecorder,
    age_heartbeat,
    count_notifications,
    fetch_job,
    ledger_rows,
    make_job,
    seed_user,
    seed_users,
)


class _DriverCrash(Exception):
    pass


class _HookedSleep(SleepRecorder):
    """Records pacing sleeps and runs a hook inside each one."""

    def __init__(self, hook) -> None:
        super().__init__()
        self._hook = hook

    async def __call__(self, seconds: float) -> None:
        await super().__call__(seconds)
        await self._hook(len(self.calls))


class _UnavailableSession:
    async def __aenter__(self) -> _UnavailableSession:
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False

    async def execute(self, *args, **kwargs):
        raise OperationalError("SELECT users", {}, ConnectionError("identity store down"))


def _coordinator(channel: RecordingChannel, sleep=None) -> BroadcastCoordinator:
    return BroadcastCoordinator(channel_factory=lambda _channel: channel, sleep=sleep or SleepRecorder())


def _assert_counters(job: BroadcastJob) -> None:
    assert job.processed_count == job.success_count + job.failed_count
    assert job.processed_count <= job.total_recipients


@pytest.mark.asyncio
async def test_empty_audience_completes_immediately() -> None:
    job = await make_job(target_all_users=False, target_plans=["pro"])
    channel = RecordingChannel()
    sleeper = SleepRecorder()

    finished = await _coordinator(channel, sleeper).start(job.id)

    assert finished.status == "completed"
    assert finished.total_recipients == 0
    assert finished.completed_at is not None
    assert channel.calls == []
    assert sleeper.calls == []


@pytest.mark.asyncio
async def test_notification_broadcast_writes_one_row_per_user() -> None:
    await seed_users(5)
    job = await make_job(batch_size=2, batch_delay_ms=100)
    sleeper = SleepRecorder()

    finished = await BroadcastCoordinator(sleep=sleeper).start(job.id)

    assert finished.status == "completed"
    assert (finished.total_recipients, finished.success_count, finished.failed_count) == (5, 5, 0)
    assert await count_notifications(job.id) == 5
    assert sleeper.calls == [0.1, 0.1]
    assert finished.driver_token is None


@pytest.mark.asyncio
async def test_email_failures_then_reprocess_only_resends_failed() -> None:
    user_ids = await seed_users(45)
    failing = [f"{user_id}@example.com" for user_id in user_ids[:5]]
    job = await make_job(channel="email", batch_size=20, batch_delay_ms=2000)
    first_channel = RecordingChannel(failing=failing)
    sleeper = SleepRecorder()

    first = await _coordinator(first_channel, sleeper).start(job.id)

    assert first.status == "failed"
    assert (first.total_recipients, first.processed_count) == (45, 45)
    assert (first.success_count, first.failed_count) == (40, 5)
    assert sleeper.calls == [2.0, 2.0]
    assert sorted(first_channel.calls) == sorted(f"{user_id}@example.com" for user_id in user_ids)
    failed_rows = [row for row in await ledger_rows(job.id) if row.status == "failed"]
    assert sorted(row.recipient_address for row in failed_rows) == sorted(failing)
    assert all(row.error_message for row in failed_rows)

    retry_channel = RecordingChannel()
    retry_coordinator = _coordinator(retry_channel)
    result = await RetryCoordinator(drive=retry_coordinator.run_claimed).reprocess(job.id)

    assert result.requeued == 5
    assert result.job.status == "completed"
    assert (result.job.success_count, result.job.failed_count, result.job.processed_count) == (45, 0, 45)
    assert result.job.attempt_round == 2
    assert sorted(retry_channel.calls) == sorted(failing)
    rows = await ledger_rows(job.id)
    assert len(rows) == 45
    assert {row.status for row in rows} == {"sent"}
    retried = {row.recipient_address: row.attempt_count for row in rows if row.recipient_address in failing}
    assert set(retried.values()) == {2}


@pytest.mark.asyncio
async def test_counters_hold_between_batches() -> None:
    await seed_users(7)
    job = await make_job(channel="email", batch_size=3, batch_delay_ms=50)
    channel = RecordingChannel(failing=["user001@example.com", "user005@example.com"])
    snapshots: list[BroadcastJob] = []

    async def check(_calls: int) -> None:
        current = await fetch_job(job.id)
        _assert_counters(current)
        snapshots.append(current)

    await _coordinator(channel, _HookedSleep(check)).start(job.id)

    assert [snapshot.processed_count for snapshot in snapshots] == [3, 6]
    finished = await fetch_job(job.id)
    _assert_counters(finished)
    assert (finished.processed_count, finished.failed_count) == (7, 2)


@pytest.mark.asyncio
async def test_second_start_while_processing_is_rejected() -> None:
    await seed_users(4)
    job = await make_job(channel="email", batch_size=2, batch_delay_ms=10)
    channel = RecordingChannel()
    errors: list[Exception] = []

    async def start_again(_calls: int) -> None:
        before = await fetch_job(job.id)
        try:
            await coordinator.start(job.id)
        except BroadcastReentrancyError as exc:
            errors.append(exc)
        after = await fetch_job(job.id)
        assert (after.processed_count, after.driver_token) == (before.processed_count, before.driver_token)

    coordinator = _coordinator(channel, _HookedSleep(start_again))
    finished = await coordinator.start(job.id)

    assert len(errors) == 1
    assert finished.status == "completed"
    assert len(channel.calls) == 4


@pytest.mark.asyncio
async def test_cancel_stops_the_driver_between_batches() -> None:
    await seed_users(6)
    job = await make_job(channel="email", batch_size=2, batch_delay_ms=10)
    channel = RecordingChannel()

    async def cancel_after_first_batch(calls: int) -> None:
        if calls == 1:
            await coordinator.cancel(job.id, actor_id="admin-1")

    coordinator = _coordinator(channel, _HookedSleep(cancel_after_first_batch))
    finished = await coordinator.start(job.id)

    assert finished.status == "cancelled"
    assert finished.cancelled_at is not None
    assert finished.processed_count == 2
    assert len(channel.calls) == 2
    with pytest.raises(InvalidTransitionError):
        await coordinator.cancel(job.id)
    with pytest.raises(InvalidTransitionError):
        await coordinator.start(job.id)


@pytest.mark.asyncio
async def test_cancel_pending_job_never_sends() -> None:
    await seed_users(2)
    job = await make_job()
    channel = RecordingChannel()
    coordinator = _coordinator(channel)

    cancelled = await coordinator.cancel(job.id)
    result = await coordinator.trigger(job.id)

    assert cancelled.status == "cancelled"
    assert result.action == "terminal"
    assert not result.triggered
    assert channel.calls == []


@pytest.mark.asyncio
async def test_audience_failure_fails_the_job() -> None:
    await seed_users(3)
    job = await make_job()
    coordinator = BroadcastCoordinator(
        resolver=AudienceResolver(session_factory=_UnavailableSession),
        channel_factory=lambda _channel: RecordingChannel(),
        sleep=SleepRecorder(),
    )

    with pytest.raises(AudienceResolutionError):
        await coordinator.start(job.id)

    failed = await fetch_job(job.id)
    assert failed.status == "failed"
    assert failed.total_recipients == 0
    assert "identity store" in (failed.last_error or "")
    assert await ledger_rows(job.id) == []


@pytest.mark.asyncio
async def test_stale_driver_is_taken_over_and_finishes_remaining_recipients() -> None:
    await seed_users(5)
    job = await make_job(channel="email", batch_size=2, batch_delay_ms=10)
    first_channel = RecordingChannel()

    async def crash(_calls: int) -> None:
        raise _DriverCrash()

    with pytest.raises(_DriverCrash):
        await _coordinator(first_channel, _HookedSleep(crash)).start(job.id)

    stranded = await fetch_job(job.id)
    assert stranded.status == "processing"
    assert stranded.processed_count == 2
    old_token = stranded.driver_token

    second_channel = RecordingChannel()
    coordinator = _coordinator(second_channel)
    fresh = await coordinator.trigger(job.id)
    assert fresh.action == "already_running"

    await age_heartbeat(job.id)
    resumed = await coordinator.trigger(job.id)
    assert resumed.action == "resumed"
    assert resumed.driver_token not in (None, old_token)

    with pytest.raises(BroadcastReentrancyError):
        await coordinator.drive(job.id, old_token)

    finished = await coordinator.run_claimed(job.id, resumed.driver_token)
    assert finished.status == "completed"
    assert (finished.total_recipients, finished.success_count) == (5, 5)
    assert len(second_channel.calls) == 3
    assert set(first_channel.calls).isdisjoint(second_channel.calls)


@pytest.mark.asyncio
async def test_claim_stale_jobs_only_picks_stale_ones() -> None:
    await seed_user("u1")
    stale = await make_job()
    fresh = await make_job()
    coordinator = _coordinator(RecordingChannel())
    await coordinator.claim_start(stale.id)
    await coordinator.claim_start(fresh.id)
    await age_heartbeat(stale.id)

    claimed = await coordinator.claim_stale_jobs(limit=10)

    assert [job_id for job_id, _token in claimed] == [stale.id]


@pytest.mark.asyncio
async def test_trigger_starts_pending_job_once() -> None:
    job = await make_job()
    coordinator = _coordinator(RecordingChannel())

    first = await coordinator.trigger(job.id)
    second = await coordinator.trigger(job.id)

    assert first.action == "started" and first.triggered
    assert second.action == "already_running" and not second.triggered
    claimed = await fetch_job(job.id)
    assert claimed.driver_token == first.driver_token
    assert claimed.attempt_round == 1


@pytest.mark.asyncio
async def test_stale_allowance_covers_the_pacing_delay() -> None:
    job = await make_job(batch_delay_ms=60000)
    coordinator = _coordinator(RecordingChannel())
    now = datetime.now(timezone.utc)
    job.heartbeat_at = now - timedelta(seconds=150)
    assert not coordinator.is_stale(job, now=now)
    job.heartbeat_at = now - timedelta(seconds=200)
    assert coordinator.is_stale(job, now=now)


@pytest.mark.asyncio
async def test_slow_batch_keeps_its_driver_alive() -> None:
    # One batch outlasts the stale window, but every send refreshes the heartbeat.
    settings = Settings(
        broadcast_heartbeat_stale_after_s=1,
        broadcast_send_timeout_ms=900,
        broadcast_max_in_flight=1,
    )
    await seed_users(2)
    job = await make_job(channel="email", batch_size=2, batch_delay_ms=0)
    first_channel = RecordingChannel(delay_s=0.8, timeout_ms=900)
    second_channel = RecordingChannel()
    first = BroadcastCoordinator(
        channel_factory=lambda _channel: first_channel, sleep=SleepRecorder(), settings=settings
    )
    second = BroadcastCoordinator(
        channel_factory=lambda _channel: second_channel, sleep=SleepRecorder(), settings=settings
    )

    running = asyncio.create_task(first.start(job.id))
    await asyncio.sleep(1.2)
    late = await second.trigger(job.id)
    finished = await running

    assert late.action == "already_running"
    assert finished.status == "completed"
    assert sorted(first_channel.calls) == ["user000@example.com", "user001@example.com"]
    assert second_channel.calls == []
    assert {row.attempt_count for row in await ledger_rows(job.id)} == {1}


class _TakeoverChannel(RecordingChannel):
    """Lets another worker take the job over while the first send is in flight."""

    def __init__(self, takeover) -> None:
        super().__init__()
        self._takeover = takeover

    async def _send(self, target, payload) -> None:
        await super()._send(target, payload)
        if len(self.calls) == 1:
            await self._takeover()


@pytest.mark.asyncio
async def test_displaced_driver_stops_sending_and_cannot_record_outcomes() -> None:
    await seed_users(3)
    job = await make_job(channel="email", batch_size=3, batch_delay_ms=0)
    tokens: list[str] = []
    successor_channel = RecordingChannel()
    successor = _coordinator(successor_channel)

    async def take_over() -> None:
        await age_heartbeat(job.id)
        token = await successor.claim_stale(job.id)
        assert token is not None
        tokens.append(token)

    displaced_channel = _TakeoverChannel(take_over)
    coordinator = BroadcastCoordinator(
        channel_factory=lambda _channel: displaced_channel,
        sleep=SleepRecorder(),
        settings=Settings(broadcast_max_in_flight=1),
    )

    interrupted = await coordinator.start(job.id)

    assert interrupted.status == "processing"
    assert interrupted.driver_token == tokens[0]
    assert len(displaced_channel.calls) == 1
    assert (interrupted.processed_count, interrupted.success_count) == (0, 0)
    assert {row.status for row in await ledger_rows(job.id)} == {"pending"}

    finished = await successor.run_claimed(job.id, tokens[0])

    assert finished.status == "completed"
    assert (finished.processed_count, finished.success_count) == (3, 3)
    assert len(successor_channel.calls) == 3
    assert {row.attempt_count for row in await ledger_rows(job.id)} == {1}


@pytest.mark.asyncio
async def test_outcomes_in_flight_at_cancel_are_still_recorded() -> None:
    await seed_users(3)
    job = await make_job(channel="email", batch_size=3, batch_delay_ms=0)

    async def cancel() -> None:
        await coordinator.cancel(job.id)

    channel = _TakeoverChannel(cancel)
    coordinator = BroadcastCoordinator(
        channel_factory=lambda _channel: channel,
        sleep=SleepRecorder(),
        settings=Settings(broadcast_max_in_flight=1),
    )

    finished = await coordinator.start(job.id)

    assert finished.status == "cancelled"
    assert len(channel.calls) == 1
    assert (finished.processed_count, finished.success_count) == (1, 1)
    statuses = sorted(row.status for row in await ledger_rows(job.id))
    assert statuses == ["pending", "pending", "sent"]
