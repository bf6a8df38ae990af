from __future__ import annotations

import pytest

from castline.core.config import get_settings
from castline.services.broadcast import queue as queue_module
from castline.services.broadcast.recovery import resume_stale_jobs
from castline.tests.utils.factories import age_heartbeat, fetch_job, make_job, seed_users
from castline.workers import broadcast_worker


class _FakeArqPool:
    def __init__(self) -> None:
        self.enqueued: list[tuple[tuple, dict]] = []

    async def enqueue_job(self, function: str, *args, **kwargs) -> None:
        self.enqueued.append(((function, *args), kwargs))

    async def llen(self, key: str) -> int:
        return len(self.enqueued)


@pytest.mark.asyncio
async def test_queue_mode_enqueues_one_arq_job_per_claim(monkeypatch) -> None:
    monkeypatch.setenv("BROADCAST_EXECUTION_MODE", "queue")
    get_settings.cache_clear()
    pool = _FakeArqPool()

    async def fake_pool():
        return pool

    monkeypatch.setattr(queue_module, "get_redis_pool", fake_pool)
    job = await make_job()

    result = await queue_module.trigger_broadcast_job(job.id)

    assert result.action == "started"
    [(args, kwargs)] = pool.enqueued
    assert args == ("run_broadcast_job", job.id, result.driver_token)
    assert kwargs["_job_id"] == f"broadcast:{job.id}:{result.driver_token}"
    assert kwargs["_queue_name"] == "broadcasts"
    assert (await fetch_job(job.id)).status == "processing"
    assert await queue_module.get_queue_depth() == 1


@pytest.mark.asyncio
async def test_worker_drives_claimed_job() -> None:
    await seed_users(2)
    job = await make_job(batch_delay_ms=0)
    token = await queue_module.get_coordinator().claim_start(job.id)

    status = await broadcast_worker.run_broadcast_job({"job_try": 1}, job.id, token)

    assert status == "completed"
    assert (await fetch_job(job.id)).success_count == 2


@pytest.mark.asyncio
async def test_worker_with_superseded_token_stops_quietly() -> None:
    job = await make_job()
    await queue_module.get_coordinator().claim_start(job.id)

    status = await broadcast_worker.run_broadcast_job({}, job.id, "stale-token")

    assert status == "error:BroadcastReentrancyError"
    assert (await fetch_job(job.id)).status == "processing"


@pytest.mark.asyncio
async def test_background_mode_runs_in_process(monkeypatch) -> None:
    monkeypatch.setenv("BROADCAST_EXECUTION_MODE", "background")
    get_settings.cache_clear()
    await seed_users(3)
    job = await make_job(batch_delay_ms=0)

    result = await queue_module.trigger_broadcast_job(job.id)
    await queue_module.drain_background_tasks()

    assert result.action == "started"
    assert (await fetch_job(job.id)).status == "completed"


@pytest.mark.asyncio
async def test_resume_stale_jobs_redrives_orphaned_job() -> None:
    await seed_users(2)
    job = await make_job(batch_delay_ms=0)
    await queue_module.get_coordinator().claim_start(job.id)
    await age_heartbeat(job.id)

    resumed = await resume_stale_jobs(limit=5)

    assert resumed == [job.id]
    finished = await fetch_job(job.id)
    assert finished.status == "completed"
    assert finished.attempt_round == 1
