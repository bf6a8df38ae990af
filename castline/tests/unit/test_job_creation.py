from __future__ import annotations

from sqlalchemy import func, select
import pytest

from castline.core.errors import BroadcastValidationError
from castline.domain.models import AuditEvent, BroadcastJob
from castline.domain.state import BroadcastChannel
from castline.persistence.db import SessionLocal
from castline.services.broadcast.jobs import list_broadcast_jobs, resolve_pacing
from castline.tests.utils.factories import EMAIL_PAYLOAD, make_job


async def _job_count() -> int:
    async with SessionLocal() as session:
        return int((await session.execute(select(func.count()).select_from(BroadcastJob))).scalar_one())


@pytest.mark.asyncio
async def test_new_job_is_pending_with_channel_defaults() -> None:
    job = await make_job(channel="email")

    assert job.status == "pending"
    assert (job.batch_size, job.batch_delay_ms) == (20, 2000)
    assert job.total_recipients == 0
    assert job.processed_count == job.success_count == job.failed_count == 0
    assert job.target_plans == []
    assert job.payload_json["subject"] == {"pt": "Assunto", "en": "Subject", "es": "Assunto"}


@pytest.mark.asyncio
async def test_creation_is_audited() -> None:
    job = await make_job(target_all_users=False, target_plans=["pro"])
    async with SessionLocal() as session:
        events = (
            await session.execute(select(AuditEvent).where(AuditEvent.resource_id == job.id))
        ).scalars().all()
    assert [event.event_type for event in events] == ["broadcast.job.created"]
    assert events[0].metadata_json["target_plans"] == ["pro"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"target_all_users": False, "target_plans": []},
        {"channel": "sms"},
        {"payload": {"title": {"en": "only english"}, "message": {"en": "x"}}},
        {"batch_size": 0},
        {"batch_delay_ms": -5},
    ],
)
async def test_invalid_requests_persist_nothing(overrides) -> None:
    with pytest.raises(BroadcastValidationError):
        await make_job(**overrides)
    assert await _job_count() == 0


@pytest.mark.asyncio
async def test_all_user_jobs_drop_plan_filters() -> None:
    job = await make_job(channel="email", payload=EMAIL_PAYLOAD, target_all_users=True, target_plans=["pro"])
    assert job.target_all_users is True
    assert job.target_plans == []


@pytest.mark.asyncio
async def test_list_jobs_filters_by_status() -> None:
    first = await make_job()
    await make_job()
    async with SessionLocal() as session:
        pending = await list_broadcast_jobs(session, status="pending", limit=10)
        done = await list_broadcast_jobs(session, status="completed", limit=10)
        with pytest.raises(BroadcastValidationError):
            await list_broadcast_jobs(session, status="bogus")
    assert len(pending) == 2
    assert first.id in {job.id for job in pending}
    assert done == []


def test_pacing_bounds() -> None:
    assert resolve_pacing(BroadcastChannel.NOTIFICATION, batch_size=None, batch_delay_ms=None) == (100, 500)
    assert resolve_pacing(BroadcastChannel.EMAIL, batch_size=5, batch_delay_ms=0) == (5, 0)
    with pytest.raises(BroadcastValidationError):
        resolve_pacing(BroadcastChannel.EMAIL, batch_size=1001, batch_delay_ms=None)
    with pytest.raises(BroadcastValidationError):
        resolve_pacing(BroadcastChannel.EMAIL, batch_size=None, batch_delay_ms=600001)
