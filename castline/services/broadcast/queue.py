from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import RedisSettings

from castline.core.config import get_settings
from castline.core.errors import CastlineError
from castline.services.broadcast.coordinator import BroadcastCoordinator, TriggerResult
from castline.services.broadcast.retry import ReprocessResult, RetryCoordinator


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Strong references keep background drivers alive until they finish.
_background_tasks: set[asyncio.Task] = set()


def _queue_key(queue_name: str) -> str:
    # arq's queue naming convention, used for depth checks.
    return f"arq:queue:{queue_name}"


def _execution_mode() -> str:
    return get_settings().broadcast_execution_mode.lower()


def get_coordinator() -> BroadcastCoordinator:
    return BroadcastCoordinator()


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.broadcast_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # None signals that Redis is unavailable.
    settings = get_settings()
    if _execution_mode() != "queue":
        return 0
    try:
        redis = await get_redis_pool()
        return int(await redis.llen(_queue_key(settings.broadcast_queue_name)))
    except Exception:  # noqa: BLE001 - health reporting tolerates degraded Redis
        return None


async def run_broadcast_job(job_id: str, driver_token: str) -> str:
    # Out-of-band driver entrypoint; job-level errors are already persisted on the job row.
    try:
        job = await get_coordinator().run_claimed(job_id, driver_token)
    except CastlineError as exc:
        logger.warning("broadcast_driver_stopped job_id=%s error=%s", job_id, exc)
        return f"error:{type(exc).__name__}"
    return job.status


def _log_background_failure(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("broadcast_background_driver_failed", exc_info=exc)


async def dispatch_drive(job_id: str, driver_token: str) -> str:
    """Hand a claimed job to a driver according to the configured execution mode."""
    mode = _execution_mode()
    if mode == "inline":
        # Inline mode surfaces job-level errors to the caller, which tests rely on.
        await get_coordinator().run_claimed(job_id, driver_token)
        return "inline"
    if mode == "background":
        task = asyncio.create_task(run_broadcast_job(job_id, driver_token))
        _background_tasks.add(task)
        task.add_done_callback(_log_background_failure)
        return "background"
    settings = get_settings()
    redis = await get_redis_pool()
    await redis.enqueue_job(
        "run_broadcast_job",
        job_id,
        driver_token,
        # One arq job per driver claim keeps duplicate enqueues harmless.
        _job_id=f"broadcast:{job_id}:{driver_token}",
        _queue_name=settings.broadcast_queue_name,
    )
    logger.info("broadcast_job_enqueued job_id=%s queue=%s", job_id, settings.broadcast_queue_name)
    return "queue"


async def trigger_broadcast_job(job_id: str) -> TriggerResult:
    result = await get_coordinator().trigger(job_id)
    if result.driver_token is not None:
        await dispatch_drive(job_id, result.driver_token)
    return result


async def reprocess_broadcast_job(
    job_id: str,
    *,
    actor_id: str | None = None,
    request_id: str | None = None,
) -> ReprocessResult:
    retry = RetryCoordinator(drive=dispatch_drive)
    return await retry.reprocess(job_id, actor_id=actor_id, request_id=request_id)


async def drain_background_tasks() -> None:
    # Await in-process drivers, e.g. on API shutdown.
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)
