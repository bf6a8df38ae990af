from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from castline.core.config import get_settings
from castline.core.logging import configure_logging
from castline.services.broadcast import queue as broadcast_queue
from castline.services.broadcast.recovery import run_resume_loop


logger = logging.getLogger(__name__)


async def run_broadcast_job(ctx, job_id: str, driver_token: str) -> str:
    # Drive a job the API or the resume loop has already claimed.
    logger.info("broadcast_worker_job job_id=%s try=%s", job_id, ctx.get("job_try", 1))
    return await broadcast_queue.run_broadcast_job(job_id, driver_token)


async def _startup(ctx) -> None:
    # Recover jobs orphaned by crashed drivers even when no API traffic arrives.
    configure_logging()
    ctx["resume_task"] = asyncio.create_task(run_resume_loop())


async def _shutdown(ctx) -> None:
    task = ctx.get("resume_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.broadcast_queue_name
    # A driver pass is not retried by arq; the resume loop owns recovery.
    max_tries = 1
    # Long email jobs can legitimately run for hours.
    job_timeout = 24 * 3600
    functions = [run_broadcast_job]
    on_startup = _startup
    on_shutdown = _shutdown
