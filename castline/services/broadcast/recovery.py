from __future__ import annotations

import asyncio
import logging

from castline.core.config import get_settings
from castline.services.broadcast.queue import dispatch_drive, get_coordinator


logger = logging.getLogger(__name__)


async def resume_stale_jobs(*, limit: int | None = None) -> list[str]:
    # Claim processing jobs whose driver died and hand them to fresh drivers.
    claimed = await get_coordinator().claim_stale_jobs(limit=limit)
    for job_id, token in claimed:
        await dispatch_drive(job_id, token)
    if claimed:
        logger.info("broadcast_stale_jobs_resumed count=%s", len(claimed))
    return [job_id for job_id, _token in claimed]


async def run_resume_loop() -> None:
    settings = get_settings()
    interval_s = max(1, int(settings.broadcast_resume_poll_interval_s))
    while True:
        try:
            await resume_stale_jobs(limit=settings.broadcast_resume_batch_size)
        except Exception:  # noqa: BLE001 - keep the loop alive while surfacing failures in worker logs
            logger.exception("broadcast resume loop failed")
        await asyncio.sleep(interval_s)
