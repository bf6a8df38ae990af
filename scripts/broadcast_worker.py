from __future__ import annotations

import asyncio

from castline.core.logging import configure_logging
from castline.services.broadcast.recovery import run_resume_loop


async def _main() -> None:
    # Standalone recovery loop for deployments that drive jobs in background mode instead of arq.
    configure_logging()
    await run_resume_loop()


if __name__ == "__main__":
    asyncio.run(_main())
