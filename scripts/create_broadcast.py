from __future__ import annotations

import argparse
import asyncio
import json
import sys

from castline.core.errors import CastlineError
from castline.core.logging import configure_logging
from castline.persistence.db import SessionLocal
from castline.services.broadcast.jobs import create_broadcast_job
from castline.services.broadcast.queue import trigger_broadcast_job


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create a broadcast job and optionally trigger it")
    parser.add_argument("--channel", required=True, choices=["notification", "email"])
    parser.add_argument("--payload-file", required=True, help="JSON file with the locale-keyed payload")
    parser.add_argument("--all-users", action="store_true", help="Target every active user")
    parser.add_argument("--plan", action="append", default=[], help="Plan tier to target; repeatable")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--batch-delay-ms", type=int, default=None)
    parser.add_argument("--no-trigger", action="store_true", help="Leave the job pending")
    parser.add_argument("--created-by", default="cli")
    return parser


async def _create(args: argparse.Namespace) -> int:
    with open(args.payload_file, encoding="utf-8") as handle:
        payload = json.load(handle)
    async with SessionLocal() as session:
        job = await create_broadcast_job(
            session,
            channel=args.channel,
            payload=payload,
            target_all_users=args.all_users,
            target_plans=args.plan,
            batch_size=args.batch_size,
            batch_delay_ms=args.batch_delay_ms,
            created_by=args.created_by,
        )
    print(f"job_id={job.id} status={job.status}")
    if not args.no_trigger:
        result = await trigger_broadcast_job(job.id)
        print(f"trigger action={result.action}")
    return 0


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_create(args))
    except (CastlineError, OSError, ValueError) as exc:
        print(f"create_broadcast failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
