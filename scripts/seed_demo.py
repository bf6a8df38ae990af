from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass

from castline.domain.models import Subscription, User
from castline.persistence.db import SessionLocal


@dataclass(frozen=True)
class DemoUser:
    user_id: str
    email: str | None
    language: str | None
    # None means the free tier (no active subscription).
    plan_id: str | None
    is_active: bool = True


def build_demo_users() -> tuple[DemoUser, ...]:
    # Cover every audience branch: paid, free, inactive, missing email, multi-locale.
    return (
        DemoUser("demo-ana", "ana@example.com", "pt-BR", "pro"),
        DemoUser("demo-bruno", "bruno@example.com", "pt", "premium"),
        DemoUser("demo-carla", "carla@example.com", "en", None),
        DemoUser("demo-diego", "diego@example.com", "es", "pro"),
        DemoUser("demo-eva", None, "en", None),
        DemoUser("demo-fabio", "fabio@example.com", None, "premium", is_active=False),
    )


async def seed_demo() -> int:
    async with SessionLocal() as session:
        created = 0
        for demo in build_demo_users():
            if await session.get(User, demo.user_id) is not None:
                continue
            session.add(
                User(
                    id=demo.user_id,
                    email=demo.email,
                    display_name=demo.user_id.removeprefix("demo-").title(),
                    preferred_language=demo.language,
                    is_active=demo.is_active,
                )
            )
            # Flush the user row before inserting subscriptions to satisfy FK constraints.
            await session.flush()
            if demo.plan_id:
                session.add(
                    Subscription(
                        id=f"sub-{demo.user_id}",
                        user_id=demo.user_id,
                        plan_id=demo.plan_id,
                        status="active",
                    )
                )
            created += 1
        await session.commit()
    if created:
        print(f"Seeded {created} demo users.")
    else:
        print("Demo users already seeded; skipping.")
    return 0


def main() -> int:
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
