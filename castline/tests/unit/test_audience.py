from __future__ import annotations

import pytest

from castline.domain.state import BroadcastChannel
from castline.persistence.db import SessionLocal
from castline.services.broadcast.audience import (
    AudienceResolver,
    count_users_by_plan,
    normalize_plans,
    preview_audience,
)
from castline.tests.utils.factories import seed_user


async def _resolve(*, plans=(), all_users: bool = False, channel=BroadcastChannel.NOTIFICATION):
    return await AudienceResolver().resolve(
        target_all_users=all_users,
        target_plans=plans,
        channel=channel,
    )


@pytest.mark.asyncio
async def test_plan_union_yields_each_user_once() -> None:
    await seed_user("u-basic", plans=["basic"])
    await seed_user("u-both", plans=["basic", "pro"])
    await seed_user("u-pro", plans=["pro"])
    await seed_user("u-enterprise", plans=["enterprise"])

    recipients = await _resolve(plans=["basic", "pro"])

    assert [recipient.user_id for recipient in recipients] == ["u-basic", "u-both", "u-pro"]


@pytest.mark.asyncio
async def test_free_plan_means_no_active_subscription() -> None:
    await seed_user("u-free")
    await seed_user("u-lapsed", plans=["pro"], subscription_status="cancelled")
    await seed_user("u-pro", plans=["pro"])

    recipients = await _resolve(plans=["free"])

    assert {recipient.user_id for recipient in recipients} == {"u-free", "u-lapsed"}


@pytest.mark.asyncio
async def test_inactive_users_are_never_targeted() -> None:
    await seed_user("u-active")
    await seed_user("u-disabled", is_active=False)

    recipients = await _resolve(all_users=True)

    assert [recipient.user_id for recipient in recipients] == ["u-active"]


@pytest.mark.asyncio
async def test_email_audience_skips_missing_and_duplicate_mailboxes() -> None:
    await seed_user("u1", email="Shared@Example.com")
    await seed_user("u2", email="shared@example.com")
    await seed_user("u3", email=None)
    await seed_user("u4", email="solo@example.com")

    recipients = await _resolve(all_users=True, channel=BroadcastChannel.EMAIL)

    addresses = [recipient.address(BroadcastChannel.EMAIL) for recipient in recipients]
    assert addresses == ["shared@example.com", "solo@example.com"]


@pytest.mark.asyncio
async def test_locale_follows_profile_language() -> None:
    await seed_user("u-en", language="en-US")
    await seed_user("u-fr", language="fr")
    await seed_user("u-none", language=None)

    recipients = {recipient.user_id: recipient.locale for recipient in await _resolve(all_users=True)}

    assert recipients == {"u-en": "en", "u-fr": "pt", "u-none": "pt"}


@pytest.mark.asyncio
async def test_count_users_by_plan_includes_free_tier() -> None:
    await seed_user("u-free")
    await seed_user("u-basic", plans=["basic"])
    await seed_user("u-both", plans=["basic", "pro"])
    await seed_user("u-gone", plans=["pro"], is_active=False)

    async with SessionLocal() as session:
        counts = await count_users_by_plan(session)

    assert counts == [
        {"plan_id": "free", "user_count": 1},
        {"plan_id": "basic", "user_count": 2},
        {"plan_id": "pro", "user_count": 1},
    ]


@pytest.mark.asyncio
async def test_preview_matches_resolution() -> None:
    await seed_user("u1", plans=["pro"])
    await seed_user("u2")
    assert await preview_audience(target_all_users=False, target_plans=["pro"], channel=BroadcastChannel.EMAIL) == 1
    assert await preview_audience(target_all_users=True, target_plans=[], channel=BroadcastChannel.EMAIL) == 2


def test_normalize_plans_dedupes_in_order() -> None:
    assert normalize_plans([" Pro", "basic", "pro", ""]) == ["pro", "basic"]
