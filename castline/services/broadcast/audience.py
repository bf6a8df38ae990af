from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, Iterable

from sqlalchemy import and_, exists, false, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from castline.core.config import Settings, get_settings
from castline.core.errors import AudienceResolutionError
from castline.domain.models import Subscription, User
from castline.domain.payloads import normalize_locale
from castline.domain.state import BroadcastChannel
from castline.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Users without an active subscription are on the free tier.
FREE_PLAN_ID = "free"
ACTIVE_SUBSCRIPTION = "active"


@dataclass(frozen=True)
class ResolvedRecipient:
    user_id: str
    email: str | None
    locale: str

    def address(self, channel: BroadcastChannel) -> str | None:
        # Notifications are addressed by user id, email by the normalized mailbox.
        if channel is BroadcastChannel.NOTIFICATION:
            return self.user_id
        if not self.email or not self.email.strip():
            return None
        return self.email.strip().lower()


def normalize_plans(plans: Iterable[str]) -> list[str]:
    # Deduplicate plan ids while keeping the order the admin chose.
    seen: set[str] = set()
    ordered: list[str] = []
    for plan in plans:
        value = str(plan).strip().lower()
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def _has_active_subscription():
    return exists().where(
        Subscription.user_id == User.id,
        Subscription.status == ACTIVE_SUBSCRIPTION,
    )


def _audience_filter(*, target_all_users: bool, target_plans: list[str]):
    # OR semantics across plans; a user matching several plans still yields one row.
    if target_all_users:
        return User.is_active.is_(True)
    clauses = []
    paid_plans = [plan for plan in target_plans if plan != FREE_PLAN_ID]
    if paid_plans:
        clauses.append(
            exists().where(
                Subscription.user_id == User.id,
                Subscription.status == ACTIVE_SUBSCRIPTION,
                Subscription.plan_id.in_(paid_plans),
            )
        )
    if FREE_PLAN_ID in target_plans:
        clauses.append(~_has_active_subscription())
    if not clauses:
        return false()
    return and_(User.is_active.is_(True), or_(*clauses))


class AudienceResolver:
    """Turns a job's targeting into a concrete, deduplicated recipient set.

    Resolution reads the identity store once; callers persist the result so
    later plan changes never alter a running job.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession] = SessionLocal,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def resolve(
        self,
        *,
        target_all_users: bool,
        target_plans: Iterable[str],
        channel: BroadcastChannel,
    ) -> list[ResolvedRecipient]:
        plans = normalize_plans(target_plans)
        stmt = (
            select(User.id, User.email, User.preferred_language)
            .where(_audience_filter(target_all_users=target_all_users, target_plans=plans))
            .order_by(User.id.asc())
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            logger.error("audience_resolution_failed plans=%s all_users=%s", plans, target_all_users)
            raise AudienceResolutionError("identity store unavailable during audience resolution") from exc

        recipients: list[ResolvedRecipient] = []
        seen: set[str] = set()
        skipped = 0
        for user_id, email, language in rows:
            recipient = ResolvedRecipient(
                user_id=str(user_id),
                email=email,
                locale=normalize_locale(language, settings=self._settings),
            )
            address = recipient.address(channel)
            if address is None:
                skipped += 1
                continue
            if address in seen:
                continue
            seen.add(address)
            recipients.append(recipient)
        if skipped:
            logger.warning("audience_recipients_without_address channel=%s skipped=%s", channel.value, skipped)
        return recipients


async def count_users_by_plan(session: AsyncSession) -> list[dict[str, int | str]]:
    # Active users per active plan plus the implicit free tier.
    paid_rows = (
        await session.execute(
            select(Subscription.plan_id, func.count(func.distinct(User.id)))
            .join(User, User.id == Subscription.user_id)
            .where(User.is_active.is_(True), Subscription.status == ACTIVE_SUBSCRIPTION)
            .group_by(Subscription.plan_id)
            .order_by(Subscription.plan_id.asc())
        )
    ).all()
    free_count = (
        await session.execute(
            select(func.count(User.id)).where(User.is_active.is_(True), ~_has_active_subscription())
        )
    ).scalar_one()
    counts: list[dict[str, int | str]] = [{"plan_id": FREE_PLAN_ID, "user_count": int(free_count or 0)}]
    counts.extend(
        {"plan_id": str(plan_id), "user_count": int(count)}
        for plan_id, count in paid_rows
        if plan_id != FREE_PLAN_ID
    )
    return counts


async def preview_audience(
    *,
    target_all_users: bool,
    target_plans: Iterable[str],
    channel: BroadcastChannel,
    resolver: AudienceResolver | None = None,
) -> int:
    # Same resolution path as a real start, so the preview matches what would be sent.
    resolver = resolver or AudienceResolver()
    recipients = await resolver.resolve(
        target_all_users=target_all_users,
        target_plans=target_plans,
        channel=channel,
    )
    return len(recipients)
