from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping sqlite-backed tests on the generic JSON type.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# sqlite only autoincrements INTEGER primary keys.
BigIntPk = BigInteger().with_variant(Integer(), "sqlite")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Free-form language tag as chosen in the profile (e.g. pt-BR, en).
    preferred_language: Mapped[str | None] = mapped_column(String, nullable=True)
    # Inactive users are never part of a broadcast audience.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_status_plan", "status", "plan_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    plan_id: Mapped[str] = mapped_column(String)
    # Only active subscriptions place a user in a paid plan tier.
    status: Mapped[str] = mapped_column(String, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())


class InAppNotification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        # One broadcast notification per user keeps resumed passes from duplicating rows.
        UniqueConstraint("broadcast_job_id", "user_id", name="uq_notifications_broadcast_user"),
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"))
    broadcast_job_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("broadcast_jobs.id"), nullable=True
    )
    notification_type: Mapped[str] = mapped_column(String, default="announcement")
    # Locale-keyed content; clients pick the entry matching the viewer language.
    title_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    message_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    action_url: Mapped[str | None] = mapped_column(String, nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())


class BroadcastJob(Base):
    __tablename__ = "broadcast_jobs"
    __table_args__ = (
        Index("ix_broadcast_jobs_status_heartbeat", "status", "heartbeat_at"),
        Index("ix_broadcast_jobs_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # notification | email; immutable after creation.
    channel: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="pending")
    target_all_users: Mapped[bool] = mapped_column(Boolean, default=False)
    target_plans: Mapped[list[str]] = mapped_column(JsonType, default=list)
    # Channel-specific, locale-keyed content; opaque to the coordinator.
    payload_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    batch_size: Mapped[int] = mapped_column(Integer)
    batch_delay_ms: Mapped[int] = mapped_column(Integer)
    # Invariant: processed_count == success_count + failed_count <= total_recipients.
    total_recipients: Mapped[int] = mapped_column(Integer, default=0)
    processed_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    # Number of delivery passes started (initial start plus each reprocess).
    attempt_round: Mapped[int] = mapped_column(Integer, default=0)
    # Identifies the single driver allowed to pace this job; rotated on every claim.
    driver_token: Mapped[str | None] = mapped_column(String, nullable=True)
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    audience_resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set only on terminal statuses.
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class BroadcastRecipient(Base):
    __tablename__ = "broadcast_recipients"
    __table_args__ = (
        UniqueConstraint("job_id", "recipient_address", name="uq_broadcast_recipients_job_address"),
        Index("ix_broadcast_recipients_job_status", "job_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("broadcast_jobs.id"))
    # User id for in-app notifications, lower-cased email for email broadcasts.
    recipient_address: Mapped[str] = mapped_column(String)
    user_id: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Resolved at audience time so later profile edits do not change a running job.
    locale: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="pending")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Keep metadata sanitized before it lands here.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())
