"""broadcast jobs, recipient ledger and in-app notifications

Revision ID: 0002_broadcasts
Revises: 0001_init
Create Date: 2026-10-01 09:30:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0002_broadcasts"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "broadcast_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("target_all_users", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("target_plans", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("batch_size", sa.Integer(), nullable=False),
        sa.Column("batch_delay_ms", sa.Integer(), nullable=False),
        sa.Column("total_recipients", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempt_round", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("driver_token", sa.String(), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("audience_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "processed_count = success_count + failed_count",
            name="ck_broadcast_jobs_processed_sum",
        ),
        sa.CheckConstraint(
            "status IN ('pending','processing','completed','failed','cancelled')",
            name="ck_broadcast_jobs_status",
        ),
    )
    # Recovery scans processing jobs by heartbeat age.
    op.create_index("ix_broadcast_jobs_status_heartbeat", "broadcast_jobs", ["status", "heartbeat_at"])
    op.create_index("ix_broadcast_jobs_created_at", "broadcast_jobs", ["created_at"])

    op.create_table(
        "broadcast_recipients",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("job_id", sa.String(), sa.ForeignKey("broadcast_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("recipient_address", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("locale", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("job_id", "recipient_address", name="uq_broadcast_recipients_job_address"),
        sa.CheckConstraint(
            "status IN ('pending','sent','failed')",
            name="ck_broadcast_recipients_status",
        ),
    )
    # The pacer pages pending rows per job; progress queries group by status.
    op.create_index("ix_broadcast_recipients_job_status", "broadcast_recipients", ["job_id", "status"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("broadcast_job_id", sa.String(), sa.ForeignKey("broadcast_jobs.id"), nullable=True),
        sa.Column("notification_type", sa.String(), nullable=False, server_default="announcement"),
        sa.Column("title_json", postgresql.JSONB(), nullable=False),
        sa.Column("message_json", postgresql.JSONB(), nullable=False),
        sa.Column("action_url", sa.String(), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("broadcast_job_id", "user_id", name="uq_notifications_broadcast_user"),
    )
    op.create_index("ix_notifications_user_created", "notifications", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_notifications_user_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_broadcast_recipients_job_status", table_name="broadcast_recipients")
    op.drop_table("broadcast_recipients")
    op.drop_index("ix_broadcast_jobs_created_at", table_name="broadcast_jobs")
    op.drop_index("ix_broadcast_jobs_status_heartbeat", table_name="broadcast_jobs")
    op.drop_table("broadcast_jobs")
