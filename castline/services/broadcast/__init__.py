from castline.services.broadcast.audience import AudienceResolver, ResolvedRecipient, count_users_by_plan
from castline.services.broadcast.channels import (
    DeliveryChannel,
    DeliveryResult,
    DeliveryTarget,
    EmailChannel,
    NotificationChannel,
    get_channel,
)
from castline.services.broadcast.coordinator import BroadcastCoordinator, TriggerResult
from castline.services.broadcast.jobs import create_broadcast_job, list_broadcast_jobs
from castline.services.broadcast.pacer import BatchPacer, BatchReport, PacerOutcome
from castline.services.broadcast.progress import ProgressSnapshot, get_progress, stream_progress
from castline.services.broadcast.retry import ReprocessResult, RetryCoordinator

__all__ = [
    "AudienceResolver",
    "BatchPacer",
    "BatchReport",
    "BroadcastCoordinator",
    "DeliveryChannel",
    "DeliveryResult",
    "DeliveryTarget",
    "EmailChannel",
    "NotificationChannel",
    "PacerOutcome",
    "ProgressSnapshot",
    "ReprocessResult",
    "ResolvedRecipient",
    "RetryCoordinator",
    "TriggerResult",
    "count_users_by_plan",
    "create_broadcast_job",
    "get_channel",
    "get_progress",
    "list_broadcast_jobs",
    "stream_progress",
]
