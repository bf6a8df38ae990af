from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import Any, AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from castline.domain.models import AuditEvent
from castline.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Substring match on keys: "recipient_email" and "smtp_password" are both caught.
_SENSITIVE_KEY_FRAGMENTS = ("api_key", "authorization", "token", "secret", "password", "content", "email")
REDACTED = "[REDACTED]"


def sanitize_metadata(value: Any) -> Any:
    """Return a copy of ``value`` with credential and contact fields masked.

    Nested dicts and lists keep their shape so audit consumers can still see
    which fields were present on the request.
    """
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    if not isinstance(value, dict):
        return value
    masked: dict[str, Any] = {}
    for raw_key, item in value.items():
        key = str(raw_key)
        lowered = key.lower()
        if any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS):
            masked[key] = REDACTED
        else:
            masked[key] = sanitize_metadata(item)
    return masked


def get_request_id(request: Request | None) -> str | None:
    if request is None:
        return None
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")


@asynccontextmanager
async def _audit_session(session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
    if session is not None:
        yield session
        return
    async with SessionLocal() as owned:
        yield owned


async def record_event(
    *,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    session: AsyncSession | None = None,
) -> None:
    # A lost audit row is logged, never raised into the broadcast or request path.
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    async with _audit_session(session) as audit_session:
        try:
            audit_session.add(event)
            await audit_session.commit()
        except SQLAlchemyError as exc:
            await audit_session.rollback()
            logger.warning("audit_write_failed event_type=%s resource_id=%s", event_type, resource_id, exc_info=exc)


async def record_broadcast_event(
    *,
    job_id: str,
    event_type: str,
    outcome: str = "success",
    actor_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
) -> None:
    # Lifecycle events written by the coordinator run outside any request session.
    await record_event(
        actor_type="admin" if actor_id else "system",
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type="broadcast_job",
        resource_id=job_id,
        request_id=request_id,
        metadata=metadata,
        error_code=error_code,
    )
