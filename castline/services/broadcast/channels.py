from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
import html
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from castline.core.config import Settings, get_settings
from castline.core.errors import DeliveryError, DeliveryTimeoutError
from castline.domain.models import InAppNotification
from castline.domain.payloads import pick_locale
from castline.domain.state import BroadcastChannel
from castline.persistence.db import SessionLocal
from castline.providers.email.base import EmailTransport, OutboundEmail
from castline.providers.email.factory import get_email_transport


logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 500


@dataclass(frozen=True)
class DeliveryTarget:
    # Immutable view of one ledger row handed to a channel.
    recipient_id: str
    job_id: str
    user_id: str
    address: str
    email: str | None
    locale: str


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> DeliveryResult:
        return cls(success=True)

    @classmethod
    def failure(cls, error: str) -> DeliveryResult:
        return cls(success=False, error=error[:_MAX_ERROR_CHARS] or "delivery failed")


def _error_text(exc: BaseException) -> str:
    message = str(exc).strip()
    if not message:
        return type(exc).__name__
    return f"{type(exc).__name__}: {message}" if not isinstance(exc, DeliveryError) else message


class DeliveryChannel(ABC):
    """Sends one payload to one recipient.

    ``send`` never raises for transport problems: every exception and every
    timeout is converted into a failed ``DeliveryResult`` so a batch keeps
    going. Task cancellation still propagates.
    """

    channel: BroadcastChannel

    def __init__(self, *, timeout_ms: int | None = None, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        resolved = timeout_ms if timeout_ms is not None else self._settings.broadcast_send_timeout_ms
        self._timeout_s = max(0.001, resolved / 1000.0)

    async def send(self, target: DeliveryTarget, payload: dict[str, Any]) -> DeliveryResult:
        try:
            await asyncio.wait_for(self._send(target, payload), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            error = DeliveryTimeoutError(f"send timed out after {int(self._timeout_s * 1000)}ms")
            logger.warning(
                "broadcast_send_timeout channel=%s job_id=%s recipient_id=%s",
                self.channel.value,
                target.job_id,
                target.recipient_id,
            )
            return DeliveryResult.failure(str(error))
        except Exception as exc:  # noqa: BLE001 - recipient failures are recorded on the ledger
            logger.warning(
                "broadcast_send_failed channel=%s job_id=%s recipient_id=%s error=%s",
                self.channel.value,
                target.job_id,
                target.recipient_id,
                type(exc).__name__,
            )
            return DeliveryResult.failure(_error_text(exc))
        return DeliveryResult.ok()

    @abstractmethod
    async def _send(self, target: DeliveryTarget, payload: dict[str, Any]) -> None:
        ...


class NotificationChannel(DeliveryChannel):
    channel = BroadcastChannel.NOTIFICATION

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession] = SessionLocal,
        timeout_ms: int | None = None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(timeout_ms=timeout_ms, settings=settings)
        self._session_factory = session_factory

    async def _send(self, target: DeliveryTarget, payload: dict[str, Any]) -> None:
        # The row carries every locale; the client renders the viewer's language.
        async with self._session_factory() as session:
            session.add(
                InAppNotification(
                    id=uuid4().hex,
                    user_id=target.user_id,
                    broadcast_job_id=target.job_id,
                    notification_type=payload.get("notification_type") or "announcement",
                    title_json=dict(payload.get("title") or {}),
                    message_json=dict(payload.get("message") or {}),
                    action_url=payload.get("action_url"),
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # A resumed pass already wrote this user's notification for the job.
                await session.rollback()
                logger.info(
                    "broadcast_notification_already_delivered job_id=%s user_id=%s",
                    target.job_id,
                    target.user_id,
                )


def render_announcement_email(
    payload: dict[str, Any],
    *,
    to_address: str,
    locale: str,
    settings: Settings | None = None,
) -> OutboundEmail:
    settings = settings or get_settings()
    subject = pick_locale(payload.get("subject") or {}, locale, settings=settings)
    title = pick_locale(payload.get("title") or {}, locale, settings=settings)
    content = pick_locale(payload.get("content") or {}, locale, settings=settings)
    cta_text = payload.get("cta_text")
    cta_url = payload.get("cta_url")

    text_parts = [title, "", content]
    if cta_url:
        text_parts.extend(["", f"{cta_text or cta_url}: {cta_url}"])
    paragraphs = "".join(
        f"<p>{html.escape(line)}</p>" for line in content.splitlines() if line.strip()
    )
    cta_html = ""
    if cta_url:
        cta_html = (
            f'<p><a href="{html.escape(cta_url, quote=True)}">'
            f"{html.escape(cta_text or cta_url)}</a></p>"
        )
    html_body = f"<html><body><h1>{html.escape(title)}</h1>{paragraphs}{cta_html}</body></html>"
    return OutboundEmail(
        to_address=to_address,
        subject=subject,
        text_body="\n".join(text_parts),
        html_body=html_body,
        template_key=payload.get("template_key") or "announcement",
    )


class EmailChannel(DeliveryChannel):
    channel = BroadcastChannel.EMAIL

    def __init__(
        self,
        *,
        transport: EmailTransport,
        timeout_ms: int | None = None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(timeout_ms=timeout_ms, settings=settings)
        self._transport = transport

    async def _send(self, target: DeliveryTarget, payload: dict[str, Any]) -> None:
        message = render_announcement_email(
            payload,
            to_address=target.address,
            locale=target.locale,
            settings=self._settings,
        )
        await self._transport.send(message)


def get_channel(channel: BroadcastChannel, *, settings: Settings | None = None) -> DeliveryChannel:
    # Closed set of channels; the job's channel is fixed at creation.
    if channel is BroadcastChannel.NOTIFICATION:
        return NotificationChannel(settings=settings)
    if channel is BroadcastChannel.EMAIL:
        return EmailChannel(transport=get_email_transport(), settings=settings)
    raise ValueError(f"Unsupported broadcast channel: {channel!r}")
