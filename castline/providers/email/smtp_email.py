from __future__ import annotations

from email.message import EmailMessage
from email.utils import formataddr
import time

import aiosmtplib

from castline.core.config import Settings, get_settings
from castline.core.errors import DeliveryError
from castline.providers.email.base import OutboundEmail
from castline.services.telemetry import record_external_call


def _smtp_code(exc: Exception) -> int | None:
    # aiosmtplib stores the reply code on most SMTP exceptions.
    return getattr(exc, "code", None) or getattr(exc, "smtp_code", None)


class SmtpEmailTransport:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def _build_message(self, message: OutboundEmail) -> EmailMessage:
        settings = self._settings
        email = EmailMessage()
        email["From"] = formataddr((settings.email_from_name, settings.email_from_address))
        email["To"] = message.to_address
        email["Subject"] = message.subject
        email["X-Castline-Template"] = message.template_key
        email.set_content(message.text_body)
        email.add_alternative(message.html_body, subtype="html")
        return email

    async def send(self, message: OutboundEmail) -> None:
        settings = self._settings
        started = time.monotonic()
        try:
            await aiosmtplib.send(
                self._build_message(message),
                hostname=settings.smtp_host,
                port=settings.smtp_port,
                username=settings.smtp_username,
                password=settings.smtp_password,
                use_tls=settings.smtp_use_tls,
                start_tls=settings.smtp_start_tls if not settings.smtp_use_tls else False,
                timeout=settings.broadcast_send_timeout_ms / 1000.0,
            )
        except aiosmtplib.SMTPException as exc:
            record_external_call(
                integration="email.smtp",
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=False,
            )
            code = _smtp_code(exc)
            prefix = f"SMTP {code}: " if code else "SMTP error: "
            raise DeliveryError(f"{prefix}{exc}") from exc
        record_external_call(
            integration="email.smtp",
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=True,
        )
