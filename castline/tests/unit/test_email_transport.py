from __future__ import annotations

import aiosmtplib
import pytest

from castline.core.config import get_settings
from castline.core.errors import DeliveryError, EmailConfigMissingError
from castline.providers.email import smtp_email
from castline.providers.email.base import OutboundEmail
from castline.providers.email.factory import get_email_transport
from castline.providers.email.fake_email import FakeEmailTransport
from castline.providers.email.smtp_email import SmtpEmailTransport
from castline.services.telemetry import external_call_stats, reset_telemetry


def _message() -> OutboundEmail:
    return OutboundEmail(
        to_address="ana@example.com",
        subject="Hello",
        text_body="plain",
        html_body="<p>html</p>",
    )


@pytest.mark.asyncio
async def test_smtp_transport_sends_multipart_message(monkeypatch) -> None:
    captured = {}

    async def fake_send(message, **kwargs):
        captured["message"] = message
        captured["kwargs"] = kwargs

    monkeypatch.setattr(smtp_email.aiosmtplib, "send", fake_send)
    reset_telemetry()

    await SmtpEmailTransport(get_settings()).send(_message())

    message = captured["message"]
    assert message["To"] == "ana@example.com"
    assert message["X-Castline-Template"] == "announcement"
    assert message.is_multipart()
    assert captured["kwargs"]["hostname"] == "localhost"
    assert external_call_stats(60)["email.smtp"]["failures"] == 0


@pytest.mark.asyncio
async def test_smtp_rejection_maps_to_delivery_error(monkeypatch) -> None:
    async def fake_send(message, **kwargs):
        raise aiosmtplib.SMTPResponseException(550, "mailbox unavailable")

    monkeypatch.setattr(smtp_email.aiosmtplib, "send", fake_send)
    reset_telemetry()

    with pytest.raises(DeliveryError) as excinfo:
        await SmtpEmailTransport(get_settings()).send(_message())

    assert "SMTP 550" in str(excinfo.value)
    assert external_call_stats(60)["email.smtp"]["failures"] == 1


def test_factory_selects_provider(monkeypatch) -> None:
    assert isinstance(get_email_transport(), FakeEmailTransport)

    monkeypatch.setenv("EMAIL_PROVIDER", "smtp")
    get_settings.cache_clear()
    assert isinstance(get_email_transport(), SmtpEmailTransport)

    monkeypatch.setenv("EMAIL_PROVIDER", "carrier-pigeon")
    get_settings.cache_clear()
    with pytest.raises(EmailConfigMissingError):
        get_email_transport()
