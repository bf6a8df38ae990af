from __future__ import annotations

from castline.core.config import get_settings
from castline.core.errors import EmailConfigMissingError
from castline.providers.email.base import EmailTransport
from castline.providers.email.fake_email import FakeEmailTransport
from castline.providers.email.smtp_email import SmtpEmailTransport


def get_email_transport() -> EmailTransport:
    settings = get_settings()
    provider = (settings.email_provider or "none").lower()

    if provider == "none":
        # Email broadcasts cannot be driven without a transport.
        raise EmailConfigMissingError("EMAIL_PROVIDER is set to none")
    if provider == "fake":
        return FakeEmailTransport()
    if provider == "smtp":
        if not settings.smtp_host:
            raise EmailConfigMissingError("SMTP_HOST is required for the smtp email provider")
        return SmtpEmailTransport(settings)

    raise EmailConfigMissingError(f"Unsupported email provider: {provider}")
