"""Channel payload schemas for broadcast jobs.

Payloads are stored as locale-keyed JSON on the job row. The default locale is
mandatory; every other supported locale falls back to it when left blank.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, ValidationError

from castline.core.config import Settings, get_settings
from castline.core.errors import BroadcastValidationError
from castline.domain.state import BroadcastChannel


class NotificationPayload(BaseModel):
    notification_type: str = Field(default="announcement", min_length=1, max_length=64)
    title: dict[str, str]
    message: dict[str, str]
    action_url: str | None = Field(default=None, max_length=2048)


class EmailPayload(BaseModel):
    template_key: str = Field(default="announcement", min_length=1, max_length=64)
    subject: dict[str, str]
    title: dict[str, str]
    content: dict[str, str]
    cta_text: str | None = Field(default=None, max_length=120)
    cta_url: str | None = Field(default=None, max_length=2048)


def _localized(
    values: dict[str, str],
    *,
    field: str,
    max_length: int,
    settings: Settings,
) -> dict[str, str]:
    locales = settings.locales()
    default = locales[0]
    cleaned = {str(key).strip().lower(): str(value).strip() for key, value in values.items()}
    unknown = sorted(key for key in cleaned if key not in locales)
    if unknown:
        raise BroadcastValidationError(f"{field} has unsupported locales: {', '.join(unknown)}")
    if not cleaned.get(default):
        raise BroadcastValidationError(f"{field} is required for the default locale '{default}'")
    resolved: dict[str, str] = {}
    for locale in locales:
        value = cleaned.get(locale) or cleaned[default]
        if len(value) > max_length:
            raise BroadcastValidationError(f"{field}.{locale} exceeds {max_length} characters")
        resolved[locale] = value
    return resolved


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def normalize_payload(
    channel: BroadcastChannel,
    raw: dict[str, Any],
    *,
    settings: Settings | None = None,
) -> dict[str, Any]:
    # Validate once at creation so the coordinator can treat payload_json as opaque and well-formed.
    settings = settings or get_settings()
    if not raw:
        raise BroadcastValidationError("payload must not be empty")
    try:
        if channel is BroadcastChannel.NOTIFICATION:
            notification = NotificationPayload.model_validate(raw)
            return {
                "notification_type": notification.notification_type,
                "title": _localized(
                    notification.title,
                    field="title",
                    max_length=settings.notification_title_max,
                    settings=settings,
                ),
                "message": _localized(
                    notification.message,
                    field="message",
                    max_length=settings.notification_message_max,
                    settings=settings,
                ),
                "action_url": _blank_to_none(notification.action_url),
            }
        email = EmailPayload.model_validate(raw)
    except ValidationError as exc:
        raise BroadcastValidationError(f"invalid {channel.value} payload: {exc.errors()[0]['msg']}") from exc
    return {
        "template_key": email.template_key,
        "subject": _localized(email.subject, field="subject", max_length=settings.email_subject_max, settings=settings),
        "title": _localized(email.title, field="title", max_length=settings.email_title_max, settings=settings),
        "content": _localized(
            email.content,
            field="content",
            max_length=settings.email_content_max,
            settings=settings,
        ),
        "cta_text": _blank_to_none(email.cta_text),
        "cta_url": _blank_to_none(email.cta_url),
    }


def normalize_locale(language: str | None, *, settings: Settings | None = None) -> str:
    # Map profile language tags (pt-BR, en_US) onto a supported locale, else the default.
    settings = settings or get_settings()
    locales = settings.locales()
    if not language:
        return locales[0]
    tag = language.strip().lower().replace("_", "-")
    if tag in locales:
        return tag
    base = tag.split("-", 1)[0]
    if base in locales:
        return base
    return locales[0]


def pick_locale(values: dict[str, str], locale: str, *, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    return values.get(locale) or values.get(settings.locales()[0]) or ""
