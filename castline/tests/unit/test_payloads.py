from __future__ import annotations

import pytest

from castline.core.errors import BroadcastValidationError
from castline.domain.payloads import normalize_locale, normalize_payload, pick_locale
from castline.domain.state import BroadcastChannel


def test_notification_payload_fills_missing_locales_from_default() -> None:
    payload = normalize_payload(
        BroadcastChannel.NOTIFICATION,
        {"title": {"pt": "Oi", "en": "Hi"}, "message": {"pt": "Mensagem", "es": "  "}},
    )
    assert payload["notification_type"] == "announcement"
    assert payload["title"] == {"pt": "Oi", "en": "Hi", "es": "Oi"}
    assert payload["message"] == {"pt": "Mensagem", "en": "Mensagem", "es": "Mensagem"}
    assert payload["action_url"] is None


def test_email_payload_requires_default_locale() -> None:
    with pytest.raises(BroadcastValidationError):
        normalize_payload(
            BroadcastChannel.EMAIL,
            {"subject": {"en": "Hi"}, "title": {"pt": "T"}, "content": {"pt": "C"}},
        )


def test_length_limits_are_enforced_per_locale() -> None:
    with pytest.raises(BroadcastValidationError):
        normalize_payload(
            BroadcastChannel.NOTIFICATION,
            {"title": {"pt": "x" * 101}, "message": {"pt": "ok"}},
        )


def test_unsupported_locale_is_rejected() -> None:
    with pytest.raises(BroadcastValidationError):
        normalize_payload(
            BroadcastChannel.NOTIFICATION,
            {"title": {"pt": "Oi", "fr": "Salut"}, "message": {"pt": "ok"}},
        )


def test_empty_and_malformed_payloads_are_rejected() -> None:
    with pytest.raises(BroadcastValidationError):
        normalize_payload(BroadcastChannel.EMAIL, {})
    with pytest.raises(BroadcastValidationError):
        normalize_payload(BroadcastChannel.EMAIL, {"subject": "not a mapping"})


def test_normalize_locale() -> None:
    assert normalize_locale("pt-BR") == "pt"
    assert normalize_locale("en_US") == "en"
    assert normalize_locale("es") == "es"
    assert normalize_locale("fr") == "pt"
    assert normalize_locale(None) == "pt"


def test_pick_locale_falls_back_to_default() -> None:
    assert pick_locale({"pt": "Oi", "en": "Hi"}, "en") == "Hi"
    assert pick_locale({"pt": "Oi"}, "es") == "Oi"
