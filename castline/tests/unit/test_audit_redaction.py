from __future__ import annotations

from castline.services.audit import sanitize_metadata


def test_audit_redacts_credentials_and_contact_data() -> None:
    # Redact secrets and recipient contact data in audit metadata.
    payload = {
        "api_key": "secret-key",
        "client_secret": "super-secret",
        "nested": {"authorization": "Bearer abc", "recipient_email": "ana@example.com"},
        "items": [{"content": "full announcement body"}, {"channel": "email"}],
        "batch_size": 20,
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["client_secret"] == "[REDACTED]"
    assert sanitized["nested"]["authorization"] == "[REDACTED]"
    assert sanitized["nested"]["recipient_email"] == "[REDACTED]"
    assert sanitized["items"] == [{"content": "[REDACTED]"}, {"channel": "email"}]
    assert sanitized["batch_size"] == 20
