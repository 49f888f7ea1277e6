from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from generous.service.errors import ValidationError
from generous.service.triggers import (
    WEBHOOK_URL_PREFIX,
    generate_webhook_credentials,
    next_run_time,
    sign_webhook_payload,
    validate_cron_expression,
    verify_webhook_signature,
)

NOW = datetime(2024, 6, 10, 14, 37, 12, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "expression,expected",
    [
        ("* * * * *", NOW + timedelta(minutes=1)),
        ("*/5 * * * *", NOW + timedelta(minutes=5)),
        ("*/15 * * * *", NOW + timedelta(minutes=15)),
        ("0 * * * *", NOW + timedelta(hours=1)),
        ("0 0 * * *", datetime(2024, 6, 11, tzinfo=timezone.utc)),
        ("30 2 * * 1", NOW + timedelta(minutes=1)),
    ],
)
def test_next_run_time(expression, expected):
    assert next_run_time(expression, NOW) == expected


def test_validate_cron_expression_normalizes_whitespace():
    assert validate_cron_expression("  */5  *  * * * ") == "*/5 * * * *"
    with pytest.raises(ValidationError):
        validate_cron_expression("")
    with pytest.raises(ValidationError):
        validate_cron_expression("* * *")


def test_webhook_credentials_are_unique():
    url, secret = generate_webhook_credentials()
    other_url, other_secret = generate_webhook_credentials()
    assert url.startswith(WEBHOOK_URL_PREFIX)
    assert len(secret) == 64
    assert url != other_url and secret != other_secret


def test_signature_verification():
    body = b'{"event":"push"}'
    digest = sign_webhook_payload(body, "secret")
    assert verify_webhook_signature(body, digest, "secret")
    assert verify_webhook_signature(body, f"sha256={digest.upper()}", "secret")
    assert not verify_webhook_signature(body, digest, "other")
    assert not verify_webhook_signature(b"{}", digest, "secret")
