from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from generous.service.errors import ValidationError

WEBHOOK_URL_PREFIX = "wh-"


def next_run_time(cron_expression: str, now: Optional[datetime] = None) -> datetime:
    """Next fire time for the handful of cron shapes the scheduler understands.

    Every minute, every 5 or 15 minutes, hourly and daily at UTC midnight are
    recognised; anything else falls back to one minute from ``now``.
    """
    now = now or datetime.now(timezone.utc)
    expr = " ".join(cron_expression.split())
    if expr == "* * * * *":
        return now + timedelta(minutes=1)
    if expr.startswith("*/5 "):
        return now + timedelta(minutes=5)
    if expr.startswith("*/15 "):
        return now + timedelta(minutes=15)
    if expr.startswith("0 0 "):
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight + timedelta(days=1)
    if expr.startswith("0 * "):
        return now + timedelta(hours=1)
    return now + timedelta(minutes=1)


def validate_cron_expression(cron_expression: Optional[str]) -> str:
    if not cron_expression or not cron_expression.strip():
        raise ValidationError("cronExpression is required for cron schedules")
    fields = cron_expression.split()
    if len(fields) != 5:
        raise ValidationError(
            "cronExpression must have five fields",
            detail={"cron_expression": cron_expression},
        )
    return " ".join(fields)


def generate_webhook_credentials() -> Tuple[str, str]:
    """Return ``(url_slug, secret)`` for a new webhook trigger."""
    return f"{WEBHOOK_URL_PREFIX}{secrets.token_hex(16)}", secrets.token_hex(32)


def sign_webhook_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    expected = sign_webhook_payload(payload, secret)
    candidate = signature.strip()
    if candidate.lower().startswith("sha256="):
        candidate = candidate[len("sha256="):]
    return hmac.compare_digest(expected, candidate.lower())
