import hashlib
import logging
from typing import Any

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = {
    "token",
    "cardtoken",
    "trtoken",
    "apikey",
    "api_key",
    "password",
    "secret",
    "clientsecret",
    "user",
    "terminal",
}


def emit_metric(name: str, count: int = 1, **tags):
    logger.info("metric=%s count=%s tags=%s", name, count, tags)


def sanitize_payload(payload: Any) -> Any:
    if isinstance(payload, dict):
        redacted = {}
        for key, value in payload.items():
            if str(key).lower() in SENSITIVE_KEYS:
                redacted[key] = "***"
            else:
                redacted[key] = sanitize_payload(value)
        return redacted
    if isinstance(payload, list):
        return [sanitize_payload(item) for item in payload]
    return payload


def payload_fingerprint(body: bytes) -> str:
    return hashlib.sha256(body or b"").hexdigest()


def recurring_idempotency_key(charge_id, run_date) -> str:
    return f"recurring-{charge_id}-{run_date.isoformat()}"


def session_idempotency_key(charge_id, payment_id) -> str:
    return f"pay-{charge_id}-{payment_id}"
