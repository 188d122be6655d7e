import base64
import hashlib
import hmac
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings

logger = logging.getLogger(__name__)


def _derive_key_from_secret(secret: str) -> bytes:
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def _get_encryption_key() -> bytes:
    key = getattr(settings, "BILLING_ENCRYPTION_KEY", "")
    if not key:
        key = _derive_key_from_secret(getattr(settings, "SECRET_KEY", ""))
        logger.warning("BILLING_ENCRYPTION_KEY not set; using derived key from SECRET_KEY.")
    if isinstance(key, str):
        key = key.encode("utf-8")
    return key


_FERNET = None


def _get_fernet():
    global _FERNET
    if _FERNET is None:
        _FERNET = Fernet(_get_encryption_key())
    return _FERNET


def encrypt_value(value: Any) -> str:
    if value is None or value == "":
        return ""
    text = value if isinstance(value, str) else str(value)
    return _get_fernet().encrypt(text.encode("utf-8")).decode("utf-8")


def decrypt_value(token: str) -> str:
    if not token:
        return ""
    try:
        return _get_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        logger.error("Failed to decrypt payment token with the configured key.")
        return ""


def fingerprint_token(token: str) -> str:
    """Keyed digest of a provider token, used to spot the same card saved twice."""
    if not token:
        return ""
    return hmac.new(_get_encryption_key(), token.encode("utf-8"), hashlib.sha256).hexdigest()
