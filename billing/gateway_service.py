"""
Provider-agnostic payment gateway contract.

Every provider variant implements the same six operations on top of
``PaymentGateway``: hosted session creation, tokenization, token charge,
refund, webhook parsing and webhook signature verification. Variants are
stateless with respect to building configuration; the per-call
``GatewayContext`` carries the resolved credentials.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Mapping, Optional

import requests
from decouple import config as env_config
from django.conf import settings

from .constants import ALL_FEATURES
from .exceptions import GatewayError
from .ops import sanitize_payload

logger = logging.getLogger(__name__)

WEBHOOK_SUCCEEDED = "SUCCEEDED"
WEBHOOK_FAILED = "FAILED"
WEBHOOK_REFUNDED = "REFUNDED"


@dataclass
class GatewayContext:
    provider: str
    config_id: Optional[str] = None
    building_id: Optional[int] = None
    credentials: Dict[str, str] = field(default_factory=dict)
    webhook_secret: str = ""
    currency: str = "ILS"
    base_url: str = ""
    features: int = ALL_FEATURES

    def supports(self, feature: int) -> bool:
        return bool(self.features & feature)

    def credential(self, name: str) -> str:
        return (self.credentials or {}).get(name) or ""


@dataclass
class PaymentSessionRequest:
    charge_id: str
    payment_id: str
    payer_id: Optional[int]
    payer_name: str
    payer_email: str
    amount: Decimal
    currency: str
    description: str
    success_url: str
    cancel_url: str
    webhook_url: str
    idempotency_key: str


@dataclass
class PaymentSessionResult:
    success: bool
    payment_url: str = ""
    session_id: str = ""
    provider_reference: str = ""
    error: str = ""


@dataclass
class TokenizeRequest:
    user_id: int
    user_name: str
    user_email: str
    reference: str
    success_url: str
    cancel_url: str
    webhook_url: str


@dataclass
class TokenizeResult:
    success: bool
    redirect_url: str = ""
    token: str = ""
    last4: str = ""
    expiry: str = ""
    card_brand: str = ""
    provider_customer_id: str = ""
    error: str = ""


@dataclass
class ChargeTokenRequest:
    token: str
    amount: Decimal
    currency: str
    description: str
    idempotency_key: str
    provider_customer_id: str = ""
    payment_id: str = ""


@dataclass
class ChargeResult:
    success: bool
    provider_reference: str = ""
    error: str = ""


@dataclass
class RefundRequest:
    provider_reference: str
    amount: Decimal
    currency: str
    reason: str = ""


@dataclass
class RefundResult:
    success: bool
    refund_reference: str = ""
    error: str = ""


@dataclass
class WebhookResult:
    parsed: bool
    event_id: str = ""
    provider_reference: str = ""
    status: str = ""
    reference: str = ""
    token: str = ""
    last4: str = ""
    expiry: str = ""
    card_brand: str = ""
    provider_customer_id: str = ""
    error: str = ""

    @property
    def is_tokenization(self) -> bool:
        return bool(self.token)


def resolve_secret(reference: str) -> str:
    """Secrets live outside the database; configs only hold the variable name."""
    if not reference:
        return ""
    return env_config(reference, default="")


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def not_configured(provider_name: str) -> str:
    return f"{provider_name} gateway not configured. Add the provider credentials."


class PaymentGateway:
    provider = ""
    display_name = ""
    default_base_url = ""
    signature_header = ""
    required_credentials = ()

    def __init__(self, session=None, timeout: Optional[int] = None):
        self.session = session or requests.Session()
        self.timeout = timeout or getattr(settings, "BILLING_GATEWAY_TIMEOUT", 30)

    def __repr__(self):
        return f"<{self.__class__.__name__} provider={self.provider}>"

    def is_configured(self, context: GatewayContext) -> bool:
        return all(context.credential(name) for name in self.required_credentials)

    def base_url(self, context: GatewayContext) -> str:
        return (context.base_url or self.default_base_url).rstrip("/")

    def create_payment_session(self, request: PaymentSessionRequest, context: GatewayContext) -> PaymentSessionResult:
        raise NotImplementedError

    def tokenize(self, request: TokenizeRequest, context: GatewayContext) -> TokenizeResult:
        raise NotImplementedError

    def charge_token(self, request: ChargeTokenRequest, context: GatewayContext) -> ChargeResult:
        raise NotImplementedError

    def refund(self, request: RefundRequest, context: GatewayContext) -> RefundResult:
        raise NotImplementedError

    def parse_webhook(self, body: bytes, *, content_type: str = "", headers: Optional[Mapping[str, str]] = None) -> WebhookResult:
        raise NotImplementedError

    def verify_signature(self, body: bytes, headers: Mapping[str, str], context: GatewayContext) -> bool:
        """Fail-closed HMAC-SHA256 check of the raw body against the configured webhook secret."""
        secret = context.webhook_secret
        if not secret:
            logger.warning("%s webhook rejected: no webhook secret configured.", self.display_name)
            return False
        signature = _header(headers, self.signature_header)
        if not signature:
            logger.warning("%s webhook rejected: missing %s header.", self.display_name, self.signature_header)
            return False
        expected = hmac.new(secret.encode("utf-8"), body or b"", hashlib.sha256).hexdigest()
        if signature.lower().startswith("sha256="):
            signature = signature[7:]
        return hmac.compare_digest(expected, signature.strip().lower())

    def _request(
        self,
        method: str,
        url: str,
        *,
        data: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        hdrs = {"Accept": "application/json"}
        if headers:
            hdrs.update(headers)
        try:
            response = self.session.request(
                method=method.upper(),
                url=url,
                data=data,
                json=json,
                headers=hdrs,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise GatewayError(
                f"{self.display_name} request timed out.",
                provider=self.provider,
                indeterminate=True,
            ) from exc
        except requests.RequestException as exc:
            raise GatewayError(f"{self.display_name} request failed: {exc}", provider=self.provider) from exc

        payload = {}
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = {"raw": response.text}

        if response.status_code >= 400:
            code = ""
            if isinstance(payload, dict):
                code = str(payload.get("code") or payload.get("errorCode") or "")
            logger.warning(
                "%s returned %s: %s",
                self.display_name,
                response.status_code,
                sanitize_payload(payload),
            )
            raise GatewayError(
                f"{self.display_name} request failed with status {response.status_code}.",
                provider=self.provider,
                provider_status=response.status_code,
                code=code,
                payload=sanitize_payload(payload),
                # 5xx may still have been processed upstream.
                indeterminate=response.status_code >= 500,
            )

        return payload if isinstance(payload, dict) else {"data": payload}


def _header(headers: Optional[Mapping[str, str]], name: str) -> str:
    if not headers or not name:
        return ""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value or ""
    return ""
