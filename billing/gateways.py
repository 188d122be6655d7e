import json
import logging
import uuid
from decimal import Decimal
from typing import Mapping, Optional
from urllib.parse import parse_qs, urlencode, urlparse

from .constants import PROVIDER_FAKE, PROVIDER_MESHULAM, PROVIDER_PELECARD, PROVIDER_TRANZILA
from .gateway_service import (
    WEBHOOK_FAILED,
    WEBHOOK_REFUNDED,
    WEBHOOK_SUCCEEDED,
    ChargeResult,
    ChargeTokenRequest,
    GatewayContext,
    PaymentGateway,
    PaymentSessionRequest,
    PaymentSessionResult,
    RefundRequest,
    RefundResult,
    TokenizeRequest,
    TokenizeResult,
    WebhookResult,
    not_configured,
    to_minor_units,
)

logger = logging.getLogger(__name__)

# ISO 4217 -> local acquirer currency codes (Pelecard, Tranzila).
LOCAL_CURRENCY_CODES = {"ILS": 1, "USD": 2, "EUR": 978, "GBP": 826}


def _with_query(url: str, params: dict) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


def _form_fields(body: bytes) -> dict:
    parsed = parse_qs((body or b"").decode("utf-8"), keep_blank_values=True)
    return {key: values[0] if values else "" for key, values in parsed.items()}


def _decode_json(body: bytes) -> Optional[dict]:
    try:
        payload = json.loads((body or b"").decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


class FakeGateway(PaymentGateway):
    """
    Development gateway that never touches a network.

    Tokens containing ``_fail_`` are declined, refunds always succeed and
    webhook signatures always verify.
    """

    provider = PROVIDER_FAKE
    display_name = "Fake (development)"
    FAIL_MARKER = "_fail_"

    def create_payment_session(self, request: PaymentSessionRequest, context: GatewayContext) -> PaymentSessionResult:
        session_id = f"fake_sess_{uuid.uuid4().hex[:16]}"
        provider_reference = f"fake_pay_{uuid.uuid4().hex[:16]}"
        payment_url = _with_query(
            request.success_url,
            {"session_id": session_id, "provider_ref": provider_reference, "status": "succeeded"},
        )
        logger.info("Fake payment session %s created for charge %s.", session_id, request.charge_id)
        return PaymentSessionResult(
            success=True,
            payment_url=payment_url,
            session_id=session_id,
            provider_reference=provider_reference,
        )

    def tokenize(self, request: TokenizeRequest, context: GatewayContext) -> TokenizeResult:
        token = f"fake_tok_{uuid.uuid4().hex}"
        return TokenizeResult(
            success=True,
            redirect_url=_with_query(request.success_url, {"reference": request.reference, "status": "succeeded"}),
            token=token,
            last4="1111",
            expiry="12/28",
            card_brand="Visa",
            provider_customer_id=f"fake_cust_{str(request.user_id)[:8]}",
        )

    def charge_token(self, request: ChargeTokenRequest, context: GatewayContext) -> ChargeResult:
        if self.FAIL_MARKER in (request.token or ""):
            return ChargeResult(success=False, error="Card declined (test failure token).")
        return ChargeResult(success=True, provider_reference=f"fake_ch_{uuid.uuid4().hex[:16]}")

    def refund(self, request: RefundRequest, context: GatewayContext) -> RefundResult:
        return RefundResult(success=True, refund_reference=f"fake_ref_{uuid.uuid4().hex[:16]}")

    def parse_webhook(self, body: bytes, *, content_type: str = "", headers: Optional[Mapping[str, str]] = None) -> WebhookResult:
        payload = _decode_json(body)
        if payload is None:
            return WebhookResult(parsed=False, error="Body is not a JSON object.")
        event_id = str(payload.get("eventId") or "")
        if not event_id:
            return WebhookResult(parsed=False, error="Missing eventId.")

        raw_status = str(payload.get("status") or "").lower()
        token = str(payload.get("token") or "")
        if raw_status == "succeeded":
            status = WEBHOOK_SUCCEEDED
        elif raw_status == "refunded":
            status = WEBHOOK_REFUNDED
        elif not raw_status and token:
            status = ""
        else:
            status = WEBHOOK_FAILED

        return WebhookResult(
            parsed=True,
            event_id=event_id,
            provider_reference=str(payload.get("providerReference") or ""),
            status=status,
            reference=str(payload.get("reference") or ""),
            token=token,
            last4=str(payload.get("last4") or ""),
            expiry=str(payload.get("expiry") or ""),
            card_brand=str(payload.get("cardBrand") or ""),
            provider_customer_id=str(payload.get("providerCustomerId") or ""),
        )

    def verify_signature(self, body: bytes, headers: Mapping[str, str], context: GatewayContext) -> bool:
        return True


class MeshulamGateway(PaymentGateway):
    """Meshulam light server API: hosted page, card tokens, refunds, form-encoded webhooks."""

    provider = PROVIDER_MESHULAM
    display_name = "Meshulam"
    default_base_url = "https://sandbox.meshulam.co.il/api/light/server/1.0"
    signature_header = "X-Meshulam-Signature"
    required_credentials = ("merchant_id", "api_password", "terminal_id")

    def _auth_fields(self, context: GatewayContext) -> dict:
        return {
            "userId": context.credential("merchant_id"),
            "apiKey": context.credential("api_password"),
        }

    def _call(self, path: str, fields: dict, context: GatewayContext) -> dict:
        payload = self._request("post", f"{self.base_url(context)}/{path}", data=fields)
        if str(payload.get("status")) != "1":
            error = payload.get("err") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            return {"error": message or "Meshulam rejected the request."}
        return payload.get("data") or {}

    def create_payment_session(self, request: PaymentSessionRequest, context: GatewayContext) -> PaymentSessionResult:
        if not self.is_configured(context):
            return PaymentSessionResult(success=False, error=not_configured(self.display_name))
        fields = {
            **self._auth_fields(context),
            "pageCode": context.credential("terminal_id"),
            "sum": to_minor_units(request.amount),
            "description": request.description,
            "pageField[fullName]": request.payer_name,
            "pageField[email]": request.payer_email,
            "successUrl": request.success_url,
            "cancelUrl": request.cancel_url,
            "notifyUrl": request.webhook_url,
            "cField1": request.payment_id,
        }
        data = self._call("createPaymentProcess", fields, context)
        if "error" in data:
            return PaymentSessionResult(success=False, error=data["error"])
        process_id = str(data.get("processId") or "")
        return PaymentSessionResult(
            success=True,
            payment_url=data.get("url") or "",
            session_id=process_id,
            provider_reference=process_id,
        )

    def tokenize(self, request: TokenizeRequest, context: GatewayContext) -> TokenizeResult:
        if not self.is_configured(context):
            return TokenizeResult(success=False, error=not_configured(self.display_name))
        fields = {
            **self._auth_fields(context),
            "pageCode": context.credential("terminal_id"),
            "sum": 0,
            "saveCardToken": 1,
            "pageField[fullName]": request.user_name,
            "pageField[email]": request.user_email,
            "successUrl": request.success_url,
            "cancelUrl": request.cancel_url,
            "notifyUrl": request.webhook_url,
            "cField1": request.reference,
        }
        data = self._call("createPaymentProcess", fields, context)
        if "error" in data:
            return TokenizeResult(success=False, error=data["error"])
        return TokenizeResult(success=True, redirect_url=data.get("url") or "")

    def charge_token(self, request: ChargeTokenRequest, context: GatewayContext) -> ChargeResult:
        if not self.is_configured(context):
            return ChargeResult(success=False, error=not_configured(self.display_name))
        fields = {
            **self._auth_fields(context),
            "cardToken": request.token,
            "sum": to_minor_units(request.amount),
            "description": request.description,
            "cField1": request.payment_id or request.idempotency_key,
        }
        data = self._call("chargeByToken", fields, context)
        if "error" in data:
            return ChargeResult(success=False, error=data["error"])
        return ChargeResult(success=True, provider_reference=str(data.get("transactionId") or ""))

    def refund(self, request: RefundRequest, context: GatewayContext) -> RefundResult:
        if not self.is_configured(context):
            return RefundResult(success=False, error=not_configured(self.display_name))
        fields = {
            **self._auth_fields(context),
            "transactionId": request.provider_reference,
            "sum": to_minor_units(request.amount),
        }
        data = self._call("refundTransaction", fields, context)
        if "error" in data:
            return RefundResult(success=False, error=data["error"])
        return RefundResult(success=True, refund_reference=str(data.get("refundId") or data.get("transactionId") or ""))

    def parse_webhook(self, body: bytes, *, content_type: str = "", headers: Optional[Mapping[str, str]] = None) -> WebhookResult:
        fields = _form_fields(body)
        transaction_id = fields.get("transactionId", "")
        process_id = fields.get("processId", "")
        if not (transaction_id or process_id):
            return WebhookResult(parsed=False, error="Missing transactionId/processId.")
        status = WEBHOOK_SUCCEEDED if fields.get("status") == "1" else WEBHOOK_FAILED
        return WebhookResult(
            parsed=True,
            event_id=f"{process_id}:{transaction_id}:{fields.get('status', '')}",
            provider_reference=process_id or transaction_id,
            status=status,
            reference=fields.get("customFields[cField1]", ""),
            token=fields.get("cardToken", ""),
            last4=fields.get("cardSuffix", ""),
            expiry=fields.get("cardExp", ""),
            card_brand=fields.get("cardBrand", ""),
        )


class PelecardGateway(PaymentGateway):
    """Pelecard PaymentGW: hosted page and tokenization via the init call; JSON webhooks."""

    provider = PROVIDER_PELECARD
    display_name = "Pelecard"
    default_base_url = "https://gateway20.pelecard.biz"
    signature_header = "X-Pelecard-Signature"
    required_credentials = ("terminal_id", "api_user", "api_password")

    def _init(self, context: GatewayContext, extra: dict) -> dict:
        body = {
            "terminal": context.credential("terminal_id"),
            "user": context.credential("api_user"),
            "password": context.credential("api_password"),
            "Currency": LOCAL_CURRENCY_CODES.get(context.currency, 1),
            **extra,
        }
        return self._request("post", f"{self.base_url(context)}/services/PaymentGW/init", json=body)

    @staticmethod
    def _transaction_id(url: str) -> str:
        values = parse_qs(urlparse(url or "").query).get("transactionId") or [""]
        return values[0]

    def create_payment_session(self, request: PaymentSessionRequest, context: GatewayContext) -> PaymentSessionResult:
        if not self.is_configured(context):
            return PaymentSessionResult(success=False, error=not_configured(self.display_name))
        payload = self._init(
            context,
            {
                "GoodURL": request.success_url,
                "ErrorURL": request.cancel_url,
                "ServerSideGoodFeedbackURL": request.webhook_url,
                "Total": to_minor_units(request.amount),
                "ParamX": request.payment_id,
            },
        )
        url = payload.get("URL") or ""
        if not url:
            return PaymentSessionResult(success=False, error=str(payload.get("Error") or "Pelecard init failed."))
        transaction_id = self._transaction_id(url)
        return PaymentSessionResult(
            success=True,
            payment_url=url,
            session_id=transaction_id,
            provider_reference=transaction_id,
        )

    def tokenize(self, request: TokenizeRequest, context: GatewayContext) -> TokenizeResult:
        if not self.is_configured(context):
            return TokenizeResult(success=False, error=not_configured(self.display_name))
        payload = self._init(
            context,
            {
                "GoodURL": request.success_url,
                "ErrorURL": request.cancel_url,
                "ServerSideGoodFeedbackURL": request.webhook_url,
                "Total": 0,
                "CreateToken": "True",
                "ParamX": request.reference,
            },
        )
        url = payload.get("URL") or ""
        if not url:
            return TokenizeResult(success=False, error=str(payload.get("Error") or "Pelecard init failed."))
        return TokenizeResult(success=True, redirect_url=url)

    def charge_token(self, request: ChargeTokenRequest, context: GatewayContext) -> ChargeResult:
        return ChargeResult(success=False, error=not_configured(self.display_name))

    def refund(self, request: RefundRequest, context: GatewayContext) -> RefundResult:
        return RefundResult(success=False, error=not_configured(self.display_name))

    def parse_webhook(self, body: bytes, *, content_type: str = "", headers: Optional[Mapping[str, str]] = None) -> WebhookResult:
        payload = _decode_json(body)
        if payload is None:
            return WebhookResult(parsed=False, error="Body is not a JSON object.")
        data = payload.get("ResultData") or {}
        transaction_id = str(data.get("TransactionId") or "")
        if not transaction_id:
            return WebhookResult(parsed=False, error="Missing ResultData.TransactionId.")
        succeeded = str(data.get("ShvaResult") or "") == "000"
        card_number = str(data.get("CreditCardNumber") or "")
        return WebhookResult(
            parsed=True,
            event_id=f"{transaction_id}:{data.get('ShvaResult', '')}",
            provider_reference=transaction_id,
            status=WEBHOOK_SUCCEEDED if succeeded else WEBHOOK_FAILED,
            reference=str(data.get("AdditionalDetailsParamX") or ""),
            token=str(data.get("Token") or ""),
            last4=card_number[-4:],
            expiry=str(data.get("CreditCardExpDate") or ""),
            card_brand=str(data.get("CreditCardCompanyIssuer") or ""),
        )


class TranzilaGateway(PaymentGateway):
    """Tranzila iframe: the page URL is built locally; results arrive as form-encoded notifications."""

    provider = PROVIDER_TRANZILA
    display_name = "Tranzila"
    default_base_url = "https://direct.tranzila.com"
    signature_header = "X-Tranzila-Signature"
    required_credentials = ("terminal_id",)

    def _iframe_url(self, context: GatewayContext, params: dict) -> str:
        supplier = context.credential("terminal_id")
        return _with_query(f"{self.base_url(context)}/{supplier}/iframenew.php", params)

    def create_payment_session(self, request: PaymentSessionRequest, context: GatewayContext) -> PaymentSessionResult:
        if not self.is_configured(context):
            return PaymentSessionResult(success=False, error=not_configured(self.display_name))
        url = self._iframe_url(
            context,
            {
                "sum": f"{Decimal(request.amount):.2f}",
                "currency": LOCAL_CURRENCY_CODES.get(request.currency, 1),
                "cred_type": 1,
                "notify_url_address": request.webhook_url,
                "success_url_address": request.success_url,
                "fail_url_address": request.cancel_url,
                "pdesc": request.description,
                "contact": request.payer_name,
                "email": request.payer_email,
                "payment_id": request.payment_id,
            },
        )
        # The transaction index is only known once the notification arrives.
        return PaymentSessionResult(success=True, payment_url=url, session_id=request.payment_id)

    def tokenize(self, request: TokenizeRequest, context: GatewayContext) -> TokenizeResult:
        if not self.is_configured(context):
            return TokenizeResult(success=False, error=not_configured(self.display_name))
        url = self._iframe_url(
            context,
            {
                "TrToken": "True",
                "tranmode": "VK",
                "sum": "1.00",
                "notify_url_address": request.webhook_url,
                "success_url_address": request.success_url,
                "fail_url_address": request.cancel_url,
                "contact": request.user_name,
                "email": request.user_email,
                "payment_id": request.reference,
            },
        )
        return TokenizeResult(success=True, redirect_url=url)

    def charge_token(self, request: ChargeTokenRequest, context: GatewayContext) -> ChargeResult:
        return ChargeResult(success=False, error=not_configured(self.display_name))

    def refund(self, request: RefundRequest, context: GatewayContext) -> RefundResult:
        return RefundResult(success=False, error=not_configured(self.display_name))

    def parse_webhook(self, body: bytes, *, content_type: str = "", headers: Optional[Mapping[str, str]] = None) -> WebhookResult:
        fields = _form_fields(body)
        index = fields.get("index", "")
        if not index:
            return WebhookResult(parsed=False, error="Missing transaction index.")
        expdate = fields.get("expdate", "")
        expiry = f"{expdate[:2]}/{expdate[2:]}" if len(expdate) == 4 else expdate
        return WebhookResult(
            parsed=True,
            event_id=f"{index}:{fields.get('Response', '')}",
            provider_reference=index,
            status=WEBHOOK_SUCCEEDED if fields.get("Response") == "000" else WEBHOOK_FAILED,
            reference=fields.get("payment_id", ""),
            token=fields.get("TrToken", ""),
            last4=fields.get("cardmask", "")[-4:],
            expiry=expiry,
            card_brand=fields.get("cardtype", ""),
        )


GATEWAY_CLASSES = {
    PROVIDER_FAKE: FakeGateway,
    PROVIDER_MESHULAM: MeshulamGateway,
    PROVIDER_PELECARD: PelecardGateway,
    PROVIDER_TRANZILA: TranzilaGateway,
}
