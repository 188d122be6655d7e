"""
Provider webhook ingest.

Order of work for every delivery: parse, locate the referenced payment or
tokenization, verify the signature with that building's secret, drop
replays by ``(provider, event_id)``, then apply the event and record it in
the same transaction.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone
from rest_framework.exceptions import NotFound

from properties.models import Unit

from .constants import PROVIDER_FAKE
from .exceptions import ConfigurationError, SignatureVerificationFailure
from .gateway_service import WEBHOOK_FAILED, WEBHOOK_REFUNDED, WEBHOOK_SUCCEEDED, WebhookResult
from .models import Payment, PaymentMethod, WebhookEvent
from .ops import emit_metric, payload_fingerprint
from .payments import activate_payment_method, complete_payment, fail_payment, mark_payment_refunded
from .resolver import get_resolver
from .services import log_billing_action

logger = logging.getLogger(__name__)


@dataclass
class WebhookOutcome:
    http_status: int = 200
    duplicate: bool = False
    result: str = ""
    detail: str = ""
    event_id: str = ""

    @property
    def received(self) -> bool:
        return self.http_status == 200


def _parse_reference_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def find_webhook_target(provider: str, parsed: WebhookResult) -> Tuple[Optional[Payment], Optional[PaymentMethod]]:
    """Tokenization placeholder first, then payment by provider reference, then by our own id or idempotency key."""
    if parsed.is_tokenization and parsed.reference:
        method = (
            PaymentMethod.objects.filter(provider=provider, provider_reference=parsed.reference)
            .select_related("user")
            .first()
        )
        if method:
            return None, method

    payments = Payment.objects.filter(provider=provider).select_related("unit__building")
    if parsed.provider_reference:
        payment = payments.filter(provider_reference=parsed.provider_reference).first()
        if payment:
            return payment, None
    if parsed.reference:
        payment_id = _parse_reference_uuid(parsed.reference)
        match = Q(pk=payment_id) if payment_id else Q(idempotency_key=parsed.reference)
        payment = payments.filter(match).first()
        if payment:
            return payment, None
    return None, None


def _building_for(payment: Optional[Payment], method: Optional[PaymentMethod]):
    if payment is not None:
        return payment.unit.building
    if method is not None:
        unit = Unit.objects.filter(tenant_user=method.user, is_active=True).select_related("building").first()
        return unit.building if unit else None
    return None


def _apply(payment: Optional[Payment], method: Optional[PaymentMethod], parsed: WebhookResult) -> Tuple[str, str]:
    if method is not None:
        if not parsed.token or parsed.status == WEBHOOK_FAILED:
            return WebhookEvent.RESULT_IGNORED, "Tokenization was not completed."
        saved = activate_payment_method(
            method,
            token=parsed.token,
            last4=parsed.last4,
            expiry=parsed.expiry,
            card_brand=parsed.card_brand,
            provider_customer_id=parsed.provider_customer_id,
        )
        return WebhookEvent.RESULT_PROCESSED, f"Payment method {saved.id} saved."

    if payment is None:
        return WebhookEvent.RESULT_UNMATCHED, "No payment matches this event."

    if parsed.status == WEBHOOK_SUCCEEDED:
        if complete_payment(payment, provider_reference=parsed.provider_reference) is None:
            return WebhookEvent.RESULT_IGNORED, f"Payment already {payment.status.lower()}."
        return WebhookEvent.RESULT_PROCESSED, "Payment succeeded."
    if parsed.status == WEBHOOK_FAILED:
        if not fail_payment(payment, reason=parsed.error or "Declined by provider."):
            return WebhookEvent.RESULT_IGNORED, f"Payment already {payment.status.lower()}."
        return WebhookEvent.RESULT_PROCESSED, "Payment failed."
    if parsed.status == WEBHOOK_REFUNDED:
        if not mark_payment_refunded(payment, reason="Refunded at provider."):
            return WebhookEvent.RESULT_IGNORED, "Refund not applicable."
        return WebhookEvent.RESULT_PROCESSED, "Payment refunded."
    return WebhookEvent.RESULT_IGNORED, f"Unhandled status '{parsed.status}'."


def ingest_webhook(
    *,
    provider: str,
    body: bytes,
    headers: Mapping[str, str],
    content_type: str = "",
    resolver=None,
    request=None,
) -> WebhookOutcome:
    resolver = resolver or get_resolver()
    try:
        gateway = resolver.get_gateway(provider)
    except ConfigurationError:
        raise NotFound("Unknown payment provider.")
    provider = gateway.provider
    if provider == PROVIDER_FAKE and not resolver.fake_allowed():
        raise NotFound("Unknown payment provider.")

    parsed = gateway.parse_webhook(body, content_type=content_type, headers=headers)
    if not parsed.parsed:
        logger.warning("Unparseable %s webhook: %s", provider, parsed.error)
        emit_metric("billing.webhook.unparsed", provider=provider)
        return WebhookOutcome(http_status=400, detail=parsed.error or "Payload could not be parsed.")

    payment, method = find_webhook_target(provider, parsed)
    building = _building_for(payment, method)
    resolved = resolver.resolve_for_provider(provider, building)
    if not gateway.verify_signature(body, headers, resolved.context):
        log_billing_action(
            action="billing.webhook.signature_rejected",
            entity_type="WebhookEvent",
            entity_id=parsed.event_id,
            building_id=getattr(building, "pk", None),
            meta_new={"provider": provider, "provider_reference": parsed.provider_reference},
            request=request,
        )
        emit_metric("billing.webhook.rejected", provider=provider)
        raise SignatureVerificationFailure()

    if WebhookEvent.objects.filter(provider=provider, event_id=parsed.event_id).exists():
        logger.info("Duplicate %s webhook %s ignored.", provider, parsed.event_id)
        return WebhookOutcome(duplicate=True, event_id=parsed.event_id)

    received_at = timezone.now()
    try:
        with transaction.atomic():
            result, detail = _apply(payment, method, parsed)
            WebhookEvent.objects.create(
                provider=provider,
                event_id=parsed.event_id,
                provider_reference=parsed.provider_reference,
                payload_hash=payload_fingerprint(body),
                received_at=received_at,
                processed_at=timezone.now(),
                result=result,
                detail=detail[:255],
            )
    except IntegrityError:
        if WebhookEvent.objects.filter(provider=provider, event_id=parsed.event_id).exists():
            return WebhookOutcome(duplicate=True, event_id=parsed.event_id)
        raise

    if result == WebhookEvent.RESULT_UNMATCHED:
        logger.warning("%s webhook %s matched nothing (ref=%s).", provider, parsed.event_id, parsed.provider_reference)
    emit_metric("billing.webhook.processed", provider=provider, result=result)
    return WebhookOutcome(result=result, detail=detail, event_id=parsed.event_id)
