import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import Optional, Tuple

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from . import ledger
from .allocation import AllocationResult, allocate_payment
from .charges import outstanding_total
from .constants import FEATURE_HOSTED_PAGE, FEATURE_RECURRING, FEATURE_REFUNDS, FEATURE_TOKENIZATION
from .crypto import fingerprint_token
from .exceptions import ConfigurationError, GatewayError, RetryExhausted
from .gateway_service import (
    ChargeTokenRequest,
    PaymentSessionRequest,
    PaymentSessionResult,
    RefundRequest,
    TokenizeRequest,
    TokenizeResult,
)
from .models import Charge, Payment, PaymentMethod
from .ops import emit_metric, session_idempotency_key
from .resolver import ResolvedGateway, get_resolver
from .services import decimal_amount, default_currency, log_billing_action, notify_payment_succeeded

logger = logging.getLogger(__name__)

SESSION_IN_FLIGHT_HOURS = 24


@dataclass
class PaymentOutcome:
    payment: Payment
    succeeded: bool = False
    pending: bool = False
    replayed: bool = False
    error: str = ""
    allocation: Optional[AllocationResult] = None

    @property
    def failed(self) -> bool:
        return not (self.succeeded or self.pending)


def webhook_url(provider: str) -> str:
    base = getattr(settings, "BACKEND_URL", "").rstrip("/")
    return f"{base}/api/billing/webhooks/{provider.lower()}/"


def frontend_url(path: str) -> str:
    base = getattr(settings, "FRONTEND_URL", "").rstrip("/")
    return f"{base}/{path.lstrip('/')}"


def _require_feature(resolved: ResolvedGateway, feature: int, label: str):
    if not resolved.context.supports(feature):
        raise ConfigurationError(f"{resolved.gateway.display_name} is not enabled for {label}.")


def payable_amount(charge: Charge, amount=None) -> Decimal:
    """Requested amount capped at the charge's remaining balance."""
    if not charge.is_outstanding:
        raise ValidationError("Charge is not open for payment.")
    remaining = charge.remaining_balance()
    if remaining <= 0:
        raise ValidationError("Charge is already fully paid.")
    if amount is None:
        return remaining
    amount = decimal_amount(amount)
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero.")
    return min(amount, remaining)


def payment_in_flight(charge: Charge, *, include_sessions: bool = False) -> Optional[Payment]:
    """
    Pending attempt for ``charge`` that may still settle at the provider.

    Token and recurring attempts stay in flight until reconciled. Hosted
    sessions count only when ``include_sessions`` is set and they are younger
    than SESSION_IN_FLIGHT_HOURS, so abandoned checkouts expire.
    """
    pending = Payment.objects.filter(charge=charge, status=Payment.STATUS_PENDING).exclude(source=Payment.SOURCE_MANUAL)
    if include_sessions:
        cutoff = timezone.now() - timedelta(hours=SESSION_IN_FLIGHT_HOURS)
        pending = pending.filter(~Q(source=Payment.SOURCE_SESSION) | Q(created_at__gte=cutoff))
    else:
        pending = pending.exclude(source=Payment.SOURCE_SESSION)
    return pending.order_by("created_at").first()


def _existing_outcome(payment: Payment) -> PaymentOutcome:
    return PaymentOutcome(
        payment=payment,
        succeeded=payment.status == Payment.STATUS_SUCCEEDED,
        pending=payment.status == Payment.STATUS_PENDING,
        replayed=True,
        error=payment.failure_reason,
    )


def complete_payment(payment: Payment, *, provider_reference: str = "", paid_at=None, today=None) -> Optional[AllocationResult]:
    """
    Mark a payment succeeded, allocate it and credit the ledger.

    Returns None when the payment was already applied, so a late webhook for a
    synchronously completed charge changes nothing.
    """
    with transaction.atomic():
        payment = Payment.objects.select_for_update().select_related("unit__building").get(pk=payment.pk)
        if payment.status == Payment.STATUS_SUCCEEDED:
            logger.info("Payment %s already succeeded; nothing to apply.", payment.id)
            return None
        if not payment.can_transition_to(Payment.STATUS_SUCCEEDED):
            logger.warning("Ignoring success for payment %s in status %s.", payment.id, payment.status)
            return None

        payment.status = Payment.STATUS_SUCCEEDED
        payment.paid_at = paid_at or timezone.now()
        payment.failure_reason = ""
        if provider_reference:
            payment.provider_reference = provider_reference
        payment.save(update_fields=["status", "paid_at", "failure_reason", "provider_reference", "updated_at"])

        allocation = allocate_payment(payment, today=today)
        ledger.record_payment(payment)
        transaction.on_commit(lambda: notify_payment_succeeded(payment))

    emit_metric("billing.payment.succeeded", provider=payment.provider or "manual", source=payment.source)
    return allocation


def fail_payment(payment: Payment, *, reason: str = "") -> bool:
    with transaction.atomic():
        payment = Payment.objects.select_for_update().get(pk=payment.pk)
        if not payment.can_transition_to(Payment.STATUS_FAILED):
            return False
        payment.status = Payment.STATUS_FAILED
        payment.failure_reason = reason or "Payment declined."
        payment.save(update_fields=["status", "failure_reason", "updated_at"])
    logger.warning("Payment %s failed: %s", payment.id, payment.failure_reason)
    emit_metric("billing.payment.failed", provider=payment.provider, source=payment.source)
    return True


def mark_payment_refunded(payment: Payment, *, reason: str = "") -> bool:
    """Refunds re-open the amount on the unit's ledger; allocations stay as recorded."""
    with transaction.atomic():
        payment = Payment.objects.select_for_update().select_related("unit__building").get(pk=payment.pk)
        if not payment.can_transition_to(Payment.STATUS_REFUNDED):
            return False
        payment.status = Payment.STATUS_REFUNDED
        if reason:
            payment.notes = f"{payment.notes}\nRefund: {reason}".strip()
        payment.save(update_fields=["status", "notes", "updated_at"])
        ledger.record_adjustment(
            unit=payment.unit,
            amount_change=payment.amount,
            reference_type="Payment",
            reference_id=payment.id,
            description=f"Refund of payment {payment.provider_reference or payment.id}",
        )
    emit_metric("billing.payment.refunded", provider=payment.provider)
    return True


def start_payment_session(
    *,
    charge: Charge,
    payer,
    amount=None,
    success_url: str = "",
    cancel_url: str = "",
    resolver=None,
) -> Tuple[Payment, PaymentSessionResult]:
    resolver = resolver or get_resolver()
    amount = payable_amount(charge, amount)
    unit = charge.unit
    resolved = resolver.resolve(unit.building)
    _require_feature(resolved, FEATURE_HOSTED_PAGE, "hosted payment pages")

    with transaction.atomic():
        payment = Payment.objects.create(
            unit=unit,
            payer=payer,
            charge=charge,
            amount=amount,
            currency=resolved.context.currency,
            status=Payment.STATUS_PENDING,
            source=Payment.SOURCE_SESSION,
            provider=resolved.provider,
        )
        payment.idempotency_key = session_idempotency_key(charge.id, payment.id)
        payment.save(update_fields=["idempotency_key", "updated_at"])

    session_request = PaymentSessionRequest(
        charge_id=str(charge.id),
        payment_id=str(payment.id),
        payer_id=getattr(payer, "id", None),
        payer_name=getattr(payer, "display_name", "") or "",
        payer_email=getattr(payer, "email", "") or "",
        amount=amount,
        currency=payment.currency,
        description=f"HOA {charge.period} - unit {unit.unit_number}",
        success_url=success_url or frontend_url(f"payments/success?payment={payment.id}"),
        cancel_url=cancel_url or frontend_url(f"payments/cancel?payment={payment.id}"),
        webhook_url=webhook_url(resolved.provider),
        idempotency_key=payment.idempotency_key,
    )
    try:
        result = resolved.gateway.create_payment_session(session_request, resolved.context)
    except GatewayError as exc:
        if not exc.indeterminate:
            fail_payment(payment, reason=str(exc))
        raise

    if not result.success:
        fail_payment(payment, reason=result.error)
        raise GatewayError(result.error or "Payment session could not be created.", provider=resolved.provider)

    payment.provider_reference = result.provider_reference or result.session_id
    payment.save(update_fields=["provider_reference", "updated_at"])
    emit_metric("billing.payment.session_created", provider=resolved.provider)
    return payment, result


def charge_with_token(
    *,
    charge: Charge,
    payment_method: PaymentMethod,
    amount=None,
    payer=None,
    idempotency_key: Optional[str] = None,
    source: str = Payment.SOURCE_TOKEN,
    resolver=None,
) -> PaymentOutcome:
    """
    Charge a stored token synchronously and settle the result.

    A known idempotency key returns the recorded payment without another
    gateway call. The Payment row is committed before the gateway is
    contacted; a timeout leaves it PENDING for webhook reconciliation.
    """
    if idempotency_key:
        existing = Payment.objects.filter(idempotency_key=idempotency_key).first()
        if existing:
            return _existing_outcome(existing)

    if not payment_method.is_active or not payment_method.has_token:
        raise ValidationError("Payment method is not active.")
    if payer is not None and payment_method.user_id != payer.pk:
        raise ValidationError("Payment method does not belong to this payer.")

    if source == Payment.SOURCE_RECURRING:
        max_retries = getattr(settings, "BILLING_MAX_RETRIES", 3)
        if charge.failed_attempts >= max_retries:
            raise RetryExhausted(charge, max_retries)

    resolver = resolver or get_resolver()
    requested = amount
    amount = payable_amount(charge, requested)
    unit = charge.unit
    resolved = resolver.resolve(unit.building)
    _require_feature(resolved, FEATURE_TOKENIZATION, "stored card payments")
    if source == Payment.SOURCE_RECURRING:
        _require_feature(resolved, FEATURE_RECURRING, "recurring charges")
    if payment_method.provider != resolved.provider:
        raise ConfigurationError(
            f"Saved card was issued by {payment_method.provider}, but this building bills through {resolved.provider}."
        )

    key = idempotency_key or f"token-{charge.id}-{uuid.uuid4().hex}"
    try:
        with transaction.atomic():
            locked = Charge.objects.select_for_update().get(pk=charge.pk)
            in_flight = payment_in_flight(locked, include_sessions=source == Payment.SOURCE_RECURRING)
            if in_flight is not None:
                logger.info("Charge %s already has payment %s awaiting the provider.", charge.id, in_flight.id)
                return _existing_outcome(in_flight)
            amount = payable_amount(locked, requested)
            payment = Payment.objects.create(
                unit=unit,
                payer=payer or payment_method.user,
                charge=charge,
                payment_method=payment_method,
                amount=amount,
                currency=resolved.context.currency,
                status=Payment.STATUS_PENDING,
                source=source,
                provider=resolved.provider,
                idempotency_key=key,
            )
    except IntegrityError:
        return _existing_outcome(Payment.objects.get(idempotency_key=key))

    charge_request = ChargeTokenRequest(
        token=payment_method.get_token(),
        amount=amount,
        currency=payment.currency,
        description=f"HOA {charge.period} - unit {unit.unit_number}",
        idempotency_key=key,
        provider_customer_id=payment_method.provider_customer_id,
        payment_id=str(payment.id),
    )
    try:
        result = resolved.gateway.charge_token(charge_request, resolved.context)
    except GatewayError as exc:
        if exc.indeterminate:
            logger.warning("Charge for payment %s is indeterminate: %s", payment.id, exc)
            emit_metric("billing.payment.indeterminate", provider=resolved.provider)
            return PaymentOutcome(payment=payment, pending=True, error=str(exc))
        fail_payment(payment, reason=str(exc))
        payment.refresh_from_db()
        return PaymentOutcome(payment=payment, error=str(exc))

    if not result.success:
        fail_payment(payment, reason=result.error)
        payment.refresh_from_db()
        return PaymentOutcome(payment=payment, error=result.error or "Payment declined.")

    allocation = complete_payment(payment, provider_reference=result.provider_reference)
    payment.refresh_from_db()
    return PaymentOutcome(payment=payment, succeeded=True, allocation=allocation)


def activate_payment_method(
    method: PaymentMethod,
    *,
    token: str,
    last4: str = "",
    expiry: str = "",
    card_brand: str = "",
    provider_customer_id: str = "",
) -> PaymentMethod:
    """Fill a tokenization placeholder; the same card saved twice refreshes the existing method."""
    with transaction.atomic():
        method = PaymentMethod.objects.select_for_update().get(pk=method.pk)
        duplicate = (
            PaymentMethod.objects.filter(user=method.user, is_active=True, token_fingerprint=fingerprint_token(token))
            .exclude(pk=method.pk)
            .first()
        )
        target = duplicate or method
        target.set_token(token)
        target.last4 = last4 or target.last4
        target.expiry = expiry or target.expiry
        target.card_brand = card_brand or target.card_brand
        target.provider_customer_id = provider_customer_id or target.provider_customer_id

        has_default = PaymentMethod.objects.filter(user=method.user, is_active=True, is_default=True).exclude(pk=target.pk).exists()
        make_default = method.is_default or target.is_default or not has_default
        if make_default:
            PaymentMethod.objects.filter(user=method.user, is_active=True).exclude(pk=target.pk).update(is_default=False)
        target.is_default = make_default
        target.is_active = True
        target.save()
        if duplicate:
            method.is_default = False
            method.save(update_fields=["is_default", "updated_at"])
    return target


def start_tokenization(
    *,
    user,
    building=None,
    is_default: bool = False,
    success_url: str = "",
    cancel_url: str = "",
    resolver=None,
) -> Tuple[PaymentMethod, TokenizeResult]:
    resolver = resolver or get_resolver()
    resolved = resolver.resolve(building)
    _require_feature(resolved, FEATURE_TOKENIZATION, "card tokenization")

    reference = f"tok-{uuid.uuid4().hex}"
    method = PaymentMethod.objects.create(
        user=user,
        provider=resolved.provider,
        provider_reference=reference,
        is_default=is_default,
        is_active=False,
    )
    tokenize_request = TokenizeRequest(
        user_id=user.pk,
        user_name=getattr(user, "display_name", "") or "",
        user_email=user.email,
        reference=reference,
        success_url=success_url or frontend_url(f"payment-methods/saved?reference={reference}"),
        cancel_url=cancel_url or frontend_url("payment-methods/cancelled"),
        webhook_url=webhook_url(resolved.provider),
    )
    result = resolved.gateway.tokenize(tokenize_request, resolved.context)
    if not result.success:
        method.delete()
        raise GatewayError(result.error or "Tokenization could not be started.", provider=resolved.provider)

    if result.token:
        method = activate_payment_method(
            method,
            token=result.token,
            last4=result.last4,
            expiry=result.expiry,
            card_brand=result.card_brand,
            provider_customer_id=result.provider_customer_id,
        )
    emit_metric("billing.tokenization.started", provider=resolved.provider, immediate=bool(result.token))
    return method, result


def refund_payment(payment: Payment, *, actor_id=None, reason: str = "", request=None, resolver=None) -> Payment:
    """The payment row stays locked across the provider call so a refund is only sent once."""
    refund_reference = ""
    with transaction.atomic():
        payment = Payment.objects.select_for_update().select_related("unit__building").get(pk=payment.pk)
        if payment.status != Payment.STATUS_SUCCEEDED:
            raise ValidationError("Only succeeded payments can be refunded.")

        if not payment.is_manual:
            resolver = resolver or get_resolver()
            resolved = resolver.resolve_for_provider(payment.provider, payment.unit.building)
            _require_feature(resolved, FEATURE_REFUNDS, "refunds")
            result = resolved.gateway.refund(
                RefundRequest(
                    provider_reference=payment.provider_reference,
                    amount=payment.amount,
                    currency=payment.currency,
                    reason=reason,
                ),
                resolved.context,
            )
            if not result.success:
                raise GatewayError(result.error or "Refund was declined.", provider=resolved.provider)
            refund_reference = result.refund_reference

        mark_payment_refunded(payment, reason=reason)
    payment.refresh_from_db()
    log_billing_action(
        action="billing.payment.refunded",
        entity_type="Payment",
        entity_id=payment.id,
        actor_id=actor_id,
        building_id=payment.unit.building_id,
        meta_new={"refund_reference": refund_reference, "reason": reason},
        request=request,
    )
    return payment


def record_manual_payment(
    *,
    unit,
    amount,
    payment_date=None,
    notes: str = "",
    actor_id=None,
    request=None,
) -> Tuple[Payment, Optional[AllocationResult]]:
    """Cash or bank transfer entered by a manager."""
    amount = decimal_amount(amount)
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero.")
    outstanding = outstanding_total(unit)
    if amount > outstanding:
        raise ValidationError(f"Amount exceeds the unit's outstanding balance of {outstanding}.")

    paid_at = None
    if payment_date:
        paid_at = timezone.make_aware(datetime.combine(payment_date, time(12, 0)))

    payment = Payment.objects.create(
        unit=unit,
        payer=unit.tenant_user,
        amount=amount,
        currency=default_currency(),
        status=Payment.STATUS_PENDING,
        source=Payment.SOURCE_MANUAL,
        is_manual=True,
        notes=notes or "",
    )
    allocation = complete_payment(payment, paid_at=paid_at)
    payment.refresh_from_db()
    log_billing_action(
        action="billing.payment.manual_recorded",
        entity_type="Payment",
        entity_id=payment.id,
        actor_id=actor_id,
        building_id=unit.building_id,
        meta_new={"amount": amount, "notes": notes},
        request=request,
    )
    return payment, allocation
