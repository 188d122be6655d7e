import json
import logging
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from rest_framework.exceptions import ValidationError

from accounts.notifications import create_notification
from accounts.utils import send_plain_email

from .models import BillingAuditLog, PaymentMethod

logger = logging.getLogger(__name__)


def decimal_amount(value):
    try:
        return Decimal(str(value))
    except (TypeError, ValueError, ArithmeticError):
        raise ValidationError("Amount must be a valid number.")


def _serialize_meta(data):
    try:
        return json.dumps(data or {}, default=str)
    except (TypeError, ValueError):
        return ""


def log_billing_action(
    *,
    action,
    entity_type,
    entity_id,
    actor_id=None,
    building_id=None,
    meta_old=None,
    meta_new=None,
    request=None,
):
    return BillingAuditLog.objects.create(
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        actor_id=actor_id,
        building_id=building_id,
        meta_old=_serialize_meta(meta_old),
        meta_new=_serialize_meta(meta_new),
        ip_address=getattr(request, "META", {}).get("REMOTE_ADDR") if request else None,
        user_agent=getattr(request, "META", {}).get("HTTP_USER_AGENT", "") if request else "",
    )


def notify_building_manager(*, building, title, body="", notification_type="ALERT", data=None):
    manager = getattr(building, "manager", None)
    if manager is None:
        logger.info("Building %s has no manager to notify: %s", building.pk, title)
        return None
    return create_notification(
        user=manager,
        title=title,
        body=body or "",
        type=notification_type,
        data=data or {},
        building=building,
    )


def notify_payment_succeeded(payment):
    """In-app notification plus receipt email to the payer."""
    payer = payment.payer or payment.unit.tenant_user
    if payer is None:
        return None
    unit = payment.unit
    body = (
        f"We received your payment of {payment.amount} {payment.currency} "
        f"for unit {unit.unit_number}. Reference: {payment.provider_reference or payment.id}."
    )
    notification = create_notification(
        user=payer,
        title="Payment received",
        body=body,
        type="INFO",
        data={"event": "billing.payment.succeeded", "payment_id": str(payment.id)},
        building=unit.building,
    )
    send_plain_email(payer.email, f"Payment receipt - {unit.building.name}", body)
    return notification


def set_default_payment_method(method, *, actor_id=None, request=None):
    if not isinstance(method, PaymentMethod):
        raise ValidationError("Invalid payment method.")
    if not method.is_active:
        raise ValidationError("Only active payment methods can be made default.")

    with transaction.atomic():
        PaymentMethod.objects.filter(user=method.user, is_active=True).exclude(pk=method.pk).update(is_default=False)
        method.is_default = True
        method.save(update_fields=["is_default", "updated_at"])

    log_billing_action(
        action="billing.payment_method.default_changed",
        entity_type="PaymentMethod",
        entity_id=method.id,
        actor_id=actor_id,
        meta_new={"last4": method.last4},
        request=request,
    )
    return method


def deactivate_payment_method(method, *, actor_id=None, request=None):
    """Soft delete; payments keep pointing at the row."""
    with transaction.atomic():
        method.is_active = False
        method.is_default = False
        method.save(update_fields=["is_active", "is_default", "updated_at"])

    log_billing_action(
        action="billing.payment_method.removed",
        entity_type="PaymentMethod",
        entity_id=method.id,
        actor_id=actor_id,
        request=request,
    )
    return method


def get_default_payment_method(user):
    if user is None:
        return None
    return (
        PaymentMethod.objects.filter(user=user, is_active=True, is_default=True)
        .exclude(token_encrypted="")
        .first()
    )


def default_currency():
    return getattr(settings, "BILLING_DEFAULT_CURRENCY", "ILS")
