import calendar
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from properties.models import Unit

from . import ledger
from .allocation import refresh_charge_status
from .exceptions import ConfigurationError
from .fees import evaluate_fee
from .models import ZERO, Charge, JobRun
from .ops import emit_metric
from .services import decimal_amount, log_billing_action

logger = logging.getLogger(__name__)

PERIOD_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


@dataclass
class GenerateChargesResult:
    already_generated: bool
    period: str
    created: int
    message: str
    charges: List[Charge] = field(default_factory=list)


def parse_period(period: str) -> date:
    match = PERIOD_RE.match(period or "")
    if not match:
        raise ValidationError("Period must be formatted as YYYY-MM.")
    return date(int(match.group(1)), int(match.group(2)), 1)


def due_date_for(period_start: date) -> date:
    last_day = calendar.monthrange(period_start.year, period_start.month)[1]
    return date(period_start.year, period_start.month, last_day)


def charge_job_name(plan) -> str:
    return f"charges:{plan.id}"


def _already_generated(plan, period: str) -> GenerateChargesResult:
    return GenerateChargesResult(
        already_generated=True,
        period=period,
        created=0,
        message=f"Charges for {period} were already generated for plan '{plan.name}'.",
    )


def generate_charges(*, building, plan, period: str, actor_id=None, request=None) -> GenerateChargesResult:
    """
    Create one charge per active unit for (plan, period).

    Repeating the call is a no-op reported as ``already_generated``. Units are
    evaluated before anything is written, and the inserts plus the completion
    marker share one transaction, so a failed run can simply be retried.
    """
    period_start = parse_period(period)
    if plan.building_id != building.pk:
        raise ValidationError("Fee plan does not belong to this building.")
    if not plan.is_active:
        raise ConfigurationError(f"Fee plan '{plan.name}' is not active.")
    if (plan.effective_from.year, plan.effective_from.month) > (period_start.year, period_start.month):
        raise ConfigurationError(f"Fee plan '{plan.name}' is not effective for {period}.")

    job_name = charge_job_name(plan)
    if JobRun.objects.filter(job_name=job_name, period_key=period, status=JobRun.STATUS_COMPLETED).exists():
        return _already_generated(plan, period)

    units = list(Unit.objects.filter(building=building, is_active=True).select_related("building").order_by("unit_number"))
    amounts = {unit.pk: evaluate_fee(plan, unit) for unit in units}
    due_date = due_date_for(period_start)

    created = []
    try:
        with transaction.atomic():
            existing = set(
                Charge.objects.filter(fee_plan=plan, period=period).values_list("unit_id", flat=True)
            )
            for unit in units:
                if unit.pk in existing:
                    continue
                charge = Charge.objects.create(
                    unit=unit,
                    fee_plan=plan,
                    period=period,
                    amount_due=amounts[unit.pk],
                    due_date=due_date,
                    status=Charge.STATUS_PENDING,
                )
                if charge.amount_due > 0:
                    ledger.record_charge(charge)
                created.append(charge)

            now = timezone.now()
            JobRun.objects.create(
                job_name=job_name,
                period_key=period,
                status=JobRun.STATUS_COMPLETED,
                started_at=now,
                ran_at=now,
                details={"created": len(created), "units": len(units)},
            )
    except IntegrityError:
        logger.info("Concurrent charge generation detected for plan %s period %s.", plan.id, period)
        return _already_generated(plan, period)

    log_billing_action(
        action="billing.charges.generated",
        entity_type="FeePlan",
        entity_id=plan.id,
        actor_id=actor_id,
        building_id=building.pk,
        meta_new={"period": period, "created": len(created)},
        request=request,
    )
    emit_metric("billing.charges.generated", len(created), building_id=building.pk, period=period)
    return GenerateChargesResult(
        already_generated=False,
        period=period,
        created=len(created),
        message=f"Created {len(created)} charges for {period}.",
        charges=created,
    )


def adjust_charge(charge, *, new_amount, actor_id=None, reason="", request=None) -> Charge:
    new_amount = decimal_amount(new_amount)
    if new_amount < 0:
        raise ValidationError("Amount due cannot be negative.")

    with transaction.atomic():
        charge = Charge.objects.select_for_update().select_related("unit__building").get(pk=charge.pk)
        if charge.status == Charge.STATUS_CANCELLED:
            raise ValidationError("Cancelled charges cannot be adjusted.")
        allocated = charge.allocated_total()
        if new_amount < allocated:
            raise ValidationError(f"Amount due cannot be lower than the {allocated} already paid.")

        old_amount = charge.amount_due
        difference = new_amount - old_amount
        if difference == 0:
            return charge

        charge.amount_due = new_amount
        charge.save(update_fields=["amount_due", "updated_at"])
        refresh_charge_status(charge, allow_regress=True)
        ledger.record_adjustment(
            unit=charge.unit,
            amount_change=difference,
            reference_type="Charge",
            reference_id=charge.id,
            description=reason or f"Charge {charge.period} adjusted from {old_amount} to {new_amount}",
        )

    log_billing_action(
        action="billing.charge.adjusted",
        entity_type="Charge",
        entity_id=charge.id,
        actor_id=actor_id,
        building_id=charge.unit.building_id,
        meta_old={"amount_due": old_amount},
        meta_new={"amount_due": new_amount, "reason": reason},
        request=request,
    )
    return charge


def cancel_charge(charge, *, actor_id=None, reason="", request=None) -> Charge:
    with transaction.atomic():
        charge = Charge.objects.select_for_update().select_related("unit__building").get(pk=charge.pk)
        if charge.status == Charge.STATUS_CANCELLED:
            return charge
        if charge.allocations.exists():
            raise ValidationError("Charges with payments applied cannot be cancelled; adjust the amount instead.")

        old_status = charge.status
        charge.status = Charge.STATUS_CANCELLED
        charge.save(update_fields=["status", "updated_at"])
        if charge.amount_due > 0:
            ledger.record_adjustment(
                unit=charge.unit,
                amount_change=-charge.amount_due,
                reference_type="Charge",
                reference_id=charge.id,
                description=reason or f"Charge {charge.period} cancelled",
            )

    log_billing_action(
        action="billing.charge.cancelled",
        entity_type="Charge",
        entity_id=charge.id,
        actor_id=actor_id,
        building_id=charge.unit.building_id,
        meta_old={"status": old_status},
        meta_new={"status": charge.status, "reason": reason},
        request=request,
    )
    return charge


def reset_charge_retries(charge, *, actor_id=None, request=None) -> Charge:
    previous = charge.failed_attempts
    Charge.objects.filter(pk=charge.pk).update(failed_attempts=0, updated_at=timezone.now())
    charge.refresh_from_db()
    log_billing_action(
        action="billing.charge.retries_reset",
        entity_type="Charge",
        entity_id=charge.id,
        actor_id=actor_id,
        building_id=charge.unit.building_id,
        meta_old={"failed_attempts": previous},
        meta_new={"failed_attempts": 0},
        request=request,
    )
    return charge


def mark_overdue_charges(*, today: Optional[date] = None) -> int:
    """Status sweep: untouched pending charges past their due date become overdue."""
    today = today or timezone.localdate()
    updated = (
        Charge.objects.filter(status=Charge.STATUS_PENDING, due_date__lt=today, allocations__isnull=True)
        .update(status=Charge.STATUS_OVERDUE, updated_at=timezone.now())
    )
    if updated:
        emit_metric("billing.charges.overdue", updated)
    return updated


def outstanding_total(unit) -> Decimal:
    total = ZERO
    for charge in Charge.objects.filter(unit=unit, status__in=Charge.OUTSTANDING_STATUSES):
        total += charge.remaining_balance()
    return total
