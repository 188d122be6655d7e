import logging
from decimal import Decimal
from typing import List, Optional

from django.db import transaction

from properties.models import Building, Unit

from .models import ZERO, LedgerEntry

logger = logging.getLogger(__name__)


def _lock_scope(building, unit):
    # Serializes appends per unit (or per building for building-level rows).
    if unit is not None:
        Unit.objects.select_for_update().filter(pk=unit.pk).first()
    else:
        Building.objects.select_for_update().filter(pk=building.pk).first()


def _scope_queryset(building, unit):
    if unit is not None:
        return LedgerEntry.objects.filter(unit=unit)
    return LedgerEntry.objects.filter(building=building, unit__isnull=True)


def current_balance(unit: Optional[Unit] = None, *, building: Optional[Building] = None) -> Decimal:
    if unit is None and building is None:
        raise ValueError("unit or building is required")
    last = _scope_queryset(building, unit).order_by("-id").values_list("balance_after", flat=True).first()
    return last if last is not None else ZERO


def append_entry(
    *,
    building,
    entry_type,
    unit=None,
    debit=ZERO,
    credit=ZERO,
    reference_type="",
    reference_id="",
    description="",
) -> LedgerEntry:
    debit = Decimal(debit or 0)
    credit = Decimal(credit or 0)
    if debit < 0 or credit < 0:
        raise ValueError("Ledger debit and credit must be non-negative.")

    with transaction.atomic():
        _lock_scope(building, unit)
        previous = current_balance(unit, building=building)
        entry = LedgerEntry.objects.create(
            building=building,
            unit=unit,
            entry_type=entry_type,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id else "",
            description=description[:255],
            debit=debit,
            credit=credit,
            balance_after=previous - credit + debit,
        )
    logger.debug(
        "ledger append unit=%s type=%s debit=%s credit=%s balance=%s",
        getattr(unit, "pk", None),
        entry_type,
        debit,
        credit,
        entry.balance_after,
    )
    return entry


def record_charge(charge) -> LedgerEntry:
    unit = charge.unit
    return append_entry(
        building=unit.building,
        unit=unit,
        entry_type=LedgerEntry.TYPE_CHARGE,
        debit=charge.amount_due,
        reference_type="Charge",
        reference_id=charge.id,
        description=f"HOA charge {charge.period}",
    )


def record_payment(payment) -> LedgerEntry:
    unit = payment.unit
    label = "Manual payment" if payment.is_manual else "Payment"
    return append_entry(
        building=unit.building,
        unit=unit,
        entry_type=LedgerEntry.TYPE_PAYMENT,
        credit=payment.amount,
        reference_type="Payment",
        reference_id=payment.id,
        description=f"{label} {payment.provider_reference or payment.id}",
    )


def record_adjustment(*, unit, amount_change: Decimal, reference_type, reference_id, description="") -> Optional[LedgerEntry]:
    """Positive change is a debit (more owed), negative a credit."""
    if not amount_change:
        return None
    debit = amount_change if amount_change > 0 else ZERO
    credit = -amount_change if amount_change < 0 else ZERO
    return append_entry(
        building=unit.building,
        unit=unit,
        entry_type=LedgerEntry.TYPE_ADJUSTMENT,
        debit=debit,
        credit=credit,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
    )


def record_expense(*, building, amount: Decimal, description: str, reference_id="") -> LedgerEntry:
    return append_entry(
        building=building,
        unit=None,
        entry_type=LedgerEntry.TYPE_EXPENSE,
        debit=amount,
        reference_type="Expense",
        reference_id=reference_id,
        description=description,
    )


def replay_balances(unit: Optional[Unit] = None, *, building: Optional[Building] = None) -> List[LedgerEntry]:
    """Replay entries in creation order; returns the entries whose stored balance disagrees."""
    mismatches = []
    running = ZERO
    for entry in _scope_queryset(building, unit).order_by("id"):
        running = running - entry.credit + entry.debit
        if running != entry.balance_after:
            mismatches.append(entry)
            running = entry.balance_after
    return mismatches
