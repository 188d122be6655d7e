import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from .models import ZERO, Charge, Payment, PaymentAllocation
from .ops import emit_metric

logger = logging.getLogger(__name__)


@dataclass
class AllocationResult:
    payment: Payment
    allocations: List[PaymentAllocation] = field(default_factory=list)
    unallocated: Decimal = ZERO
    touched_charges: List[Charge] = field(default_factory=list)

    @property
    def allocated(self) -> Decimal:
        return sum((item.amount for item in self.allocations), ZERO)


def status_for(charge: Charge, allocated: Decimal, today) -> str:
    if charge.status == Charge.STATUS_CANCELLED:
        return charge.status
    if allocated > 0 and allocated >= charge.amount_due:
        return Charge.STATUS_PAID
    if allocated > 0:
        return Charge.STATUS_PARTIALLY_PAID
    if charge.due_date < today:
        return Charge.STATUS_OVERDUE
    return Charge.STATUS_PENDING


def refresh_charge_status(charge: Charge, *, today=None, allow_regress: bool = False) -> str:
    """
    Recompute ``charge.status`` from its allocations and persist it when it changes.

    A PAID charge stays PAID unless ``allow_regress`` is set by an explicit
    manager adjustment of the amount due.
    """
    today = today or timezone.localdate()
    allocated = charge.allocations.aggregate(total=Sum("amount"))["total"] or ZERO
    new_status = status_for(charge, allocated, today)
    if charge.status == Charge.STATUS_PAID and new_status != Charge.STATUS_PAID and not allow_regress:
        return charge.status
    if new_status != charge.status:
        charge.status = new_status
        charge.save(update_fields=["status", "updated_at"])
    return charge.status


def allocate_payment(payment: Payment, amount: Optional[Decimal] = None, *, today=None) -> AllocationResult:
    """
    Spread a succeeded payment over the unit's outstanding charges, oldest due first.

    Must run inside the caller's transaction so the allocation rows, the charge
    statuses and the payment's over-payment figure commit together.
    """
    if payment.status != Payment.STATUS_SUCCEEDED:
        raise ValueError("Only succeeded payments can be allocated.")

    already = payment.allocations.aggregate(total=Sum("amount"))["total"] or ZERO
    available = payment.amount - already
    if amount is not None:
        available = min(available, Decimal(amount))
    result = AllocationResult(payment=payment)
    if available <= 0:
        return result

    with transaction.atomic():
        charges = (
            Charge.objects.select_for_update()
            .filter(unit_id=payment.unit_id, status__in=Charge.OUTSTANDING_STATUSES)
            .order_by("due_date", "created_at", "id")
        )
        remaining_payment = available
        for charge in charges:
            if remaining_payment <= 0:
                break
            remaining_charge = charge.remaining_balance()
            if remaining_charge <= 0:
                continue
            portion = min(remaining_charge, remaining_payment)
            allocation = PaymentAllocation.objects.create(payment=payment, charge=charge, amount=portion)
            result.allocations.append(allocation)
            result.touched_charges.append(charge)
            remaining_payment -= portion

        for charge in result.touched_charges:
            refresh_charge_status(charge, today=today)

        result.unallocated = remaining_payment
        if remaining_payment > 0:
            payment.unallocated_amount = remaining_payment
            payment.save(update_fields=["unallocated_amount", "updated_at"])
            logger.warning(
                "Over-payment of %s on payment %s for unit %s left unallocated.",
                remaining_payment,
                payment.id,
                payment.unit_id,
            )
            emit_metric("billing.allocation.overpayment", unit_id=payment.unit_id)

    emit_metric("billing.allocation.applied", len(result.allocations), payment_id=str(payment.id))
    return result
