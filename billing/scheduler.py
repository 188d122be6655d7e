"""
Daily recurring billing.

A run is keyed by calendar day in ``JobRun``. The RUNNING marker is inserted
before any charge is touched and flipped to COMPLETED under a row lock at the
end, only by the run that still owns the marker's token.
"""
import logging
import threading
import uuid
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from .charges import mark_overdue_charges
from .exceptions import BillingError, ConfigurationError, RetryExhausted
from .models import Charge, JobRun, Payment
from .ops import emit_metric, recurring_idempotency_key
from .payments import charge_with_token, payment_in_flight
from .resolver import get_resolver
from .services import get_default_payment_method, log_billing_action, notify_building_manager

logger = logging.getLogger(__name__)

JOB_NAME = "recurring-payments"


@dataclass
class RecurringRunResult:
    run_date: date
    already_ran: bool = False
    overdue_marked: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    pending: int = 0
    skipped: int = 0
    exhausted: int = 0
    completed: bool = False

    def as_dict(self):
        data = asdict(self)
        data["run_date"] = self.run_date.isoformat()
        return data


def _max_retries() -> int:
    return getattr(settings, "BILLING_MAX_RETRIES", 3)


def _claim_run(run_date: date) -> Optional[uuid.UUID]:
    """Insert the RUNNING marker or take over a stale one; None means the day is taken."""
    period_key = run_date.isoformat()
    token = uuid.uuid4()
    now = timezone.now()
    try:
        with transaction.atomic():
            JobRun.objects.create(
                job_name=JOB_NAME,
                period_key=period_key,
                status=JobRun.STATUS_RUNNING,
                run_token=token,
                started_at=now,
            )
        return token
    except IntegrityError:
        pass

    stale_after = timedelta(minutes=getattr(settings, "BILLING_RUN_STALE_AFTER_MINUTES", 60))
    with transaction.atomic():
        run = JobRun.objects.select_for_update().filter(job_name=JOB_NAME, period_key=period_key).first()
        if run is None or run.status == JobRun.STATUS_COMPLETED:
            return None
        if run.started_at > now - stale_after:
            logger.info("Recurring run for %s is already in progress (token %s).", period_key, run.run_token)
            return None
        logger.warning("Taking over stale recurring run for %s started at %s.", period_key, run.started_at)
        run.run_token = token
        run.started_at = now
        run.save(update_fields=["run_token", "started_at"])
    return token


def _complete_run(run_date: date, token: uuid.UUID, details: dict) -> bool:
    with transaction.atomic():
        run = (
            JobRun.objects.select_for_update()
            .filter(job_name=JOB_NAME, period_key=run_date.isoformat())
            .first()
        )
        if run is None or run.status != JobRun.STATUS_RUNNING or run.run_token != token:
            logger.warning("Recurring run for %s lost its marker; not completing.", run_date)
            return False
        run.status = JobRun.STATUS_COMPLETED
        run.ran_at = timezone.now()
        run.details = details
        run.save(update_fields=["status", "ran_at", "details"])
    return True


def _record_failure(charge: Charge, reason: str):
    Charge.objects.filter(pk=charge.pk).update(
        failed_attempts=F("failed_attempts") + 1,
        last_attempt_at=timezone.now(),
        updated_at=timezone.now(),
    )
    charge.refresh_from_db(fields=["failed_attempts", "last_attempt_at"])
    logger.warning(
        "Recurring charge %s failed (%s/%s): %s",
        charge.id,
        charge.failed_attempts,
        _max_retries(),
        reason,
    )
    if charge.failed_attempts >= _max_retries():
        _report_exhausted(charge)


def _report_exhausted(charge: Charge):
    unit = charge.unit
    log_billing_action(
        action="billing.charge.retry_exhausted",
        entity_type="Charge",
        entity_id=charge.id,
        building_id=unit.building_id,
        meta_new={"failed_attempts": charge.failed_attempts, "period": charge.period},
    )
    notify_building_manager(
        building=unit.building,
        title="Automatic payment stopped",
        body=(
            f"The automatic payment for unit {unit.unit_number} ({charge.period}) failed "
            f"{charge.failed_attempts} times. Reset its retries after the tenant updates their card."
        ),
        data={"event": "billing.charge.retry_exhausted", "charge_id": str(charge.id)},
    )
    emit_metric("billing.recurring.exhausted", building_id=unit.building_id)


def _outstanding_charges():
    return (
        Charge.objects.filter(
            status__in=Charge.OUTSTANDING_STATUSES,
            unit__is_active=True,
            unit__tenant_user__isnull=False,
        )
        .select_related("unit__building__manager", "unit__tenant_user")
        .order_by("due_date", "created_at")
    )


def run_recurring_billing(run_date: Optional[date] = None, *, resolver=None) -> RecurringRunResult:
    run_date = run_date or timezone.localdate()
    result = RecurringRunResult(run_date=run_date)

    token = _claim_run(run_date)
    if token is None:
        result.already_ran = True
        logger.info("Recurring billing already ran for %s.", run_date)
        return result

    resolver = resolver or get_resolver()
    result.overdue_marked = mark_overdue_charges(today=run_date)
    max_retries = _max_retries()

    for charge in _outstanding_charges():
        method = get_default_payment_method(charge.unit.tenant_user)
        if method is None:
            continue
        if charge.remaining_balance() <= 0 or payment_in_flight(charge, include_sessions=True):
            result.skipped += 1
            continue
        if charge.failed_attempts >= max_retries:
            result.skipped += 1
            continue

        try:
            outcome = charge_with_token(
                charge=charge,
                payment_method=method,
                payer=charge.unit.tenant_user,
                idempotency_key=recurring_idempotency_key(charge.id, run_date),
                source=Payment.SOURCE_RECURRING,
                resolver=resolver,
            )
        except RetryExhausted:
            result.exhausted += 1
            continue
        except ConfigurationError as exc:
            # Nothing reached the provider.
            logger.error("Recurring charge %s skipped: %s", charge.id, exc.detail)
            result.skipped += 1
            continue
        except BillingError as exc:
            result.attempted += 1
            result.failed += 1
            _record_failure(charge, str(exc.detail))
            continue

        result.attempted += 1
        if outcome.succeeded:
            result.succeeded += 1
        elif outcome.pending:
            result.pending += 1
        elif outcome.replayed:
            result.skipped += 1
        else:
            result.failed += 1
            _record_failure(charge, outcome.error)

    result.completed = _complete_run(run_date, token, result.as_dict())
    emit_metric(
        "billing.recurring.run",
        result.attempted,
        succeeded=result.succeeded,
        failed=result.failed,
        pending=result.pending,
    )
    logger.info("Recurring billing for %s finished: %s", run_date, result.as_dict())
    return result


class RecurringBillingScheduler:
    """Daily loop with its own stop signal; one tick per interval."""

    def __init__(self, interval_seconds: Optional[int] = None, resolver=None):
        self.interval_seconds = interval_seconds or getattr(settings, "BILLING_RECURRING_INTERVAL_SECONDS", 86400)
        self.resolver = resolver
        self._stop = threading.Event()

    def run_once(self, run_date: Optional[date] = None) -> RecurringRunResult:
        return run_recurring_billing(run_date, resolver=self.resolver)

    def run_forever(self):
        logger.info("Recurring billing scheduler started (interval %ss).", self.interval_seconds)
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Recurring billing run crashed; retrying next tick.")
            self._stop.wait(self.interval_seconds)
        logger.info("Recurring billing scheduler stopped.")

    def stop(self):
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()
