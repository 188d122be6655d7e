import hashlib
import hmac
import json
import os
from datetime import date, timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock
from urllib.parse import urlencode

import requests
from django.contrib.auth import get_user_model
from django.core import mail
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.management import CommandError, call_command
from django.db import transaction
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.exceptions import NotFound, ValidationError
from rest_framework.test import APITestCase

from notifications.models import Notification
from properties.models import Building, Unit

from billing import ledger
from billing.allocation import allocate_payment, refresh_charge_status
from billing.charges import adjust_charge, cancel_charge, generate_charges, mark_overdue_charges
from billing.constants import (
    ALL_FEATURES,
    FEATURE_HOSTED_PAGE,
    FEATURE_REFUNDS,
    PROVIDER_FAKE,
    PROVIDER_MESHULAM,
    feature_names,
)
from billing.exceptions import ConfigurationError, RetryExhausted, SignatureVerificationFailure
from billing.fees import evaluate_fee
from billing.gateways import FakeGateway, MeshulamGateway
from billing.models import (
    BillingAuditLog,
    Charge,
    FeePlan,
    JobRun,
    LedgerEntry,
    Payment,
    PaymentAllocation,
    PaymentMethod,
    PaymentProviderConfig,
    WebhookEvent,
)
from billing.ops import sanitize_payload
from billing.payments import (
    activate_payment_method,
    charge_with_token,
    complete_payment,
    record_manual_payment,
    refund_payment,
    start_payment_session,
    start_tokenization,
)
from billing.resolver import GatewayResolver
from billing.scheduler import JOB_NAME, RecurringBillingScheduler, _claim_run, _complete_run, run_recurring_billing
from billing.webhooks import ingest_webhook

MESHULAM_ENV = {
    "MESHULAM_USER_ID": "user-1",
    "MESHULAM_API_KEY": "api-key",
    "MESHULAM_PAGE_CODE": "page-1",
    "MESHULAM_WEBHOOK_SECRET": "whsec",
}


def gateway_response(payload, status_code=200):
    response = mock.Mock()
    response.status_code = status_code
    response.content = json.dumps(payload).encode("utf-8")
    response.text = json.dumps(payload)
    response.json.return_value = payload
    return response


def meshulam_signature(body: bytes, secret: str = "whsec") -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@override_settings(BILLING_ALLOW_FAKE_GATEWAY=True, BILLING_MAX_RETRIES=3)
class BillingTestCase(TestCase):
    """Building with three occupied units on a fixed 500 plan."""

    def setUp(self):
        User = get_user_model()
        self.manager = User.objects.create_user(email="manager@building.test", password="pass", is_manager=True)
        self.tenant = User.objects.create_user(email="tenant@building.test", password="pass", is_tenant=True)
        self.other_tenant = User.objects.create_user(email="other@building.test", password="pass", is_tenant=True)
        self.building = Building.objects.create(name="Herzl 12", city="Haifa", manager=self.manager)
        self.unit1 = Unit.objects.create(
            building=self.building, unit_number="1", size_sqm=Decimal("85.50"), tenant_user=self.tenant
        )
        self.unit2 = Unit.objects.create(
            building=self.building, unit_number="2", size_sqm=Decimal("70.00"), tenant_user=self.other_tenant
        )
        self.unit3 = Unit.objects.create(building=self.building, unit_number="3", size_sqm=Decimal("100.00"))
        self.plan = FeePlan.objects.create(
            building=self.building,
            name="Monthly HOA",
            calculation_method=FeePlan.METHOD_FIXED_PER_UNIT,
            fixed_amount=Decimal("500.00"),
            effective_from=date(2026, 1, 1),
        )

    def generate(self, period="2099-01"):
        return generate_charges(building=self.building, plan=self.plan, period=period)

    def charge_for(self, unit, period="2099-01"):
        return Charge.objects.get(unit=unit, fee_plan=self.plan, period=period)

    def save_card(self, user=None, token="fake_tok_1234", provider=PROVIDER_FAKE, is_default=True):
        method = PaymentMethod(
            user=user or self.tenant,
            provider=provider,
            last4="4242",
            card_brand="Visa",
            is_active=True,
            is_default=is_default,
        )
        method.set_token(token)
        method.save()
        return method

    def meshulam_config(self, building=None, features=ALL_FEATURES):
        return PaymentProviderConfig.objects.create(
            building=building if building is not None else self.building,
            provider=PROVIDER_MESHULAM,
            merchant_id_ref="MESHULAM_USER_ID",
            api_password_ref="MESHULAM_API_KEY",
            terminal_id_ref="MESHULAM_PAGE_CODE",
            webhook_secret_ref="MESHULAM_WEBHOOK_SECRET",
            supported_features=features,
        )

    def meshulam_resolver(self, session):
        return GatewayResolver(
            gateways={
                PROVIDER_FAKE: FakeGateway(),
                PROVIDER_MESHULAM: MeshulamGateway(session=session),
            }
        )


class FeePlanEvaluatorTests(BillingTestCase):
    def test_fixed_plan_charges_every_unit_the_same(self):
        self.assertEqual(evaluate_fee(self.plan, self.unit1), Decimal("500.00"))
        self.assertEqual(evaluate_fee(self.plan, self.unit3), Decimal("500.00"))

    def test_per_sqm_rounds_half_up_to_cents(self):
        plan = FeePlan(
            building=self.building,
            name="By size",
            calculation_method=FeePlan.METHOD_BY_SQM,
            rate_per_sqm=Decimal("1.5"),
            effective_from=date(2026, 1, 1),
        )
        unit = Unit(building=self.building, unit_number="9", size_sqm=Decimal("3.33"))
        self.assertEqual(evaluate_fee(plan, unit), Decimal("5.00"))
        self.assertEqual(evaluate_fee(plan, self.unit1), Decimal("128.25"))

    def test_manual_plan_evaluates_to_zero(self):
        self.plan.calculation_method = FeePlan.METHOD_MANUAL_PER_UNIT
        self.assertEqual(evaluate_fee(self.plan, self.unit1), Decimal("0.00"))

    def test_missing_parameters_raise_configuration_error(self):
        self.plan.fixed_amount = None
        with self.assertRaises(ConfigurationError):
            evaluate_fee(self.plan, self.unit1)

        plan = FeePlan(
            building=self.building,
            name="By size",
            calculation_method=FeePlan.METHOD_BY_SQM,
            rate_per_sqm=Decimal("4.00"),
            effective_from=date(2026, 1, 1),
        )
        with self.assertRaises(ConfigurationError):
            evaluate_fee(plan, Unit(building=self.building, unit_number="10"))


class ChargeGeneratorTests(BillingTestCase):
    def test_generates_one_pending_charge_per_unit(self):
        result = self.generate("2026-03")

        self.assertFalse(result.already_generated)
        self.assertEqual(result.created, 3)
        charges = Charge.objects.filter(fee_plan=self.plan, period="2026-03")
        self.assertEqual(charges.count(), 3)
        for charge in charges:
            self.assertEqual(charge.status, Charge.STATUS_PENDING)
            self.assertEqual(charge.amount_due, Decimal("500.00"))
            self.assertEqual(charge.due_date, date(2026, 3, 31))
            self.assertEqual(ledger.current_balance(charge.unit), Decimal("500.00"))
        self.assertTrue(JobRun.objects.filter(period_key="2026-03", status=JobRun.STATUS_COMPLETED).exists())

    def test_second_generation_is_reported_as_already_generated(self):
        self.generate("2026-03")
        result = self.generate("2026-03")

        self.assertTrue(result.already_generated)
        self.assertEqual(result.created, 0)
        self.assertEqual(Charge.objects.filter(period="2026-03").count(), 3)
        self.assertEqual(LedgerEntry.objects.filter(entry_type=LedgerEntry.TYPE_CHARGE).count(), 3)

    def test_inactive_units_are_not_billed(self):
        self.unit3.is_active = False
        self.unit3.save()
        self.assertEqual(self.generate().created, 2)

    def test_invalid_period_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.generate("2026-13")

    def test_plan_not_yet_effective(self):
        with self.assertRaises(ConfigurationError):
            self.generate("2025-12")

    def test_configuration_error_leaves_nothing_behind(self):
        self.plan.calculation_method = FeePlan.METHOD_BY_SQM
        self.plan.rate_per_sqm = Decimal("4.00")
        self.plan.save()
        self.unit3.size_sqm = None
        self.unit3.save()

        with self.assertRaises(ConfigurationError):
            self.generate()
        self.assertFalse(Charge.objects.exists())
        self.assertFalse(JobRun.objects.exists())

        self.unit3.size_sqm = Decimal("50.00")
        self.unit3.save()
        self.assertEqual(self.generate().created, 3)

    def test_manual_plan_creates_zero_charges_without_ledger_rows(self):
        self.plan.calculation_method = FeePlan.METHOD_MANUAL_PER_UNIT
        self.plan.save()
        self.generate()
        self.assertEqual(Charge.objects.filter(amount_due=0).count(), 3)
        self.assertFalse(LedgerEntry.objects.exists())

        charge = adjust_charge(self.charge_for(self.unit1), new_amount="320.00", actor_id=self.manager.id)
        self.assertEqual(charge.amount_due, Decimal("320.00"))
        self.assertEqual(ledger.current_balance(self.unit1), Decimal("320.00"))

    def test_mark_overdue_only_touches_unpaid_past_due(self):
        self.generate("2026-03")
        charge = self.charge_for(self.unit1, "2026-03")
        record_manual_payment(unit=self.unit1, amount="100.00")

        updated = mark_overdue_charges(today=date(2026, 4, 1))

        self.assertEqual(updated, 2)
        charge.refresh_from_db()
        self.assertEqual(charge.status, Charge.STATUS_PARTIALLY_PAID)
        self.assertEqual(self.charge_for(self.unit2, "2026-03").status, Charge.STATUS_OVERDUE)

    def test_cancel_writes_offsetting_credit(self):
        self.generate()
        charge = cancel_charge(self.charge_for(self.unit2), actor_id=self.manager.id, reason="Vacant")
        self.assertEqual(charge.status, Charge.STATUS_CANCELLED)
        self.assertEqual(ledger.current_balance(self.unit2), Decimal("0.00"))

    def test_cannot_adjust_below_paid_amount(self):
        self.generate()
        record_manual_payment(unit=self.unit1, amount="300.00")
        with self.assertRaises(ValidationError):
            adjust_charge(self.charge_for(self.unit1), new_amount="200.00")


class AllocationTests(BillingTestCase):
    def setUp(self):
        super().setUp()
        self.generate("2099-01")
        self.generate("2099-02")

    def succeeded_payment(self, amount):
        return Payment.objects.create(
            unit=self.unit1,
            amount=Decimal(amount),
            status=Payment.STATUS_SUCCEEDED,
            source=Payment.SOURCE_MANUAL,
            is_manual=True,
        )

    def test_oldest_charge_is_paid_first(self):
        payment = self.succeeded_payment("700.00")
        with transaction.atomic():
            result = allocate_payment(payment)

        self.assertEqual(result.allocated, Decimal("700.00"))
        self.assertEqual(self.charge_for(self.unit1, "2099-01").status, Charge.STATUS_PAID)
        second = self.charge_for(self.unit1, "2099-02")
        self.assertEqual(second.status, Charge.STATUS_PARTIALLY_PAID)
        self.assertEqual(second.remaining_balance(), Decimal("300.00"))

    def test_overpayment_is_kept_unallocated(self):
        payment = self.succeeded_payment("1200.00")
        with transaction.atomic():
            result = allocate_payment(payment)

        payment.refresh_from_db()
        self.assertEqual(result.unallocated, Decimal("200.00"))
        self.assertEqual(payment.unallocated_amount, Decimal("200.00"))
        for charge in Charge.objects.filter(unit=self.unit1):
            self.assertLessEqual(charge.allocated_total(), charge.amount_due)
        total = sum(a.amount for a in PaymentAllocation.objects.filter(payment=payment))
        self.assertEqual(total, Decimal("1000.00"))

    def test_allocating_twice_does_not_double_apply(self):
        payment = self.succeeded_payment("500.00")
        with transaction.atomic():
            allocate_payment(payment)
            second = allocate_payment(payment)
        self.assertEqual(second.allocations, [])
        self.assertEqual(PaymentAllocation.objects.filter(payment=payment).count(), 1)

    def test_pending_payment_cannot_be_allocated(self):
        payment = Payment.objects.create(unit=self.unit1, amount=Decimal("10.00"))
        with self.assertRaises(ValueError):
            allocate_payment(payment)

    def test_paid_charge_is_not_regressed(self):
        payment = self.succeeded_payment("500.00")
        with transaction.atomic():
            allocate_payment(payment)
        charge = self.charge_for(self.unit1, "2099-01")
        Charge.objects.filter(pk=charge.pk).update(amount_due=Decimal("600.00"))
        charge.refresh_from_db()

        self.assertEqual(refresh_charge_status(charge), Charge.STATUS_PAID)
        self.assertEqual(refresh_charge_status(charge, allow_regress=True), Charge.STATUS_PARTIALLY_PAID)


class LedgerTests(BillingTestCase):
    def test_balances_follow_previous_entry_per_unit(self):
        self.generate()
        record_manual_payment(unit=self.unit1, amount="200.00")

        entries = list(LedgerEntry.objects.filter(unit=self.unit1).order_by("id"))
        self.assertEqual([e.balance_after for e in entries], [Decimal("500.00"), Decimal("300.00")])
        self.assertEqual(ledger.current_balance(self.unit2), Decimal("500.00"))
        self.assertEqual(ledger.replay_balances(self.unit1), [])

    def test_entries_are_append_only(self):
        self.generate()
        entry = LedgerEntry.objects.first()
        entry.description = "edited"
        with self.assertRaises(DjangoValidationError):
            entry.save()
        with self.assertRaises(DjangoValidationError):
            entry.delete()

    def test_replay_reports_tampered_rows(self):
        self.generate()
        record_manual_payment(unit=self.unit1, amount="200.00")
        tampered = LedgerEntry.objects.filter(unit=self.unit1).order_by("id").last()
        LedgerEntry.objects.filter(pk=tampered.pk).update(balance_after=Decimal("1.00"))

        self.assertEqual([e.pk for e in ledger.replay_balances(self.unit1)], [tampered.pk])

        out = StringIO()
        call_command("verify_ledger", unit=self.unit1.id, stdout=out)
        self.assertIn("1 ledger entries are inconsistent", out.getvalue())

    def test_expenses_are_building_level(self):
        self.generate()
        ledger.record_expense(building=self.building, amount=Decimal("1200.00"), description="Elevator service")
        self.assertEqual(ledger.current_balance(building=self.building), Decimal("1200.00"))
        self.assertEqual(ledger.current_balance(self.unit1), Decimal("500.00"))


class PaymentProcessorTests(BillingTestCase):
    def setUp(self):
        super().setUp()
        self.generate()
        self.charge = self.charge_for(self.unit1)

    def test_token_payment_settles_charge_with_single_credit(self):
        method = self.save_card()
        with self.captureOnCommitCallbacks(execute=True):
            outcome = charge_with_token(charge=self.charge, payment_method=method, payer=self.tenant)

        self.assertTrue(outcome.succeeded)
        self.assertEqual(outcome.payment.status, Payment.STATUS_SUCCEEDED)
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.status, Charge.STATUS_PAID)
        credits = LedgerEntry.objects.filter(unit=self.unit1, entry_type=LedgerEntry.TYPE_PAYMENT)
        self.assertEqual(credits.count(), 1)
        self.assertEqual(credits.get().credit, Decimal("500.00"))
        self.assertEqual(ledger.current_balance(self.unit1), Decimal("0.00"))
        self.assertTrue(Notification.objects.filter(user=self.tenant, title="Payment received").exists())
        self.assertEqual(len(mail.outbox), 1)

    def test_repeated_idempotency_key_returns_existing_payment(self):
        method = self.save_card()
        first = charge_with_token(charge=self.charge, payment_method=method, idempotency_key="client-1")
        with mock.patch.object(FakeGateway, "charge_token") as charge_token:
            second = charge_with_token(charge=self.charge, payment_method=method, idempotency_key="client-1")

        charge_token.assert_not_called()
        self.assertTrue(second.replayed)
        self.assertEqual(first.payment.pk, second.payment.pk)
        self.assertEqual(Payment.objects.filter(idempotency_key="client-1").count(), 1)

    def test_partial_amount_leaves_remaining_balance(self):
        method = self.save_card()
        charge_with_token(charge=self.charge, payment_method=method, amount="200.00")
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.status, Charge.STATUS_PARTIALLY_PAID)
        self.assertEqual(self.charge.remaining_balance(), Decimal("300.00"))

    def test_amount_is_capped_at_remaining_balance(self):
        method = self.save_card()
        outcome = charge_with_token(charge=self.charge, payment_method=method, amount="900.00")
        self.assertEqual(outcome.payment.amount, Decimal("500.00"))

    def test_declined_token_marks_payment_failed(self):
        method = self.save_card(token="fake_tok__fail_")
        outcome = charge_with_token(charge=self.charge, payment_method=method)

        self.assertTrue(outcome.failed)
        self.assertEqual(outcome.payment.status, Payment.STATUS_FAILED)
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.status, Charge.STATUS_PENDING)
        self.assertFalse(LedgerEntry.objects.filter(entry_type=LedgerEntry.TYPE_PAYMENT).exists())

    def test_paid_charge_cannot_be_paid_again(self):
        method = self.save_card()
        charge_with_token(charge=self.charge, payment_method=method)
        self.charge.refresh_from_db()
        with self.assertRaises(ValidationError):
            charge_with_token(charge=self.charge, payment_method=method)

    def test_session_payment_stays_pending(self):
        payment, result = start_payment_session(charge=self.charge, payer=self.tenant)

        self.assertEqual(payment.status, Payment.STATUS_PENDING)
        self.assertEqual(payment.source, Payment.SOURCE_SESSION)
        self.assertEqual(payment.idempotency_key, f"pay-{self.charge.id}-{payment.id}")
        self.assertTrue(payment.provider_reference.startswith("fake_pay_"))
        self.assertIn("session_id=", result.payment_url)
        self.assertFalse(LedgerEntry.objects.filter(entry_type=LedgerEntry.TYPE_PAYMENT).exists())

    def test_complete_payment_is_idempotent(self):
        payment, _ = start_payment_session(charge=self.charge, payer=self.tenant)
        self.assertIsNotNone(complete_payment(payment))
        self.assertIsNone(complete_payment(payment))
        self.assertEqual(LedgerEntry.objects.filter(entry_type=LedgerEntry.TYPE_PAYMENT).count(), 1)

    @mock.patch.dict(os.environ, MESHULAM_ENV)
    def test_gateway_timeout_leaves_payment_pending(self):
        self.meshulam_config()
        session = mock.Mock()
        session.request.side_effect = requests.Timeout("read timeout")
        method = self.save_card(provider=PROVIDER_MESHULAM)

        outcome = charge_with_token(
            charge=self.charge,
            payment_method=method,
            resolver=self.meshulam_resolver(session),
        )

        self.assertTrue(outcome.pending)
        self.assertEqual(outcome.payment.status, Payment.STATUS_PENDING)
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.status, Charge.STATUS_PENDING)
        self.assertEqual(self.charge.failed_attempts, 0)

    @mock.patch.dict(os.environ, MESHULAM_ENV)
    def test_second_attempt_waits_for_timed_out_charge(self):
        self.meshulam_config()
        session = mock.Mock()
        session.request.side_effect = requests.Timeout("read timeout")
        method = self.save_card(provider=PROVIDER_MESHULAM)
        resolver = self.meshulam_resolver(session)

        first = charge_with_token(charge=self.charge, payment_method=method, resolver=resolver)
        second = charge_with_token(charge=self.charge, payment_method=method, resolver=resolver)

        self.assertEqual(session.request.call_count, 1)
        self.assertEqual(second.payment.pk, first.payment.pk)
        self.assertTrue(second.pending)
        self.assertTrue(second.replayed)
        self.assertEqual(Payment.objects.filter(charge=self.charge).count(), 1)

    @mock.patch.dict(os.environ, MESHULAM_ENV)
    def test_meshulam_token_charge_sends_minor_units(self):
        self.meshulam_config()
        session = mock.Mock()
        session.request.return_value = gateway_response({"status": 1, "data": {"transactionId": "T-77"}})
        method = self.save_card(provider=PROVIDER_MESHULAM)

        outcome = charge_with_token(
            charge=self.charge,
            payment_method=method,
            resolver=self.meshulam_resolver(session),
        )

        self.assertTrue(outcome.succeeded)
        self.assertEqual(outcome.payment.provider_reference, "T-77")
        sent = session.request.call_args.kwargs
        self.assertTrue(sent["url"].endswith("/chargeByToken"))
        self.assertEqual(sent["data"]["sum"], 50000)
        self.assertEqual(sent["data"]["cardToken"], "fake_tok_1234")

    @mock.patch.dict(os.environ, MESHULAM_ENV)
    def test_provider_server_error_is_indeterminate(self):
        self.meshulam_config()
        session = mock.Mock()
        session.request.return_value = gateway_response({"message": "upstream"}, status_code=503)
        method = self.save_card(provider=PROVIDER_MESHULAM)

        outcome = charge_with_token(
            charge=self.charge,
            payment_method=method,
            resolver=self.meshulam_resolver(session),
        )
        self.assertTrue(outcome.pending)

    @mock.patch.dict(os.environ, MESHULAM_ENV)
    def test_missing_feature_is_a_configuration_error(self):
        self.meshulam_config(features=FEATURE_HOSTED_PAGE)
        method = self.save_card(provider=PROVIDER_MESHULAM)
        with self.assertRaises(ConfigurationError):
            charge_with_token(charge=self.charge, payment_method=method, resolver=self.meshulam_resolver(mock.Mock()))
        self.assertFalse(Payment.objects.exists())

    def test_recurring_source_stops_at_retry_cap(self):
        method = self.save_card()
        Charge.objects.filter(pk=self.charge.pk).update(failed_attempts=3)
        self.charge.refresh_from_db()
        with self.assertRaises(RetryExhausted):
            charge_with_token(charge=self.charge, payment_method=method, source=Payment.SOURCE_RECURRING)

    def test_manual_payment_cannot_exceed_outstanding(self):
        with self.assertRaises(ValidationError):
            record_manual_payment(unit=self.unit1, amount="500.01")

        payment, allocation = record_manual_payment(
            unit=self.unit1,
            amount="500.00",
            payment_date=date(2099, 1, 5),
            notes="Bank transfer",
            actor_id=self.manager.id,
        )
        self.assertTrue(payment.is_manual)
        self.assertEqual(payment.paid_at.date(), date(2099, 1, 5))
        self.assertEqual(allocation.allocated, Decimal("500.00"))
        self.assertTrue(BillingAuditLog.objects.filter(action="billing.payment.manual_recorded").exists())

    def test_refund_reopens_balance_without_touching_allocations(self):
        method = self.save_card()
        outcome = charge_with_token(charge=self.charge, payment_method=method)

        payment = refund_payment(outcome.payment, actor_id=self.manager.id, reason="Charged twice")

        self.assertEqual(payment.status, Payment.STATUS_REFUNDED)
        self.assertEqual(ledger.current_balance(self.unit1), Decimal("500.00"))
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.status, Charge.STATUS_PAID)
        self.assertEqual(
            list(LedgerEntry.objects.filter(unit=self.unit1).values_list("entry_type", flat=True)),
            [LedgerEntry.TYPE_CHARGE, LedgerEntry.TYPE_PAYMENT, LedgerEntry.TYPE_ADJUSTMENT],
        )
        with self.assertRaises(ValidationError):
            refund_payment(payment)

    def test_stale_copy_cannot_refund_twice(self):
        method = self.save_card()
        outcome = charge_with_token(charge=self.charge, payment_method=method)
        stale = Payment.objects.get(pk=outcome.payment.pk)
        refund_payment(outcome.payment, reason="Charged twice")

        with mock.patch.object(FakeGateway, "refund") as refund:
            with self.assertRaises(ValidationError):
                refund_payment(stale, reason="Charged twice")
        refund.assert_not_called()
        self.assertEqual(
            LedgerEntry.objects.filter(unit=self.unit1, entry_type=LedgerEntry.TYPE_ADJUSTMENT).count(), 1
        )

    @mock.patch.dict(os.environ, MESHULAM_ENV)
    def test_refund_requires_feature(self):
        self.meshulam_config(features=ALL_FEATURES & ~FEATURE_REFUNDS)
        payment = Payment.objects.create(
            unit=self.unit1,
            charge=self.charge,
            amount=Decimal("500.00"),
            status=Payment.STATUS_SUCCEEDED,
            provider=PROVIDER_MESHULAM,
            provider_reference="T-1",
        )
        with self.assertRaises(ConfigurationError):
            refund_payment(payment, resolver=self.meshulam_resolver(mock.Mock()))


class TokenizationTests(BillingTestCase):
    def test_fake_tokenization_saves_card_immediately(self):
        method, result = start_tokenization(user=self.tenant, building=self.building)

        self.assertTrue(method.is_active)
        self.assertTrue(method.is_default)
        self.assertTrue(method.get_token().startswith("fake_tok_"))
        self.assertIn("reference=", result.redirect_url)

    def test_new_default_replaces_previous_default(self):
        first, _ = start_tokenization(user=self.tenant, building=self.building)
        second, _ = start_tokenization(user=self.tenant, building=self.building)
        third, _ = start_tokenization(user=self.tenant, building=self.building, is_default=True)

        first.refresh_from_db()
        second.refresh_from_db()
        self.assertFalse(first.is_default)
        self.assertFalse(second.is_default)
        self.assertTrue(third.is_default)
        self.assertEqual(PaymentMethod.objects.filter(user=self.tenant, is_default=True, is_active=True).count(), 1)

    def test_same_card_saved_twice_is_not_duplicated(self):
        existing = self.save_card(token="tok-same")
        placeholder = PaymentMethod.objects.create(user=self.tenant, provider_reference="tok-ref")

        saved = activate_payment_method(placeholder, token="tok-same", last4="4242")

        self.assertEqual(saved.pk, existing.pk)
        placeholder.refresh_from_db()
        self.assertFalse(placeholder.is_active)
        self.assertEqual(PaymentMethod.objects.filter(user=self.tenant, is_active=True).count(), 1)

    @mock.patch.dict(os.environ, MESHULAM_ENV)
    def test_meshulam_tokenization_completes_through_webhook(self):
        self.meshulam_config()
        session = mock.Mock()
        session.request.return_value = gateway_response({"status": 1, "data": {"url": "https://pay.test/p/1"}})
        resolver = self.meshulam_resolver(session)

        method, result = start_tokenization(user=self.tenant, building=self.building, resolver=resolver)
        self.assertFalse(method.is_active)
        self.assertEqual(result.redirect_url, "https://pay.test/p/1")

        body = urlencode(
            {
                "processId": "P-9",
                "status": "1",
                "cardToken": "mesh-token-1",
                "cardSuffix": "1111",
                "customFields[cField1]": method.provider_reference,
            }
        ).encode("utf-8")
        outcome = ingest_webhook(
            provider="meshulam",
            body=body,
            headers={"X-Meshulam-Signature": meshulam_signature(body)},
            content_type="application/x-www-form-urlencoded",
            resolver=resolver,
        )

        self.assertEqual(outcome.result, WebhookEvent.RESULT_PROCESSED)
        method.refresh_from_db()
        self.assertTrue(method.is_active)
        self.assertTrue(method.is_default)
        self.assertEqual(method.last4, "1111")
        self.assertEqual(method.get_token(), "mesh-token-1")


class WebhookIngestTests(BillingTestCase):
    def setUp(self):
        super().setUp()
        self.generate()
        self.charge = self.charge_for(self.unit1)

    def fake_event(self, payment, event_id="evt-1", status_value="succeeded"):
        return json.dumps(
            {"eventId": event_id, "status": status_value, "providerReference": payment.provider_reference}
        ).encode("utf-8")

    def test_duplicate_delivery_is_applied_once(self):
        payment, _ = start_payment_session(charge=self.charge, payer=self.tenant)
        body = self.fake_event(payment)

        first = ingest_webhook(provider="fake", body=body, headers={})
        second = ingest_webhook(provider="fake", body=body, headers={})

        self.assertEqual(first.result, WebhookEvent.RESULT_PROCESSED)
        self.assertFalse(first.duplicate)
        self.assertTrue(second.duplicate)
        self.assertEqual(WebhookEvent.objects.count(), 1)
        self.assertEqual(LedgerEntry.objects.filter(entry_type=LedgerEntry.TYPE_PAYMENT).count(), 1)
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.status, Charge.STATUS_PAID)

    def test_late_webhook_after_synchronous_success_is_ignored(self):
        outcome = charge_with_token(charge=self.charge, payment_method=self.save_card())
        body = self.fake_event(outcome.payment, event_id="late-1")

        result = ingest_webhook(provider="fake", body=body, headers={})

        self.assertEqual(result.result, WebhookEvent.RESULT_IGNORED)
        self.assertEqual(LedgerEntry.objects.filter(entry_type=LedgerEntry.TYPE_PAYMENT).count(), 1)

    def test_failed_event_marks_payment_failed(self):
        payment, _ = start_payment_session(charge=self.charge, payer=self.tenant)
        ingest_webhook(provider="fake", body=self.fake_event(payment, status_value="failed"), headers={})
        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.STATUS_FAILED)

    def test_unmatched_event_is_recorded(self):
        body = json.dumps({"eventId": "evt-x", "status": "succeeded", "providerReference": "nope"}).encode("utf-8")
        outcome = ingest_webhook(provider="fake", body=body, headers={})
        self.assertEqual(outcome.result, WebhookEvent.RESULT_UNMATCHED)
        self.assertTrue(WebhookEvent.objects.filter(event_id="evt-x").exists())

    def test_unparseable_payload_returns_400(self):
        outcome = ingest_webhook(provider="fake", body=b"not json", headers={})
        self.assertEqual(outcome.http_status, 400)
        self.assertFalse(WebhookEvent.objects.exists())

    def test_unknown_provider_is_not_found(self):
        with self.assertRaises(NotFound):
            ingest_webhook(provider="paypal", body=b"{}", headers={})

    @override_settings(BILLING_ALLOW_FAKE_GATEWAY=False)
    def test_fake_provider_rejected_when_disabled(self):
        body = json.dumps({"eventId": "evt-1", "status": "succeeded"}).encode("utf-8")
        with self.assertRaises(NotFound):
            ingest_webhook(provider="fake", body=body, headers={})

    def timed_out_meshulam_payment(self):
        self.meshulam_config()
        session = mock.Mock()
        session.request.side_effect = requests.Timeout("read timeout")
        resolver = self.meshulam_resolver(session)
        outcome = charge_with_token(
            charge=self.charge,
            payment_method=self.save_card(provider=PROVIDER_MESHULAM),
            resolver=resolver,
        )
        self.assertTrue(outcome.pending)
        return outcome.payment, session, resolver

    def signed_meshulam_event(self, resolver, fields):
        body = urlencode(fields).encode("utf-8")
        return ingest_webhook(
            provider="meshulam",
            body=body,
            headers={"X-Meshulam-Signature": meshulam_signature(body)},
            content_type="application/x-www-form-urlencoded",
            resolver=resolver,
        )

    @mock.patch.dict(os.environ, MESHULAM_ENV)
    def test_timed_out_token_charge_settles_through_webhook(self):
        payment, session, resolver = self.timed_out_meshulam_payment()
        self.assertEqual(session.request.call_args.kwargs["data"]["cField1"], str(payment.id))

        outcome = self.signed_meshulam_event(
            resolver, {"transactionId": "T-555", "status": "1", "customFields[cField1]": str(payment.id)}
        )

        self.assertEqual(outcome.result, WebhookEvent.RESULT_PROCESSED)
        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.STATUS_SUCCEEDED)
        self.assertEqual(payment.provider_reference, "T-555")
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.status, Charge.STATUS_PAID)

    @mock.patch.dict(os.environ, MESHULAM_ENV)
    def test_webhook_matches_payment_by_idempotency_key(self):
        payment, _, resolver = self.timed_out_meshulam_payment()

        outcome = self.signed_meshulam_event(
            resolver, {"transactionId": "T-556", "status": "1", "customFields[cField1]": payment.idempotency_key}
        )

        self.assertEqual(outcome.result, WebhookEvent.RESULT_PROCESSED)
        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.STATUS_SUCCEEDED)

    @mock.patch.dict(os.environ, MESHULAM_ENV)
    def test_meshulam_signature_fails_closed(self):
        self.meshulam_config()
        payment = Payment.objects.create(
            unit=self.unit1,
            charge=self.charge,
            amount=Decimal("500.00"),
            source=Payment.SOURCE_SESSION,
            provider=PROVIDER_MESHULAM,
            provider_reference="P-100",
        )
        body = urlencode({"processId": "P-100", "transactionId": "T-100", "status": "1"}).encode("utf-8")
        resolver = self.meshulam_resolver(mock.Mock())

        with self.assertRaises(SignatureVerificationFailure):
            ingest_webhook(provider="meshulam", body=body, headers={}, resolver=resolver)
        with self.assertRaises(SignatureVerificationFailure):
            ingest_webhook(
                provider="meshulam",
                body=body,
                headers={"X-Meshulam-Signature": meshulam_signature(body, secret="wrong")},
                resolver=resolver,
            )

        self.assertFalse(WebhookEvent.objects.exists())
        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.STATUS_PENDING)
        self.assertEqual(BillingAuditLog.objects.filter(action="billing.webhook.signature_rejected").count(), 2)

        outcome = ingest_webhook(
            provider="meshulam",
            body=body,
            headers={"X-Meshulam-Signature": meshulam_signature(body)},
            resolver=resolver,
        )
        self.assertEqual(outcome.result, WebhookEvent.RESULT_PROCESSED)
        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.STATUS_SUCCEEDED)

    def test_meshulam_without_config_rejects_everything(self):
        body = urlencode({"processId": "P-1", "status": "1"}).encode("utf-8")
        with self.assertRaises(SignatureVerificationFailure):
            ingest_webhook(
                provider="meshulam",
                body=body,
                headers={"X-Meshulam-Signature": meshulam_signature(body)},
                resolver=self.meshulam_resolver(mock.Mock()),
            )


class RecurringSchedulerTests(BillingTestCase):
    def setUp(self):
        super().setUp()
        self.generate("2026-03")
        self.charge = self.charge_for(self.unit1, "2026-03")

    def test_successful_run_pays_with_run_date_key(self):
        self.save_card()
        with self.captureOnCommitCallbacks(execute=True):
            result = run_recurring_billing(date(2026, 4, 1))

        self.assertEqual(result.succeeded, 1)
        self.assertTrue(result.completed)
        payment = Payment.objects.get(charge=self.charge)
        self.assertEqual(payment.source, Payment.SOURCE_RECURRING)
        self.assertEqual(payment.idempotency_key, f"recurring-{self.charge.id}-2026-04-01")
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.status, Charge.STATUS_PAID)
        self.assertTrue(Notification.objects.filter(user=self.tenant, title="Payment received").exists())
        run = JobRun.objects.get(job_name=JOB_NAME, period_key="2026-04-01")
        self.assertEqual(run.status, JobRun.STATUS_COMPLETED)

    def test_same_day_rerun_is_a_no_op(self):
        self.save_card()
        run_recurring_billing(date(2026, 4, 1))
        with mock.patch("billing.scheduler.charge_with_token") as charge_with_token_mock:
            result = run_recurring_billing(date(2026, 4, 1))

        self.assertTrue(result.already_ran)
        charge_with_token_mock.assert_not_called()
        self.assertEqual(Payment.objects.count(), 1)

    def test_three_failures_then_skipped_while_overdue(self):
        self.save_card(token="fake_tok__fail_")

        for day in (1, 2, 3):
            result = run_recurring_billing(date(2026, 4, day))
            self.assertEqual(result.failed, 1)
        fourth = run_recurring_billing(date(2026, 4, 4))

        self.assertEqual(fourth.attempted, 0)
        self.assertEqual(fourth.skipped, 1)
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.failed_attempts, 3)
        self.assertEqual(self.charge.status, Charge.STATUS_OVERDUE)
        self.assertEqual(Payment.objects.filter(charge=self.charge, status=Payment.STATUS_FAILED).count(), 3)
        self.assertTrue(Notification.objects.filter(user=self.manager, title="Automatic payment stopped").exists())
        self.assertTrue(BillingAuditLog.objects.filter(action="billing.charge.retry_exhausted").exists())

        # Failures are per charge, not per unit.
        self.assertEqual(self.charge_for(self.unit2, "2026-03").failed_attempts, 0)

    def test_reset_retries_allows_new_attempts(self):
        self.save_card(token="fake_tok__fail_")
        Charge.objects.filter(pk=self.charge.pk).update(failed_attempts=3)
        self.assertEqual(run_recurring_billing(date(2026, 4, 1)).attempted, 0)

        PaymentMethod.objects.filter(user=self.tenant).update(is_active=False, is_default=False)
        self.save_card(token="fake_tok_good")
        Charge.objects.filter(pk=self.charge.pk).update(failed_attempts=0)

        result = run_recurring_billing(date(2026, 4, 2))
        self.assertEqual(result.succeeded, 1)

    def test_charge_with_pending_payment_is_skipped(self):
        self.save_card()
        Payment.objects.create(
            unit=self.unit1,
            charge=self.charge,
            amount=Decimal("500.00"),
            source=Payment.SOURCE_TOKEN,
            provider=PROVIDER_FAKE,
        )
        result = run_recurring_billing(date(2026, 4, 1))
        self.assertEqual(result.attempted, 0)
        self.assertEqual(result.skipped, 1)

    @mock.patch.dict(os.environ, MESHULAM_ENV)
    def test_configuration_error_does_not_use_up_retries(self):
        self.meshulam_config()
        self.save_card()
        session = mock.Mock()
        resolver = self.meshulam_resolver(session)

        for day in (1, 2, 3):
            result = run_recurring_billing(date(2026, 4, day), resolver=resolver)
            self.assertEqual(result.skipped, 1)
            self.assertEqual(result.attempted, 0)
            self.assertEqual(result.failed, 0)

        session.request.assert_not_called()
        self.charge.refresh_from_db()
        self.assertEqual(self.charge.failed_attempts, 0)
        self.assertFalse(Payment.objects.filter(charge=self.charge).exists())
        self.assertFalse(Notification.objects.filter(user=self.manager, title="Automatic payment stopped").exists())

    def test_units_without_default_method_are_ignored(self):
        self.save_card(is_default=False)
        result = run_recurring_billing(date(2026, 4, 1))
        self.assertEqual(result.attempted, 0)
        self.assertEqual(result.skipped, 0)

    def test_concurrent_claim_loses(self):
        token = _claim_run(date(2026, 4, 1))
        self.assertIsNotNone(token)
        self.assertIsNone(_claim_run(date(2026, 4, 1)))

        result = run_recurring_billing(date(2026, 4, 1))
        self.assertTrue(result.already_ran)
        self.assertTrue(_complete_run(date(2026, 4, 1), token, {}))
        self.assertIsNone(_claim_run(date(2026, 4, 1)))

    @override_settings(BILLING_RUN_STALE_AFTER_MINUTES=30)
    def test_stale_run_is_taken_over(self):
        stale_token = _claim_run(date(2026, 4, 1))
        JobRun.objects.filter(job_name=JOB_NAME).update(started_at=timezone.now() - timedelta(hours=2))

        new_token = _claim_run(date(2026, 4, 1))

        self.assertIsNotNone(new_token)
        self.assertNotEqual(new_token, stale_token)
        self.assertFalse(_complete_run(date(2026, 4, 1), stale_token, {}))
        self.assertTrue(_complete_run(date(2026, 4, 1), new_token, {}))

    def test_scheduler_loop_stops_on_signal(self):
        scheduler = RecurringBillingScheduler(interval_seconds=3600)
        calls = []

        def fake_run(run_date=None, resolver=None):
            calls.append(run_date)
            scheduler.stop()

        with mock.patch("billing.scheduler.run_recurring_billing", side_effect=fake_run):
            scheduler.run_forever()

        self.assertEqual(len(calls), 1)
        self.assertTrue(scheduler.stopped)

    def test_scheduler_loop_survives_crash(self):
        scheduler = RecurringBillingScheduler(interval_seconds=1)
        attempts = []

        def flaky_run(run_date=None, resolver=None):
            attempts.append(run_date)
            if len(attempts) == 1:
                raise RuntimeError("database went away")
            scheduler.stop()

        with mock.patch("billing.scheduler.run_recurring_billing", side_effect=flaky_run), mock.patch.object(
            scheduler._stop, "wait"
        ):
            scheduler.run_forever()

        self.assertEqual(len(attempts), 2)

    def test_management_command_reports_run(self):
        self.save_card()
        out = StringIO()
        call_command("run_recurring_billing", date="2026-04-01", stdout=out)
        self.assertIn("1 succeeded", out.getvalue())

        out = StringIO()
        call_command("run_recurring_billing", date="2026-04-01", stdout=out)
        self.assertIn("already ran", out.getvalue())


class ManagementCommandTests(BillingTestCase):
    def test_generate_charges_command(self):
        out = StringIO()
        call_command("generate_charges", plan=str(self.plan.id), period="2026-03", stdout=out)
        self.assertIn("Created 3 charges for 2026-03", out.getvalue())

        out = StringIO()
        call_command("generate_charges", plan=str(self.plan.id), period="2026-03", stdout=out)
        self.assertIn("already generated", out.getvalue())

    def test_generate_charges_unknown_plan(self):
        with self.assertRaises(CommandError):
            call_command("generate_charges", plan="00000000-0000-0000-0000-000000000000", period="2026-03")

    def test_mark_overdue_command(self):
        self.generate("2026-03")
        out = StringIO()
        call_command("mark_overdue_charges", date="2026-04-01", stdout=out)
        self.assertIn("Marked 3 charges overdue", out.getvalue())

    def test_verify_ledger_clean(self):
        self.generate()
        ledger.record_expense(building=self.building, amount=Decimal("10.00"), description="Bulbs")
        out = StringIO()
        call_command("verify_ledger", stdout=out)
        self.assertIn("Ledger consistent across 4 scopes", out.getvalue())


class GatewayResolverTests(BillingTestCase):
    def test_falls_back_to_fake_without_config(self):
        resolved = GatewayResolver().resolve(self.building)
        self.assertEqual(resolved.provider, PROVIDER_FAKE)
        self.assertIsNone(resolved.config)

    @override_settings(BILLING_ALLOW_FAKE_GATEWAY=False)
    def test_no_config_without_fake_is_an_error(self):
        with self.assertRaises(ConfigurationError):
            GatewayResolver().resolve(self.building)

    @mock.patch.dict(os.environ, MESHULAM_ENV)
    def test_building_config_beats_global(self):
        global_config = PaymentProviderConfig.objects.create(provider=PROVIDER_FAKE)
        other = Building.objects.create(name="Other")
        resolver = GatewayResolver()

        self.assertEqual(resolver.resolve(other).config, global_config)

        building_config = self.meshulam_config()
        resolved = resolver.resolve(self.building)
        self.assertEqual(resolved.config, building_config)
        self.assertEqual(resolved.provider, PROVIDER_MESHULAM)
        self.assertEqual(resolved.context.credential("merchant_id"), "user-1")
        self.assertEqual(resolved.context.webhook_secret, "whsec")

    @override_settings(BILLING_ALLOW_FAKE_GATEWAY=False)
    def test_fake_config_refused_when_disabled(self):
        PaymentProviderConfig.objects.create(building=self.building, provider=PROVIDER_FAKE)
        with self.assertRaises(ConfigurationError):
            GatewayResolver().resolve(self.building)

    def test_unknown_provider(self):
        with self.assertRaises(ConfigurationError):
            GatewayResolver().get_gateway("paypal")

    def test_feature_names(self):
        self.assertEqual(feature_names(FEATURE_HOSTED_PAGE | FEATURE_REFUNDS), ["Hosted payment page", "Refunds"])

    def test_sanitize_payload_masks_tokens(self):
        cleaned = sanitize_payload({"cardToken": "abc", "nested": {"apiKey": "k", "sum": 1}})
        self.assertEqual(cleaned, {"cardToken": "***", "nested": {"apiKey": "***", "sum": 1}})


@override_settings(BILLING_ALLOW_FAKE_GATEWAY=True)
class BillingApiTests(APITestCase):
    def setUp(self):
        User = get_user_model()
        self.admin = User.objects.create_superuser(email="root@building.test", password="pass")
        self.manager = User.objects.create_user(email="manager@building.test", password="pass", is_manager=True)
        self.tenant = User.objects.create_user(email="tenant@building.test", password="pass", is_tenant=True)
        self.outsider = User.objects.create_user(email="outsider@building.test", password="pass", is_tenant=True)
        self.building = Building.objects.create(name="Herzl 12", manager=self.manager)
        self.unit = Unit.objects.create(building=self.building, unit_number="1", size_sqm=Decimal("80"), tenant_user=self.tenant)
        Unit.objects.create(building=self.building, unit_number="2", size_sqm=Decimal("60"))
        self.plan = FeePlan.objects.create(
            building=self.building,
            name="Monthly HOA",
            calculation_method=FeePlan.METHOD_FIXED_PER_UNIT,
            fixed_amount=Decimal("500.00"),
            effective_from=date(2026, 1, 1),
        )

    def generate(self):
        self.client.force_authenticate(self.manager)
        url = reverse("billing-fee-plans-generate", kwargs={"pk": self.plan.pk})
        return self.client.post(url, {"period": "2099-01"}, format="json")

    def test_manager_generates_charges_once(self):
        first = self.generate()
        self.assertEqual(first.status_code, status.HTTP_201_CREATED)
        self.assertEqual(first.data["data"]["created"], 2)

        second = self.generate()
        self.assertEqual(second.status_code, status.HTTP_200_OK)
        self.assertTrue(second.data["data"]["already_generated"])

    def test_fee_plan_create_validates_parameters(self):
        self.client.force_authenticate(self.manager)
        url = reverse("billing-fee-plans-list")
        response = self.client.post(
            url,
            {
                "building": self.building.pk,
                "name": "By size",
                "calculation_method": FeePlan.METHOD_BY_SQM,
                "effective_from": "2026-01-01",
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("rate_per_sqm", response.data["errors"])

    def test_tenant_cannot_generate(self):
        self.client.force_authenticate(self.tenant)
        url = reverse("billing-fee-plans-generate", kwargs={"pk": self.plan.pk})
        response = self.client.post(url, {"period": "2099-01"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_tenant_sees_only_own_charges_and_pays(self):
        self.generate()
        method, _ = start_tokenization(user=self.tenant, building=self.building)
        charge = Charge.objects.get(unit=self.unit)

        self.client.force_authenticate(self.tenant)
        listing = self.client.get(reverse("billing-charges-list"))
        self.assertEqual(listing.status_code, status.HTTP_200_OK)
        self.assertEqual(len(listing.data), 1)

        response = self.client.post(reverse("billing-charges-pay", kwargs={"pk": charge.pk}), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["data"]["status"], Payment.STATUS_SUCCEEDED)
        self.assertEqual(str(response.data["data"]["payment_method"]), str(method.pk))
        charge.refresh_from_db()
        self.assertEqual(charge.status, Charge.STATUS_PAID)

    def test_declined_payment_returns_402(self):
        self.generate()
        method = PaymentMethod(user=self.tenant, provider=PROVIDER_FAKE, is_active=True, is_default=True)
        method.set_token("fake_tok__fail_")
        method.save()
        charge = Charge.objects.get(unit=self.unit)

        self.client.force_authenticate(self.tenant)
        response = self.client.post(reverse("billing-charges-pay", kwargs={"pk": charge.pk}), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_402_PAYMENT_REQUIRED)
        self.assertFalse(response.data["success"])

    def test_tenant_cannot_adjust_and_outsider_cannot_see(self):
        self.generate()
        charge = Charge.objects.get(unit=self.unit)

        self.client.force_authenticate(self.tenant)
        response = self.client.post(
            reverse("billing-charges-adjust", kwargs={"pk": charge.pk}), {"new_amount": "1.00"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(self.outsider)
        response = self.client.get(reverse("billing-charges-detail", kwargs={"pk": charge.pk}))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_checkout_returns_payment_url(self):
        self.generate()
        charge = Charge.objects.get(unit=self.unit)
        self.client.force_authenticate(self.tenant)
        response = self.client.post(reverse("billing-charges-checkout", kwargs={"pk": charge.pk}), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(response.data["data"]["payment_url"])
        self.assertEqual(response.data["data"]["payment"]["status"], Payment.STATUS_PENDING)

    def test_manual_payment_and_ledger(self):
        self.generate()
        self.client.force_authenticate(self.manager)
        response = self.client.post(
            reverse("billing-payments-manual"),
            {"unit": self.unit.pk, "amount": "200.00", "notes": "Cash"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)

        too_much = self.client.post(
            reverse("billing-payments-manual"), {"unit": self.unit.pk, "amount": "900.00"}, format="json"
        )
        self.assertEqual(too_much.status_code, status.HTTP_400_BAD_REQUEST)

        self.client.force_authenticate(self.tenant)
        ledger_response = self.client.get(reverse("billing-ledger"), {"unit": self.unit.pk})
        self.assertEqual(ledger_response.status_code, status.HTTP_200_OK)
        self.assertEqual(ledger_response.data["data"]["balance"], Decimal("300.00"))
        self.assertEqual(len(ledger_response.data["data"]["entries"]), 2)

    def test_expense_endpoint(self):
        self.client.force_authenticate(self.manager)
        response = self.client.post(
            reverse("billing-ledger-expenses"),
            {"building": self.building.pk, "amount": "750.00", "description": "Cleaning"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(ledger.current_balance(building=self.building), Decimal("750.00"))

    def test_payment_method_endpoints(self):
        first, _ = start_tokenization(user=self.tenant, building=self.building)
        second, _ = start_tokenization(user=self.tenant, building=self.building)
        self.client.force_authenticate(self.tenant)

        response = self.client.post(reverse("billing-payment-methods-set-default", kwargs={"pk": second.pk}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        first.refresh_from_db()
        self.assertFalse(first.is_default)

        response = self.client.delete(reverse("billing-payment-methods-detail", kwargs={"pk": second.pk}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(self.client.get(reverse("billing-payment-methods-list")).data), 1)

        response = self.client.post(reverse("billing-payment-methods-tokenize"), {"is_default": True}, format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(response.data["data"]["payment_method"]["is_default"])

    def test_webhook_endpoint(self):
        self.generate()
        charge = Charge.objects.get(unit=self.unit)
        payment, _ = start_payment_session(charge=charge, payer=self.tenant)
        self.client.force_authenticate(None)
        url = reverse("billing-webhook", kwargs={"provider": "fake"})
        body = json.dumps({"eventId": "evt-9", "status": "succeeded", "providerReference": payment.provider_reference})

        first = self.client.post(url, body, content_type="application/json")
        second = self.client.post(url, body, content_type="application/json")

        self.assertEqual(first.status_code, status.HTTP_200_OK)
        self.assertFalse(first.data["data"]["duplicate"])
        self.assertTrue(second.data["data"]["duplicate"])

        unknown = self.client.post(reverse("billing-webhook", kwargs={"provider": "paypal"}), body, content_type="application/json")
        self.assertEqual(unknown.status_code, status.HTTP_404_NOT_FOUND)

        unsigned = self.client.post(
            reverse("billing-webhook", kwargs={"provider": "meshulam"}),
            "processId=P-1&status=1",
            content_type="application/x-www-form-urlencoded",
        )
        self.assertEqual(unsigned.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertFalse(unsigned.data["success"])

        garbage = self.client.post(url, "oops", content_type="application/json")
        self.assertEqual(garbage.status_code, status.HTTP_400_BAD_REQUEST)

    def test_provider_config_scope(self):
        self.client.force_authenticate(self.manager)
        url = reverse("billing-provider-configs-list")
        response = self.client.post(url, {"provider": PROVIDER_MESHULAM}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        response = self.client.post(
            url,
            {"provider": PROVIDER_MESHULAM, "building": self.building.pk, "webhook_secret_ref": "MESHULAM_WEBHOOK_SECRET"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertIn("Refunds", response.data["features"])

    def test_recurring_trigger_is_superuser_only(self):
        url = reverse("billing-recurring-run")
        self.client.force_authenticate(self.manager)
        self.assertEqual(self.client.post(url, {}, format="json").status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(self.admin)
        response = self.client.post(url, {"date": "2026-04-01"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data["data"]["already_ran"])
        again = self.client.post(url, {"date": "2026-04-01"}, format="json")
        self.assertTrue(again.data["data"]["already_ran"])

    def test_providers_listing(self):
        self.client.force_authenticate(self.tenant)
        response = self.client.get(reverse("billing-providers"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual({item["provider"] for item in response.data["data"]}, {"FAKE", "MESHULAM", "PELECARD", "TRANZILA"})
