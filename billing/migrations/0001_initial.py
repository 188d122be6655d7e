from decimal import Decimal
import uuid

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("properties", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="FeePlan",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=255)),
                (
                    "calculation_method",
                    models.CharField(
                        choices=[
                            ("BY_SQM", "Rate per square meter"),
                            ("FIXED_PER_UNIT", "Fixed amount per unit"),
                            ("MANUAL_PER_UNIT", "Manual amount per unit"),
                        ],
                        max_length=30,
                    ),
                ),
                (
                    "rate_per_sqm",
                    models.DecimalField(
                        blank=True, decimal_places=4, max_digits=10, null=True, validators=[MinValueValidator(0)]
                    ),
                ),
                (
                    "fixed_amount",
                    models.DecimalField(
                        blank=True, decimal_places=2, max_digits=12, null=True, validators=[MinValueValidator(0)]
                    ),
                ),
                ("effective_from", models.DateField()),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "building",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="fee_plans",
                        to="properties.building",
                    ),
                ),
            ],
            options={
                "db_table": "billing_fee_plans",
                "ordering": ["-effective_from", "-created_at"],
                "indexes": [models.Index(fields=["building", "is_active"], name="billing_fp_building_idx")],
            },
        ),
        migrations.CreateModel(
            name="Charge",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("period", models.CharField(help_text="Billing period as YYYY-MM", max_length=7)),
                (
                    "amount_due",
                    models.DecimalField(decimal_places=2, max_digits=12, validators=[MinValueValidator(0)]),
                ),
                ("due_date", models.DateField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("PARTIALLY_PAID", "Partially Paid"),
                            ("PAID", "Paid"),
                            ("OVERDUE", "Overdue"),
                            ("CANCELLED", "Cancelled"),
                        ],
                        default="PENDING",
                        max_length=20,
                    ),
                ),
                ("failed_attempts", models.PositiveIntegerField(default=0)),
                ("last_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "fee_plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="charges",
                        to="billing.feeplan",
                    ),
                ),
                (
                    "unit",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="charges",
                        to="properties.unit",
                    ),
                ),
            ],
            options={
                "db_table": "billing_charges",
                "ordering": ["due_date", "created_at"],
                "indexes": [
                    models.Index(fields=["unit", "status"], name="billing_ch_unit_status_idx"),
                    models.Index(fields=["fee_plan", "period"], name="billing_ch_plan_period_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("unit", "fee_plan", "period"),
                        name="uniq_billing_charge_unit_plan_period",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentMethod",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "provider",
                    models.CharField(
                        choices=[
                            ("FAKE", "Fake (development)"),
                            ("MESHULAM", "Meshulam"),
                            ("PELECARD", "Pelecard"),
                            ("TRANZILA", "Tranzila"),
                        ],
                        default="FAKE",
                        max_length=20,
                    ),
                ),
                ("method_type", models.CharField(choices=[("CARD", "Card")], default="CARD", max_length=20)),
                ("token_encrypted", models.TextField(blank=True)),
                ("token_fingerprint", models.CharField(blank=True, db_index=True, max_length=64)),
                ("last4", models.CharField(blank=True, max_length=4)),
                ("card_brand", models.CharField(blank=True, max_length=30)),
                ("expiry", models.CharField(blank=True, max_length=7)),
                ("provider_customer_id", models.CharField(blank=True, max_length=120)),
                (
                    "provider_reference",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Correlation id of the tokenization flow that produced this method",
                        max_length=120,
                    ),
                ),
                ("is_default", models.BooleanField(default=False)),
                ("is_active", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payment_methods",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "db_table": "billing_payment_methods",
                "ordering": ["-is_default", "-created_at"],
                "indexes": [models.Index(fields=["user", "is_active"], name="billing_pm_user_active_idx")],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("is_active", True), ("is_default", True)),
                        fields=("user",),
                        name="uniq_billing_payment_method_default",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "amount",
                    models.DecimalField(
                        decimal_places=2, max_digits=12, validators=[MinValueValidator(Decimal("0.01"))]
                    ),
                ),
                ("currency", models.CharField(default="ILS", max_length=3)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("SUCCEEDED", "Succeeded"),
                            ("FAILED", "Failed"),
                            ("REFUNDED", "Refunded"),
                        ],
                        default="PENDING",
                        max_length=20,
                    ),
                ),
                (
                    "source",
                    models.CharField(
                        choices=[
                            ("SESSION", "Hosted session"),
                            ("TOKEN", "Stored token"),
                            ("RECURRING", "Recurring billing"),
                            ("MANUAL", "Manual entry"),
                        ],
                        default="TOKEN",
                        max_length=20,
                    ),
                ),
                (
                    "provider",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("FAKE", "Fake (development)"),
                            ("MESHULAM", "Meshulam"),
                            ("PELECARD", "Pelecard"),
                            ("TRANZILA", "Tranzila"),
                        ],
                        max_length=20,
                    ),
                ),
                ("provider_reference", models.CharField(blank=True, db_index=True, max_length=120)),
                ("idempotency_key", models.CharField(blank=True, max_length=120, null=True, unique=True)),
                ("is_manual", models.BooleanField(default=False)),
                ("notes", models.TextField(blank=True)),
                ("failure_reason", models.TextField(blank=True)),
                ("unallocated_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "charge",
                    models.ForeignKey(
                        blank=True,
                        help_text="Charge the payment was initiated for",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="initiated_payments",
                        to="billing.charge",
                    ),
                ),
                (
                    "payer",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="payments",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "payment_method",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="payments",
                        to="billing.paymentmethod",
                    ),
                ),
                (
                    "unit",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="properties.unit",
                    ),
                ),
            ],
            options={
                "db_table": "billing_payments",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["unit", "status"], name="billing_pay_unit_status_idx"),
                    models.Index(fields=["provider", "provider_reference"], name="billing_pay_provider_ref_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentAllocation",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "amount",
                    models.DecimalField(
                        decimal_places=2, max_digits=12, validators=[MinValueValidator(Decimal("0.01"))]
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "charge",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="allocations",
                        to="billing.charge",
                    ),
                ),
                (
                    "payment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="allocations",
                        to="billing.payment",
                    ),
                ),
            ],
            options={
                "db_table": "billing_payment_allocations",
                "ordering": ["created_at"],
                "indexes": [models.Index(fields=["charge"], name="billing_alloc_charge_idx")],
            },
        ),
        migrations.CreateModel(
            name="LedgerEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "entry_type",
                    models.CharField(
                        choices=[
                            ("CHARGE", "Charge"),
                            ("PAYMENT", "Payment"),
                            ("ADJUSTMENT", "Adjustment"),
                            ("EXPENSE", "Expense"),
                        ],
                        max_length=20,
                    ),
                ),
                ("reference_type", models.CharField(blank=True, max_length=30)),
                ("reference_id", models.CharField(blank=True, max_length=64)),
                ("description", models.CharField(blank=True, max_length=255)),
                (
                    "debit",
                    models.DecimalField(
                        decimal_places=2, default=Decimal("0.00"), max_digits=12, validators=[MinValueValidator(0)]
                    ),
                ),
                (
                    "credit",
                    models.DecimalField(
                        decimal_places=2, default=Decimal("0.00"), max_digits=12, validators=[MinValueValidator(0)]
                    ),
                ),
                ("balance_after", models.DecimalField(decimal_places=2, max_digits=12)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "building",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="ledger_entries",
                        to="properties.building",
                    ),
                ),
                (
                    "unit",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="ledger_entries",
                        to="properties.unit",
                    ),
                ),
            ],
            options={
                "db_table": "billing_ledger_entries",
                "ordering": ["id"],
                "indexes": [
                    models.Index(fields=["unit", "id"], name="billing_le_unit_idx"),
                    models.Index(fields=["building", "id"], name="billing_le_building_idx"),
                    models.Index(fields=["reference_type", "reference_id"], name="billing_le_reference_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentProviderConfig",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "provider",
                    models.CharField(
                        choices=[
                            ("FAKE", "Fake (development)"),
                            ("MESHULAM", "Meshulam"),
                            ("PELECARD", "Pelecard"),
                            ("TRANZILA", "Tranzila"),
                        ],
                        max_length=20,
                    ),
                ),
                ("is_active", models.BooleanField(default=True)),
                ("merchant_id_ref", models.CharField(blank=True, max_length=255)),
                ("terminal_id_ref", models.CharField(blank=True, max_length=255)),
                ("api_user_ref", models.CharField(blank=True, max_length=255)),
                ("api_password_ref", models.CharField(blank=True, max_length=255)),
                ("webhook_secret_ref", models.CharField(blank=True, max_length=255)),
                ("supported_features", models.PositiveIntegerField(default=31)),
                ("currency", models.CharField(default="ILS", max_length=3)),
                ("base_url", models.URLField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "building",
                    models.ForeignKey(
                        blank=True,
                        help_text="Empty for the global default configuration",
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payment_provider_configs",
                        to="properties.building",
                    ),
                ),
            ],
            options={
                "db_table": "billing_payment_provider_configs",
                "ordering": ["-updated_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("building__isnull", False), ("is_active", True)),
                        fields=("building",),
                        name="uniq_billing_provider_active_building",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("building__isnull", True), ("is_active", True)),
                        fields=("is_active",),
                        name="uniq_billing_provider_active_global",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "provider",
                    models.CharField(
                        choices=[
                            ("FAKE", "Fake (development)"),
                            ("MESHULAM", "Meshulam"),
                            ("PELECARD", "Pelecard"),
                            ("TRANZILA", "Tranzila"),
                        ],
                        max_length=20,
                    ),
                ),
                ("event_id", models.CharField(max_length=120)),
                ("provider_reference", models.CharField(blank=True, max_length=120)),
                ("payload_hash", models.CharField(max_length=64)),
                ("received_at", models.DateTimeField()),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "result",
                    models.CharField(
                        choices=[("PROCESSED", "Processed"), ("UNMATCHED", "Unmatched"), ("IGNORED", "Ignored")],
                        max_length=20,
                    ),
                ),
                ("detail", models.CharField(blank=True, max_length=255)),
            ],
            options={
                "db_table": "billing_webhook_events",
                "ordering": ["-received_at"],
                "constraints": [
                    models.UniqueConstraint(fields=("provider", "event_id"), name="uniq_billing_webhook_event"),
                ],
            },
        ),
        migrations.CreateModel(
            name="JobRun",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("job_name", models.CharField(max_length=120)),
                ("period_key", models.CharField(max_length=20)),
                (
                    "status",
                    models.CharField(
                        choices=[("RUNNING", "Running"), ("COMPLETED", "Completed")],
                        default="RUNNING",
                        max_length=20,
                    ),
                ),
                ("run_token", models.UUIDField(default=uuid.uuid4)),
                ("started_at", models.DateTimeField()),
                ("ran_at", models.DateTimeField(blank=True, null=True)),
                ("details", models.JSONField(blank=True, default=dict)),
            ],
            options={
                "db_table": "billing_job_runs",
                "ordering": ["-started_at"],
                "constraints": [
                    models.UniqueConstraint(fields=("job_name", "period_key"), name="uniq_billing_job_run"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillingAuditLog",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("building_id", models.IntegerField(blank=True, db_index=True, null=True)),
                ("action", models.CharField(max_length=100)),
                ("entity_type", models.CharField(max_length=60)),
                ("entity_id", models.CharField(max_length=64)),
                ("meta_old", models.TextField(blank=True)),
                ("meta_new", models.TextField(blank=True)),
                ("actor_id", models.IntegerField(blank=True, null=True)),
                ("ip_address", models.GenericIPAddressField(blank=True, null=True)),
                ("user_agent", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "billing_audit_logs",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["action"], name="billing_audit_action_idx")],
            },
        ),
    ]
