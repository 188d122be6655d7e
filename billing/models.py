import uuid
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q, Sum

from .constants import ALL_FEATURES, PROVIDER_CHOICES, PROVIDER_FAKE, feature_names
from .crypto import decrypt_value, encrypt_value, fingerprint_token

ZERO = Decimal("0.00")


def money_field(**kwargs):
    kwargs.setdefault("max_digits", 12)
    kwargs.setdefault("decimal_places", 2)
    return models.DecimalField(**kwargs)


class FeePlan(models.Model):
    METHOD_BY_SQM = "BY_SQM"
    METHOD_FIXED_PER_UNIT = "FIXED_PER_UNIT"
    METHOD_MANUAL_PER_UNIT = "MANUAL_PER_UNIT"

    METHOD_CHOICES = [
        (METHOD_BY_SQM, "Rate per square meter"),
        (METHOD_FIXED_PER_UNIT, "Fixed amount per unit"),
        (METHOD_MANUAL_PER_UNIT, "Manual amount per unit"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    building = models.ForeignKey(
        "properties.Building",
        on_delete=models.CASCADE,
        related_name="fee_plans",
    )
    name = models.CharField(max_length=255)
    calculation_method = models.CharField(max_length=30, choices=METHOD_CHOICES)
    rate_per_sqm = models.DecimalField(
        max_digits=10,
        decimal_places=4,
        null=True,
        blank=True,
        validators=[MinValueValidator(0)],
    )
    fixed_amount = money_field(null=True, blank=True, validators=[MinValueValidator(0)])
    effective_from = models.DateField()
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_fee_plans"
        ordering = ["-effective_from", "-created_at"]
        indexes = [
            models.Index(fields=["building", "is_active"], name="billing_fp_building_idx"),
        ]

    def __str__(self):
        return f"{self.name} ({self.calculation_method})"


class Charge(models.Model):
    STATUS_PENDING = "PENDING"
    STATUS_PARTIALLY_PAID = "PARTIALLY_PAID"
    STATUS_PAID = "PAID"
    STATUS_OVERDUE = "OVERDUE"
    STATUS_CANCELLED = "CANCELLED"

    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_PARTIALLY_PAID, "Partially Paid"),
        (STATUS_PAID, "Paid"),
        (STATUS_OVERDUE, "Overdue"),
        (STATUS_CANCELLED, "Cancelled"),
    ]

    OUTSTANDING_STATUSES = (STATUS_PENDING, STATUS_PARTIALLY_PAID, STATUS_OVERDUE)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    unit = models.ForeignKey(
        "properties.Unit",
        on_delete=models.PROTECT,
        related_name="charges",
    )
    fee_plan = models.ForeignKey(
        FeePlan,
        on_delete=models.PROTECT,
        related_name="charges",
    )
    period = models.CharField(max_length=7, help_text="Billing period as YYYY-MM")
    amount_due = money_field(validators=[MinValueValidator(0)])
    due_date = models.DateField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    failed_attempts = models.PositiveIntegerField(default=0)
    last_attempt_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_charges"
        ordering = ["due_date", "created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["unit", "fee_plan", "period"],
                name="uniq_billing_charge_unit_plan_period",
            ),
        ]
        indexes = [
            models.Index(fields=["unit", "status"], name="billing_ch_unit_status_idx"),
            models.Index(fields=["fee_plan", "period"], name="billing_ch_plan_period_idx"),
        ]

    def __str__(self):
        return f"Charge {self.period} unit={self.unit_id} {self.amount_due}"

    @property
    def is_outstanding(self):
        return self.status in self.OUTSTANDING_STATUSES

    def allocated_total(self) -> Decimal:
        total = self.allocations.aggregate(total=Sum("amount"))["total"]
        return total or ZERO

    def remaining_balance(self) -> Decimal:
        if self.status == self.STATUS_CANCELLED:
            return ZERO
        return max(self.amount_due - self.allocated_total(), ZERO)


class PaymentMethod(models.Model):
    METHOD_CARD = "CARD"

    METHOD_CHOICES = [
        (METHOD_CARD, "Card"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="payment_methods",
    )
    provider = models.CharField(max_length=20, choices=PROVIDER_CHOICES, default=PROVIDER_FAKE)
    method_type = models.CharField(max_length=20, choices=METHOD_CHOICES, default=METHOD_CARD)
    token_encrypted = models.TextField(blank=True)
    token_fingerprint = models.CharField(max_length=64, blank=True, db_index=True)
    last4 = models.CharField(max_length=4, blank=True)
    card_brand = models.CharField(max_length=30, blank=True)
    expiry = models.CharField(max_length=7, blank=True)
    provider_customer_id = models.CharField(max_length=120, blank=True)
    provider_reference = models.CharField(
        max_length=120,
        blank=True,
        db_index=True,
        help_text="Correlation id of the tokenization flow that produced this method",
    )
    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_payment_methods"
        ordering = ["-is_default", "-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["user"],
                condition=Q(is_default=True, is_active=True),
                name="uniq_billing_payment_method_default",
            ),
        ]
        indexes = [
            models.Index(fields=["user", "is_active"], name="billing_pm_user_active_idx"),
        ]

    def __str__(self):
        return f"{self.card_brand or self.method_type} ****{self.last4}"

    @property
    def has_token(self):
        return bool(self.token_encrypted)

    def set_token(self, value: str):
        self.token_encrypted = encrypt_value(value)
        self.token_fingerprint = fingerprint_token(value)

    def get_token(self) -> str:
        return decrypt_value(self.token_encrypted)


class Payment(models.Model):
    STATUS_PENDING = "PENDING"
    STATUS_SUCCEEDED = "SUCCEEDED"
    STATUS_FAILED = "FAILED"
    STATUS_REFUNDED = "REFUNDED"

    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_SUCCEEDED, "Succeeded"),
        (STATUS_FAILED, "Failed"),
        (STATUS_REFUNDED, "Refunded"),
    ]

    TERMINAL_STATUSES = (STATUS_SUCCEEDED, STATUS_FAILED, STATUS_REFUNDED)

    # Forward-only: nothing leaves FAILED or REFUNDED.
    ALLOWED_TRANSITIONS = {
        STATUS_PENDING: {STATUS_SUCCEEDED, STATUS_FAILED},
        STATUS_SUCCEEDED: {STATUS_REFUNDED},
        STATUS_FAILED: set(),
        STATUS_REFUNDED: set(),
    }

    SOURCE_SESSION = "SESSION"
    SOURCE_TOKEN = "TOKEN"
    SOURCE_RECURRING = "RECURRING"
    SOURCE_MANUAL = "MANUAL"

    SOURCE_CHOICES = [
        (SOURCE_SESSION, "Hosted session"),
        (SOURCE_TOKEN, "Stored token"),
        (SOURCE_RECURRING, "Recurring billing"),
        (SOURCE_MANUAL, "Manual entry"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    unit = models.ForeignKey(
        "properties.Unit",
        on_delete=models.PROTECT,
        related_name="payments",
    )
    payer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments",
    )
    charge = models.ForeignKey(
        Charge,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="initiated_payments",
        help_text="Charge the payment was initiated for",
    )
    payment_method = models.ForeignKey(
        PaymentMethod,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments",
    )
    amount = money_field(validators=[MinValueValidator(Decimal("0.01"))])
    currency = models.CharField(max_length=3, default="ILS")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES, default=SOURCE_TOKEN)
    provider = models.CharField(max_length=20, choices=PROVIDER_CHOICES, blank=True)
    provider_reference = models.CharField(max_length=120, blank=True, db_index=True)
    idempotency_key = models.CharField(max_length=120, null=True, blank=True, unique=True)
    is_manual = models.BooleanField(default=False)
    notes = models.TextField(blank=True)
    failure_reason = models.TextField(blank=True)
    unallocated_amount = money_field(default=ZERO)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_payments"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["unit", "status"], name="billing_pay_unit_status_idx"),
            models.Index(fields=["provider", "provider_reference"], name="billing_pay_provider_ref_idx"),
        ]

    def __str__(self):
        return f"Payment {self.amount} {self.currency} ({self.status})"

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in self.ALLOWED_TRANSITIONS.get(self.status, set())


class PaymentAllocation(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    payment = models.ForeignKey(Payment, on_delete=models.PROTECT, related_name="allocations")
    charge = models.ForeignKey(Charge, on_delete=models.PROTECT, related_name="allocations")
    amount = money_field(validators=[MinValueValidator(Decimal("0.01"))])
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_payment_allocations"
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["charge"], name="billing_alloc_charge_idx"),
        ]

    def __str__(self):
        return f"{self.amount} of {self.payment_id} -> {self.charge_id}"


class LedgerEntry(models.Model):
    TYPE_CHARGE = "CHARGE"
    TYPE_PAYMENT = "PAYMENT"
    TYPE_ADJUSTMENT = "ADJUSTMENT"
    TYPE_EXPENSE = "EXPENSE"

    TYPE_CHOICES = [
        (TYPE_CHARGE, "Charge"),
        (TYPE_PAYMENT, "Payment"),
        (TYPE_ADJUSTMENT, "Adjustment"),
        (TYPE_EXPENSE, "Expense"),
    ]

    # Auto-increment id doubles as the per-unit replay order.
    building = models.ForeignKey(
        "properties.Building",
        on_delete=models.PROTECT,
        related_name="ledger_entries",
    )
    unit = models.ForeignKey(
        "properties.Unit",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="ledger_entries",
    )
    entry_type = models.CharField(max_length=20, choices=TYPE_CHOICES)
    reference_type = models.CharField(max_length=30, blank=True)
    reference_id = models.CharField(max_length=64, blank=True)
    description = models.CharField(max_length=255, blank=True)
    debit = money_field(default=ZERO, validators=[MinValueValidator(0)])
    credit = money_field(default=ZERO, validators=[MinValueValidator(0)])
    balance_after = money_field()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_ledger_entries"
        ordering = ["id"]
        indexes = [
            models.Index(fields=["unit", "id"], name="billing_le_unit_idx"),
            models.Index(fields=["building", "id"], name="billing_le_building_idx"),
            models.Index(fields=["reference_type", "reference_id"], name="billing_le_reference_idx"),
        ]

    def __str__(self):
        return f"{self.entry_type} +{self.debit} -{self.credit} = {self.balance_after}"

    def save(self, *args, **kwargs):
        if self.pk:
            raise ValidationError("Ledger entries are append-only.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Ledger entries are append-only.")


class PaymentProviderConfig(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    building = models.ForeignKey(
        "properties.Building",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="payment_provider_configs",
        help_text="Empty for the global default configuration",
    )
    provider = models.CharField(max_length=20, choices=PROVIDER_CHOICES)
    is_active = models.BooleanField(default=True)
    merchant_id_ref = models.CharField(max_length=255, blank=True)
    terminal_id_ref = models.CharField(max_length=255, blank=True)
    api_user_ref = models.CharField(max_length=255, blank=True)
    api_password_ref = models.CharField(max_length=255, blank=True)
    webhook_secret_ref = models.CharField(max_length=255, blank=True)
    supported_features = models.PositiveIntegerField(default=ALL_FEATURES)
    currency = models.CharField(max_length=3, default="ILS")
    base_url = models.URLField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_payment_provider_configs"
        ordering = ["-updated_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["building"],
                condition=Q(is_active=True, building__isnull=False),
                name="uniq_billing_provider_active_building",
            ),
            models.UniqueConstraint(
                fields=["is_active"],
                condition=Q(is_active=True, building__isnull=True),
                name="uniq_billing_provider_active_global",
            ),
        ]

    def __str__(self):
        scope = self.building_id or "global"
        return f"{self.provider} ({scope})"

    def supports(self, feature: int) -> bool:
        return bool(self.supported_features & feature)

    @property
    def feature_list(self):
        return feature_names(self.supported_features)


class WebhookEvent(models.Model):
    RESULT_PROCESSED = "PROCESSED"
    RESULT_UNMATCHED = "UNMATCHED"
    RESULT_IGNORED = "IGNORED"

    RESULT_CHOICES = [
        (RESULT_PROCESSED, "Processed"),
        (RESULT_UNMATCHED, "Unmatched"),
        (RESULT_IGNORED, "Ignored"),
    ]

    provider = models.CharField(max_length=20, choices=PROVIDER_CHOICES)
    event_id = models.CharField(max_length=120)
    provider_reference = models.CharField(max_length=120, blank=True)
    payload_hash = models.CharField(max_length=64)
    received_at = models.DateTimeField()
    processed_at = models.DateTimeField(null=True, blank=True)
    result = models.CharField(max_length=20, choices=RESULT_CHOICES)
    detail = models.CharField(max_length=255, blank=True)

    class Meta:
        db_table = "billing_webhook_events"
        ordering = ["-received_at"]
        constraints = [
            models.UniqueConstraint(fields=["provider", "event_id"], name="uniq_billing_webhook_event"),
        ]

    def __str__(self):
        return f"{self.provider}:{self.event_id} {self.result}"


class JobRun(models.Model):
    STATUS_RUNNING = "RUNNING"
    STATUS_COMPLETED = "COMPLETED"

    STATUS_CHOICES = [
        (STATUS_RUNNING, "Running"),
        (STATUS_COMPLETED, "Completed"),
    ]

    job_name = models.CharField(max_length=120)
    period_key = models.CharField(max_length=20)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_RUNNING)
    run_token = models.UUIDField(default=uuid.uuid4)
    started_at = models.DateTimeField()
    ran_at = models.DateTimeField(null=True, blank=True)
    details = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = "billing_job_runs"
        ordering = ["-started_at"]
        constraints = [
            models.UniqueConstraint(fields=["job_name", "period_key"], name="uniq_billing_job_run"),
        ]

    def __str__(self):
        return f"{self.job_name}@{self.period_key} ({self.status})"


class BillingAuditLog(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    building_id = models.IntegerField(null=True, blank=True, db_index=True)
    action = models.CharField(max_length=100)
    entity_type = models.CharField(max_length=60)
    entity_id = models.CharField(max_length=64)
    meta_old = models.TextField(blank=True)
    meta_new = models.TextField(blank=True)
    actor_id = models.IntegerField(null=True, blank=True)
    ip_address = models.GenericIPAddressField(blank=True, null=True)
    user_agent = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_audit_logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["action"], name="billing_audit_action_idx"),
        ]

    def __str__(self):
        return f"{self.action} {self.entity_type}:{self.entity_id}"
