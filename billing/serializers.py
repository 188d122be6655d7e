from decimal import Decimal

from rest_framework import serializers

from properties.models import Unit

from .charges import PERIOD_RE
from .constants import ALL_FEATURES
from .models import (
    Charge,
    FeePlan,
    LedgerEntry,
    Payment,
    PaymentAllocation,
    PaymentMethod,
    PaymentProviderConfig,
)


class FeePlanSerializer(serializers.ModelSerializer):
    class Meta:
        model = FeePlan
        fields = "__all__"
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate(self, attrs):
        method = attrs.get("calculation_method") or getattr(self.instance, "calculation_method", None)
        rate = attrs.get("rate_per_sqm", getattr(self.instance, "rate_per_sqm", None))
        fixed = attrs.get("fixed_amount", getattr(self.instance, "fixed_amount", None))
        if method == FeePlan.METHOD_BY_SQM and rate is None:
            raise serializers.ValidationError({"rate_per_sqm": "Required for per-square-meter plans."})
        if method == FeePlan.METHOD_FIXED_PER_UNIT and fixed is None:
            raise serializers.ValidationError({"fixed_amount": "Required for fixed per-unit plans."})
        return attrs


class GenerateChargesSerializer(serializers.Serializer):
    period = serializers.RegexField(PERIOD_RE, error_messages={"invalid": "Period must be formatted as YYYY-MM."})


class PaymentAllocationSerializer(serializers.ModelSerializer):
    period = serializers.CharField(source="charge.period", read_only=True)

    class Meta:
        model = PaymentAllocation
        fields = ["id", "payment", "charge", "period", "amount", "created_at"]


class ChargeSerializer(serializers.ModelSerializer):
    unit_number = serializers.CharField(source="unit.unit_number", read_only=True)
    building = serializers.IntegerField(source="unit.building_id", read_only=True)
    fee_plan_name = serializers.CharField(source="fee_plan.name", read_only=True)
    paid_amount = serializers.SerializerMethodField()
    remaining_balance = serializers.SerializerMethodField()

    class Meta:
        model = Charge
        fields = [
            "id",
            "unit",
            "unit_number",
            "building",
            "fee_plan",
            "fee_plan_name",
            "period",
            "amount_due",
            "paid_amount",
            "remaining_balance",
            "due_date",
            "status",
            "failed_attempts",
            "last_attempt_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_paid_amount(self, obj):
        return obj.allocated_total()

    def get_remaining_balance(self, obj):
        return obj.remaining_balance()


class ChargeAdjustSerializer(serializers.Serializer):
    new_amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"))
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255)


class ChargeCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255)


class CheckoutSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"), required=False)
    success_url = serializers.URLField(required=False, allow_blank=True)
    cancel_url = serializers.URLField(required=False, allow_blank=True)


class TokenPaySerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"), required=False)
    payment_method = serializers.UUIDField(required=False)
    idempotency_key = serializers.CharField(required=False, max_length=120)


class PaymentMethodSerializer(serializers.ModelSerializer):
    class Meta:
        model = PaymentMethod
        fields = [
            "id",
            "provider",
            "method_type",
            "last4",
            "card_brand",
            "expiry",
            "is_default",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class TokenizeSerializer(serializers.Serializer):
    building = serializers.IntegerField(required=False)
    is_default = serializers.BooleanField(required=False, default=False)
    success_url = serializers.URLField(required=False, allow_blank=True)
    cancel_url = serializers.URLField(required=False, allow_blank=True)


class PaymentSerializer(serializers.ModelSerializer):
    unit_number = serializers.CharField(source="unit.unit_number", read_only=True)
    allocations = PaymentAllocationSerializer(many=True, read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id",
            "unit",
            "unit_number",
            "payer",
            "charge",
            "payment_method",
            "amount",
            "currency",
            "status",
            "source",
            "provider",
            "provider_reference",
            "is_manual",
            "notes",
            "failure_reason",
            "unallocated_amount",
            "allocations",
            "paid_at",
            "created_at",
        ]
        read_only_fields = fields


class ManualPaymentSerializer(serializers.Serializer):
    unit = serializers.PrimaryKeyRelatedField(queryset=Unit.objects.filter(is_active=True))
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    payment_date = serializers.DateField(required=False)
    notes = serializers.CharField(required=False, allow_blank=True)


class RefundSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255)


class PaymentProviderConfigSerializer(serializers.ModelSerializer):
    features = serializers.ListField(source="feature_list", read_only=True)

    class Meta:
        model = PaymentProviderConfig
        fields = [
            "id",
            "building",
            "provider",
            "is_active",
            "merchant_id_ref",
            "terminal_id_ref",
            "api_user_ref",
            "api_password_ref",
            "webhook_secret_ref",
            "supported_features",
            "features",
            "currency",
            "base_url",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "features", "created_at", "updated_at"]

    def validate_supported_features(self, value):
        if value & ~ALL_FEATURES:
            raise serializers.ValidationError("Unknown feature bits.")
        return value

    def validate(self, attrs):
        is_active = attrs.get("is_active", getattr(self.instance, "is_active", True))
        building = attrs.get("building", getattr(self.instance, "building", None))
        if is_active:
            clashing = PaymentProviderConfig.objects.filter(is_active=True, building=building)
            if self.instance is not None:
                clashing = clashing.exclude(pk=self.instance.pk)
            if clashing.exists():
                scope = "this building" if building else "the global default"
                raise serializers.ValidationError(f"An active provider config already exists for {scope}.")
        return attrs


class LedgerEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = LedgerEntry
        fields = [
            "id",
            "building",
            "unit",
            "entry_type",
            "reference_type",
            "reference_id",
            "description",
            "debit",
            "credit",
            "balance_after",
            "created_at",
        ]
        read_only_fields = fields


class RecurringRunSerializer(serializers.Serializer):
    date = serializers.DateField(required=False)


class ExpenseSerializer(serializers.Serializer):
    building = serializers.IntegerField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    description = serializers.CharField(max_length=255)
    reference = serializers.CharField(required=False, allow_blank=True, max_length=64)
