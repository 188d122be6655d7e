import logging

from django.conf import settings
from django.db.models import Q
from django.utils.decorators import method_decorator
from django_ratelimit.decorators import ratelimit
from rest_framework import mixins, permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied, ValidationError
from rest_framework.views import APIView

from accounts.permissions import IsAuthenticated, IsManager, IsManagerOrTenant, IsSuperAdmin
from accounts.utils import api_response
from properties.models import Building, Unit

from . import ledger
from .charges import adjust_charge, cancel_charge, generate_charges, reset_charge_retries
from .constants import PROVIDER_CHOICES, PROVIDER_FAKE
from .models import Charge, FeePlan, LedgerEntry, Payment, PaymentMethod, PaymentProviderConfig
from .payments import (
    charge_with_token,
    record_manual_payment,
    refund_payment,
    start_payment_session,
    start_tokenization,
)
from .resolver import get_resolver
from .scheduler import run_recurring_billing
from .serializers import (
    ChargeAdjustSerializer,
    ChargeCancelSerializer,
    ChargeSerializer,
    CheckoutSerializer,
    ExpenseSerializer,
    FeePlanSerializer,
    GenerateChargesSerializer,
    LedgerEntrySerializer,
    ManualPaymentSerializer,
    PaymentMethodSerializer,
    PaymentProviderConfigSerializer,
    PaymentSerializer,
    RecurringRunSerializer,
    RefundSerializer,
    TokenizeSerializer,
    TokenPaySerializer,
)
from .services import (
    deactivate_payment_method,
    get_default_payment_method,
    log_billing_action,
    set_default_payment_method,
)
from .webhooks import ingest_webhook

logger = logging.getLogger(__name__)


def webhook_rate(group, request):
    return getattr(settings, "BILLING_WEBHOOK_RATE", "600/m")


class BuildingAccessMixin:
    """Managers act on the buildings they manage; superusers on all of them."""

    def managed_buildings(self):
        user = self.request.user
        if user.is_superuser:
            return Building.objects.all()
        if user.is_manager:
            return Building.objects.filter(manager=user)
        return Building.objects.none()

    def get_managed_building(self, building_id):
        building = self.managed_buildings().filter(pk=building_id).first() if building_id else None
        if building is None:
            raise PermissionDenied("You do not manage this building.")
        return building

    def ensure_manages(self, building):
        if not self.managed_buildings().filter(pk=building.pk).exists():
            raise PermissionDenied("You do not manage this building.")

    def visible_units(self):
        user = self.request.user
        return Unit.objects.filter(Q(building__in=self.managed_buildings()) | Q(tenant_user=user))

    def actor_id(self):
        return getattr(self.request.user, "id", None)


class FeePlanViewSet(BuildingAccessMixin, viewsets.ModelViewSet):
    serializer_class = FeePlanSerializer
    permission_classes = [IsAuthenticated, IsManager]

    def get_queryset(self):
        qs = FeePlan.objects.filter(building__in=self.managed_buildings()).select_related("building")
        building_id = self.request.query_params.get("building")
        if building_id:
            qs = qs.filter(building_id=building_id)
        return qs

    def perform_create(self, serializer):
        self.ensure_manages(serializer.validated_data["building"])
        serializer.save()

    def perform_update(self, serializer):
        if "building" in serializer.validated_data:
            self.ensure_manages(serializer.validated_data["building"])
        serializer.save()

    def destroy(self, request, *args, **kwargs):
        plan = self.get_object()
        if plan.charges.exists():
            plan.is_active = False
            plan.save(update_fields=["is_active", "updated_at"])
            return api_response(success=True, message="Fee plan has charges and was deactivated.", data=FeePlanSerializer(plan).data)
        plan.delete()
        return api_response(success=True, message="Fee plan deleted.", data={})

    @action(detail=True, methods=["post"], url_path="generate")
    def generate(self, request, pk=None):
        plan = self.get_object()
        serializer = GenerateChargesSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = generate_charges(
            building=plan.building,
            plan=plan,
            period=serializer.validated_data["period"],
            actor_id=self.actor_id(),
            request=request,
        )
        return api_response(
            success=True,
            message=result.message,
            data={
                "already_generated": result.already_generated,
                "period": result.period,
                "created": result.created,
                "charges": ChargeSerializer(result.charges, many=True).data,
            },
            status=status.HTTP_200_OK if result.already_generated else status.HTTP_201_CREATED,
        )


class ChargeViewSet(BuildingAccessMixin, viewsets.ReadOnlyModelViewSet):
    serializer_class = ChargeSerializer
    permission_classes = [IsAuthenticated, IsManagerOrTenant]

    def get_queryset(self):
        qs = Charge.objects.filter(unit__in=self.visible_units()).select_related("unit", "fee_plan")
        params = self.request.query_params
        if params.get("building"):
            qs = qs.filter(unit__building_id=params["building"])
        if params.get("unit"):
            qs = qs.filter(unit_id=params["unit"])
        if params.get("period"):
            qs = qs.filter(period=params["period"])
        if params.get("status"):
            qs = qs.filter(status=params["status"].upper())
        return qs

    def _managed_charge(self):
        charge = self.get_object()
        self.ensure_manages(charge.unit.building)
        return charge

    def _payable_charge(self):
        charge = self.get_object()
        if charge.unit.tenant_user_id != self.request.user.id:
            raise PermissionDenied("Only the unit's resident can pay this charge.")
        return charge

    @action(detail=True, methods=["post"], url_path="adjust")
    def adjust(self, request, pk=None):
        charge = self._managed_charge()
        serializer = ChargeAdjustSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        charge = adjust_charge(
            charge,
            new_amount=serializer.validated_data["new_amount"],
            reason=serializer.validated_data.get("reason") or "",
            actor_id=self.actor_id(),
            request=request,
        )
        return api_response(success=True, message="Charge adjusted.", data=ChargeSerializer(charge).data)

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        charge = self._managed_charge()
        serializer = ChargeCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        charge = cancel_charge(
            charge,
            reason=serializer.validated_data.get("reason") or "",
            actor_id=self.actor_id(),
            request=request,
        )
        return api_response(success=True, message="Charge cancelled.", data=ChargeSerializer(charge).data)

    @action(detail=True, methods=["post"], url_path="reset-retries")
    def reset_retries(self, request, pk=None):
        charge = self._managed_charge()
        charge = reset_charge_retries(charge, actor_id=self.actor_id(), request=request)
        return api_response(success=True, message="Automatic payment retries reset.", data=ChargeSerializer(charge).data)

    @action(detail=True, methods=["post"], url_path="checkout")
    def checkout(self, request, pk=None):
        charge = self._payable_charge()
        serializer = CheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment, result = start_payment_session(
            charge=charge,
            payer=request.user,
            amount=serializer.validated_data.get("amount"),
            success_url=serializer.validated_data.get("success_url") or "",
            cancel_url=serializer.validated_data.get("cancel_url") or "",
        )
        return api_response(
            success=True,
            message="Payment session created.",
            data={
                "payment": PaymentSerializer(payment).data,
                "payment_url": result.payment_url,
                "session_id": result.session_id,
            },
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["post"], url_path="pay")
    def pay(self, request, pk=None):
        charge = self._payable_charge()
        serializer = TokenPaySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        method_id = serializer.validated_data.get("payment_method")
        if method_id:
            method = PaymentMethod.objects.filter(pk=method_id, user=request.user, is_active=True).first()
        else:
            method = get_default_payment_method(request.user)
        if method is None:
            raise ValidationError("No saved payment method is available.")

        outcome = charge_with_token(
            charge=charge,
            payment_method=method,
            amount=serializer.validated_data.get("amount"),
            payer=request.user,
            idempotency_key=serializer.validated_data.get("idempotency_key"),
        )
        data = PaymentSerializer(outcome.payment).data
        if outcome.failed:
            return api_response(
                success=False,
                message=outcome.error or "Payment failed.",
                data=data,
                status=status.HTTP_402_PAYMENT_REQUIRED,
            )
        if outcome.pending:
            return api_response(
                success=True,
                message="Payment is awaiting confirmation from the provider.",
                data=data,
                status=status.HTTP_202_ACCEPTED,
            )
        return api_response(success=True, message="Payment succeeded.", data=data)


class PaymentMethodViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.DestroyModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = PaymentMethodSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        return PaymentMethod.objects.filter(user=self.request.user, is_active=True)

    def destroy(self, request, *args, **kwargs):
        method = self.get_object()
        deactivate_payment_method(method, actor_id=request.user.id, request=request)
        return api_response(success=True, message="Payment method removed.", data={})

    @action(detail=True, methods=["post"], url_path="set-default")
    def set_default(self, request, pk=None):
        method = self.get_object()
        set_default_payment_method(method, actor_id=request.user.id, request=request)
        return api_response(success=True, message="Default payment method updated.", data=PaymentMethodSerializer(method).data)

    @action(detail=False, methods=["post"], url_path="tokenize")
    def tokenize(self, request):
        serializer = TokenizeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        building_id = serializer.validated_data.get("building")
        units = Unit.objects.filter(tenant_user=request.user, is_active=True).select_related("building")
        if building_id:
            units = units.filter(building_id=building_id)
        unit = units.first()
        if unit is None:
            raise PermissionDenied("You are not a resident of this building.")

        method, result = start_tokenization(
            user=request.user,
            building=unit.building,
            is_default=serializer.validated_data.get("is_default", False),
            success_url=serializer.validated_data.get("success_url") or "",
            cancel_url=serializer.validated_data.get("cancel_url") or "",
        )
        return api_response(
            success=True,
            message="Card saved." if method.is_active else "Continue on the provider page to save the card.",
            data={
                "payment_method": PaymentMethodSerializer(method).data,
                "redirect_url": result.redirect_url,
            },
            status=status.HTTP_201_CREATED,
        )


class PaymentViewSet(BuildingAccessMixin, viewsets.ReadOnlyModelViewSet):
    serializer_class = PaymentSerializer
    permission_classes = [IsAuthenticated, IsManagerOrTenant]

    def get_queryset(self):
        qs = (
            Payment.objects.filter(Q(unit__building__in=self.managed_buildings()) | Q(payer=self.request.user))
            .select_related("unit")
            .prefetch_related("allocations__charge")
            .distinct()
        )
        params = self.request.query_params
        if params.get("unit"):
            qs = qs.filter(unit_id=params["unit"])
        if params.get("building"):
            qs = qs.filter(unit__building_id=params["building"])
        if params.get("status"):
            qs = qs.filter(status=params["status"].upper())
        return qs

    @action(detail=False, methods=["post"], url_path="manual", permission_classes=[IsAuthenticated, IsManager])
    def manual(self, request):
        serializer = ManualPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        unit = serializer.validated_data["unit"]
        self.ensure_manages(unit.building)
        payment, allocation = record_manual_payment(
            unit=unit,
            amount=serializer.validated_data["amount"],
            payment_date=serializer.validated_data.get("payment_date"),
            notes=serializer.validated_data.get("notes") or "",
            actor_id=self.actor_id(),
            request=request,
        )
        return api_response(
            success=True,
            message="Manual payment recorded.",
            data=PaymentSerializer(payment).data,
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["post"], url_path="refund", permission_classes=[IsAuthenticated, IsManager])
    def refund(self, request, pk=None):
        payment = self.get_object()
        self.ensure_manages(payment.unit.building)
        serializer = RefundSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment = refund_payment(
            payment,
            actor_id=self.actor_id(),
            reason=serializer.validated_data.get("reason") or "",
            request=request,
        )
        return api_response(success=True, message="Payment refunded.", data=PaymentSerializer(payment).data)


class PaymentProviderConfigViewSet(BuildingAccessMixin, viewsets.ModelViewSet):
    serializer_class = PaymentProviderConfigSerializer
    permission_classes = [IsAuthenticated, IsManager]

    def get_queryset(self):
        if self.request.user.is_superuser:
            return PaymentProviderConfig.objects.all()
        return PaymentProviderConfig.objects.filter(building__in=self.managed_buildings())

    def _check_scope(self, building):
        if building is None:
            if not self.request.user.is_superuser:
                raise PermissionDenied("Only platform administrators can manage the global provider.")
            return
        self.ensure_manages(building)

    def perform_create(self, serializer):
        self._check_scope(serializer.validated_data.get("building"))
        serializer.save()

    def perform_update(self, serializer):
        building = serializer.validated_data.get("building", serializer.instance.building)
        self._check_scope(building)
        serializer.save()

    def perform_destroy(self, instance):
        self._check_scope(instance.building)
        instance.delete()


class ProvidersView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        resolver = get_resolver()
        data = []
        for provider, label in PROVIDER_CHOICES:
            gateway = resolver.get_gateway(provider)
            data.append(
                {
                    "provider": provider,
                    "name": label,
                    "display_name": gateway.display_name,
                    "enabled": provider != PROVIDER_FAKE or resolver.fake_allowed(),
                }
            )
        return api_response(success=True, message="Payment providers retrieved.", data=data)


class LedgerView(BuildingAccessMixin, APIView):
    permission_classes = [IsAuthenticated, IsManagerOrTenant]

    def get(self, request):
        unit_id = request.query_params.get("unit")
        building_id = request.query_params.get("building")
        if unit_id:
            unit = self.visible_units().filter(pk=unit_id).select_related("building").first()
            if unit is None:
                raise PermissionDenied("You cannot view this unit's ledger.")
            entries = LedgerEntry.objects.filter(unit=unit)
            balance = ledger.current_balance(unit)
        elif building_id:
            building = self.get_managed_building(building_id)
            entries = LedgerEntry.objects.filter(building=building, unit__isnull=True)
            balance = ledger.current_balance(building=building)
        else:
            raise ValidationError("Provide a unit or building.")

        return api_response(
            success=True,
            message="Ledger retrieved.",
            data={
                "balance": balance,
                "entries": LedgerEntrySerializer(entries.order_by("id"), many=True).data,
            },
        )


class ExpenseView(BuildingAccessMixin, APIView):
    permission_classes = [IsAuthenticated, IsManager]

    def post(self, request):
        serializer = ExpenseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        building = self.get_managed_building(serializer.validated_data["building"])
        entry = ledger.record_expense(
            building=building,
            amount=serializer.validated_data["amount"],
            description=serializer.validated_data["description"],
            reference_id=serializer.validated_data.get("reference") or "",
        )
        log_billing_action(
            action="billing.expense.recorded",
            entity_type="LedgerEntry",
            entity_id=entry.id,
            actor_id=self.actor_id(),
            building_id=building.pk,
            meta_new={"amount": entry.debit, "description": entry.description},
            request=request,
        )
        return api_response(
            success=True,
            message="Expense recorded.",
            data=LedgerEntrySerializer(entry).data,
            status=status.HTTP_201_CREATED,
        )


class RecurringRunView(APIView):
    permission_classes = [IsAuthenticated, IsSuperAdmin]

    def post(self, request):
        serializer = RecurringRunSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = run_recurring_billing(serializer.validated_data.get("date"))
        message = "Recurring billing already ran for this date." if result.already_ran else "Recurring billing completed."
        return api_response(success=True, message=message, data=result.as_dict())


@method_decorator(ratelimit(key="ip", rate=webhook_rate, method="POST", block=True), name="dispatch")
class PaymentWebhookView(APIView):
    """Provider callbacks; authenticity comes from the signature, not a session."""

    permission_classes = [permissions.AllowAny]
    authentication_classes = []

    def post(self, request, provider):
        outcome = ingest_webhook(
            provider=provider,
            body=request.body,
            headers=request.headers,
            content_type=request.content_type or "",
            request=request,
        )
        if not outcome.received:
            return api_response(success=False, message=outcome.detail, status=outcome.http_status)
        return api_response(
            success=True,
            message="Webhook received.",
            data={"received": True, "duplicate": outcome.duplicate, "result": outcome.result},
        )

