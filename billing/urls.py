from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import (
    ChargeViewSet,
    ExpenseView,
    FeePlanViewSet,
    LedgerView,
    PaymentMethodViewSet,
    PaymentProviderConfigViewSet,
    PaymentViewSet,
    PaymentWebhookView,
    ProvidersView,
    RecurringRunView,
)


router = DefaultRouter()
router.register(r"fee-plans", FeePlanViewSet, basename="billing-fee-plans")
router.register(r"charges", ChargeViewSet, basename="billing-charges")
router.register(r"payment-methods", PaymentMethodViewSet, basename="billing-payment-methods")
router.register(r"payments", PaymentViewSet, basename="billing-payments")
router.register(r"provider-configs", PaymentProviderConfigViewSet, basename="billing-provider-configs")


urlpatterns = [
    path("providers/", ProvidersView.as_view(), name="billing-providers"),
    path("ledger/", LedgerView.as_view(), name="billing-ledger"),
    path("ledger/expenses/", ExpenseView.as_view(), name="billing-ledger-expenses"),
    path("jobs/recurring/run/", RecurringRunView.as_view(), name="billing-recurring-run"),
    path("webhooks/<str:provider>/", PaymentWebhookView.as_view(), name="billing-webhook"),
    path("", include(router.urls)),
]
