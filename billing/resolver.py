import logging
from dataclasses import dataclass
from typing import Dict, Optional

from django.conf import settings

from .constants import ALL_FEATURES, PROVIDER_FAKE
from .exceptions import ConfigurationError
from .gateway_service import GatewayContext, PaymentGateway, resolve_secret
from .gateways import GATEWAY_CLASSES
from .models import PaymentProviderConfig

logger = logging.getLogger(__name__)


@dataclass
class ResolvedGateway:
    gateway: PaymentGateway
    context: GatewayContext
    config: Optional[PaymentProviderConfig] = None

    @property
    def provider(self) -> str:
        return self.gateway.provider


def build_gateway_registry(session=None) -> Dict[str, PaymentGateway]:
    """One client per provider kind; the provider set is closed."""
    return {provider: cls(session=session) for provider, cls in GATEWAY_CLASSES.items()}


def build_context(config: Optional[PaymentProviderConfig]) -> GatewayContext:
    if config is None:
        return GatewayContext(
            provider=PROVIDER_FAKE,
            currency=getattr(settings, "BILLING_DEFAULT_CURRENCY", "ILS"),
            features=ALL_FEATURES,
        )
    return GatewayContext(
        provider=config.provider,
        config_id=str(config.id),
        building_id=config.building_id,
        credentials={
            "merchant_id": resolve_secret(config.merchant_id_ref),
            "terminal_id": resolve_secret(config.terminal_id_ref),
            "api_user": resolve_secret(config.api_user_ref),
            "api_password": resolve_secret(config.api_password_ref),
        },
        webhook_secret=resolve_secret(config.webhook_secret_ref),
        currency=config.currency,
        base_url=config.base_url,
        features=config.supported_features,
    )


class GatewayResolver:
    """
    Picks the gateway for a building: the building's active config, else the
    active global config, else the development gateway.
    """

    def __init__(self, gateways: Optional[Dict[str, PaymentGateway]] = None):
        self._gateways = gateways if gateways is not None else build_gateway_registry()

    def get_gateway(self, provider: str) -> PaymentGateway:
        gateway = self._gateways.get((provider or "").upper())
        if gateway is None:
            raise ConfigurationError(f"Unknown payment provider '{provider}'.")
        return gateway

    @staticmethod
    def fake_allowed() -> bool:
        return bool(getattr(settings, "BILLING_ALLOW_FAKE_GATEWAY", False))

    def find_config(self, building=None, provider: Optional[str] = None) -> Optional[PaymentProviderConfig]:
        active = PaymentProviderConfig.objects.filter(is_active=True)
        if provider:
            active = active.filter(provider=provider)
        ordering = ("-updated_at", "-id")
        if building is not None:
            scoped = active.filter(building=building).order_by(*ordering).first()
            if scoped:
                return scoped
        return active.filter(building__isnull=True).order_by(*ordering).first()

    def resolve(self, building=None) -> ResolvedGateway:
        config = self.find_config(building)
        if config is None:
            if not self.fake_allowed():
                raise ConfigurationError("No active payment provider is configured for this building.")
            logger.debug("No provider config for building %s; using the development gateway.", getattr(building, "pk", None))
            return ResolvedGateway(gateway=self.get_gateway(PROVIDER_FAKE), context=build_context(None))
        if config.provider == PROVIDER_FAKE and not self.fake_allowed():
            raise ConfigurationError("The development gateway is disabled in this environment.")
        return ResolvedGateway(gateway=self.get_gateway(config.provider), context=build_context(config), config=config)

    def resolve_for_provider(self, provider: str, building=None) -> ResolvedGateway:
        """Used by webhook ingest, where the provider is known from the route."""
        gateway = self.get_gateway(provider)
        config = self.find_config(building, provider=gateway.provider)
        if config is None and gateway.provider == PROVIDER_FAKE:
            return ResolvedGateway(gateway=gateway, context=build_context(None))
        if config is None:
            return ResolvedGateway(gateway=gateway, context=GatewayContext(provider=gateway.provider))
        return ResolvedGateway(gateway=gateway, context=build_context(config), config=config)


_resolver: Optional[GatewayResolver] = None


def initialize_resolver(gateways: Optional[Dict[str, PaymentGateway]] = None) -> GatewayResolver:
    global _resolver
    _resolver = GatewayResolver(gateways)
    return _resolver


def get_resolver() -> GatewayResolver:
    if _resolver is None:
        return initialize_resolver()
    return _resolver
