# Payment Providers
from app.config import settings
from app.services.gateways.base import (
    PaymentProvider, PreferenceItem, PreferenceRequest,
    ProviderPreference, ProviderPayment, ProviderRefund
)
from app.services.gateways.mercadopago import MercadoPagoProvider

PROVIDERS = {
    'mercadopago': MercadoPagoProvider,
}

_provider_instance = None


def get_provider(name: str = None) -> PaymentProvider:
    """Get the configured provider instance (PAYMENT_PROVIDER by default)"""
    global _provider_instance
    name = (name or settings.payment_provider).lower()
    provider_class = PROVIDERS.get(name)
    if not provider_class:
        raise ValueError(f"Unknown payment provider: {name}. Available: {list(PROVIDERS.keys())}")
    if _provider_instance is None or _provider_instance.name != name:
        _provider_instance = provider_class()
    return _provider_instance
