"""Payment provider adapters, keyed by the name used in webhook routes."""
from typing import Dict, Optional

import httpx

from subscription_billing.config import Settings
from subscription_billing.integrations.pesapal_client import PesapalClient
from subscription_billing.integrations.stripe_client import StripeClient

from .base import ProviderVerifier
from .binance_pay import BinancePayVerifier
from .paystack import PaystackVerifier
from .pesapal import PesapalVerifier
from .stripe_checkout import StripeVerifier
from .whop import WhopVerifier


def build_providers(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
    stripe_client: Optional[StripeClient] = None,
    pesapal_client: Optional[PesapalClient] = None,
) -> Dict[str, ProviderVerifier]:
    """Instantiate every supported provider adapter."""
    providers = [
        StripeVerifier(settings, stripe_client),
        BinancePayVerifier(settings),
        PaystackVerifier(settings, http_client),
        PesapalVerifier(settings, pesapal_client, http_client),
        WhopVerifier(settings),
    ]
    return {provider.name: provider for provider in providers}


__all__ = [
    "BinancePayVerifier",
    "PaystackVerifier",
    "PesapalVerifier",
    "ProviderVerifier",
    "StripeVerifier",
    "WhopVerifier",
    "build_providers",
]
