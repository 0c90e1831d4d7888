import requests

from payment_service.config import Settings
from payment_service.errors import UnsupportedMethod
from payment_service.gateways.base import GatewayAdapter
from payment_service.gateways.manual_proof import ManualProofGateway
from payment_service.gateways.oauth_capture import OAuthCaptureGateway
from payment_service.gateways.redirect_signed import RedirectSignedGateway
from payment_service.models import PaymentMethod
from payment_service.ttl_store import KeyedTTLStore


class GatewayRegistry:
    """Adapters keyed by the payment method they implement."""

    def __init__(self, adapters):
        self._adapters = {adapter.method: adapter for adapter in adapters}

    def get(self, method) -> GatewayAdapter:
        try:
            return self._adapters[PaymentMethod(method)]
        except (KeyError, ValueError):
            raise UnsupportedMethod(f"Unsupported payment method: {method}")

    def methods(self) -> list[PaymentMethod]:
        return list(self._adapters)


def build_registry(settings: Settings, ttl_store: KeyedTTLStore,
                   session: requests.Session | None = None) -> GatewayRegistry:
    session = session or requests.Session()
    return GatewayRegistry([
        RedirectSignedGateway(settings, ttl_store, session=session),
        OAuthCaptureGateway(settings, ttl_store, session=session),
        ManualProofGateway(settings),
    ])
