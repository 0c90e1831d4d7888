from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from payment_service.config import Settings
from payment_service.database import get_db
from payment_service.gateways.registry import GatewayRegistry, build_registry
from payment_service.service import PaymentService
from payment_service.ttl_store import KeyedTTLStore
from payment_service.verifier import CallbackVerifier


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_ttl_store() -> KeyedTTLStore:
    return KeyedTTLStore.from_url(get_settings().REDIS_URL)


@lru_cache
def get_registry() -> GatewayRegistry:
    # One registry per process, so the wallet access token is shared.
    return build_registry(get_settings(), get_ttl_store())


def get_payment_service(db: Session = Depends(get_db),
                        registry: GatewayRegistry = Depends(get_registry),
                        settings: Settings = Depends(get_settings)) -> PaymentService:
    return PaymentService(db, registry, settings)


def get_verifier(db: Session = Depends(get_db),
                 registry: GatewayRegistry = Depends(get_registry)) -> CallbackVerifier:
    return CallbackVerifier(db, registry)
