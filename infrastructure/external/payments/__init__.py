"""
Provider adapter registry.

Adapters are constructed once at startup from ``payment_settings`` and injected
into the orchestrators; lookups by an unregistered name fail fast.
"""
from __future__ import annotations

from typing import Callable, Iterable, Optional

from application.ports.payment_gateway import ProviderAdapter
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.payment.service import UnknownProviderException


logger = get_logger(__name__)

ALIASES = {
    "mercado_pago": "mercadopago",
    "mp": "mercadopago",
}


def normalize_provider(name: Optional[str]) -> str:
    key = (name or "").strip().lower()
    return ALIASES.get(key, key)


class ProviderRegistry:
    """name -> ProviderAdapter"""

    def __init__(self, adapters: Iterable[ProviderAdapter] = ()) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter, name: Optional[str] = None) -> None:
        self._adapters[normalize_provider(name or adapter.provider)] = adapter

    def get(self, name: Optional[str]) -> ProviderAdapter:
        adapter = self._adapters.get(normalize_provider(name))
        if adapter is None:
            raise UnknownProviderException(name)
        return adapter

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_provider(name) in self._adapters

    def names(self) -> list[str]:
        return sorted(self._adapters)

    async def aclose(self) -> None:
        for name, adapter in self._adapters.items():
            try:
                await adapter.aclose()
            except Exception as exc:  # pragma: no cover
                logger.warning("provider_close_failed", provider=name, error=str(exc))


def _factories(cfg: PaymentSettings) -> dict[str, Callable[[], ProviderAdapter]]:
    timeouts = cfg.timeouts.model_dump()

    def stripe_factory():
        from .stripe_client import StripeClient
        return StripeClient(cfg.stripe, timeouts=timeouts, webhook_tolerance=cfg.webhook.tolerance_seconds)

    def square_factory():
        from .square_client import SquareClient
        return SquareClient(cfg.square, timeouts=timeouts)

    def mercadopago_factory():
        from .mercadopago_client import MercadoPagoClient
        return MercadoPagoClient(cfg.mercadopago, timeouts=timeouts)

    def paypal_factory():
        from .paypal_client import PayPalClient
        return PayPalClient(cfg.paypal, timeouts=timeouts)

    return {
        "stripe": stripe_factory,
        "square": square_factory,
        "mercadopago": mercadopago_factory,
        "paypal": paypal_factory,
    }


def build_provider_registry(cfg: Optional[PaymentSettings] = None) -> ProviderRegistry:
    """Register every enabled provider whose credentials are configured."""
    cfg = cfg or payment_settings
    factories = _factories(cfg)
    registry = ProviderRegistry()
    for raw_name in cfg.enabled_providers:
        name = normalize_provider(raw_name)
        factory = factories.get(name)
        if factory is None:
            logger.warning("provider_unknown_in_config", provider=raw_name)
            continue
        try:
            registry.register(factory(), name)
        except RuntimeError as exc:
            logger.warning("provider_not_configured", provider=name, reason=str(exc))
            continue
        logger.info("provider_registered", provider=name)
    return registry


__all__ = ["ProviderRegistry", "build_provider_registry", "normalize_provider"]
