# rentpay/services/providers/__init__.py
"""
Payment provider registry and process-wide provider instance.

Usage:
    from rentpay.services.providers import get_payment_provider

    provider = get_payment_provider()   # lazily built from config / env
    provider.create_payment(...)

Business services take a provider in their constructor; only blueprints,
background jobs and CLI commands resolve the shared instance.
"""

import logging
import os
import threading
from typing import Any, Dict, Mapping, Optional, Type

from flask import current_app, has_app_context

from rentpay.services.providers.base import PaymentProvider
from rentpay.services.providers.errors import ConfigurationError
from rentpay.services.providers.stripe_provider import StripeProvider

logger = logging.getLogger(__name__)

# Processors known to the platform; None means planned but not implemented
PAYMENT_PROVIDER_REGISTRY: Dict[str, Optional[Type[PaymentProvider]]] = {
    "stripe": StripeProvider,
    "dwolla": None,
}

_provider: Optional[PaymentProvider] = None
_provider_type: Optional[str] = None
_lock = threading.Lock()

_CONFIG_KEYS = (
    "PAYMENT_PROVIDER",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_CONNECT_WEBHOOK_SECRET",
    "STRIPE_REQUEST_TIMEOUT",
    "STRIPE_MAX_NETWORK_RETRIES",
    "APP_BASE_URL",
)


def build_payment_provider(provider_type: str, config: Mapping[str, Any]) -> PaymentProvider:
    """Construct (but do not register) a provider from a config mapping."""
    if provider_type not in PAYMENT_PROVIDER_REGISTRY:
        raise ConfigurationError(
            f"Payment provider '{provider_type}' is not supported. "
            f"Available: {list(PAYMENT_PROVIDER_REGISTRY.keys())}"
        )
    provider_class = PAYMENT_PROVIDER_REGISTRY[provider_type]
    if provider_class is None:
        raise ConfigurationError(f"Payment provider '{provider_type}' is not implemented yet")

    secret_key = config.get("STRIPE_SECRET_KEY")
    if not secret_key:
        raise ConfigurationError("STRIPE_SECRET_KEY not configured")

    return provider_class(
        secret_key=secret_key,
        webhook_secret=config.get("STRIPE_WEBHOOK_SECRET") or None,
        connect_webhook_secret=config.get("STRIPE_CONNECT_WEBHOOK_SECRET") or None,
        timeout=float(config.get("STRIPE_REQUEST_TIMEOUT") or 30),
        max_network_retries=int(config.get("STRIPE_MAX_NETWORK_RETRIES") or 2),
        app_url=config.get("APP_BASE_URL") or None,
    )


def _config_from_environment() -> Dict[str, Any]:
    """Flask config when an app context is active, otherwise the process environment."""
    if has_app_context():
        source = current_app.config
        values = {key: source.get(key) for key in _CONFIG_KEYS}
    else:
        values = {key: os.environ.get(key) for key in _CONFIG_KEYS}
    return values


def initialize_payment_provider(provider_type: str = "stripe", config: Optional[Mapping[str, Any]] = None) -> PaymentProvider:
    """Explicitly build and install the process-wide provider (app startup)."""
    global _provider, _provider_type

    with _lock:
        _provider = build_payment_provider(provider_type, config or _config_from_environment())
        _provider_type = provider_type
        logger.info(f"Payment provider initialized: {provider_type}")
        return _provider


def get_payment_provider() -> PaymentProvider:
    """
    Return the process-wide provider, building it on first use.

    Safe to call from concurrent threads: the provider is constructed exactly
    once. Raises ConfigurationError when the provider cannot be configured.
    """
    global _provider, _provider_type

    provider = _provider
    if provider is not None:
        return provider

    with _lock:
        if _provider is None:
            config = _config_from_environment()
            provider_type = (config.get("PAYMENT_PROVIDER") or "stripe").lower()
            _provider = build_payment_provider(provider_type, config)
            _provider_type = provider_type
            logger.info(f"Payment provider auto-initialized: {provider_type}")
        return _provider


def reset_payment_provider() -> None:
    """Drop the shared instance. For test isolation only."""
    global _provider, _provider_type
    with _lock:
        _provider = None
        _provider_type = None


def set_payment_provider(provider: PaymentProvider) -> None:
    """Install an already-built provider (tests and custom wiring)."""
    global _provider, _provider_type
    with _lock:
        _provider = provider
        _provider_type = getattr(provider, "provider_type", None)


def is_provider_initialized() -> bool:
    return _provider is not None


def get_provider_type() -> Optional[str]:
    return _provider_type


__all__ = [
    "PAYMENT_PROVIDER_REGISTRY",
    "PaymentProvider",
    "StripeProvider",
    "build_payment_provider",
    "initialize_payment_provider",
    "get_payment_provider",
    "reset_payment_provider",
    "set_payment_provider",
    "is_provider_initialized",
    "get_provider_type",
]
