"""
Gateway factory: one shared provider per process, selected by GATEWAY_PROVIDER.
"""
from __future__ import annotations

import threading

from app.core.circuit_breaker import get_gateway_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.domain.services.gateway.base import BasePaymentGateway

logger = get_logger(__name__)

_gateway: BasePaymentGateway | None = None
_lock = threading.Lock()


def _create_gateway(provider_type: str) -> BasePaymentGateway:
    if provider_type == "paystack":
        from app.domain.services.gateway.paystack_provider import PaystackProvider

        return PaystackProvider(circuit_breaker=get_gateway_circuit_breaker())

    raise ValueError(f"Unknown payment gateway provider: {provider_type}")


def get_payment_gateway() -> BasePaymentGateway:
    """Shared gateway instance; also used as a FastAPI dependency."""
    global _gateway
    if _gateway is None:
        with _lock:
            if _gateway is None:
                _gateway = _create_gateway(settings.GATEWAY_PROVIDER)
                logger.info(
                    "Payment gateway initialized",
                    extra_data={"provider": _gateway.provider_name},
                )
    return _gateway


def reset_gateway() -> None:
    """Drop the cached provider (tests only)."""
    global _gateway
    with _lock:
        _gateway = None
