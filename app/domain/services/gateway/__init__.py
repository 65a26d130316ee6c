"""
Payment gateway package.
"""
from app.domain.services.gateway.base import (
    BankDetails,
    BasePaymentGateway,
    ChargeInitialization,
    ChargeVerification,
    TransferInitiation,
    TransferVerification,
)
from app.domain.services.gateway.provider_factory import get_payment_gateway, reset_gateway

__all__ = [
    "BankDetails",
    "BasePaymentGateway",
    "ChargeInitialization",
    "ChargeVerification",
    "TransferInitiation",
    "TransferVerification",
    "get_payment_gateway",
    "reset_gateway",
]
