"""
Payment gateway interface.

Engines depend on this interface only. Every amount crossing it is an integer
in the gateway's minor currency unit (kobo).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass(frozen=True)
class BankDetails:
    account_number: str
    bank_code: str
    account_name: str

    def snapshot(self) -> dict[str, str]:
        return {
            "account_number": self.account_number,
            "bank_code": self.bank_code,
            "account_name": self.account_name,
        }


@dataclass(frozen=True)
class ChargeInitialization:
    authorization_url: str
    access_code: str
    reference: str


@dataclass(frozen=True)
class ChargeVerification:
    reference: str
    status: str
    amount_minor: int
    fees_minor: int = 0
    gateway_response: Optional[str] = None
    paid_at: Optional[datetime] = None
    channel: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_successful(self) -> bool:
        return self.status == "success"

    @property
    def is_final_failure(self) -> bool:
        return self.status in ("failed", "abandoned", "reversed")


@dataclass(frozen=True)
class TransferInitiation:
    transfer_code: Optional[str]
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransferVerification:
    reference: str
    status: str
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_successful(self) -> bool:
        return self.status == "success"

    @property
    def is_failed(self) -> bool:
        return self.status in ("failed", "reversed")


class BasePaymentGateway(ABC):
    """
    Contract of the external payment gateway.

    Implementations raise:
    - GatewayTimeoutError on client-side timeout (outcome unknown)
    - GatewayUnavailableError on 5xx / network failure (outcome unknown)
    - GatewayRejectedError on 4xx (request refused, nothing happened)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Stored on every transaction as gateway_provider"""

    @abstractmethod
    async def initialize_charge(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        callback_url: str,
        metadata: Optional[dict[str, Any]] = None,
        currency: str = "NGN",
    ) -> ChargeInitialization:
        """Open a hosted checkout for ``reference``."""

    @abstractmethod
    async def verify_charge(self, reference: str) -> ChargeVerification:
        """Idempotent read of a charge; safe to call repeatedly."""

    @abstractmethod
    async def create_transfer_recipient(
        self,
        bank_details: BankDetails,
        currency: str = "NGN",
    ) -> str:
        """Return a recipient code. Idempotent per bank account; callers cache it."""

    @abstractmethod
    async def initiate_transfer(
        self,
        recipient_code: str,
        amount_minor: int,
        reference: str,
        reason: str,
    ) -> TransferInitiation:
        """Start a payout. The gateway rejects a reused reference."""

    @abstractmethod
    async def verify_transfer(self, reference: str) -> TransferVerification:
        """Idempotent read of a transfer."""

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """HMAC check over the raw, unparsed request body."""
