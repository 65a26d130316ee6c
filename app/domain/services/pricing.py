"""
Pricing contract

The fare formula itself lives in the pricing engine upstream; this module
only fixes the shape of its output and derives the revenue split from it.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Any, Mapping

from app.core.config import settings
from app.core.exceptions import ValidationException, ErrorCode
from app.domain.services.money import to_decimal

DRIVER_SHARE_RATIO = Decimal("0.70")

# Advisory card-processing fee (display only)
_GATEWAY_FEE_RATE = Decimal("0.015")
_GATEWAY_FLAT_FEE = Decimal("100")
_GATEWAY_FLAT_FEE_THRESHOLD = Decimal("2500")
_GATEWAY_FEE_CAP = Decimal("2000")


def estimate_gateway_fee(amount) -> Decimal:
    """1.5% plus ₦100 from ₦2,500 up, capped at ₦2,000, rounded up to the naira"""
    amount = to_decimal(amount)
    flat = _GATEWAY_FLAT_FEE if amount >= _GATEWAY_FLAT_FEE_THRESHOLD else Decimal("0")
    fee = min(amount * _GATEWAY_FEE_RATE + flat, _GATEWAY_FEE_CAP)
    return fee.to_integral_value(rounding=ROUND_CEILING).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class PricingBreakdown:
    """
    delivery_total: fare before payment fees
    processing_fee: card fee passed on to the client
    total: what the client pays (delivery_total + processing_fee)
    driver_share / platform_share: 70/30 split of delivery_total
    """

    delivery_total: Decimal
    processing_fee: Decimal
    total: Decimal
    driver_share: Decimal
    platform_share: Decimal

    @classmethod
    def from_delivery_total(cls, delivery_total, processing_fee=None) -> "PricingBreakdown":
        delivery_total = to_decimal(delivery_total)
        if delivery_total <= 0:
            raise ValidationException("Delivery total must be positive", field="delivery_total")
        fee = estimate_gateway_fee(delivery_total) if processing_fee is None else to_decimal(processing_fee)
        driver_share = delivery_total * DRIVER_SHARE_RATIO
        driver_share = driver_share.to_integral_value(rounding=ROUND_HALF_UP).quantize(Decimal("0.01"))
        return cls(
            delivery_total=delivery_total,
            processing_fee=fee,
            total=delivery_total + fee,
            driver_share=driver_share,
            platform_share=delivery_total - driver_share,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PricingBreakdown":
        try:
            breakdown = cls(
                delivery_total=to_decimal(data["delivery_total"]),
                processing_fee=to_decimal(data.get("processing_fee", 0)),
                total=to_decimal(data["total"]),
                driver_share=to_decimal(data["revenue_distribution"]["driver_share"]),
                platform_share=to_decimal(data["revenue_distribution"]["platform_share"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationException(
                "Pricing breakdown is incomplete",
                field="pricing_breakdown",
                error_code=ErrorCode.PRICING_MISMATCH,
            ) from e
        breakdown.validate()
        return breakdown

    def validate(self) -> None:
        if self.total <= 0:
            raise ValidationException("Order total must be positive", field="total")
        if self.delivery_total + self.processing_fee != self.total:
            raise ValidationException(
                "Pricing total does not equal delivery total plus fees",
                field="total",
                error_code=ErrorCode.PRICING_MISMATCH,
            )
        if self.driver_share + self.platform_share != self.delivery_total:
            raise ValidationException(
                "Revenue split does not add up to the delivery total",
                field="revenue_distribution",
                error_code=ErrorCode.PRICING_MISMATCH,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "delivery_total": str(self.delivery_total),
            "processing_fee": str(self.processing_fee),
            "total": str(self.total),
            "currency": settings.CURRENCY,
            "revenue_distribution": {
                "driver_share": str(self.driver_share),
                "platform_share": str(self.platform_share),
            },
        }


def quote_within_tolerance(server_total, client_total) -> bool:
    """Client quote is accepted within 0.1% of the server price or ₦1, whichever is larger"""
    server_total = to_decimal(server_total)
    client_total = to_decimal(client_total)
    allowed = max(server_total * settings.QUOTE_TOLERANCE_RATIO, settings.QUOTE_TOLERANCE_FLOOR)
    return abs(server_total - client_total) <= allowed
