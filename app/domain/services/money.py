"""
Money helpers.

The ledger stores Decimal major units (naira); the gateway speaks integer
minor units (kobo). Conversion between the two happens only here.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

CENT = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = 100

# Flat payout transfer fees: (upper bound inclusive, fee), major units
TRANSFER_FEE_TIERS: tuple[tuple[Decimal, Decimal], ...] = (
    (Decimal("5000"), Decimal("10")),
    (Decimal("50000"), Decimal("25")),
)
TRANSFER_FEE_MAX = Decimal("50")


def to_decimal(value) -> Decimal:
    """Coerce an int/str/Decimal (never float arithmetic) to a 2dp Decimal"""
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, float):
        amount = Decimal(str(value))
    else:
        try:
            amount = Decimal(value)
        except (InvalidOperation, TypeError) as e:
            raise ValueError(f"Not a money amount: {value!r}") from e
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    """₦5,000.00 -> 500000"""
    return int((to_decimal(amount) * MINOR_UNITS_PER_MAJOR).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(minor: int) -> Decimal:
    """500000 -> ₦5,000.00"""
    return (Decimal(int(minor)) / MINOR_UNITS_PER_MAJOR).quantize(CENT, rounding=ROUND_HALF_UP)


def amounts_match(expected_minor: int, actual_minor: int, tolerance_minor: int) -> bool:
    return abs(int(expected_minor) - int(actual_minor)) <= tolerance_minor


def calculate_transfer_fee(requested_amount) -> Decimal:
    """Tiered flat fee for a driver payout: ≤5,000 → 10; ≤50,000 → 25; else 50"""
    amount = to_decimal(requested_amount)
    for upper_bound, fee in TRANSFER_FEE_TIERS:
        if amount <= upper_bound:
            return fee.quantize(CENT)
    return TRANSFER_FEE_MAX.quantize(CENT)


def split_by_ratio(amount, ratio: Decimal) -> Decimal:
    """Share of ``amount`` at ``ratio``, rounded half-up to the kobo"""
    return (to_decimal(amount) * Decimal(ratio)).quantize(CENT, rounding=ROUND_HALF_UP)


def format_naira(amount) -> str:
    return f"₦{to_decimal(amount):,.2f}"
