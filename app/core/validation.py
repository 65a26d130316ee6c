"""
Input Validation Utilities

Provides validation for user inputs including:
- Bank account details (NUBAN account number, bank code, account name)
- Monetary amounts (Decimal, two decimal places)
- Text sanitization for free-text fields (payout reasons, refund reasons)
"""
import re
from decimal import Decimal, InvalidOperation


class ValidationPatterns:
    """Regex patterns for validation"""

    # Nigerian Uniform Bank Account Number: exactly 10 digits
    ACCOUNT_NUMBER = re.compile(r"^\d{10}$")

    # CBN bank codes are 3 digits, microfinance / fintech codes up to 6
    BANK_CODE = re.compile(r"^\d{3,6}$")

    # Account holder names: letters, spaces and common punctuation
    ACCOUNT_NAME = re.compile(r"^[A-Za-z][A-Za-z\s\-\'\.&]{1,99}$")

    EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    ORDER_REF = re.compile(r"^ORD-[A-Z0-9]{6,}$")


class TextSanitizer:
    """Text sanitization for stored free text"""

    @staticmethod
    def sanitize(text: str, max_length: int = 500) -> str:
        """
        Trim, cap length, drop null bytes and collapse repeated spaces.

        Does NOT HTML-escape; escaping happens at display time.
        """
        if not text:
            return ""

        sanitized = text.strip()[:max_length]
        sanitized = sanitized.replace("\x00", "")
        sanitized = TextSanitizer.remove_control_characters(sanitized)
        return re.sub(r" +", " ", sanitized)

    @staticmethod
    def remove_control_characters(text: str) -> str:
        if not text:
            return ""
        return "".join(
            char for char in text
            if char >= " " or char in "\n\r\t"
        )


class BankDetailsValidator:
    """Bank account validation for driver payouts"""

    @staticmethod
    def validate_account_number(account_number: str) -> tuple[bool, str | None]:
        if not account_number:
            return False, "Account number is required"
        cleaned = re.sub(r"[\s\-]", "", account_number)
        if not ValidationPatterns.ACCOUNT_NUMBER.match(cleaned):
            return False, "Account number must be exactly 10 digits"
        return True, None

    @staticmethod
    def validate_bank_code(bank_code: str) -> tuple[bool, str | None]:
        if not bank_code:
            return False, "Bank code is required"
        if not ValidationPatterns.BANK_CODE.match(bank_code.strip()):
            return False, "Bank code must be 3 to 6 digits"
        return True, None

    @staticmethod
    def validate_account_name(name: str) -> tuple[bool, str | None]:
        if not name or not name.strip():
            return False, "Account name is required"
        if not ValidationPatterns.ACCOUNT_NAME.match(name.strip()):
            return False, "Account name contains invalid characters"
        return True, None


class AmountValidator:
    """Monetary amount validation"""

    @staticmethod
    def validate(
        amount: Decimal,
        min_value: Decimal = Decimal("0.01"),
        max_value: Decimal | None = None
    ) -> tuple[bool, str | None]:
        """
        Validate a major-unit money amount.

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            amount = Decimal(amount)
        except (InvalidOperation, TypeError, ValueError):
            return False, "Amount must be a number"

        if not amount.is_finite():
            return False, "Amount must be a number"

        if amount < min_value:
            return False, f"Amount must be at least {min_value}"

        if max_value is not None and amount > max_value:
            return False, f"Amount cannot exceed {max_value}"

        if amount != amount.quantize(Decimal("0.01")):
            return False, "Amount cannot have more than 2 decimal places"

        return True, None


# Pydantic field validators for reuse
def account_number_validator(v: str) -> str:
    is_valid, error = BankDetailsValidator.validate_account_number(v)
    if not is_valid:
        raise ValueError(error)
    return re.sub(r"[\s\-]", "", v)


def bank_code_validator(v: str) -> str:
    is_valid, error = BankDetailsValidator.validate_bank_code(v)
    if not is_valid:
        raise ValueError(error)
    return v.strip()


def account_name_validator(v: str) -> str:
    is_valid, error = BankDetailsValidator.validate_account_name(v)
    if not is_valid:
        raise ValueError(error)
    return TextSanitizer.sanitize(v, max_length=100)


def amount_validator(v: Decimal) -> Decimal:
    is_valid, error = AmountValidator.validate(v)
    if not is_valid:
        raise ValueError(error)
    return Decimal(v)


def email_validator(v: str) -> str:
    v = (v or "").strip().lower()
    if not ValidationPatterns.EMAIL.match(v):
        raise ValueError("Invalid email address")
    return v


def reason_validator(v: str | None) -> str | None:
    if v is None:
        return None
    return TextSanitizer.sanitize(v) or None
