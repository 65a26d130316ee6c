"""
Reference Generator

Globally unique, human-traceable references for gateway charges and
transfers. Uniqueness comes from a cryptographically random suffix, so no
shared counter or lock is needed between concurrent callers.
"""
import re
import secrets
import time

TRANSFER_PREFIX = "fp-pay"
TRANSACTION_PREFIX = "fp-txn"

_TRANSFER_REFERENCE_RE = re.compile(r"^fp-pay-\d{10}-[a-f0-9]{16}$")
_TRANSACTION_REFERENCE_RE = re.compile(r"^fp-txn-\d{13}-[a-f0-9]{12}$")


def generate_transfer_reference() -> str:
    """fp-pay-<unix seconds>-<16 hex>, e.g. fp-pay-1732708441-7f3a9c2e01b4d8e6"""
    return f"{TRANSFER_PREFIX}-{int(time.time())}-{secrets.token_hex(8)}"


def generate_transaction_reference() -> str:
    """fp-txn-<unix millis>-<12 hex>"""
    return f"{TRANSACTION_PREFIX}-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


def generate_payment_reference(order_ref: str) -> str:
    """Checkout reference for an order: <order_ref>-<unix millis>-<4 hex>"""
    return f"{order_ref}-{int(time.time() * 1000)}-{secrets.token_hex(2)}"


def is_valid_transfer_reference(reference) -> bool:
    if not reference or not isinstance(reference, str):
        return False
    return bool(_TRANSFER_REFERENCE_RE.fullmatch(reference))


def is_valid_transaction_reference(reference) -> bool:
    if not reference or not isinstance(reference, str):
        return False
    return bool(_TRANSACTION_REFERENCE_RE.fullmatch(reference))
