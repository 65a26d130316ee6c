"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    CONFLICT = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Order payment errors (2xxx)
    ORDER_NOT_FOUND = "ERR_2001"
    ORDER_STATUS_CHANGED = "ERR_2002"
    AMOUNT_MISMATCH = "ERR_2003"
    PRICING_MISMATCH = "ERR_2004"
    REFUND_WINDOW_EXPIRED = "ERR_2005"
    PAYMENT_NOT_SUCCESSFUL = "ERR_2006"

    # Ledger errors (3xxx)
    TRANSACTION_NOT_FOUND = "ERR_3001"
    MISSING_FINANCIAL_REFERENCES = "ERR_3002"
    USER_MISMATCH = "ERR_3003"

    # Balance errors (4xxx)
    WALLET_NOT_FOUND = "ERR_4001"
    INSUFFICIENT_BALANCE = "ERR_4002"
    INVALID_AMOUNT = "ERR_4003"
    EARNINGS_NOT_FOUND = "ERR_4004"

    # Gateway errors (5xxx)
    GATEWAY_UNAVAILABLE = "ERR_5001"
    GATEWAY_TIMEOUT = "ERR_5002"
    GATEWAY_REJECTED = "ERR_5003"
    SIGNATURE_INVALID = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class AmountMismatchError(ValidationException):
    """Raised when the gateway-confirmed amount differs from the stored amount"""

    def __init__(self, reference: str, expected_minor: int, paid_minor: int):
        super().__init__(
            message="Payment amount does not match expected amount",
            error_code=ErrorCode.AMOUNT_MISMATCH,
            details={
                "reference": reference,
                "expected_minor": expected_minor,
                "paid_minor": paid_minor,
            },
        )


class ForbiddenError(AppException):
    """Raised when the requester does not own the resource"""

    def __init__(
        self,
        message: str = "Resource does not belong to this user",
        error_code: ErrorCode = ErrorCode.FORBIDDEN,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=403,
            details=details
        )


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class ConflictError(AppException):
    """Raised when a conditional update matched nothing; the caller must re-fetch"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFLICT,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class InsufficientBalanceError(AppException):
    """Raised when a wallet or driver balance cannot cover a debit"""

    def __init__(self, owner_id: int, available: Any, requested: Any):
        super().__init__(
            message="Insufficient balance",
            error_code=ErrorCode.INSUFFICIENT_BALANCE,
            status_code=400,
            details={
                "owner_id": owner_id,
                "available": str(available),
                "requested": str(requested),
            }
        )


class MissingFinancialReferencesError(AppException):
    """Raised when an order reaches distribution without its ledger links.

    Indicates an order that skipped payment initialisation; never swallowed.
    """

    def __init__(self, order_id: int, missing: list[str]):
        super().__init__(
            message=f"Financial transactions not found for order {order_id}",
            error_code=ErrorCode.MISSING_FINANCIAL_REFERENCES,
            status_code=500,
            details={"order_id": order_id, "missing": missing}
        )


class SignatureInvalidError(AppException):
    """Raised when a gateway webhook fails the HMAC check"""

    def __init__(self):
        super().__init__(
            message="Invalid webhook signature",
            error_code=ErrorCode.SIGNATURE_INVALID,
            status_code=401,
        )


class GatewayError(AppException):
    """Base exception for payment gateway errors"""

    def __init__(
        self,
        operation: str,
        message: str,
        error_code: ErrorCode = ErrorCode.GATEWAY_UNAVAILABLE,
        status_code: int = 503,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        self.details["operation"] = operation

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "GatewayError":
        """
        Build a gateway error from an HTTP response consistently.

        Args:
            operation: gateway operation name (e.g. initialize_charge)
            response: response object (httpx.Response)
            message: custom message, built from the status code if omitted
            max_response_chars: cap on stored response text
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        gateway_message = None
        try:
            gateway_message = response.json().get("message")
        except Exception:
            gateway_message = None
        return cls(
            operation,
            message or f"{operation} returned status {status_code}",
            details={
                "status_code": status_code,
                "gateway_message": gateway_message,
                "response_text": response_text[:max_response_chars],
            },
        )


class GatewayUnavailableError(GatewayError):
    """Raised on gateway 5xx or network failure. Outcome of writes is unknown."""

    def __init__(self, operation: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            operation,
            message,
            error_code=ErrorCode.GATEWAY_UNAVAILABLE,
            status_code=503,
            details=details
        )


class GatewayTimeoutError(GatewayError):
    """Raised when a gateway call exceeds the client-side timeout"""

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            operation,
            f"Payment gateway {operation} timed out after {timeout_seconds}s",
            error_code=ErrorCode.GATEWAY_TIMEOUT,
            status_code=504,
            details={"timeout_seconds": timeout_seconds}
        )


class GatewayRejectedError(GatewayError):
    """Raised when the gateway refuses a request with a 4xx"""

    def __init__(self, operation: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            operation,
            message,
            error_code=ErrorCode.GATEWAY_REJECTED,
            status_code=400,
            details=details
        )


class GatewayReferenceNotFoundError(GatewayRejectedError):
    """Raised when the gateway has no record of a reference (checkout never started)"""

    def __init__(self, operation: str, reference: str):
        super().__init__(
            operation,
            f"Reference not found at gateway: {reference}",
            details={"reference": reference}
        )


class CircuitBreakerOpenError(GatewayUnavailableError):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name,
            f"{service_name} is temporarily unavailable (circuit breaker open)",
            details={"retry_after_seconds": retry_after_seconds}
        )
