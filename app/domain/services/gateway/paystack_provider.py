"""
Paystack provider: BasePaymentGateway over the Paystack REST API.

Only idempotent reads (verify charge, verify transfer) are retried with
exponential backoff. Writes are attempted once; a timeout on a write is an
unknown outcome and is surfaced to the caller as such.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import (
    CircuitBreakerOpenError,
    GatewayReferenceNotFoundError,
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)
from app.core.logging import get_logger, mask_account_number
from app.domain.services.gateway.base import (
    BankDetails,
    BasePaymentGateway,
    ChargeInitialization,
    ChargeVerification,
    TransferInitiation,
    TransferVerification,
)

logger = get_logger(__name__)


def sign_payload(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA512 of the raw body, as the gateway computes it"""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def _parse_paid_at(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_metadata(value: Any) -> dict[str, Any]:
    # Paystack returns "" for empty metadata and sometimes a JSON string
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


class PaystackProvider(BasePaymentGateway):
    """
    Endpoints used:
    - POST /transaction/initialize, GET /transaction/verify/:reference
    - POST /transferrecipient
    - POST /transfer, GET /transfer/verify/:reference
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        *,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._secret_key = secret_key if secret_key is not None else settings.GATEWAY_SECRET_KEY
        self._base_url = (base_url or settings.GATEWAY_BASE_URL).rstrip("/")
        self._timeout_seconds = timeout_seconds or settings.GATEWAY_TIMEOUT_SECONDS
        self._max_retries = max_retries or settings.GATEWAY_READ_MAX_RETRIES
        self._backoff_base_seconds = backoff_base_seconds
        self._transport = transport
        self._transient_status_codes = {
            int(code.strip())
            for code in settings.GATEWAY_TRANSIENT_STATUS_CODES.split(",")
            if code.strip()
        }

    @property
    def provider_name(self) -> str:
        return "paystack"

    # ── HTTP ──

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }

    async def _send(
        self,
        method: str,
        path: str,
        operation: str,
        payload: Optional[dict[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> dict[str, Any]:
        """One HTTP round-trip. Returns the ``data`` object of a successful envelope."""
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method,
                    f"{self._base_url}{path}",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.TimeoutException as exc:
            raise GatewayTimeoutError(operation, self._timeout_seconds) from exc
        except httpx.RequestError as exc:
            raise GatewayUnavailableError(
                operation,
                f"Payment gateway unreachable: {exc}",
                details={"network_error": True},
            ) from exc

        status_code = response.status_code
        if status_code >= 500 or status_code in self._transient_status_codes:
            raise GatewayUnavailableError.from_response(operation, response)

        if status_code >= 400:
            error = GatewayRejectedError.from_response(operation, response)
            gateway_message = (error.details.get("gateway_message") or "").lower()
            if reference and (status_code == 404 or "not found" in gateway_message):
                raise GatewayReferenceNotFoundError(operation, reference)
            raise error

        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayUnavailableError(
                operation,
                "Payment gateway returned a non-JSON body",
                details={"status_code": status_code, "response_text": response.text[:500]},
            ) from exc

        if not body.get("status"):
            raise GatewayRejectedError(
                operation,
                body.get("message") or f"{operation} was not accepted by the gateway",
                details={"status_code": status_code},
            )

        data = body.get("data")
        return data if isinstance(data, dict) else {}

    async def _write(self, method: str, path: str, operation: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._circuit_breaker.execute(self._send, method, path, operation, payload)

    async def _read_with_retry(self, path: str, operation: str, reference: str) -> dict[str, Any]:
        """GET with retry and exponential backoff on transient failures."""
        for attempt in range(self._max_retries):
            try:
                return await self._circuit_breaker.execute(
                    self._send, "GET", path, operation, None, reference
                )
            except CircuitBreakerOpenError:
                raise
            except (GatewayUnavailableError, GatewayTimeoutError) as exc:
                if attempt >= self._max_retries - 1:
                    raise
                backoff = self._backoff_base_seconds * (2 ** attempt)
                logger.warning(
                    f"Transient gateway error on {operation}, retrying",
                    extra_data={
                        "reference": reference,
                        "error": exc.message,
                        "attempt": attempt + 1,
                        "max_retries": self._max_retries,
                        "backoff_seconds": backoff,
                    },
                )
                await asyncio.sleep(backoff)
        raise GatewayUnavailableError(operation, f"{operation} failed after retries")

    # ── Charges ──

    async def initialize_charge(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        callback_url: str,
        metadata: Optional[dict[str, Any]] = None,
        currency: str = "NGN",
    ) -> ChargeInitialization:
        data = await self._write(
            "POST",
            "/transaction/initialize",
            "initialize_charge",
            {
                "email": email,
                "amount": int(amount_minor),
                "currency": currency,
                "reference": reference,
                "callback_url": callback_url,
                "metadata": metadata or {},
            },
        )
        if not data.get("authorization_url"):
            raise GatewayUnavailableError(
                "initialize_charge",
                "Gateway response is missing authorization_url",
                details={"reference": reference},
            )
        logger.info(
            "Gateway charge initialized",
            extra_data={"reference": reference, "amount_minor": amount_minor},
        )
        return ChargeInitialization(
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code") or "",
            reference=data.get("reference") or reference,
        )

    async def verify_charge(self, reference: str) -> ChargeVerification:
        data = await self._read_with_retry(
            f"/transaction/verify/{reference}", "verify_charge", reference
        )
        return ChargeVerification(
            reference=data.get("reference") or reference,
            status=str(data.get("status") or "unknown"),
            amount_minor=int(data.get("amount") or 0),
            fees_minor=int(data.get("fees") or 0),
            gateway_response=data.get("gateway_response"),
            paid_at=_parse_paid_at(data.get("paid_at") or data.get("paidAt")),
            channel=data.get("channel"),
            metadata=_parse_metadata(data.get("metadata")),
            raw=data,
        )

    # ── Transfers ──

    async def create_transfer_recipient(
        self,
        bank_details: BankDetails,
        currency: str = "NGN",
    ) -> str:
        data = await self._write(
            "POST",
            "/transferrecipient",
            "create_transfer_recipient",
            {
                "type": "nuban",
                "name": bank_details.account_name,
                "account_number": bank_details.account_number,
                "bank_code": bank_details.bank_code,
                "currency": currency,
            },
        )
        recipient_code = data.get("recipient_code")
        if not recipient_code:
            raise GatewayRejectedError(
                "create_transfer_recipient",
                "Gateway did not return a recipient code",
                details={"account_number": mask_account_number(bank_details.account_number)},
            )
        return recipient_code

    async def initiate_transfer(
        self,
        recipient_code: str,
        amount_minor: int,
        reference: str,
        reason: str,
    ) -> TransferInitiation:
        data = await self._write(
            "POST",
            "/transfer",
            "initiate_transfer",
            {
                "source": "balance",
                "amount": int(amount_minor),
                "recipient": recipient_code,
                "reference": reference,
                "reason": reason,
            },
        )
        logger.info(
            "Gateway transfer initiated",
            extra_data={
                "reference": reference,
                "amount_minor": amount_minor,
                "transfer_status": data.get("status"),
            },
        )
        return TransferInitiation(
            transfer_code=data.get("transfer_code"),
            status=str(data.get("status") or "pending"),
            raw=data,
        )

    async def verify_transfer(self, reference: str) -> TransferVerification:
        data = await self._read_with_retry(
            f"/transfer/verify/{reference}", "verify_transfer", reference
        )
        return TransferVerification(
            reference=data.get("reference") or reference,
            status=str(data.get("status") or "unknown"),
            raw=data,
        )

    # ── Webhooks ──

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not self._secret_key or not signature:
            return False
        expected = sign_payload(raw_body, self._secret_key)
        return hmac.compare_digest(expected, signature.strip().lower())
