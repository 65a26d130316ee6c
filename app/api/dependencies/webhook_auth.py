"""
Signature check for incoming payment gateway webhooks.

The gateway signs the raw request body with HMAC-SHA512 and sends the hex
digest in the signature header. The check runs on the unparsed bytes before
any JSON decoding; a failing request gets 401 and nothing is written.

Usage:
    @router.post("")
    async def gateway_webhook(
        raw_body: bytes = Depends(verify_gateway_signature),
    ):
        ...
"""
from fastapi import Depends, Request

from app.core.config import settings
from app.core.exceptions import SignatureInvalidError
from app.core.logging import get_logger
from app.domain.services.gateway.base import BasePaymentGateway
from app.domain.services.gateway.provider_factory import get_payment_gateway

logger = get_logger(__name__)


async def verify_gateway_signature(
    request: Request,
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> bytes:
    """Return the raw body once its signature checks out."""
    raw_body = await request.body()
    signature = request.headers.get(settings.GATEWAY_SIGNATURE_HEADER)

    if not signature:
        logger.warning("Gateway webhook without signature header")
        raise SignatureInvalidError()

    if not gateway.verify_webhook_signature(raw_body, signature):
        client_host = request.client.host if request.client else "unknown"
        logger.warning(
            "Gateway webhook with invalid signature",
            extra_data={"client_ip": client_host, "body_bytes": len(raw_body)},
        )
        raise SignatureInvalidError()
    return raw_body
