"""
Payment Gateway Webhook

Signature is verified on the raw body before anything is parsed. Accepted
deliveries are recorded and routed by GatewayWebhookService. Unknown
events get 200 so the gateway stops retrying them; processing errors
return 500 so it retries later.
"""
import json

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import verify_gateway_signature
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.event_publisher import EventPublisher, get_event_publisher
from app.domain.services.gateway.base import BasePaymentGateway
from app.domain.services.gateway.provider_factory import get_payment_gateway
from app.domain.services.webhook_service import GatewayWebhookService

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "",
    summary="Webhook - payment gateway events",
    description=(
        "charge.success / charge.failed settle order payments and wallet top-ups; "
        "transfer.success / transfer.failed / transfer.reversed settle driver payouts. "
        "Requests without a valid HMAC-SHA512 signature are rejected with 401."
    ),
)
async def gateway_webhook(
    raw_body: bytes = Depends(verify_gateway_signature),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Signed gateway webhook with a non-JSON body", extra_data={"body_bytes": len(raw_body)})
        return JSONResponse(status_code=400, content={"message": "Invalid JSON body"})
    if not isinstance(payload, dict):
        return JSONResponse(status_code=400, content={"message": "Invalid payload"})

    result = await GatewayWebhookService(db, gateway, publisher).process(payload)
    return {"message": "Webhook received", **result}
