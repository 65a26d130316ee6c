"""
Admin API Routes - refund approval and payout reconciliation

Every endpoint requires the X-Admin-API-Key header.
"""
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.circuit_breaker import CircuitBreaker
from app.core.validation import amount_validator
from app.db.database import get_db
from app.domain.services.event_publisher import EventPublisher, get_event_publisher
from app.domain.services.gateway.base import BasePaymentGateway
from app.domain.services.gateway.provider_factory import get_payment_gateway
from app.domain.services.payment_service import PaymentService
from app.domain.services.payout_service import PayoutService
from app.domain.services.refund_service import RefundService

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class ApproveRefundRequest(BaseModel):
    """Partial refunds pass an amount; the full paid amount otherwise"""
    refund_amount: Decimal | None = None
    approved_by: str | None = None

    @field_validator("refund_amount")
    @classmethod
    def validate_amount(cls, v: Decimal | None) -> Decimal | None:
        return amount_validator(v) if v is not None else None


@router.post(
    "/refunds/{order_id}/approve",
    summary="Approve a refund request",
    description=(
        "Credits the client wallet. If the driver was already paid for the order, 70% of the refund "
        "is deducted from the driver; 409 when the driver balance cannot cover it."
    ),
)
async def approve_refund(
    order_id: int,
    body: ApproveRefundRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    body = body or ApproveRefundRequest()
    return await RefundService(db).approve_refund(
        order_id, refund_amount=body.refund_amount, approved_by=body.approved_by
    )


@router.post(
    "/payouts/{driver_id}/reconcile",
    summary="Reconcile a driver's pending payouts",
)
async def reconcile_driver_payouts(
    driver_id: int,
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    stats = await PayoutService(db, gateway, publisher).reconcile_pending_transfers(driver_id)
    return {"driver_id": driver_id, **stats}


@router.post(
    "/payments/reconcile",
    summary="Re-verify stale card payments",
    description="Runs the stale payment sweep now instead of waiting for the scheduled job.",
)
async def reconcile_stale_payments(
    older_than_minutes: int | None = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    return await PaymentService(db, gateway, publisher).reconcile_stale_payments(older_than_minutes)


@router.get(
    "/circuit-breakers",
    summary="Circuit breaker states",
)
async def circuit_breakers():
    return {
        name: {
            "state": breaker.state.value,
            "retry_after_seconds": round(breaker.get_retry_after(), 1),
        }
        for name, breaker in CircuitBreaker.all_instances().items()
    }
