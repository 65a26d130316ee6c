"""
Order API Routes - drafts, card/wallet payment, refunds and delivery tracking
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.auth import require_client, require_driver
from app.core.config import settings
from app.core.exceptions import ForbiddenError
from app.core.logging import get_logger
from app.core.validation import amount_validator, email_validator, reason_validator, TextSanitizer
from app.db.database import get_db
from app.db.models.order import OrderStatus
from app.db.models.user import User
from app.domain.services.event_publisher import EventPublisher, get_event_publisher
from app.domain.services.gateway.base import BasePaymentGateway
from app.domain.services.gateway.provider_factory import get_payment_gateway
from app.domain.services.order_service import OrderService
from app.domain.services.payment_service import PaymentService
from app.domain.services.refund_service import RefundService

logger = get_logger(__name__)

router = APIRouter()


class OrderCreate(BaseModel):
    """Draft order; ``client_quoted_total`` is the total the client app displayed"""
    delivery_total: Decimal
    client_quoted_total: Decimal
    pickup_address: str | None = None
    dropoff_address: str | None = None
    package_description: str | None = None

    @field_validator("delivery_total", "client_quoted_total")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return amount_validator(v)

    @field_validator("pickup_address", "dropoff_address", "package_description")
    @classmethod
    def sanitize_text(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return TextSanitizer.sanitize(v, max_length=500) or None


class OrderResponse(BaseModel):
    id: int
    order_ref: str
    client_id: int
    driver_id: int | None
    status: OrderStatus
    payment_status: str
    payment_method: str | None
    payment_reference: str | None
    currency: str
    total_amount: Decimal
    driver_share: Decimal
    platform_share: Decimal
    processing_fee: Decimal
    created_at: datetime | None
    payment_paid_at: datetime | None
    delivered_at: datetime | None

    model_config = {"from_attributes": True}

    @field_validator("payment_status", "payment_method", mode="before")
    @classmethod
    def enum_value(cls, v):
        return getattr(v, "value", v)


class InitiatePaymentRequest(BaseModel):
    order_id: int
    amount: Decimal
    order_ref: str | None = None
    email: str | None = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return amount_validator(v)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str | None) -> str | None:
        return email_validator(v) if v is not None else None


class WalletPaymentRequest(BaseModel):
    order_id: int


class PaymentStatusRequest(BaseModel):
    order_id: int
    reference: str | None = None


class RefundRequest(BaseModel):
    reason: str

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        cleaned = reason_validator(v)
        if not cleaned:
            raise ValueError("A refund reason is required")
        return cleaned


class AssignDriverRequest(BaseModel):
    driver_id: int


class DeliveryStatusUpdate(BaseModel):
    status: OrderStatus


def _payment_service(
    db: AsyncSession,
    gateway: BasePaymentGateway,
    publisher: EventPublisher,
) -> PaymentService:
    return PaymentService(db, gateway, publisher)


@router.post(
    "",
    response_model=OrderResponse,
    status_code=201,
    summary="Create a draft order",
    description="Saves a draft priced by the server. Rejected when the client's total differs beyond tolerance.",
)
async def create_order(
    body: OrderCreate,
    client: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService(db).create_draft(
        client,
        body.delivery_total,
        body.client_quoted_total,
        pickup_address=body.pickup_address,
        dropoff_address=body.dropoff_address,
        package_description=body.package_description,
    )


@router.get("", response_model=List[OrderResponse], summary="List my orders")
async def list_orders(
    limit: int = Query(50, ge=1, le=100),
    client: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService(db).list_client_orders(client.id, limit)


@router.post(
    "/payment/initiate",
    summary="Open a card checkout",
    description="Returns the gateway authorization URL. Repeated calls within the cooldown reuse the checkout.",
)
async def initiate_payment(
    body: InitiatePaymentRequest,
    client: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    service = _payment_service(db, gateway, publisher)
    return await service.initiate_payment(
        client, body.order_id, body.amount, order_ref=body.order_ref, email=body.email
    )


@router.post("/payment/wallet", summary="Pay an order from the wallet balance")
async def pay_from_wallet(
    body: WalletPaymentRequest,
    client: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    service = _payment_service(db, gateway, publisher)
    return await service.pay_order_from_wallet(client, body.order_id)


@router.api_route(
    "/payment-callback",
    methods=["GET", "POST"],
    summary="Gateway checkout callback",
    description="Verifies the charge and redirects the browser to the client app deep link.",
)
async def payment_callback(
    order_id: Optional[int] = Query(None, alias="orderId"),
    reference: Optional[str] = Query(None),
    trxref: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    reference = reference or trxref
    service = _payment_service(db, gateway, publisher)
    try:
        settlement = await service.handle_callback(order_id, reference)
        status, reason = ("success" if settlement.is_paid else settlement.payment_status), settlement.reason
    except Exception:
        logger.error(
            "Payment callback failed",
            extra_data={"order_id": order_id, "reference": reference},
            exc_info=True,
        )
        status, reason = "error", "error"

    params = {
        "orderId": order_id if order_id is not None else "",
        "reference": reference or "",
        "status": status,
        "reason": reason,
    }
    return RedirectResponse(f"{settings.CLIENT_PAYMENT_DEEP_LINK}?{urlencode(params)}", status_code=302)


@router.post(
    "/payment/status",
    summary="Poll payment status",
    description="Verifies with the gateway when needed; on gateway trouble returns the stored status with cached=true.",
)
async def payment_status(
    body: PaymentStatusRequest,
    client: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    service = _payment_service(db, gateway, publisher)
    return await service.check_payment_status(client, body.order_id, body.reference)


@router.get("/{order_id}", response_model=OrderResponse, summary="Get one of my orders")
async def get_order(
    order_id: int,
    client: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    order = await OrderService(db).get_order(order_id)
    if order.client_id != client.id:
        raise ForbiddenError(details={"order_id": order_id})
    return order


@router.post("/{order_id}/refund", summary="Request a refund (within 24 hours of payment)")
async def request_refund(
    order_id: int,
    body: RefundRequest,
    client: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    return await RefundService(db).request_refund(client, order_id, body.reason)


@router.post(
    "/{order_id}/assign",
    response_model=OrderResponse,
    summary="Assign a driver",
    description="Hand-off from driver matching. Only paid, unassigned orders.",
)
async def assign_driver(
    order_id: int,
    body: AssignDriverRequest,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService(db).assign_driver(order_id, body.driver_id)


@router.post(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Driver tracking update",
    description="Forward-only. Reaching delivered credits the driver's earnings.",
)
async def update_status(
    order_id: int,
    body: DeliveryStatusUpdate,
    driver: User = Depends(require_driver),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService(db).update_delivery_status(order_id, driver, body.status)
