"""
Wallet API Routes - client wallet reads and top-ups
"""
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import require_client
from app.core.validation import amount_validator
from app.db.database import get_db
from app.db.models.user import User
from app.domain.services.event_publisher import EventPublisher, get_event_publisher
from app.domain.services.gateway.base import BasePaymentGateway
from app.domain.services.gateway.provider_factory import get_payment_gateway
from app.domain.services.payment_service import PaymentService
from app.domain.services.wallet_service import WalletService

router = APIRouter()


class TopUpInitiateRequest(BaseModel):
    amount: Decimal

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return amount_validator(v)


class TopUpVerifyRequest(BaseModel):
    reference: str

    @field_validator("reference")
    @classmethod
    def strip_reference(cls, v: str) -> str:
        v = v.strip()
        if not v or len(v) > 100:
            raise ValueError("Invalid reference")
        return v


@router.get(
    "/me",
    summary="My wallet",
    description="Balance, lifetime totals and the most recent transactions.",
)
async def get_my_wallet(
    client: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    return await WalletService(db).get_wallet_summary(client.id)


@router.get("/me/transactions", summary="My transaction history")
async def get_my_transactions(
    limit: int = Query(50, ge=1, le=50),
    client: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    transactions = await WalletService(db).list_client_transactions(client.id, limit)
    return {"client_id": client.id, "transactions": transactions}


@router.post(
    "/topup/initiate",
    summary="Start a wallet top-up",
    description="Opens a gateway checkout for the amount (₦100 – ₦1,000,000).",
)
async def initiate_top_up(
    body: TopUpInitiateRequest,
    client: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    return await PaymentService(db, gateway, publisher).initiate_top_up(client, body.amount)


@router.post(
    "/topup/verify",
    summary="Verify a wallet top-up",
    description="Credits the wallet with the amount net of gateway fees once the charge succeeded. Safe to repeat.",
)
async def verify_top_up(
    body: TopUpVerifyRequest,
    client: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    return await PaymentService(db, gateway, publisher).verify_top_up(client, body.reference)
