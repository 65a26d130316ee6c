"""
Driver API Routes - earnings reads and payouts
"""
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import require_driver
from app.core.validation import (
    account_name_validator,
    account_number_validator,
    amount_validator,
    bank_code_validator,
)
from app.db.database import get_db
from app.db.models.user import User
from app.domain.services.event_publisher import EventPublisher, get_event_publisher
from app.domain.services.gateway.base import BankDetails, BasePaymentGateway
from app.domain.services.gateway.provider_factory import get_payment_gateway
from app.domain.services.payout_service import PayoutService
from app.domain.services.wallet_service import WalletService

router = APIRouter()


class BankDetailsSchema(BaseModel):
    account_number: str
    bank_code: str
    account_name: str

    @field_validator("account_number")
    @classmethod
    def validate_account_number(cls, v: str) -> str:
        return account_number_validator(v)

    @field_validator("bank_code")
    @classmethod
    def validate_bank_code(cls, v: str) -> str:
        return bank_code_validator(v)

    @field_validator("account_name")
    @classmethod
    def validate_account_name(cls, v: str) -> str:
        return account_name_validator(v)

    def to_bank_details(self) -> BankDetails:
        return BankDetails(
            account_number=self.account_number,
            bank_code=self.bank_code,
            account_name=self.account_name,
        )


class PayoutRequest(BaseModel):
    amount: Decimal
    bank_details: BankDetailsSchema

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return amount_validator(v)


@router.get(
    "/earnings",
    summary="My earnings",
    description="Withdrawable balance, report view, lifetime stats, recent activity and in-flight payouts.",
)
async def get_earnings(
    driver: User = Depends(require_driver),
    db: AsyncSession = Depends(get_db),
):
    return await WalletService(db).get_earnings_summary(driver.id)


@router.get(
    "/earnings/history",
    summary="My earnings history",
    description="One page of the earnings ledger (up to 500 entries); the current page by default.",
)
async def get_earnings_history(
    page: int | None = Query(None, ge=1),
    include_archived: bool = Query(False),
    driver: User = Depends(require_driver),
    db: AsyncSession = Depends(get_db),
):
    return await WalletService(db).get_earnings_history(driver.id, page, include_archived)


@router.post(
    "/payout/request",
    summary="Request a payout",
    description=(
        "Locks the amount from the available balance and starts a bank transfer. "
        "Settlement arrives by webhook or through reconciliation."
    ),
)
async def request_payout(
    body: PayoutRequest,
    driver: User = Depends(require_driver),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    service = PayoutService(db, gateway, publisher)
    return await service.process_driver_payout(driver, body.amount, body.bank_details.to_bank_details())


@router.post(
    "/payout/reconcile",
    summary="Reconcile my pending payouts",
    description="Verifies every pending transfer with the gateway and settles the ones that finished.",
)
async def reconcile_my_payouts(
    driver: User = Depends(require_driver),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    driver_id = driver.id
    stats = await PayoutService(db, gateway, publisher).reconcile_pending_transfers(driver_id)
    return {"driver_id": driver_id, **stats}
