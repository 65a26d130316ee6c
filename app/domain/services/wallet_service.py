"""
Wallet Service - read side of client wallets and driver earnings
"""
from decimal import Decimal
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ErrorCode, NotFoundException, ValidationException
from app.db.models.client_wallet import ClientWallet
from app.db.models.driver_earnings import DriverEarningEntry, PendingTransfer, PendingTransferStatus
from app.db.models.financial_transaction import FinancialTransaction
from app.domain.services.ledger_service import LedgerService


def _money(value) -> str:
    return str(value if value is not None else Decimal("0.00"))


def _iso(value):
    return value.isoformat() if value else None


class WalletService:
    """Summaries and history for the wallet and earnings screens"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = LedgerService(db)

    async def get_wallet_summary(self, client_id: int) -> dict[str, Any]:
        """Wallet balance, lifetime stats and the last transactions.

        A client with no deposit yet has no wallet row; an empty summary is returned.
        """
        wallet = await self.ledger.get_wallet(client_id)
        if wallet is None:
            return {
                "client_id": client_id,
                "currency": settings.CURRENCY,
                "balance": "0.00",
                "lifetime": {
                    "total_deposited": "0.00",
                    "total_spent": "0.00",
                    "total_refunded": "0.00",
                    "transaction_count": 0,
                    "first_deposit_at": None,
                    "last_activity_at": None,
                },
                "recent_transactions": [],
            }
        return self._wallet_payload(wallet)

    @staticmethod
    def _wallet_payload(wallet: ClientWallet) -> dict[str, Any]:
        return {
            "client_id": wallet.client_id,
            "currency": wallet.currency,
            "balance": _money(wallet.balance),
            "lifetime": {
                "total_deposited": _money(wallet.total_deposited),
                "total_spent": _money(wallet.total_spent),
                "total_refunded": _money(wallet.total_refunded),
                "transaction_count": wallet.transaction_count,
                "first_deposit_at": _iso(wallet.first_deposit_at),
                "last_activity_at": _iso(wallet.last_activity_at),
            },
            "recent_transactions": list(wallet.recent_transactions or []),
        }

    async def list_client_transactions(self, client_id: int, limit: int | None = None) -> list[dict]:
        """Authoritative transaction history (not the ring buffer)"""
        limit = min(limit or settings.RECENT_ENTRIES_LIMIT, settings.RECENT_ENTRIES_LIMIT)
        result = await self.db.execute(
            select(FinancialTransaction)
            .where(FinancialTransaction.client_id == client_id)
            .order_by(FinancialTransaction.id.desc())
            .limit(limit)
        )
        return [transaction.to_summary() for transaction in result.scalars().all()]

    async def get_earnings_summary(self, driver_id: int) -> dict[str, Any]:
        earnings = await self.ledger.get_driver_earnings(driver_id)
        if earnings is None:
            raise NotFoundException("Driver earnings", driver_id, ErrorCode.EARNINGS_NOT_FOUND)

        result = await self.db.execute(
            select(PendingTransfer)
            .where(
                PendingTransfer.driver_id == driver_id,
                or_(
                    PendingTransfer.status == PendingTransferStatus.PENDING,
                    PendingTransfer.requires_manual_check.is_(True),
                ),
            )
            .order_by(PendingTransfer.created_at.desc())
        )
        pending = [
            {
                "reference": transfer.reference,
                "amount": _money(transfer.amount),
                "fee": _money(transfer.fee),
                "net_amount": _money(transfer.net_amount),
                "status": transfer.status.value,
                "balance_before": _money(transfer.balance_before),
                "balance_after": _money(transfer.balance_after),
                "requires_manual_check": transfer.requires_manual_check,
                "verification_attempts": transfer.verification_attempts,
                "created_at": _iso(transfer.created_at),
            }
            for transfer in result.scalars().all()
        ]

        return {
            "driver_id": driver_id,
            "currency": earnings.currency,
            "available_balance": _money(earnings.available_balance),
            "earnings": {
                "available": _money(earnings.earnings_available),
                "pending": _money(earnings.earnings_pending),
                "withdrawn": _money(earnings.earnings_withdrawn),
                "refunded": _money(earnings.earnings_refunded),
            },
            "lifetime": {
                "total_earned": _money(earnings.total_earned),
                "total_withdrawn": _money(earnings.total_withdrawn),
                "delivery_count": earnings.delivery_count,
                "average_per_delivery": _money(earnings.average_per_delivery),
                "last_earning_at": _iso(earnings.last_earning_at),
                "last_withdrawal_at": _iso(earnings.last_withdrawal_at),
            },
            "recent_earnings": list(earnings.recent_earnings or []),
            "recent_payouts": list(earnings.recent_payouts or []),
            "pending_transfers": pending,
            "last_reconciled_at": _iso(earnings.last_reconciled_at),
        }

    async def get_earnings_history(
        self,
        driver_id: int,
        page: int | None = None,
        include_archived: bool = False,
    ) -> dict[str, Any]:
        """One page of the earnings ledger; the current page by default.

        Archived pages are hidden unless ``include_archived`` is set.
        """
        earnings = await self.ledger.get_driver_earnings(driver_id)
        if earnings is None:
            raise NotFoundException("Driver earnings", driver_id, ErrorCode.EARNINGS_NOT_FOUND)

        last_page = earnings.current_page
        page = last_page if page is None else page
        if page < 1 or page > last_page:
            raise ValidationException(
                f"Page must be between 1 and {last_page}",
                field="page",
                details={"last_page": last_page},
            )

        query = select(DriverEarningEntry).where(
            DriverEarningEntry.driver_id == driver_id,
            DriverEarningEntry.page_number == page,
        )
        if not include_archived:
            query = query.where(DriverEarningEntry.archived.is_(False))
        result = await self.db.execute(query.order_by(DriverEarningEntry.id.desc()))
        entries = result.scalars().all()

        count_query = select(func.min(DriverEarningEntry.page_number)).where(
            DriverEarningEntry.driver_id == driver_id,
            DriverEarningEntry.archived.is_(False),
        )
        first_live_page = (await self.db.execute(count_query)).scalar_one_or_none()

        return {
            "driver_id": driver_id,
            "page": page,
            "last_page": last_page,
            "first_live_page": first_live_page,
            "page_size": settings.EARNINGS_PAGE_SIZE,
            "archived": bool(entries) and all(entry.archived for entry in entries),
            "entries": [
                {
                    "transaction_id": entry.transaction_id,
                    "order_id": entry.order_id,
                    "amount": _money(entry.amount),
                    "description": entry.description,
                    "archived": entry.archived,
                    "earned_at": _iso(entry.earned_at),
                }
                for entry in entries
            ],
        }
