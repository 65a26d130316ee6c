"""
Ledger Service - Atomic money mutations

Every balance-affecting write is a conditional update on current state:

    UPDATE financial_transactions SET status = 'completed'
    WHERE id = :id AND status = 'pending'

A rowcount of 0 means another writer already moved the row; callers treat
that as a successful no-op and never credit twice. Balance changes are
server-side expressions guarded in the WHERE clause
(``available_balance >= :amount``), so concurrent writers never lose an
update and balances never go negative.

Nothing here commits; the calling engine owns the database transaction so a
status flip and its balance change land together.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import NotFoundException, ErrorCode
from app.core.logging import get_logger
from app.db.models.client_wallet import ClientWallet
from app.db.models.driver_earnings import (
    DriverEarnings,
    DriverEarningEntry,
    PendingTransfer,
    PendingTransferStatus,
)
from app.db.models.financial_transaction import (
    FinancialTransaction,
    TransactionStatus,
    TransactionType,
)
from app.domain.services.money import to_decimal
from app.domain.services.references import generate_transaction_reference

logger = get_logger(__name__)

ZERO = Decimal("0.00")


def push_bounded(items: Optional[list], entry: dict, limit: int) -> list:
    """Newest-first ring buffer"""
    return [entry] + list(items or [])[: max(limit - 1, 0)]


def replace_in_buffer(items: Optional[list], key: str, value: Any, changes: dict) -> list:
    return [
        {**item, **changes} if item.get(key) == value else item
        for item in (items or [])
    ]


class LedgerService:
    """Persisted ledger records and the atomic operations over them"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Transactions ====================

    async def create_transaction(
        self,
        transaction_type: TransactionType,
        gross: Decimal,
        *,
        fees: Decimal = ZERO,
        status: TransactionStatus = TransactionStatus.PENDING,
        reference: Optional[str] = None,
        provider: str = "internal",
        client_id: Optional[int] = None,
        driver_id: Optional[int] = None,
        order_id: Optional[int] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
        **extra: Any,
    ) -> FinancialTransaction:
        """Insert a transaction row and flush so its id is available."""
        gross = to_decimal(gross)
        fees = to_decimal(fees)
        now = datetime.utcnow()
        transaction = FinancialTransaction(
            transaction_type=transaction_type,
            status=status,
            client_id=client_id,
            driver_id=driver_id,
            order_id=order_id,
            amount_gross=gross,
            amount_fees=fees,
            amount_net=gross - fees,
            currency=settings.CURRENCY,
            gateway_provider=provider,
            gateway_reference=reference or generate_transaction_reference(),
            gateway_metadata=metadata or {},
            description=description,
            completed_at=now if status == TransactionStatus.COMPLETED else None,
            processed_at=now if status == TransactionStatus.COMPLETED else None,
            **extra,
        )
        self.db.add(transaction)
        await self.db.flush()
        return transaction

    async def get_transaction(self, transaction_id: int, *, fresh: bool = False) -> Optional[FinancialTransaction]:
        query = select(FinancialTransaction).where(FinancialTransaction.id == transaction_id)
        if fresh:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference: str, *, fresh: bool = False) -> Optional[FinancialTransaction]:
        query = select(FinancialTransaction).where(FinancialTransaction.gateway_reference == reference)
        if fresh:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def reference_exists(self, reference: str) -> bool:
        result = await self.db.execute(
            select(func.count(FinancialTransaction.id))
            .where(FinancialTransaction.gateway_reference == reference)
        )
        return (result.scalar() or 0) > 0

    async def transition_status(
        self,
        transaction_id: int,
        expected: Iterable[TransactionStatus],
        new_status: TransactionStatus,
        **values: Any,
    ) -> bool:
        """
        Conditional status flip. Returns True only for the single caller whose
        update matched; every other concurrent caller gets False.
        """
        expected = list(expected)
        result = await self.db.execute(
            update(FinancialTransaction)
            .where(
                FinancialTransaction.id == transaction_id,
                FinancialTransaction.status.in_(expected),
            )
            .values(status=new_status, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        won = result.rowcount == 1
        if not won:
            logger.info(
                "Conditional transaction update matched nothing",
                extra_data={
                    "transaction_id": transaction_id,
                    "expected": [s.value for s in expected],
                    "new_status": new_status.value,
                },
            )
        return won

    async def complete_transaction(
        self,
        transaction_id: int,
        *,
        fees: Optional[Decimal] = None,
        gross: Optional[Decimal] = None,
        processed_at: Optional[datetime] = None,
        **values: Any,
    ) -> bool:
        """pending/processing -> completed, fixing the final amounts so net + fees == gross"""
        now = datetime.utcnow()
        if gross is not None or fees is not None:
            transaction = await self.get_transaction(transaction_id)
            if transaction is None:
                raise NotFoundException("FinancialTransaction", transaction_id, ErrorCode.TRANSACTION_NOT_FOUND)
            final_gross = to_decimal(gross if gross is not None else transaction.amount_gross)
            final_fees = to_decimal(fees if fees is not None else transaction.amount_fees)
            values.update(
                amount_gross=final_gross,
                amount_fees=final_fees,
                amount_net=final_gross - final_fees,
            )
        return await self.transition_status(
            transaction_id,
            (TransactionStatus.PENDING, TransactionStatus.PROCESSING),
            TransactionStatus.COMPLETED,
            completed_at=now,
            processed_at=processed_at or now,
            **values,
        )

    async def fail_transaction(
        self,
        transaction_id: int,
        reason: Optional[str],
        *,
        status: TransactionStatus = TransactionStatus.FAILED,
        **values: Any,
    ) -> bool:
        """pending/processing -> failed (or reversed). Never touches a completed row."""
        return await self.transition_status(
            transaction_id,
            (TransactionStatus.PENDING, TransactionStatus.PROCESSING),
            status,
            failure_reason=(reason or "")[:500] or None,
            failed_at=datetime.utcnow(),
            **values,
        )

    async def cancel_transaction(self, transaction_id: int, reason: str) -> bool:
        return await self.transition_status(
            transaction_id,
            (TransactionStatus.PENDING,),
            TransactionStatus.CANCELLED,
            failure_reason=reason[:500],
        )

    # ==================== Client wallet ====================

    async def get_wallet(self, client_id: int, *, for_update: bool = False) -> Optional[ClientWallet]:
        query = (
            select(ClientWallet)
            .where(ClientWallet.client_id == client_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_or_create_wallet(self, client_id: int) -> ClientWallet:
        """Lazily create the wallet; a concurrent creator wins via the unique key."""
        wallet = await self.get_wallet(client_id)
        if wallet:
            return wallet

        try:
            async with self.db.begin_nested():
                wallet = ClientWallet(
                    client_id=client_id,
                    currency=settings.CURRENCY,
                    balance=ZERO,
                    recent_transactions=[],
                )
                self.db.add(wallet)
        except IntegrityError:
            logger.info(
                "Wallet created concurrently, reloading",
                extra_data={"client_id": client_id},
            )
            wallet = await self.get_wallet(client_id)
        return wallet

    async def credit_wallet(
        self,
        client_id: int,
        amount: Decimal,
        transaction: FinancialTransaction,
        *,
        is_refund: bool = False,
    ) -> ClientWallet:
        """Add to the balance. Caller must already have won the transaction's completion flip."""
        amount = to_decimal(amount)
        await self.get_or_create_wallet(client_id)
        now = datetime.utcnow()

        lifetime_column = ClientWallet.total_refunded if is_refund else ClientWallet.total_deposited
        values = {
            ClientWallet.balance: ClientWallet.balance + amount,
            lifetime_column: lifetime_column + amount,
            ClientWallet.transaction_count: ClientWallet.transaction_count + 1,
            ClientWallet.last_activity_at: now,
            ClientWallet.updated_at: now,
        }
        if not is_refund:
            values[ClientWallet.first_deposit_at] = func.coalesce(ClientWallet.first_deposit_at, now)
        await self.db.execute(
            update(ClientWallet)
            .where(ClientWallet.client_id == client_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        return await self._record_wallet_activity(client_id, transaction, direction="credit")

    async def debit_wallet(
        self,
        client_id: int,
        amount: Decimal,
        transaction: FinancialTransaction,
    ) -> Optional[ClientWallet]:
        """Guarded debit. Returns None (nothing changed) if the balance cannot cover it."""
        amount = to_decimal(amount)
        now = datetime.utcnow()
        result = await self.db.execute(
            update(ClientWallet)
            .where(
                ClientWallet.client_id == client_id,
                ClientWallet.balance >= amount,
            )
            .values(
                balance=ClientWallet.balance - amount,
                total_spent=ClientWallet.total_spent + amount,
                transaction_count=ClientWallet.transaction_count + 1,
                last_activity_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self._record_wallet_activity(client_id, transaction, direction="debit")

    async def _record_wallet_activity(
        self,
        client_id: int,
        transaction: FinancialTransaction,
        *,
        direction: str,
    ) -> ClientWallet:
        wallet = await self.get_wallet(client_id, for_update=True)
        entry = {**transaction.to_summary(), "status": TransactionStatus.COMPLETED.value, "direction": direction}
        wallet.recent_transactions = push_bounded(
            wallet.recent_transactions, entry, settings.RECENT_ENTRIES_LIMIT
        )
        await self.db.flush()
        return wallet

    # ==================== Driver earnings ====================

    async def get_driver_earnings(self, driver_id: int, *, for_update: bool = False) -> Optional[DriverEarnings]:
        query = (
            select(DriverEarnings)
            .where(DriverEarnings.driver_id == driver_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_or_create_driver_earnings(self, driver_id: int) -> DriverEarnings:
        earnings = await self.get_driver_earnings(driver_id)
        if earnings:
            return earnings

        try:
            async with self.db.begin_nested():
                earnings = DriverEarnings(
                    driver_id=driver_id,
                    currency=settings.CURRENCY,
                    available_balance=ZERO,
                    recent_earnings=[],
                    recent_payouts=[],
                    current_page=1,
                    current_page_count=0,
                )
                self.db.add(earnings)
        except IntegrityError:
            logger.info(
                "Driver earnings created concurrently, reloading",
                extra_data={"driver_id": driver_id},
            )
            earnings = await self.get_driver_earnings(driver_id)
        return earnings

    async def credit_driver_earning(
        self,
        driver_id: int,
        amount: Decimal,
        transaction: FinancialTransaction,
        *,
        order_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> DriverEarnings:
        """Credit a completed delivery and append it to the paginated earnings ledger."""
        amount = to_decimal(amount)
        await self.get_or_create_driver_earnings(driver_id)
        now = datetime.utcnow()

        await self.db.execute(
            update(DriverEarnings)
            .where(DriverEarnings.driver_id == driver_id)
            .values(
                available_balance=DriverEarnings.available_balance + amount,
                earnings_available=DriverEarnings.earnings_available + amount,
                total_earned=DriverEarnings.total_earned + amount,
                delivery_count=DriverEarnings.delivery_count + 1,
                last_earning_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        earnings = await self.get_driver_earnings(driver_id, for_update=True)
        earnings.average_per_delivery = to_decimal(
            Decimal(earnings.total_earned) / max(earnings.delivery_count, 1)
        )
        earnings.recent_earnings = push_bounded(
            earnings.recent_earnings,
            {
                "transaction_id": transaction.id,
                "order_id": order_id,
                "amount": str(amount),
                "earned_at": now.isoformat(),
            },
            settings.RECENT_ENTRIES_LIMIT,
        )
        await self._append_earning_entry(earnings, transaction, amount, order_id, description, now)
        await self.db.flush()
        return earnings

    async def _append_earning_entry(
        self,
        earnings: DriverEarnings,
        transaction: FinancialTransaction,
        amount: Decimal,
        order_id: Optional[int],
        description: Optional[str],
        earned_at: datetime,
    ) -> DriverEarningEntry:
        page = earnings.current_page or 1
        count = earnings.current_page_count or 0
        opened_new_page = False
        if count >= settings.EARNINGS_PAGE_SIZE:
            page += 1
            count = 0
            opened_new_page = True

        entry = DriverEarningEntry(
            driver_id=earnings.driver_id,
            page_number=page,
            transaction_id=transaction.id,
            order_id=order_id,
            amount=amount,
            description=description,
            earned_at=earned_at,
        )
        self.db.add(entry)
        earnings.current_page = page
        earnings.current_page_count = count + 1

        if opened_new_page and page > settings.EARNINGS_MAX_LIVE_PAGES:
            await self._archive_old_pages(earnings.driver_id, page)
        return entry

    async def _archive_old_pages(self, driver_id: int, current_page: int) -> int:
        """Keep the newest EARNINGS_KEEP_LIVE_PAGES pages live; flag the rest archived."""
        last_archived_page = current_page - settings.EARNINGS_KEEP_LIVE_PAGES
        result = await self.db.execute(
            update(DriverEarningEntry)
            .where(
                DriverEarningEntry.driver_id == driver_id,
                DriverEarningEntry.page_number <= last_archived_page,
                DriverEarningEntry.archived.is_(False),
            )
            .values(archived=True)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Archived old earnings pages",
            extra_data={
                "driver_id": driver_id,
                "through_page": last_archived_page,
                "entries": result.rowcount,
            },
        )
        return result.rowcount

    async def lock_payout_funds(self, driver_id: int, amount: Decimal) -> Optional[tuple[Decimal, Decimal]]:
        """
        Move ``amount`` from available to in-flight. Returns (balance_before,
        balance_after), or None when the balance cannot cover it.
        """
        amount = to_decimal(amount)
        result = await self.db.execute(
            update(DriverEarnings)
            .where(
                DriverEarnings.driver_id == driver_id,
                DriverEarnings.available_balance >= amount,
            )
            .values(
                available_balance=DriverEarnings.available_balance - amount,
                earnings_available=DriverEarnings.earnings_available - amount,
                earnings_pending=DriverEarnings.earnings_pending + amount,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        earnings = await self.get_driver_earnings(driver_id, for_update=True)
        balance_after = to_decimal(earnings.available_balance)
        return balance_after + amount, balance_after

    async def settle_payout_success(self, driver_id: int, amount: Decimal) -> None:
        """Funds already left available_balance at request time; only the report view moves."""
        amount = to_decimal(amount)
        now = datetime.utcnow()
        await self.db.execute(
            update(DriverEarnings)
            .where(DriverEarnings.driver_id == driver_id)
            .values(
                earnings_pending=DriverEarnings.earnings_pending - amount,
                earnings_withdrawn=DriverEarnings.earnings_withdrawn + amount,
                total_withdrawn=DriverEarnings.total_withdrawn + amount,
                last_withdrawal_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    async def restore_payout_funds(self, driver_id: int, amount: Decimal) -> None:
        """Compensating credit for a failed or reversed transfer."""
        amount = to_decimal(amount)
        await self.db.execute(
            update(DriverEarnings)
            .where(DriverEarnings.driver_id == driver_id)
            .values(
                available_balance=DriverEarnings.available_balance + amount,
                earnings_available=DriverEarnings.earnings_available + amount,
                earnings_pending=DriverEarnings.earnings_pending - amount,
                earnings_refunded=DriverEarnings.earnings_refunded + amount,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def deduct_driver_balance(self, driver_id: int, amount: Decimal) -> bool:
        """Guarded clawback (refund of an already distributed order)."""
        amount = to_decimal(amount)
        result = await self.db.execute(
            update(DriverEarnings)
            .where(
                DriverEarnings.driver_id == driver_id,
                DriverEarnings.available_balance >= amount,
            )
            .values(
                available_balance=DriverEarnings.available_balance - amount,
                earnings_available=DriverEarnings.earnings_available - amount,
                total_earned=DriverEarnings.total_earned - amount,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_recent_payout(self, driver_id: int, reference: str, changes: dict) -> None:
        earnings = await self.get_driver_earnings(driver_id, for_update=True)
        if earnings is None:
            return
        earnings.recent_payouts = replace_in_buffer(earnings.recent_payouts, "reference", reference, changes)
        await self.db.flush()

    # ==================== Pending transfers ====================

    async def get_pending_transfer(self, reference: str) -> Optional[PendingTransfer]:
        result = await self.db.execute(
            select(PendingTransfer)
            .where(PendingTransfer.reference == reference)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def settle_pending_transfer(
        self,
        reference: str,
        new_status: PendingTransferStatus,
        *,
        failure_reason: Optional[str] = None,
        gateway_response: Optional[dict] = None,
    ) -> bool:
        """pending -> completed/failed for the in-flight entry"""
        values: dict[str, Any] = {
            "status": new_status,
            "settled_at": datetime.utcnow(),
            "requires_manual_check": False,
        }
        if failure_reason:
            values["failure_reason"] = failure_reason[:500]
        if gateway_response is not None:
            values["gateway_response"] = gateway_response
        result = await self.db.execute(
            update(PendingTransfer)
            .where(
                PendingTransfer.reference == reference,
                PendingTransfer.status == PendingTransferStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def sum_pending_transfers(self, driver_id: int) -> Decimal:
        result = await self.db.execute(
            select(func.coalesce(func.sum(PendingTransfer.amount), 0))
            .where(
                PendingTransfer.driver_id == driver_id,
                PendingTransfer.status == PendingTransferStatus.PENDING,
            )
        )
        return to_decimal(result.scalar() or 0)
