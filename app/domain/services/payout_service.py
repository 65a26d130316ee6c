"""
Payout Service - driver payouts and their settlement

Request flow:
    balance check -> fee -> unique reference -> recipient (cached)
    -> [db] payout transaction + funds locked + pending transfer, commit
    -> gateway transfer
    -> webhook / reconciliation sweep settles success, failure or reversal

Funds leave ``available_balance`` before the gateway is asked to move money,
so two concurrent requests can never both spend the same balance. The lock
is committed before the gateway call; no row lock is held across it.

Settlement handlers are shared by the webhook and the reconciliation sweep.
Each starts with the conditional flip of the payout transaction; a handler
that loses the flip is a no-op, so a transfer settles exactly once whatever
the order or number of deliveries.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    CircuitBreakerOpenError,
    ErrorCode,
    GatewayError,
    GatewayReferenceNotFoundError,
    GatewayRejectedError,
    InsufficientBalanceError,
    NotFoundException,
    ValidationException,
)
from app.core.logging import get_logger, log_async_operation, mask_account_number
from app.db.models.driver_earnings import (
    PendingTransfer,
    PendingTransferStatus,
    TransferRecipient,
)
from app.db.models.financial_transaction import (
    TransactionStatus,
    TransactionType,
)
from app.db.models.notification import NotificationType
from app.db.models.user import User
from app.domain.services.event_publisher import EventName, EventPublisher, publish_safely
from app.domain.services.gateway.base import BankDetails, BasePaymentGateway
from app.domain.services.ledger_service import LedgerService, push_bounded
from app.domain.services.money import (
    calculate_transfer_fee,
    format_naira,
    to_decimal,
    to_minor_units,
)
from app.domain.services.notification_service import NotificationService
from app.domain.services.references import (
    generate_transfer_reference,
    is_valid_transfer_reference,
)

logger = get_logger(__name__)

_MAX_REFERENCE_ATTEMPTS = 5


class PayoutService:
    """Driver payout requests and webhook/poll-driven settlement"""

    def __init__(
        self,
        db: AsyncSession,
        gateway: BasePaymentGateway,
        publisher: EventPublisher,
    ):
        self.db = db
        self.gateway = gateway
        self.publisher = publisher
        self.ledger = LedgerService(db)
        self.notifications = NotificationService(db)

    # ==================== Request ====================

    async def _new_reference(self) -> str:
        for _ in range(_MAX_REFERENCE_ATTEMPTS):
            reference = generate_transfer_reference()
            if not await self.ledger.reference_exists(reference):
                return reference
            logger.warning("Transfer reference collision, regenerating", extra_data={"reference": reference})
        raise RuntimeError("Could not generate a unique transfer reference")

    async def resolve_recipient(self, driver_id: int, bank_details: BankDetails) -> str:
        """Cached recipient code per (driver, account number, bank); created at the gateway once."""
        result = await self.db.execute(
            select(TransferRecipient).where(
                TransferRecipient.driver_id == driver_id,
                TransferRecipient.account_number == bank_details.account_number,
                TransferRecipient.bank_code == bank_details.bank_code,
            )
        )
        cached = result.scalar_one_or_none()
        if cached:
            return cached.recipient_code

        recipient_code = await self.gateway.create_transfer_recipient(bank_details, settings.CURRENCY)
        try:
            async with self.db.begin_nested():
                self.db.add(
                    TransferRecipient(
                        driver_id=driver_id,
                        account_number=bank_details.account_number,
                        bank_code=bank_details.bank_code,
                        account_name=bank_details.account_name,
                        recipient_code=recipient_code,
                    )
                )
        except IntegrityError:
            logger.info(
                "Transfer recipient cached concurrently",
                extra_data={"driver_id": driver_id, "account_number": mask_account_number(bank_details.account_number)},
            )
        await self.db.commit()
        return recipient_code

    @log_async_operation("process_driver_payout")
    async def process_driver_payout(
        self,
        driver: User,
        requested_amount: Decimal,
        bank_details: BankDetails,
    ) -> dict[str, Any]:
        driver_id = driver.id
        amount = to_decimal(requested_amount)
        if amount <= 0:
            raise ValidationException("Payout amount must be positive", field="amount", error_code=ErrorCode.INVALID_AMOUNT)

        earnings = await self.ledger.get_driver_earnings(driver_id)
        if earnings is None:
            raise NotFoundException("DriverEarnings", driver_id, ErrorCode.EARNINGS_NOT_FOUND)
        available = to_decimal(earnings.available_balance)
        if available < amount:
            raise InsufficientBalanceError(driver_id, available, amount)

        fee = calculate_transfer_fee(amount)
        net_amount = amount - fee
        if net_amount <= 0:
            raise ValidationException(
                f"Payout must exceed the transfer fee of {format_naira(fee)}",
                field="amount",
                error_code=ErrorCode.INVALID_AMOUNT,
            )

        reference = await self._new_reference()
        recipient_code = await self.resolve_recipient(driver_id, bank_details)

        log_context = {
            "driver_id": driver_id,
            "reference": reference,
            "amount": str(amount),
            "fee": str(fee),
            "net_amount": str(net_amount),
            "account_number": mask_account_number(bank_details.account_number),
        }

        transaction = await self.ledger.create_transaction(
            TransactionType.DRIVER_PAYOUT,
            amount,
            fees=fee,
            reference=reference,
            provider=self.gateway.provider_name,
            driver_id=driver_id,
            description=f"Driver payout {reference}",
            payout_requested_amount=amount,
            payout_transfer_fee=fee,
            payout_net_amount=net_amount,
            payout_bank_details=bank_details.snapshot(),
            payout_transfer_status="pending",
        )
        transaction_id = transaction.id
        locked = await self.ledger.lock_payout_funds(driver_id, amount)
        if locked is None:
            await self.db.rollback()
            raise InsufficientBalanceError(driver_id, available, amount)
        balance_before, balance_after = locked

        self.db.add(
            PendingTransfer(
                driver_id=driver_id,
                transaction_id=transaction_id,
                reference=reference,
                amount=amount,
                fee=fee,
                net_amount=net_amount,
                status=PendingTransferStatus.PENDING,
                balance_before=balance_before,
                balance_after=balance_after,
                bank_snapshot=bank_details.snapshot(),
            )
        )
        earnings = await self.ledger.get_driver_earnings(driver_id, for_update=True)
        earnings.recent_payouts = push_bounded(
            earnings.recent_payouts,
            {
                "reference": reference,
                "transaction_id": transaction_id,
                "amount": str(amount),
                "fee": str(fee),
                "net_amount": str(net_amount),
                "status": PendingTransferStatus.PENDING.value,
                "requested_at": datetime.utcnow().isoformat(),
            },
            settings.RECENT_ENTRIES_LIMIT,
        )
        await self.db.commit()
        logger.info("Payout funds locked", extra_data={**log_context, "balance_after": str(balance_after)})

        try:
            initiation = await self.gateway.initiate_transfer(
                recipient_code=recipient_code,
                amount_minor=to_minor_units(net_amount),
                reference=reference,
                reason=f"Payout {reference}",
            )
        except (GatewayRejectedError, CircuitBreakerOpenError) as e:
            # The transfer was refused or never sent: release the locked funds
            logger.warning(
                "Payout transfer not started, restoring balance",
                extra_data={**log_context, "error": e.message},
            )
            await self.handle_transfer_failed(reference, e.message, source="initiation")
            raise
        except GatewayError as e:
            # Timeout / 5xx: the transfer may or may not exist at the gateway
            await self.db.execute(
                update(PendingTransfer)
                .where(PendingTransfer.reference == reference)
                .values(requires_manual_check=True, failure_reason=e.message[:500])
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            logger.error(
                "Payout transfer outcome unknown, flagged for reconciliation",
                extra_data={**log_context, "error": e.message},
            )
            raise

        await self.ledger.transition_status(
            transaction_id,
            (TransactionStatus.PENDING,),
            TransactionStatus.PROCESSING,
            payout_transfer_code=initiation.transfer_code,
            payout_transfer_status=initiation.status,
        )
        await self.db.execute(
            update(PendingTransfer)
            .where(PendingTransfer.reference == reference)
            .values(transfer_code=initiation.transfer_code, gateway_response=initiation.raw)
            .execution_options(synchronize_session=False)
        )
        await self.notifications.create(
            driver_id,
            NotificationType.PAYOUT_REQUESTED,
            {"amount": format_naira(amount), "net_amount": format_naira(net_amount)},
            details={"reference": reference},
        )
        await self.db.commit()
        logger.info(
            "Payout transfer initiated",
            extra_data={**log_context, "transfer_code": initiation.transfer_code, "transfer_status": initiation.status},
        )

        status = PendingTransferStatus.PENDING.value
        if initiation.status == "success":
            await self.handle_transfer_success(reference, initiation.raw, source="initiation")
            status = PendingTransferStatus.COMPLETED.value
        elif initiation.status in ("failed", "reversed"):
            await self.handle_transfer_failed(
                reference,
                initiation.raw.get("message") or f"Transfer {initiation.status}",
                is_reversal=initiation.status == "reversed",
                data=initiation.raw,
                source="initiation",
            )
            status = PendingTransferStatus.FAILED.value
        else:
            await publish_safely(
                self.publisher,
                driver_id,
                EventName.PAYOUT_STATUS_UPDATED,
                {"reference": reference, "status": status, "amount": str(amount)},
            )

        return {
            "transaction_id": transaction_id,
            "reference": reference,
            "amount": str(amount),
            "fee": str(fee),
            "net_amount": str(net_amount),
            "status": status,
            "transfer_code": initiation.transfer_code,
            "balance_before": str(balance_before),
            "balance_after": str(balance_after),
        }

    # ==================== Settlement ====================

    async def _load_payout(self, reference: str, event: str):
        if not is_valid_transfer_reference(reference):
            logger.warning("Malformed transfer reference", extra_data={"reference": reference, "event": event})
            return None
        transaction = await self.ledger.get_by_reference(reference, fresh=True)
        if transaction is None or transaction.transaction_type != TransactionType.DRIVER_PAYOUT:
            logger.warning("Transfer event for unknown payout", extra_data={"reference": reference, "event": event})
            return None
        return transaction

    @log_async_operation("transfer_success")
    async def handle_transfer_success(
        self,
        reference: str,
        data: Optional[dict[str, Any]] = None,
        *,
        source: str = "webhook",
    ) -> bool:
        """transfer.success. True only for the call that settled the payout."""
        transaction = await self._load_payout(reference, "transfer.success")
        if transaction is None:
            return False
        context = {
            "reference": reference,
            "driver_id": transaction.driver_id,
            "amount": str(transaction.amount_gross),
            "source": source,
        }
        if transaction.is_terminal:
            logger.info("Payout already settled", extra_data={**context, "status": transaction.status.value})
            return False

        driver_id = transaction.driver_id
        amount = to_decimal(transaction.amount_gross)
        net_amount = to_decimal(transaction.amount_net)
        won = await self.ledger.complete_transaction(transaction.id, payout_transfer_status="success")
        if not won:
            await self.db.rollback()
            logger.info("Payout settled by another path", extra_data=context)
            return False

        await self.ledger.settle_pending_transfer(
            reference, PendingTransferStatus.COMPLETED, gateway_response=data
        )
        await self.ledger.settle_payout_success(driver_id, amount)
        await self.ledger.update_recent_payout(
            driver_id,
            reference,
            {"status": PendingTransferStatus.COMPLETED.value, "completed_at": datetime.utcnow().isoformat()},
        )
        await self.notifications.create(
            driver_id,
            NotificationType.PAYOUT_COMPLETED,
            {"net_amount": format_naira(net_amount)},
            details={"reference": reference},
        )
        await self.db.commit()
        logger.info("Payout completed", extra_data=context)

        payload = {"reference": reference, "status": PendingTransferStatus.COMPLETED.value, "amount": str(amount)}
        await publish_safely(self.publisher, driver_id, EventName.PAYOUT_TRANSFER_COMPLETED, payload)
        await publish_safely(self.publisher, driver_id, EventName.PAYOUT_STATUS_UPDATED, payload)
        return True

    @log_async_operation("transfer_failed")
    async def handle_transfer_failed(
        self,
        reference: str,
        reason: Optional[str],
        *,
        is_reversal: bool = False,
        data: Optional[dict[str, Any]] = None,
        source: str = "webhook",
    ) -> bool:
        """
        transfer.failed / transfer.reversed: fail the payout and return the
        locked amount to ``available_balance``. No fee is charged.
        """
        event = "transfer.reversed" if is_reversal else "transfer.failed"
        transaction = await self._load_payout(reference, event)
        if transaction is None:
            return False
        context = {
            "reference": reference,
            "driver_id": transaction.driver_id,
            "amount": str(transaction.amount_gross),
            "source": source,
            "reason": reason,
        }
        if transaction.is_terminal:
            if transaction.status == TransactionStatus.COMPLETED:
                logger.critical(
                    f"{event} received for a completed payout; manual review required",
                    extra_data=context,
                )
            else:
                logger.info("Payout already settled", extra_data={**context, "status": transaction.status.value})
            return False

        driver_id = transaction.driver_id
        amount = to_decimal(transaction.amount_gross)
        final_status = TransactionStatus.REVERSED if is_reversal else TransactionStatus.FAILED
        reason = reason or f"Transfer {final_status.value}"
        won = await self.ledger.fail_transaction(
            transaction.id,
            reason,
            status=final_status,
            payout_transfer_status=final_status.value,
        )
        if not won:
            await self.db.rollback()
            logger.info("Payout settled by another path", extra_data=context)
            return False

        await self.ledger.settle_pending_transfer(
            reference, PendingTransferStatus.FAILED, failure_reason=reason, gateway_response=data
        )
        await self.ledger.restore_payout_funds(driver_id, amount)
        await self.ledger.update_recent_payout(
            driver_id,
            reference,
            {"status": PendingTransferStatus.FAILED.value, "failure_reason": reason},
        )
        await self.notifications.create(
            driver_id,
            NotificationType.PAYOUT_FAILED,
            {"amount": format_naira(amount)},
            details={"reference": reference, "reason": reason},
        )
        await self.db.commit()
        logger.warning("Payout failed, balance restored", extra_data=context)

        payload = {
            "reference": reference,
            "status": PendingTransferStatus.FAILED.value,
            "amount": str(amount),
            "reason": reason,
        }
        await publish_safely(self.publisher, driver_id, EventName.PAYOUT_TRANSFER_FAILED, payload)
        await publish_safely(self.publisher, driver_id, EventName.PAYOUT_STATUS_UPDATED, payload)
        return True

    # ==================== Reconciliation sweep ====================

    async def list_drivers_with_stale_transfers(self, stale_minutes: Optional[int] = None) -> list[int]:
        minutes = settings.RECONCILE_TRANSFER_STALE_MINUTES if stale_minutes is None else stale_minutes
        cutoff = datetime.utcnow() - timedelta(minutes=minutes)
        result = await self.db.execute(
            select(PendingTransfer.driver_id)
            .where(
                PendingTransfer.status == PendingTransferStatus.PENDING,
                (PendingTransfer.created_at < cutoff) | PendingTransfer.requires_manual_check.is_(True),
            )
            .distinct()
        )
        return list(result.scalars().all())

    async def _record_check(self, transfer_id: int, attempts: int, note: Optional[str] = None) -> bool:
        flag = attempts >= settings.RECONCILE_MAX_ATTEMPTS
        values: dict[str, Any] = {
            "verification_attempts": attempts,
            "last_checked_at": datetime.utcnow(),
        }
        if flag:
            values["requires_manual_check"] = True
        if note:
            values["failure_reason"] = note[:500]
        await self.db.execute(
            update(PendingTransfer)
            .where(PendingTransfer.id == transfer_id, PendingTransfer.status == PendingTransferStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return flag

    @log_async_operation("reconcile_pending_transfers")
    async def reconcile_pending_transfers(self, driver_id: int) -> dict[str, Any]:
        """
        Verify every pending transfer of a driver against the gateway and route
        the answer through the webhook handlers. Re-derives the report view.
        """
        result = await self.db.execute(
            select(PendingTransfer.id, PendingTransfer.reference, PendingTransfer.verification_attempts)
            .where(
                PendingTransfer.driver_id == driver_id,
                PendingTransfer.status == PendingTransferStatus.PENDING,
            )
            .order_by(PendingTransfer.created_at)
        )
        pending = list(result.all())
        stats = {"checked": 0, "completed": 0, "failed": 0, "still_pending": 0, "errors": 0, "flagged": 0}

        for transfer_id, reference, attempts in pending:
            stats["checked"] += 1
            attempts = (attempts or 0) + 1
            try:
                verification = await self.gateway.verify_transfer(reference)
            except GatewayReferenceNotFoundError:
                if await self.handle_transfer_failed(reference, "Transfer not found at gateway", source="reconcile"):
                    stats["failed"] += 1
                continue
            except GatewayError as e:
                stats["errors"] += 1
                if await self._record_check(transfer_id, attempts, e.message):
                    stats["flagged"] += 1
                logger.warning(
                    "Transfer verification failed during reconciliation",
                    extra_data={"driver_id": driver_id, "reference": reference, "attempt": attempts, "error": e.message},
                )
                continue

            if verification.is_successful:
                if await self.handle_transfer_success(reference, verification.raw, source="reconcile"):
                    stats["completed"] += 1
            elif verification.is_failed:
                reason = verification.raw.get("reason") or verification.raw.get("message") or f"Transfer {verification.status}"
                if await self.handle_transfer_failed(
                    reference,
                    reason,
                    is_reversal=verification.status == "reversed",
                    data=verification.raw,
                    source="reconcile",
                ):
                    stats["failed"] += 1
            else:
                stats["still_pending"] += 1
                if await self._record_check(transfer_id, attempts):
                    stats["flagged"] += 1
                    logger.error(
                        "Transfer still pending after max verification attempts",
                        extra_data={"driver_id": driver_id, "reference": reference, "attempts": attempts},
                    )

        stats["drift"] = await self.rederive_report_view(driver_id)
        logger.info("Transfer reconciliation finished", extra_data={"driver_id": driver_id, **stats})
        return stats

    async def rederive_report_view(self, driver_id: int) -> dict[str, str]:
        """
        ``available_balance`` is authoritative. Reset the report view from it
        and from the pending transfers; return whatever had drifted.
        """
        pending_total = await self.ledger.sum_pending_transfers(driver_id)
        earnings = await self.ledger.get_driver_earnings(driver_id, for_update=True)
        if earnings is None:
            return {}

        drift: dict[str, str] = {}
        available = to_decimal(earnings.available_balance)
        if to_decimal(earnings.earnings_available) != available:
            drift["earnings_available"] = str(to_decimal(earnings.earnings_available) - available)
            earnings.earnings_available = available
        if to_decimal(earnings.earnings_pending) != pending_total:
            drift["earnings_pending"] = str(to_decimal(earnings.earnings_pending) - pending_total)
            earnings.earnings_pending = pending_total
        earnings.last_reconciled_at = datetime.utcnow()
        await self.db.commit()

        if drift:
            logger.warning("Driver earnings report view drifted", extra_data={"driver_id": driver_id, "drift": drift})
        return drift
