"""
Refund Service

A client may ask for a refund within REFUND_WINDOW_HOURS of a successful
payment; an admin approves it. Approval credits the client wallet. If the
driver share was already distributed, 70% of the refund is clawed back from
the driver with a guarded update; a driver balance that cannot cover it
blocks the approval (409) and leaves the order in ``refund_requested`` for
manual handling. Card refunds through the gateway are not implemented.
"""
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    ConflictError,
    ErrorCode,
    ForbiddenError,
    NotFoundException,
    ValidationException,
)
from app.core.logging import get_logger, log_async_operation
from app.db.models.financial_transaction import TransactionStatus, TransactionType
from app.db.models.notification import NotificationType
from app.db.models.order import HistoryKind, Order, OrderHistory, OrderStatus, PaymentStatus
from app.db.models.user import User
from app.domain.services.ledger_service import LedgerService
from app.domain.services.money import format_naira, to_decimal
from app.domain.services.notification_service import NotificationService

logger = get_logger(__name__)


def driver_refund_share(refund_amount) -> Decimal:
    """70% of the refund, rounded to the naira"""
    share = to_decimal(refund_amount) * settings.REFUND_DRIVER_SHARE_RATIO
    return share.to_integral_value(rounding=ROUND_HALF_UP).quantize(Decimal("0.01"))


class RefundService:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = LedgerService(db)
        self.notifications = NotificationService(db)

    async def _get_order(self, order_id: int) -> Order:
        result = await self.db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundException("Order", order_id, ErrorCode.ORDER_NOT_FOUND)
        return order

    @log_async_operation("request_refund")
    async def request_refund(self, client: User, order_id: int, reason: str) -> dict[str, Any]:
        client_id = client.id
        order = await self._get_order(order_id)
        if order.client_id != client_id:
            raise ForbiddenError(error_code=ErrorCode.USER_MISMATCH, details={"order_id": order_id})
        if order.payment_status != PaymentStatus.PAID:
            raise ConflictError(
                "Only paid orders can be refunded",
                error_code=ErrorCode.ORDER_STATUS_CHANGED,
                details={"order_id": order_id, "payment_status": order.payment_status.value},
            )
        now = datetime.utcnow()
        paid_at = order.payment_paid_at or order.submitted_at
        if paid_at is None or now - paid_at > timedelta(hours=settings.REFUND_WINDOW_HOURS):
            raise ValidationException(
                f"Refunds are only possible within {settings.REFUND_WINDOW_HOURS} hours of payment",
                error_code=ErrorCode.REFUND_WINDOW_EXPIRED,
                details={"order_id": order_id},
            )

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status == PaymentStatus.PAID)
            .values(
                payment_status=PaymentStatus.REFUND_REQUESTED,
                refund_requested_at=now,
                refund_reason=reason[:500],
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise ConflictError(
                "Order status changed, please refresh",
                error_code=ErrorCode.ORDER_STATUS_CHANGED,
                details={"order_id": order_id},
            )

        self.db.add(
            OrderHistory(
                order_id=order_id,
                kind=HistoryKind.INSTANT,
                status=PaymentStatus.REFUND_REQUESTED.value,
                message="Refund requested",
                actor_id=client_id,
                details={"reason": reason[:500]},
            )
        )
        await self.notifications.create_once(
            client_id, NotificationType.REFUND_REQUESTED, order_id, {"order_ref": order.order_ref}
        )
        await self.db.commit()
        logger.info("Refund requested", extra_data={"order_id": order_id, "client_id": client_id})
        return {
            "order_id": order_id,
            "payment_status": PaymentStatus.REFUND_REQUESTED.value,
            "refund_requested_at": now.isoformat(),
        }

    @log_async_operation("approve_refund")
    async def approve_refund(
        self,
        order_id: int,
        refund_amount: Optional[Decimal] = None,
        approved_by: Optional[str] = None,
    ) -> dict[str, Any]:
        order = await self._get_order(order_id)
        if order.payment_status != PaymentStatus.REFUND_REQUESTED:
            raise ConflictError(
                "Order has no pending refund request",
                error_code=ErrorCode.ORDER_STATUS_CHANGED,
                details={"order_id": order_id, "payment_status": order.payment_status.value},
            )

        paid_amount = to_decimal(order.payment_amount or order.total_amount)
        amount = paid_amount if refund_amount is None else to_decimal(refund_amount)
        if amount <= 0 or amount > paid_amount:
            raise ValidationException(
                "Refund amount must be positive and at most the amount paid",
                field="refund_amount",
                error_code=ErrorCode.INVALID_AMOUNT,
                details={"paid": str(paid_amount)},
            )

        client_id, driver_id, order_ref = order.client_id, order.driver_id, order.order_ref
        distributed = order.revenue_distributed_at is not None
        pending_liabilities = [order.driver_earning_transaction_id, order.platform_revenue_transaction_id]
        not_delivered = order.status != OrderStatus.DELIVERED
        now = datetime.utcnow()

        order_values: dict[str, Any] = {
            "payment_status": PaymentStatus.REFUNDED,
            "refunded_at": now,
            "updated_at": now,
        }
        if not_delivered:
            order_values["status"] = OrderStatus.CANCELLED
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status == PaymentStatus.REFUND_REQUESTED)
            .values(**order_values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise ConflictError(
                "Refund already processed",
                error_code=ErrorCode.ORDER_STATUS_CHANGED,
                details={"order_id": order_id},
            )

        driver_deduction = Decimal("0.00")
        if distributed and driver_id is not None:
            driver_deduction = driver_refund_share(amount)
            if not await self.ledger.deduct_driver_balance(driver_id, driver_deduction):
                await self.db.rollback()
                logger.error(
                    "Driver balance cannot cover refund clawback; refund left for manual handling",
                    extra_data={
                        "order_id": order_id,
                        "driver_id": driver_id,
                        "deduction": str(driver_deduction),
                    },
                )
                raise ConflictError(
                    "Driver balance cannot cover the refund",
                    details={"order_id": order_id, "driver_deduction": str(driver_deduction)},
                )
            await self.ledger.create_transaction(
                TransactionType.REFUND,
                driver_deduction,
                status=TransactionStatus.COMPLETED,
                driver_id=driver_id,
                order_id=order_id,
                description=f"Driver share clawback for refund of {order_ref}",
                metadata={"approved_by": approved_by, "kind": "driver_deduction"},
            )
        else:
            # Never distributed: the liabilities must not pay out later
            for transaction_id in pending_liabilities:
                if transaction_id:
                    await self.ledger.cancel_transaction(transaction_id, "Order refunded")

        refund = await self.ledger.create_transaction(
            TransactionType.REFUND,
            amount,
            status=TransactionStatus.COMPLETED,
            client_id=client_id,
            order_id=order_id,
            description=f"Refund for order {order_ref}",
            metadata={"approved_by": approved_by, "original_transaction_id": order.payment_transaction_id},
        )
        await self.ledger.credit_wallet(client_id, amount, refund, is_refund=True)
        await self.db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(refund_transaction_id=refund.id)
            .execution_options(synchronize_session=False)
        )
        self.db.add(
            OrderHistory(
                order_id=order_id,
                kind=HistoryKind.INSTANT,
                status=PaymentStatus.REFUNDED.value,
                message=f"Refund of {format_naira(amount)} credited to wallet",
                details={"approved_by": approved_by, "driver_deduction": str(driver_deduction)},
            )
        )
        await self.notifications.create_once(
            client_id,
            NotificationType.REFUND_PROCESSED,
            order_id,
            {"order_ref": order_ref, "amount": format_naira(amount)},
        )
        await self.db.commit()

        logger.info(
            "Refund approved",
            extra_data={
                "order_id": order_id,
                "client_id": client_id,
                "driver_id": driver_id,
                "amount": str(amount),
                "driver_deduction": str(driver_deduction),
            },
        )
        return {
            "order_id": order_id,
            "payment_status": PaymentStatus.REFUNDED.value,
            "refund_amount": str(amount),
            "driver_deduction": str(driver_deduction),
            "platform_deduction": str(amount - driver_deduction) if driver_deduction else "0.00",
            "transaction_id": refund.id,
        }
