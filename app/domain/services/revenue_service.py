"""
Revenue Distribution

Once an order is delivered, the two liability transactions pre-created at
payment time are settled: the driver earning (driver backfilled, credited to
DriverEarnings through the paginated earnings ledger) and the platform
revenue. The conditional flip of the driver-earning transaction makes a
repeated distribution a no-op.
"""
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictError, ErrorCode, MissingFinancialReferencesError, NotFoundException
from app.core.logging import get_logger, log_async_operation
from app.db.models.notification import NotificationType
from app.db.models.order import Order, OrderStatus
from app.domain.services.ledger_service import LedgerService
from app.domain.services.money import format_naira, to_decimal
from app.domain.services.notification_service import NotificationService

logger = get_logger(__name__)


class RevenueService:
    """Splits a delivered order's revenue between driver and platform"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = LedgerService(db)
        self.notifications = NotificationService(db)

    @log_async_operation("distribute_order_revenue")
    async def distribute_order_revenue(self, order_id: int) -> dict[str, Any]:
        result = await self.db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundException("Order", order_id, ErrorCode.ORDER_NOT_FOUND)
        if order.status != OrderStatus.DELIVERED:
            raise ConflictError(
                "Revenue can only be distributed for delivered orders",
                error_code=ErrorCode.ORDER_STATUS_CHANGED,
                details={"order_id": order_id, "status": order.status.value},
            )

        missing = [
            name
            for name in ("driver_earning_transaction_id", "platform_revenue_transaction_id")
            if getattr(order, name) is None
        ]
        if missing:
            logger.critical(
                "Delivered order has no financial references; revenue not distributed",
                extra_data={"order_id": order_id, "order_ref": order.order_ref, "missing": missing},
            )
            raise MissingFinancialReferencesError(order_id, missing)
        if order.driver_id is None:
            raise ConflictError("Delivered order has no driver", details={"order_id": order_id})

        driver_id = order.driver_id
        earning = await self.ledger.get_transaction(order.driver_earning_transaction_id, fresh=True)
        platform = await self.ledger.get_transaction(order.platform_revenue_transaction_id, fresh=True)
        if earning is None or platform is None:
            missing = [
                name
                for name, row in (
                    ("driver_earning_transaction_id", earning),
                    ("platform_revenue_transaction_id", platform),
                )
                if row is None
            ]
            logger.critical(
                "Financial reference points at a missing transaction",
                extra_data={"order_id": order_id, "missing": missing},
            )
            raise MissingFinancialReferencesError(order_id, missing)

        earning_id, platform_id = earning.id, platform.id
        driver_amount = to_decimal(earning.amount_net)
        won = await self.ledger.complete_transaction(earning_id, driver_id=driver_id)
        if not won:
            await self.db.rollback()
            logger.info(
                "Driver earning no longer pending (already distributed or refunded)",
                extra_data={"order_id": order_id, "transaction_id": earning_id},
            )
            return {"order_id": order_id, "distributed": False}

        completed_earning = await self.ledger.get_transaction(earning_id, fresh=True)
        await self.ledger.credit_driver_earning(
            driver_id,
            driver_amount,
            completed_earning,
            order_id=order_id,
            description=f"Delivery {order.order_ref}",
        )
        platform_completed = await self.ledger.complete_transaction(platform_id)
        if not platform_completed:
            logger.error(
                "Platform revenue transaction was not pending",
                extra_data={"order_id": order_id, "transaction_id": platform_id},
            )

        await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.revenue_distributed_at.is_(None))
            .values(revenue_distributed_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.notifications.create_once(
            driver_id,
            NotificationType.EARNINGS_CREDITED,
            order_id,
            {"order_ref": order.order_ref, "amount": format_naira(driver_amount)},
        )
        await self.db.commit()

        logger.info(
            "Order revenue distributed",
            extra_data={
                "order_id": order_id,
                "driver_id": driver_id,
                "driver_share": str(driver_amount),
                "platform_share": str(platform.amount_net),
            },
        )
        return {
            "order_id": order_id,
            "distributed": True,
            "driver_id": driver_id,
            "driver_share": str(driver_amount),
            "platform_share": str(platform.amount_net),
        }
