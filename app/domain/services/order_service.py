"""
Order Service - drafts, driver assignment and delivery tracking

Driver matching happens upstream; ``assign_driver`` is its hand-off point.
Reaching ``delivered`` triggers revenue distribution.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    ConflictError,
    ErrorCode,
    ForbiddenError,
    NotFoundException,
    ValidationException,
)
from app.core.logging import get_logger
from app.db.models.notification import NotificationType
from app.db.models.order import (
    HistoryKind,
    Order,
    OrderHistory,
    OrderStatus,
    PaymentStatus,
)
from app.db.models.user import User, UserRole
from app.domain.services.ledger_service import LedgerService
from app.domain.services.notification_service import NotificationService
from app.domain.services.pricing import PricingBreakdown, quote_within_tolerance
from app.domain.services.revenue_service import RevenueService

logger = get_logger(__name__)

# Driver tracking sequence; status may only move forward along it
TRACKING_SEQUENCE: tuple[OrderStatus, ...] = (
    OrderStatus.ASSIGNED,
    OrderStatus.PICKED_UP,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DELIVERED,
)

_ASSIGNABLE = (OrderStatus.SUBMITTED, OrderStatus.PENDING)


class OrderService:
    """Service for managing orders"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_order(self, order_id: int) -> Order:
        result = await self.db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundException("Order", order_id, ErrorCode.ORDER_NOT_FOUND)
        return order

    async def list_client_orders(self, client_id: int, limit: int = 50) -> List[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.client_id == client_id)
            .order_by(Order.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def create_draft(
        self,
        client: User,
        delivery_total: Decimal,
        client_quoted_total: Decimal,
        pickup_address: Optional[str] = None,
        dropoff_address: Optional[str] = None,
        package_description: Optional[str] = None,
    ) -> Order:
        """
        Save a draft with the server-computed price. The client's figure is only
        checked against it (0.1% or ₦1) and never stored.
        """
        breakdown = PricingBreakdown.from_delivery_total(delivery_total)
        if not quote_within_tolerance(breakdown.total, client_quoted_total):
            logger.warning(
                "Client quote outside tolerance",
                extra_data={
                    "client_id": client.id,
                    "server_total": str(breakdown.total),
                    "client_total": str(client_quoted_total),
                },
            )
            raise ValidationException(
                "Price has changed, please review the updated total",
                field="total",
                error_code=ErrorCode.PRICING_MISMATCH,
                details={"server_total": str(breakdown.total)},
            )

        order = Order(
            client_id=client.id,
            status=OrderStatus.DRAFT,
            payment_status=PaymentStatus.PENDING,
            pickup_address=pickup_address,
            dropoff_address=dropoff_address,
            package_description=package_description,
            total_amount=breakdown.total,
            driver_share=breakdown.driver_share,
            platform_share=breakdown.platform_share,
            processing_fee=breakdown.processing_fee,
            pricing_breakdown=breakdown.to_dict(),
        )
        self.db.add(order)
        await self.db.flush()
        self.db.add(
            OrderHistory(order_id=order.id, status=OrderStatus.DRAFT.value, message="Draft saved", actor_id=client.id)
        )
        await self.db.commit()
        logger.info(
            "Draft order created",
            extra_data={"order_id": order.id, "order_ref": order.order_ref, "total": str(breakdown.total)},
        )
        return order

    async def assign_driver(self, order_id: int, driver_id: int) -> Order:
        """Hand-off from matching. Only a paid, unassigned order can take a driver."""
        order = await self.get_order(order_id)
        result = await self.db.execute(select(User).where(User.id == driver_id))
        driver = result.scalar_one_or_none()
        if driver is None or driver.role != UserRole.DRIVER or not driver.is_active:
            raise ValidationException("Not an active driver", field="driver_id")

        now = datetime.utcnow()
        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status.in_(_ASSIGNABLE),
                Order.payment_status == PaymentStatus.PAID,
                Order.driver_id.is_(None),
            )
            .values(driver_id=driver_id, status=OrderStatus.ASSIGNED, assigned_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise ConflictError(
                "Order cannot be assigned in its current state",
                error_code=ErrorCode.ORDER_STATUS_CHANGED,
                details={"order_id": order_id},
            )

        await LedgerService(self.db).get_or_create_driver_earnings(driver_id)
        self.db.add(
            OrderHistory(
                order_id=order_id,
                kind=HistoryKind.TRACKING,
                status=OrderStatus.ASSIGNED.value,
                message="Driver assigned",
                actor_id=driver_id,
            )
        )
        await NotificationService(self.db).create_once(
            order.client_id,
            NotificationType.ORDER_ASSIGNED,
            order_id,
            {"order_ref": order.order_ref, "driver_name": driver.display_name},
        )
        await self.db.commit()
        logger.info("Driver assigned", extra_data={"order_id": order_id, "driver_id": driver_id})
        return await self.get_order(order_id)

    async def update_delivery_status(self, order_id: int, driver: User, new_status: OrderStatus) -> Order:
        """Forward-only tracking update by the assigned driver."""
        driver_id = driver.id
        order = await self.get_order(order_id)
        if order.driver_id != driver_id:
            raise ForbiddenError("Order is not assigned to this driver", details={"order_id": order_id})
        if new_status not in TRACKING_SEQUENCE or order.status not in TRACKING_SEQUENCE:
            raise ValidationException("Invalid tracking status", field="status")
        current = order.status
        if TRACKING_SEQUENCE.index(new_status) <= TRACKING_SEQUENCE.index(current):
            raise ConflictError(
                f"Cannot move order from {current.value} to {new_status.value}",
                error_code=ErrorCode.ORDER_STATUS_CHANGED,
                details={"order_id": order_id, "status": current.value},
            )

        now = datetime.utcnow()
        values = {"status": new_status, "updated_at": now}
        if new_status == OrderStatus.DELIVERED:
            values["delivered_at"] = now
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == current, Order.driver_id == driver_id)
            .values(**values)
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
                kind=HistoryKind.TRACKING,
                status=new_status.value,
                message=f"Order {new_status.value.replace('_', ' ')}",
                actor_id=driver_id,
            )
        )
        if new_status == OrderStatus.DELIVERED:
            await NotificationService(self.db).create_once(
                order.client_id,
                NotificationType.ORDER_DELIVERED,
                order_id,
                {"order_ref": order.order_ref},
            )
        await self.db.commit()
        logger.info(
            "Delivery status updated",
            extra_data={"order_id": order_id, "driver_id": driver_id, "status": new_status.value},
        )

        if new_status == OrderStatus.DELIVERED:
            await RevenueService(self.db).distribute_order_revenue(order_id)
        return await self.get_order(order_id)
