"""
Notification Service - in-app notification records

Triggering only. Delivery channels (push/SMS/email) read the notifications
table on their own. Bodies are rendered from a fixed template per type; each
template declares the exact set of fields it accepts.
"""
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.notification import Notification, NotificationCategory, NotificationType

logger = get_logger(__name__)


@dataclass(frozen=True)
class NotificationTemplate:
    category: NotificationCategory
    title: str
    body: str
    fields: frozenset[str]

    def render(self, values: Mapping[str, Any]) -> tuple[str, str]:
        """Render title and body. Raises ValueError on a missing or unknown field."""
        provided = set(values)
        missing = self.fields - provided
        unknown = provided - self.fields
        if missing or unknown:
            raise ValueError(
                f"Template fields mismatch: missing={sorted(missing)} unknown={sorted(unknown)}"
            )
        return self.title.format_map(values), self.body.format_map(values)


def _template(category: NotificationCategory, title: str, body: str, *fields: str) -> NotificationTemplate:
    return NotificationTemplate(category, title, body, frozenset(fields))


TEMPLATES: dict[NotificationType, NotificationTemplate] = {
    NotificationType.ORDER_CREATED: _template(
        NotificationCategory.ORDER,
        "Order {order_ref} created",
        "Your order {order_ref} has been submitted and is waiting for a driver.",
        "order_ref",
    ),
    NotificationType.ORDER_ASSIGNED: _template(
        NotificationCategory.ORDER,
        "Driver assigned",
        "{driver_name} will deliver your order {order_ref}.",
        "order_ref", "driver_name",
    ),
    NotificationType.ORDER_DELIVERED: _template(
        NotificationCategory.ORDER,
        "Order delivered",
        "Your order {order_ref} has been delivered.",
        "order_ref",
    ),
    NotificationType.PAYMENT_SUCCESSFUL: _template(
        NotificationCategory.PAYMENT,
        "Payment received",
        "We received {amount} for order {order_ref}.",
        "order_ref", "amount",
    ),
    NotificationType.PAYMENT_FAILED: _template(
        NotificationCategory.PAYMENT,
        "Payment failed",
        "Payment for order {order_ref} did not go through: {reason}",
        "order_ref", "reason",
    ),
    NotificationType.REFUND_REQUESTED: _template(
        NotificationCategory.PAYMENT,
        "Refund requested",
        "Your refund request for order {order_ref} is being reviewed.",
        "order_ref",
    ),
    NotificationType.REFUND_PROCESSED: _template(
        NotificationCategory.PAYMENT,
        "Refund processed",
        "{amount} for order {order_ref} has been credited to your wallet.",
        "order_ref", "amount",
    ),
    NotificationType.EARNINGS_CREDITED: _template(
        NotificationCategory.EARNINGS,
        "Earnings credited",
        "You earned {amount} for delivering order {order_ref}.",
        "order_ref", "amount",
    ),
    NotificationType.PAYOUT_REQUESTED: _template(
        NotificationCategory.PAYOUT,
        "Payout requested",
        "Your payout of {amount} ({net_amount} after fees) is on its way.",
        "amount", "net_amount",
    ),
    NotificationType.PAYOUT_COMPLETED: _template(
        NotificationCategory.PAYOUT,
        "Payout completed",
        "{net_amount} has been sent to your bank account.",
        "net_amount",
    ),
    NotificationType.PAYOUT_FAILED: _template(
        NotificationCategory.PAYOUT,
        "Payout failed",
        "Your payout of {amount} failed and the funds are back in your balance.",
        "amount",
    ),
    NotificationType.WALLET_FUNDED: _template(
        NotificationCategory.WALLET,
        "Wallet funded",
        "{amount} has been added to your wallet.",
        "amount",
    ),
}


def render_notification(notification_type: NotificationType, values: Mapping[str, Any]) -> tuple[str, str]:
    return TEMPLATES[notification_type].render(values)


class NotificationService:
    """Creates notification rows inside the caller's transaction"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_existing(
        self,
        user_id: int,
        notification_type: NotificationType,
        order_id: int,
    ) -> Optional[Notification]:
        template = TEMPLATES[notification_type]
        result = await self.db.execute(
            select(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.category == template.category,
                Notification.type == notification_type,
                Notification.order_id == order_id,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        user_id: int,
        notification_type: NotificationType,
        values: Mapping[str, Any],
        *,
        order_id: Optional[int] = None,
        details: Optional[dict] = None,
    ) -> Notification:
        template = TEMPLATES[notification_type]
        title, body = template.render(values)
        notification = Notification(
            user_id=user_id,
            category=template.category,
            type=notification_type,
            order_id=order_id,
            title=title,
            body=body,
            details=details or {},
        )
        self.db.add(notification)
        await self.db.flush()
        return notification

    async def create_once(
        self,
        user_id: int,
        notification_type: NotificationType,
        order_id: int,
        values: Mapping[str, Any],
        *,
        details: Optional[dict] = None,
    ) -> Optional[Notification]:
        """
        Create unless a notification with the same (user, category, type, order)
        exists. Returns None when it was a duplicate.
        """
        existing = await self.find_existing(user_id, notification_type, order_id)
        if existing:
            logger.info(
                "Duplicate notification skipped",
                extra_data={
                    "user_id": user_id,
                    "type": notification_type.value,
                    "order_id": order_id,
                },
            )
            return None
        return await self.create(
            user_id, notification_type, values, order_id=order_id, details=details
        )

    async def list_for_user(self, user_id: int, limit: int = 50) -> list[Notification]:
        result = await self.db.execute(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
