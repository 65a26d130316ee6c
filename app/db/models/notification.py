"""
Notification Model - in-app notification records

Delivery (push/SMS/email) is done by a separate service reading this table.
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Boolean, Index, Text, Enum as SQLEnum

from app.db.database import Base


class NotificationCategory(str, enum.Enum):
    ORDER = "ORDER"
    PAYMENT = "PAYMENT"
    EARNINGS = "EARNINGS"
    PAYOUT = "PAYOUT"
    WALLET = "WALLET"


class NotificationType(str, enum.Enum):
    ORDER_CREATED = "order.created"
    ORDER_ASSIGNED = "order.assigned"
    ORDER_DELIVERED = "order.delivered"
    PAYMENT_SUCCESSFUL = "payment.successful"
    PAYMENT_FAILED = "payment.failed"
    REFUND_REQUESTED = "refund.requested"
    REFUND_PROCESSED = "refund.processed"
    EARNINGS_CREDITED = "earnings.credited"
    PAYOUT_REQUESTED = "payout.requested"
    PAYOUT_COMPLETED = "payout.completed"
    PAYOUT_FAILED = "payout.failed"
    WALLET_FUNDED = "wallet.funded"


class Notification(Base):
    """One notification per (user, category, type, order) for order-scoped types"""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    category = Column(
        SQLEnum(NotificationCategory, name="notification_category", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    type = Column(
        SQLEnum(NotificationType, name="notification_type", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    title = Column(String(200), nullable=False)
    body = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_notifications_dedup", "user_id", "category", "type", "order_id"),
    )
