"""
Order Model - delivery orders and their payment sub-record
"""
import enum
import secrets
import string
from datetime import datetime
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey, Text, JSON, Index,
)
from sqlalchemy.orm import relationship

from app.db.database import Base

_ORDER_REF_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_ref() -> str:
    """ORD-XXXXXX with a cryptographically random suffix"""
    return "ORD-" + "".join(secrets.choice(_ORDER_REF_ALPHABET) for _ in range(8))


class OrderStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING = "pending"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    WALLET = "wallet"


class HistoryKind(str, enum.Enum):
    INSTANT = "instant"      # status/payment history
    TRACKING = "tracking"    # client-facing timeline


def _enum(enum_cls, name: str):
    return SQLEnum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x])


class Order(Base):
    """Delivery order. Only the fields the payment core reads or writes."""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_ref = Column(String(32), unique=True, nullable=False, default=generate_order_ref, index=True)

    client_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    status = Column(_enum(OrderStatus, "order_status"), default=OrderStatus.DRAFT, nullable=False, index=True)

    pickup_address = Column(String(500), nullable=True)
    dropoff_address = Column(String(500), nullable=True)
    package_description = Column(Text, nullable=True)

    # Pricing output (authoritative, computed server-side)
    currency = Column(String(3), nullable=False, default="NGN")
    total_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    driver_share = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    platform_share = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    processing_fee = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    pricing_breakdown = Column(JSON, nullable=True)

    # Payment sub-record
    payment_method = Column(_enum(PaymentMethod, "payment_method"), nullable=True)
    payment_status = Column(
        _enum(PaymentStatus, "payment_status"), default=PaymentStatus.PENDING, nullable=False, index=True
    )
    payment_reference = Column(String(100), unique=True, nullable=True, index=True)
    payment_amount = Column(Numeric(14, 2), nullable=True)
    payment_initiated_at = Column(DateTime, nullable=True)
    payment_paid_at = Column(DateTime, nullable=True)
    payment_failure_reason = Column(String(500), nullable=True)
    authorization_url = Column(String(500), nullable=True)
    access_code = Column(String(100), nullable=True)

    # Links into financial_transactions
    payment_transaction_id = Column(Integer, nullable=True)
    driver_earning_transaction_id = Column(Integer, nullable=True)
    platform_revenue_transaction_id = Column(Integer, nullable=True)

    # Refund
    refund_requested_at = Column(DateTime, nullable=True)
    refund_reason = Column(String(500), nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    refund_transaction_id = Column(Integer, nullable=True)

    revenue_distributed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    submitted_at = Column(DateTime, nullable=True)
    assigned_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = relationship("User", foreign_keys=[client_id])
    driver = relationship("User", foreign_keys=[driver_id])
    history = relationship(
        "OrderHistory",
        back_populates="order",
        order_by="OrderHistory.id",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_orders_payment_status_initiated", "payment_status", "payment_initiated_at"),
    )

    @property
    def financial_references(self) -> dict[str, int | None]:
        return {
            "payment_transaction_id": self.payment_transaction_id,
            "driver_earning_transaction_id": self.driver_earning_transaction_id,
            "platform_revenue_transaction_id": self.platform_revenue_transaction_id,
        }


class OrderHistory(Base):
    """Append-only timeline for an order"""

    __tablename__ = "order_history"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(_enum(HistoryKind, "order_history_kind"), nullable=False, default=HistoryKind.INSTANT)
    status = Column(String(50), nullable=False)
    message = Column(String(500), nullable=True)
    actor_id = Column(Integer, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    order = relationship("Order", back_populates="history")
