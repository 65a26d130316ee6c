"""
Financial Transaction Model - append-mostly event log of money movements

Every status flip is a conditional update keyed on the current status
(see app.domain.services.ledger_service). Rows are never deleted.
"""
import enum
from datetime import datetime
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey, JSON, Index, CheckConstraint,
)

from app.db.database import Base


class TransactionType(str, enum.Enum):
    CLIENT_PAYMENT = "client_payment"
    WALLET_DEPOSIT = "wallet_deposit"
    WALLET_DEDUCTION = "wallet_deduction"
    DRIVER_EARNING = "driver_earning"
    DRIVER_PAYOUT = "driver_payout"
    REFUND = "refund"
    PLATFORM_REVENUE = "platform_revenue"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.REVERSED,
    TransactionStatus.CANCELLED,
})


def _enum(enum_cls, name: str):
    return SQLEnum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x])


class FinancialTransaction(Base):
    """One row per money-moving event"""

    __tablename__ = "financial_transactions"

    id = Column(Integer, primary_key=True, index=True)
    transaction_type = Column(_enum(TransactionType, "transaction_type"), nullable=False, index=True)
    status = Column(
        _enum(TransactionStatus, "transaction_status"),
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True,
    )

    client_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)

    # Amount (major units); net + fees == gross at completion
    amount_gross = Column(Numeric(14, 2), nullable=False)
    amount_fees = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    amount_net = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="NGN")

    # Gateway: the reference is the idempotency key shared with the gateway
    gateway_provider = Column(String(30), nullable=False, default="internal")
    gateway_reference = Column(String(100), unique=True, nullable=False, index=True)
    gateway_metadata = Column(JSON, nullable=True)

    # Payout-only fields
    payout_requested_amount = Column(Numeric(14, 2), nullable=True)
    payout_transfer_fee = Column(Numeric(14, 2), nullable=True)
    payout_net_amount = Column(Numeric(14, 2), nullable=True)
    payout_bank_details = Column(JSON, nullable=True)
    payout_transfer_code = Column(String(100), nullable=True)
    payout_transfer_status = Column(String(30), nullable=True)

    description = Column(String(500), nullable=True)
    failure_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("amount_gross >= 0", name="ck_financial_transactions_gross_non_negative"),
        Index("ix_financial_transactions_type_status", "transaction_type", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_summary(self) -> dict:
        """Compact form stored in ring buffers and returned by read endpoints"""
        return {
            "id": self.id,
            "type": self.transaction_type.value,
            "status": self.status.value,
            "reference": self.gateway_reference,
            "gross": str(self.amount_gross),
            "fees": str(self.amount_fees),
            "net": str(self.amount_net),
            "currency": self.currency,
            "order_id": self.order_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
