"""
Driver Earnings Models - balances, in-flight payouts, paginated earnings ledger

``available_balance`` is the single authoritative withdrawable balance.
``earnings_*`` columns are a report view kept in the same statements and
re-derived by the reconciliation sweep.
"""
import enum
from decimal import Decimal
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, JSON, Boolean, Index,
    UniqueConstraint, CheckConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from app.db.database import Base


class DriverEarnings(Base):
    """One row per driver"""

    __tablename__ = "driver_earnings"

    id = Column(Integer, primary_key=True, index=True)
    driver_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    currency = Column(String(3), nullable=False, default="NGN")

    available_balance = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    # Report view
    earnings_available = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    earnings_pending = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    earnings_withdrawn = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    earnings_refunded = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    # Lifetime
    total_earned = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total_withdrawn = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    delivery_count = Column(Integer, nullable=False, default=0)
    average_per_delivery = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    last_earning_at = Column(DateTime, nullable=True)
    last_withdrawal_at = Column(DateTime, nullable=True)

    # Derived ring buffers (bounded, UI only)
    recent_earnings = Column(JSON, nullable=False, default=list)
    recent_payouts = Column(JSON, nullable=False, default=list)

    # Earnings ledger pagination cursor
    current_page = Column(Integer, nullable=False, default=1)
    current_page_count = Column(Integer, nullable=False, default=0)

    last_reconciled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    driver = relationship("User")

    __table_args__ = (
        CheckConstraint("available_balance >= 0", name="ck_driver_earnings_available_non_negative"),
    )


class PendingTransferStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PendingTransfer(Base):
    """One row per in-flight (or settled) driver payout"""

    __tablename__ = "pending_transfers"

    id = Column(Integer, primary_key=True, index=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    transaction_id = Column(Integer, ForeignKey("financial_transactions.id"), nullable=False, unique=True)
    reference = Column(String(100), unique=True, nullable=False, index=True)
    transfer_code = Column(String(100), nullable=True)

    amount = Column(Numeric(14, 2), nullable=False)
    fee = Column(Numeric(14, 2), nullable=False)
    net_amount = Column(Numeric(14, 2), nullable=False)

    status = Column(
        SQLEnum(
            PendingTransferStatus,
            name="pending_transfer_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=PendingTransferStatus.PENDING,
        index=True,
    )
    balance_before = Column(Numeric(14, 2), nullable=False)
    balance_after = Column(Numeric(14, 2), nullable=False)
    gateway_response = Column(JSON, nullable=True)
    bank_snapshot = Column(JSON, nullable=True)

    requires_manual_check = Column(Boolean, nullable=False, default=False)
    verification_attempts = Column(Integer, nullable=False, default=0)
    last_checked_at = Column(DateTime, nullable=True)
    settled_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_pending_transfers_driver_status", "driver_id", "status"),
    )


class TransferRecipient(Base):
    """Cached gateway recipient code per (driver, bank account)"""

    __tablename__ = "transfer_recipients"

    id = Column(Integer, primary_key=True, index=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    account_number = Column(String(20), nullable=False)
    bank_code = Column(String(10), nullable=False)
    account_name = Column(String(150), nullable=False)
    recipient_code = Column(String(100), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("driver_id", "account_number", "bank_code", name="uq_transfer_recipient_account"),
    )


class DriverEarningEntry(Base):
    """Earnings ledger line, grouped into fixed-size pages per driver"""

    __tablename__ = "driver_earning_entries"

    id = Column(Integer, primary_key=True, index=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    page_number = Column(Integer, nullable=False)
    transaction_id = Column(Integer, ForeignKey("financial_transactions.id"), nullable=False, unique=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    amount = Column(Numeric(14, 2), nullable=False)
    description = Column(String(300), nullable=True)
    archived = Column(Boolean, nullable=False, default=False)
    earned_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_driver_earning_entries_driver_page", "driver_id", "page_number"),
    )
