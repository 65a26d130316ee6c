"""
Client Wallet Model - spendable balance and lifetime stats per client
"""
from decimal import Decimal
from datetime import datetime
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, JSON, CheckConstraint
from sqlalchemy.orm import relationship

from app.db.database import Base


class ClientWallet(Base):
    """Created lazily on first deposit. Every balance change is paired with a
    FinancialTransaction; ``recent_transactions`` is a derived ring buffer."""

    __tablename__ = "client_wallets"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    currency = Column(String(3), nullable=False, default="NGN")

    balance = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    total_deposited = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total_spent = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total_refunded = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    transaction_count = Column(Integer, nullable=False, default=0)
    first_deposit_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, nullable=True)

    recent_transactions = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = relationship("User")

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_client_wallets_balance_non_negative"),
    )
