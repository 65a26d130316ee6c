"""
Database Models
"""
from app.db.models.user import User, UserRole
from app.db.models.order import Order, OrderHistory, OrderStatus, PaymentStatus, PaymentMethod, HistoryKind
from app.db.models.financial_transaction import FinancialTransaction, TransactionType, TransactionStatus
from app.db.models.client_wallet import ClientWallet
from app.db.models.driver_earnings import (
    DriverEarnings,
    PendingTransfer,
    PendingTransferStatus,
    TransferRecipient,
    DriverEarningEntry,
)
from app.db.models.notification import Notification, NotificationCategory, NotificationType
from app.db.models.webhook_event import GatewayWebhookEvent

__all__ = [
    "User",
    "UserRole",
    "Order",
    "OrderHistory",
    "OrderStatus",
    "PaymentStatus",
    "PaymentMethod",
    "HistoryKind",
    "FinancialTransaction",
    "TransactionType",
    "TransactionStatus",
    "ClientWallet",
    "DriverEarnings",
    "PendingTransfer",
    "PendingTransferStatus",
    "TransferRecipient",
    "DriverEarningEntry",
    "Notification",
    "NotificationCategory",
    "NotificationType",
    "GatewayWebhookEvent",
]
