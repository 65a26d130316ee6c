"""
Domain Services
"""
from app.domain.services.ledger_service import LedgerService
from app.domain.services.notification_service import NotificationService
from app.domain.services.order_service import OrderService
from app.domain.services.payment_service import PaymentService
from app.domain.services.payout_service import PayoutService
from app.domain.services.refund_service import RefundService
from app.domain.services.revenue_service import RevenueService
from app.domain.services.wallet_service import WalletService
from app.domain.services.webhook_service import GatewayWebhookService

__all__ = [
    "LedgerService",
    "NotificationService",
    "OrderService",
    "PaymentService",
    "PayoutService",
    "RefundService",
    "RevenueService",
    "WalletService",
    "GatewayWebhookService",
]
