"""
Fixtures and helpers for end-to-end scenario tests.

Provides:
- short request helpers for the client, driver and admin surfaces
- gateway webhook senders
- DB assertions (order state, balances, notifications)
"""
from decimal import Decimal
from typing import Optional

import httpx
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.driver_earnings import DriverEarnings
from app.db.models.financial_transaction import FinancialTransaction, TransactionType
from app.db.models.notification import Notification, NotificationType
from app.db.models.order import Order
from app.db.models.user import UserRole
from app.domain.services.pricing import PricingBreakdown
from tests.conftest import admin_headers, auth_headers, signed_webhook


BANK = {"account_number": "0123456789", "bank_code": "058", "account_name": "Emeka Driver"}


# ============================================================================
# Request helpers
# ============================================================================


async def create_order(client: httpx.AsyncClient, client_id: int, delivery_total: str = "5000") -> dict:
    """Draft order quoted at the server's own total"""
    headers = auth_headers(client_id, UserRole.CLIENT)
    quoted = PricingBreakdown.from_delivery_total(Decimal(delivery_total)).total
    response = await client.post(
        "/api/orders",
        json={"delivery_total": delivery_total, "client_quoted_total": str(quoted)},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


async def start_checkout(client: httpx.AsyncClient, client_id: int, order: dict) -> str:
    response = await client.post(
        "/api/orders/payment/initiate",
        json={"order_id": order["id"], "amount": order["total_amount"]},
        headers=auth_headers(client_id, UserRole.CLIENT),
    )
    assert response.status_code == 200, response.text
    return response.json()["reference"]


async def send_webhook(client: httpx.AsyncClient, event: str, data: dict) -> dict:
    body, headers = signed_webhook({"event": event, "data": data})
    response = await client.post("/api/webhooks/gateway", content=body, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


async def request_payout(client: httpx.AsyncClient, driver_id: int, amount: str) -> dict:
    response = await client.post(
        "/api/drivers/payout/request",
        json={"amount": amount, "bank_details": BANK},
        headers=auth_headers(driver_id, UserRole.DRIVER),
    )
    assert response.status_code == 200, response.text
    return response.json()


async def advance_delivery(client: httpx.AsyncClient, order_id: int, driver_id: int) -> None:
    response = await client.post(
        f"/api/orders/{order_id}/assign", json={"driver_id": driver_id}, headers=admin_headers()
    )
    assert response.status_code == 200, response.text
    for status in ("picked_up", "in_transit", "delivered"):
        response = await client.post(
            f"/api/orders/{order_id}/status",
            json={"status": status},
            headers=auth_headers(driver_id, UserRole.DRIVER),
        )
        assert response.status_code == 200, response.text


# ============================================================================
# DB assertions
# ============================================================================


async def fetch_order(db: AsyncSession, order_id: int) -> Order:
    result = await db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def assert_driver_balances(
    db: AsyncSession,
    driver_id: int,
    *,
    available: str,
    pending: str = "0",
    withdrawn: str = "0",
) -> None:
    result = await db.execute(
        select(DriverEarnings)
        .where(DriverEarnings.driver_id == driver_id)
        .execution_options(populate_existing=True)
    )
    earnings = result.scalar_one()
    assert Decimal(str(earnings.available_balance)) == Decimal(available)
    assert Decimal(str(earnings.earnings_pending)) == Decimal(pending)
    assert Decimal(str(earnings.earnings_withdrawn)) == Decimal(withdrawn)


async def notification_count(
    db: AsyncSession,
    user_id: int,
    notification_type: Optional[NotificationType] = None,
) -> int:
    query = select(func.count(Notification.id)).where(Notification.user_id == user_id)
    if notification_type is not None:
        query = query.where(Notification.type == notification_type)
    result = await db.execute(query)
    return result.scalar()


async def transaction_count(db: AsyncSession, order_id: int, transaction_type: TransactionType) -> int:
    result = await db.execute(
        select(func.count(FinancialTransaction.id)).where(
            FinancialTransaction.order_id == order_id,
            FinancialTransaction.transaction_type == transaction_type,
        )
    )
    return result.scalar()
