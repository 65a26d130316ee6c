"""
API tests for /api/admin - API key guard, refund approval and sweeps
"""
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import update

from app.core.config import settings
from app.db.models.order import Order
from app.db.models.user import UserRole
from tests.conftest import admin_headers, auth_headers


class TestApiKey:

    @pytest.mark.unit
    async def test_missing_key(self, test_client):
        response = await test_client.get("/api/admin/circuit-breakers")

        assert response.status_code == 401

    @pytest.mark.unit
    async def test_wrong_key(self, test_client):
        response = await test_client.get("/api/admin/circuit-breakers", headers={"X-Admin-API-Key": "nope"})

        assert response.status_code == 403

    @pytest.mark.unit
    async def test_unconfigured_key_refuses_everything(self, test_client):
        with patch.object(settings, "ADMIN_API_KEY", ""):
            response = await test_client.get("/api/admin/circuit-breakers", headers=admin_headers())

        assert response.status_code == 403

    @pytest.mark.unit
    async def test_bearer_token_is_not_enough(self, test_client, sample_client):
        response = await test_client.get(
            "/api/admin/circuit-breakers", headers=auth_headers(sample_client.id, UserRole.CLIENT)
        )

        assert response.status_code == 401


class TestRefundApproval:

    @pytest.mark.unit
    async def test_full_refund_credits_wallet(self, test_client, sample_client, paid_order_factory):
        client_headers = auth_headers(sample_client.id, UserRole.CLIENT)
        order = await paid_order_factory(sample_client.id)
        order_id = order.id
        await test_client.post(f"/api/orders/{order_id}/refund", json={"reason": "Wrong address"}, headers=client_headers)

        approved = await test_client.post(
            f"/api/admin/refunds/{order_id}/approve", json={"approved_by": "ops@fleetpay.test"}, headers=admin_headers()
        )
        wallet = await test_client.get("/api/wallets/me", headers=client_headers)

        assert approved.status_code == 200
        assert approved.json()["refund_amount"] == "5000.00"
        assert Decimal(wallet.json()["balance"]) == Decimal("5000")

    @pytest.mark.unit
    async def test_approval_without_body(self, test_client, sample_client, paid_order_factory):
        order = await paid_order_factory(sample_client.id)
        order_id = order.id
        await test_client.post(
            f"/api/orders/{order_id}/refund",
            json={"reason": "Wrong address"},
            headers=auth_headers(sample_client.id, UserRole.CLIENT),
        )

        approved = await test_client.post(f"/api/admin/refunds/{order_id}/approve", headers=admin_headers())

        assert approved.status_code == 200

    @pytest.mark.unit
    async def test_approval_without_request_conflicts(self, test_client, sample_client, paid_order_factory):
        order = await paid_order_factory(sample_client.id)

        response = await test_client.post(f"/api/admin/refunds/{order.id}/approve", headers=admin_headers())

        assert response.status_code == 409


class TestSweeps:

    @pytest.mark.unit
    async def test_reconcile_driver_payouts(self, test_client, sample_driver):
        driver_id = sample_driver.id

        response = await test_client.post(f"/api/admin/payouts/{driver_id}/reconcile", headers=admin_headers())

        assert response.status_code == 200
        assert response.json()["driver_id"] == driver_id
        assert response.json()["checked"] == 0

    @pytest.mark.unit
    async def test_reconcile_stale_payments(self, test_client, db_session, sample_client, order_factory):
        order = await order_factory(sample_client.id)
        order_id = order.id
        await test_client.post(
            "/api/orders/payment/initiate",
            json={"order_id": order_id, "amount": "5000"},
            headers=auth_headers(sample_client.id, UserRole.CLIENT),
        )
        await db_session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(payment_initiated_at=datetime.utcnow() - timedelta(hours=2))
        )
        await db_session.commit()

        response = await test_client.post(
            "/api/admin/payments/reconcile", params={"older_than_minutes": 30}, headers=admin_headers()
        )

        assert response.status_code == 200
        assert response.json()["checked"] == 1
        assert response.json()["failed"] == 1

    @pytest.mark.unit
    async def test_circuit_breaker_states(self, test_client):
        from app.core.circuit_breaker import get_gateway_circuit_breaker

        get_gateway_circuit_breaker()

        response = await test_client.get("/api/admin/circuit-breakers", headers=admin_headers())

        assert response.status_code == 200
        assert response.json()["payment_gateway"]["state"] == "closed"
