"""
Tests for PaymentService - card checkout, settlement paths and wallet payments
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from app.core.exceptions import (
    ConflictError,
    ErrorCode,
    ForbiddenError,
    GatewayUnavailableError,
    InsufficientBalanceError,
    ValidationException,
)
from app.db.models.financial_transaction import (
    FinancialTransaction,
    TransactionStatus,
    TransactionType,
)
from app.db.models.notification import Notification, NotificationType
from app.db.models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from app.domain.services.event_publisher import EventName
from app.domain.services.payment_service import PaymentService
from tests.conftest import reload


async def count_notifications(db_session, user_id: int, notification_type: NotificationType) -> int:
    result = await db_session.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.type == notification_type,
        )
    )
    return result.scalar()


@pytest.fixture
def service(db_session, fake_gateway, publisher) -> PaymentService:
    return PaymentService(db_session, fake_gateway, publisher)


@pytest.fixture
async def processing_order(service, sample_client, order_factory):
    """Draft order with an open checkout; returns (order_id, reference)"""
    order = await order_factory(sample_client.id)
    checkout = await service.initiate_payment(sample_client, order.id, Decimal("5000"))
    return order.id, checkout["reference"]


# ============================================================================
# Initiation
# ============================================================================


class TestInitiatePayment:

    @pytest.mark.unit
    async def test_opens_checkout(self, service, db_session, sample_client, order_factory, fake_gateway):
        order = await order_factory(sample_client.id)

        checkout = await service.initiate_payment(sample_client, order.id, Decimal("5000"))

        assert checkout["reused"] is False
        assert checkout["authorization_url"].startswith("https://checkout.test/")
        assert checkout["reference"].startswith(order.order_ref)
        assert checkout["expires_in_minutes"] == 15
        assert fake_gateway.initialized[0]["amount_minor"] == 500000
        assert fake_gateway.initialized[0]["callback_url"].endswith(f"?orderId={order.id}")

        fresh = await reload(db_session, Order, order.id)
        assert fresh.status == OrderStatus.DRAFT
        assert fresh.payment_status == PaymentStatus.PROCESSING
        assert fresh.payment_method == PaymentMethod.CARD
        assert fresh.payment_reference == checkout["reference"]

        txn = await reload(db_session, FinancialTransaction, fresh.payment_transaction_id)
        assert txn.transaction_type == TransactionType.CLIENT_PAYMENT
        assert txn.status == TransactionStatus.PENDING
        assert txn.gateway_provider == "testgateway"

    @pytest.mark.unit
    async def test_second_call_inside_cooldown_reuses_checkout(
        self, service, sample_client, order_factory, fake_gateway
    ):
        order = await order_factory(sample_client.id)
        first = await service.initiate_payment(sample_client, order.id, Decimal("5000"))

        second = await service.initiate_payment(sample_client, order.id, Decimal("5000"))

        assert second["reused"] is True
        assert second["reference"] == first["reference"]
        assert 1 <= second["retry_after"] <= 30
        assert len(fake_gateway.initialized) == 1

    @pytest.mark.unit
    async def test_retry_after_cooldown_supersedes_old_checkout(
        self, service, db_session, sample_client, order_factory
    ):
        order = await order_factory(sample_client.id)
        first = await service.initiate_payment(sample_client, order.id, Decimal("5000"))
        await db_session.execute(
            update(Order)
            .where(Order.id == order.id)
            .values(payment_initiated_at=datetime.utcnow() - timedelta(minutes=2))
        )
        await db_session.commit()
        old = await reload(db_session, Order, order.id)
        old_transaction_id = old.payment_transaction_id

        second = await service.initiate_payment(sample_client, order.id, Decimal("5000"))

        assert second["reused"] is False
        assert second["reference"] != first["reference"]
        old_txn = await reload(db_session, FinancialTransaction, old_transaction_id)
        assert old_txn.status == TransactionStatus.CANCELLED

    @pytest.mark.unit
    async def test_amount_must_match_total(self, service, sample_client, order_factory):
        order = await order_factory(sample_client.id)

        with pytest.raises(ValidationException) as exc_info:
            await service.initiate_payment(sample_client, order.id, Decimal("4999.99"))

        assert exc_info.value.error_code == ErrorCode.AMOUNT_MISMATCH

    @pytest.mark.unit
    async def test_only_draft_orders(self, service, sample_client, order_factory):
        order = await order_factory(sample_client.id, status=OrderStatus.SUBMITTED)

        with pytest.raises(ConflictError):
            await service.initiate_payment(sample_client, order.id, Decimal("5000"))

    @pytest.mark.unit
    async def test_other_clients_order_forbidden(self, service, sample_client, user_factory, order_factory):
        order = await order_factory(sample_client.id)
        stranger = await user_factory()

        with pytest.raises(ForbiddenError):
            await service.initiate_payment(stranger, order.id, Decimal("5000"))

    @pytest.mark.unit
    async def test_gateway_failure_leaves_order_untouched(
        self, service, db_session, sample_client, order_factory, fake_gateway
    ):
        order = await order_factory(sample_client.id)
        fake_gateway.errors["initialize_charge"] = GatewayUnavailableError("initialize_charge", "down")

        with pytest.raises(GatewayUnavailableError):
            await service.initiate_payment(sample_client, order.id, Decimal("5000"))

        fresh = await reload(db_session, Order, order.id)
        assert fresh.payment_status == PaymentStatus.PENDING
        assert fresh.payment_reference is None


# ============================================================================
# Callback
# ============================================================================


class TestCallback:

    @pytest.mark.unit
    async def test_missing_reference(self, service):
        result = await service.handle_callback(1, None)
        assert result.reason == "missing_reference"

    @pytest.mark.unit
    async def test_unknown_reference(self, service):
        result = await service.handle_callback(None, "ORD-NOPE-1")
        assert result.reason == "not_found"

    @pytest.mark.unit
    async def test_successful_charge_completes_order(
        self, service, db_session, sample_client, processing_order, fake_gateway, publisher
    ):
        client_id = sample_client.id
        order_id, reference = processing_order
        fake_gateway.set_charge(reference, amount=Decimal("5000"), fees_minor=17500)

        result = await service.handle_callback(order_id, reference)

        assert result.reason == "success"
        assert result.is_paid
        order = await reload(db_session, Order, order_id)
        assert order.status == OrderStatus.SUBMITTED
        assert order.payment_status == PaymentStatus.PAID
        assert order.payment_paid_at is not None

        payment = await reload(db_session, FinancialTransaction, order.payment_transaction_id)
        assert payment.status == TransactionStatus.COMPLETED
        assert Decimal(str(payment.amount_fees)) == Decimal("175.00")
        assert Decimal(str(payment.amount_net)) == Decimal("4825.00")

        earning = await reload(db_session, FinancialTransaction, order.driver_earning_transaction_id)
        platform = await reload(db_session, FinancialTransaction, order.platform_revenue_transaction_id)
        assert earning.status == TransactionStatus.PENDING
        assert earning.driver_id is None
        assert Decimal(str(earning.amount_gross)) == Decimal("3500.00")
        assert Decimal(str(platform.amount_gross)) == Decimal("1500.00")

        assert await count_notifications(db_session, client_id, NotificationType.ORDER_CREATED) == 1
        assert await count_notifications(db_session, client_id, NotificationType.PAYMENT_SUCCESSFUL) == 1
        events = publisher.named(EventName.PAYMENT_STATUS_UPDATED.value)
        assert events == [
            (client_id, "payment:status:updated", {"order_id": order_id, "payment_status": "paid", "order_status": "submitted"})
        ]

    @pytest.mark.unit
    async def test_second_callback_is_already_paid(self, service, processing_order, fake_gateway):
        order_id, reference = processing_order
        fake_gateway.set_charge(reference, amount=Decimal("5000"))
        await service.handle_callback(order_id, reference)

        result = await service.handle_callback(order_id, reference)

        assert result.reason == "already_paid"
        assert fake_gateway.verify_calls == [reference]

    @pytest.mark.unit
    async def test_gateway_down_means_verification_pending(self, service, processing_order, fake_gateway):
        order_id, reference = processing_order
        fake_gateway.errors["verify_charge"] = GatewayUnavailableError("verify_charge", "down")

        result = await service.handle_callback(order_id, reference)

        assert result.reason == "verification_pending"
        assert result.payment_status == "processing"

    @pytest.mark.unit
    async def test_charge_still_pending(self, service, processing_order, fake_gateway):
        order_id, reference = processing_order
        fake_gateway.set_charge(reference, "ongoing", amount=Decimal("5000"))

        result = await service.handle_callback(order_id, reference)

        assert result.reason == "pending"

    @pytest.mark.unit
    async def test_failed_charge(self, service, db_session, sample_client, processing_order, fake_gateway):
        client_id = sample_client.id
        order_id, reference = processing_order
        fake_gateway.set_charge(reference, "failed", amount=Decimal("5000"), gateway_response="Declined by issuer")

        result = await service.handle_callback(order_id, reference)

        assert result.reason == "failed"
        order = await reload(db_session, Order, order_id)
        assert order.status == OrderStatus.DRAFT
        assert order.payment_status == PaymentStatus.FAILED
        assert order.payment_failure_reason == "Declined by issuer"
        assert await count_notifications(db_session, client_id, NotificationType.PAYMENT_FAILED) == 1

    @pytest.mark.unit
    async def test_amount_mismatch_fails_payment(self, service, db_session, processing_order, fake_gateway):
        order_id, reference = processing_order
        fake_gateway.set_charge(reference, amount=Decimal("50"))

        result = await service.handle_callback(order_id, reference)

        assert result.reason == "amount_mismatch"
        order = await reload(db_session, Order, order_id)
        assert order.payment_status == PaymentStatus.FAILED
        assert order.status == OrderStatus.DRAFT

    @pytest.mark.unit
    async def test_one_kobo_difference_is_tolerated(self, service, processing_order, fake_gateway):
        order_id, reference = processing_order
        fake_gateway.set_charge(reference, amount_minor=500001)

        result = await service.handle_callback(order_id, reference)

        assert result.reason == "success"


# ============================================================================
# Idempotent completion
# ============================================================================


class TestCompletion:

    @pytest.mark.unit
    async def test_second_completion_is_a_no_op(
        self, service, db_session, sample_client, processing_order, fake_gateway
    ):
        client_id = sample_client.id
        order_id, reference = processing_order
        verification = fake_gateway.set_charge(reference, amount=Decimal("5000"))
        order = await reload(db_session, Order, order_id)
        transaction = await service.ledger.get_by_reference(reference, fresh=True)

        first = await service.complete_order_payment(order, transaction, verification, source="webhook")
        order = await reload(db_session, Order, order_id)
        transaction = await service.ledger.get_by_reference(reference, fresh=True)
        second = await service.complete_order_payment(order, transaction, verification, source="poll")

        assert (first, second) == (True, False)
        assert await count_notifications(db_session, client_id, NotificationType.PAYMENT_SUCCESSFUL) == 1
        result = await db_session.execute(
            select(func.count(FinancialTransaction.id)).where(
                FinancialTransaction.order_id == order_id,
                FinancialTransaction.transaction_type == TransactionType.DRIVER_EARNING,
            )
        )
        assert result.scalar() == 1

    @pytest.mark.unit
    async def test_orphaned_payment_is_recorded_and_alerted(
        self, service, db_session, processing_order, fake_gateway, caplog
    ):
        order_id, reference = processing_order
        verification = fake_gateway.set_charge(reference, amount=Decimal("5000"))
        await db_session.execute(
            update(Order).where(Order.id == order_id).values(status=OrderStatus.CANCELLED)
        )
        await db_session.commit()
        order = await reload(db_session, Order, order_id)
        transaction = await service.ledger.get_by_reference(reference, fresh=True)
        transaction_id = transaction.id

        with caplog.at_level(logging.CRITICAL):
            completed = await service.complete_order_payment(order, transaction, verification, source="webhook")

        assert completed is False
        txn = await reload(db_session, FinancialTransaction, transaction_id)
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.failure_reason == "Order left draft before payment settled"
        order = await reload(db_session, Order, order_id)
        assert order.payment_status == PaymentStatus.PROCESSING
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)


# ============================================================================
# Client poll
# ============================================================================


class TestCheckPaymentStatus:

    @pytest.mark.unit
    async def test_poll_settles_payment(self, service, sample_client, processing_order, fake_gateway):
        order_id, reference = processing_order
        fake_gateway.set_charge(reference, amount=Decimal("5000"))

        status = await service.check_payment_status(sample_client, order_id, reference)

        assert status["payment_status"] == "paid"
        assert status["order_status"] == "submitted"
        assert status["reason"] == "success"
        assert status["cached"] is False

    @pytest.mark.unit
    async def test_poll_returns_cached_status_when_gateway_down(
        self, service, sample_client, processing_order, fake_gateway
    ):
        order_id, reference = processing_order
        fake_gateway.errors["verify_charge"] = GatewayUnavailableError("verify_charge", "down")

        status = await service.check_payment_status(sample_client, order_id)

        assert status["cached"] is True
        assert status["payment_status"] == "processing"
        assert status["reference"] == reference

    @pytest.mark.unit
    async def test_poll_rejects_foreign_reference(self, service, sample_client, processing_order):
        order_id, _ = processing_order

        with pytest.raises(ValidationException):
            await service.check_payment_status(sample_client, order_id, "ORD-OTHER-1")

    @pytest.mark.unit
    async def test_poll_by_other_client_forbidden(self, service, user_factory, processing_order):
        order_id, _ = processing_order
        stranger = await user_factory()

        with pytest.raises(ForbiddenError):
            await service.check_payment_status(stranger, order_id)


# ============================================================================
# Webhook handlers
# ============================================================================


class TestChargeWebhooks:

    @pytest.mark.unit
    async def test_charge_success_settles_order(self, service, db_session, processing_order, fake_gateway):
        order_id, reference = processing_order
        fake_gateway.set_charge(reference, amount=Decimal("5000"))

        outcome = await service.handle_charge_success({"reference": reference, "amount": 500000, "status": "success"})

        assert outcome == "success"
        order = await reload(db_session, Order, order_id)
        assert order.payment_status == PaymentStatus.PAID

    @pytest.mark.unit
    async def test_charge_success_falls_back_to_signed_payload(
        self, service, db_session, processing_order, fake_gateway
    ):
        order_id, reference = processing_order
        fake_gateway.errors["verify_charge"] = GatewayUnavailableError("verify_charge", "down")

        outcome = await service.handle_charge_success({"reference": reference, "amount": 500000, "status": "success"})

        assert outcome == "success"
        order = await reload(db_session, Order, order_id)
        assert order.payment_status == PaymentStatus.PAID

    @pytest.mark.unit
    async def test_charge_success_for_paid_order(self, service, processing_order, fake_gateway):
        order_id, reference = processing_order
        fake_gateway.set_charge(reference, amount=Decimal("5000"))
        await service.handle_callback(order_id, reference)

        outcome = await service.handle_charge_success({"reference": reference, "amount": 500000})

        assert outcome == "already_paid"

    @pytest.mark.unit
    async def test_charge_success_unknown_reference(self, service, caplog):
        with caplog.at_level(logging.CRITICAL):
            outcome = await service.handle_charge_success({"reference": "ORD-GHOST-1", "amount": 100})

        assert outcome == "unmatched"
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    @pytest.mark.unit
    async def test_charge_without_reference_ignored(self, service):
        assert await service.handle_charge_success({"amount": 100}) == "ignored"
        assert await service.handle_charge_failed({}) == "ignored"

    @pytest.mark.unit
    async def test_charge_failed_marks_processing_payment_failed(self, service, db_session, processing_order):
        order_id, reference = processing_order

        outcome = await service.handle_charge_failed({"reference": reference, "gateway_response": "Insufficient funds"})

        assert outcome == "failed"
        order = await reload(db_session, Order, order_id)
        assert order.payment_status == PaymentStatus.FAILED
        assert order.payment_failure_reason == "Insufficient funds"

    @pytest.mark.unit
    async def test_charge_failed_never_overwrites_paid(self, service, db_session, processing_order, fake_gateway):
        order_id, reference = processing_order
        fake_gateway.set_charge(reference, amount=Decimal("5000"))
        await service.handle_callback(order_id, reference)

        outcome = await service.handle_charge_failed({"reference": reference, "gateway_response": "Late failure"})

        assert outcome == "ignored"
        order = await reload(db_session, Order, order_id)
        assert order.payment_status == PaymentStatus.PAID
        assert order.payment_failure_reason is None

    @pytest.mark.unit
    async def test_declined_charge_keeps_transaction_open(self, service, db_session, processing_order):
        order_id, reference = processing_order

        await service.handle_charge_failed({"reference": reference, "gateway_response": "Timeout"})

        order = await reload(db_session, Order, order_id)
        txn = await reload(db_session, FinancialTransaction, order.payment_transaction_id)
        assert order.payment_status == PaymentStatus.FAILED
        assert txn.status == TransactionStatus.PENDING

    @pytest.mark.unit
    async def test_success_after_failure_completes_order(
        self, service, db_session, sample_client, processing_order, fake_gateway
    ):
        client_id = sample_client.id
        order_id, reference = processing_order
        await service.handle_charge_failed({"reference": reference, "gateway_response": "Timeout"})
        fake_gateway.set_charge(reference, amount=Decimal("5000"))

        outcome = await service.handle_charge_success({"reference": reference, "amount": 500000})

        assert outcome == "success"
        order = await reload(db_session, Order, order_id)
        assert order.status == OrderStatus.SUBMITTED
        assert order.payment_status == PaymentStatus.PAID
        assert order.payment_failure_reason is None
        txn = await reload(db_session, FinancialTransaction, order.payment_transaction_id)
        assert txn.status == TransactionStatus.COMPLETED
        assert await count_notifications(db_session, client_id, NotificationType.PAYMENT_SUCCESSFUL) == 1

    @pytest.mark.unit
    async def test_success_after_new_checkout_is_alerted_not_applied(
        self, service, db_session, sample_client, processing_order, fake_gateway, caplog
    ):
        """A declined reference superseded by a new checkout is left for a manual refund"""
        order_id, reference = processing_order
        await service.handle_charge_failed({"reference": reference, "gateway_response": "Timeout"})
        await service.initiate_payment(sample_client, order_id, Decimal("5000"))
        fake_gateway.set_charge(reference, amount=Decimal("5000"))

        with caplog.at_level(logging.CRITICAL):
            outcome = await service.handle_charge_success({"reference": reference, "amount": 500000})

        assert outcome == "unmatched"
        order = await reload(db_session, Order, order_id)
        assert order.payment_status == PaymentStatus.PROCESSING
        assert order.payment_reference != reference
        assert any("manual refund" in r.getMessage() for r in caplog.records)


# ============================================================================
# Stale payment sweep
# ============================================================================


class TestReconcileStalePayments:

    @pytest.mark.unit
    async def test_sweep_settles_and_expires(self, service, db_session, sample_client, order_factory, fake_gateway):
        paid = await order_factory(sample_client.id)
        expired = await order_factory(sample_client.id)
        fresh = await order_factory(sample_client.id)
        paid_id, expired_id, fresh_id = paid.id, expired.id, fresh.id
        paid_ref = (await service.initiate_payment(sample_client, paid_id, Decimal("5000")))["reference"]
        await service.initiate_payment(sample_client, expired_id, Decimal("5000"))
        await service.initiate_payment(sample_client, fresh_id, Decimal("5000"))
        await db_session.execute(
            update(Order)
            .where(Order.id.in_([paid_id, expired_id]))
            .values(payment_initiated_at=datetime.utcnow() - timedelta(hours=1))
        )
        await db_session.commit()
        fake_gateway.set_charge(paid_ref, amount=Decimal("5000"))

        stats = await service.reconcile_stale_payments(older_than_minutes=20)

        assert stats == {"checked": 2, "paid": 1, "failed": 1, "pending": 0, "errors": 0}
        assert (await reload(db_session, Order, paid_id)).payment_status == PaymentStatus.PAID
        expired_order = await reload(db_session, Order, expired_id)
        assert expired_order.payment_status == PaymentStatus.FAILED
        assert expired_order.payment_failure_reason == "Checkout expired"
        assert (await reload(db_session, Order, fresh_id)).payment_status == PaymentStatus.PROCESSING

    @pytest.mark.unit
    async def test_sweep_closes_declined_checkout(self, service, db_session, processing_order, fake_gateway):
        order_id, reference = processing_order
        await service.handle_charge_failed({"reference": reference, "gateway_response": "Declined"})
        await db_session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(payment_initiated_at=datetime.utcnow() - timedelta(hours=1))
        )
        await db_session.commit()
        fake_gateway.set_charge(reference, status="failed", gateway_response="Declined")

        stats = await service.reconcile_stale_payments(older_than_minutes=20)
        again = await service.reconcile_stale_payments(older_than_minutes=20)

        assert stats["checked"] == 1
        assert stats["failed"] == 1
        assert again["checked"] == 0
        order = await reload(db_session, Order, order_id)
        txn = await reload(db_session, FinancialTransaction, order.payment_transaction_id)
        assert order.payment_status == PaymentStatus.FAILED
        assert txn.status == TransactionStatus.FAILED

    @pytest.mark.unit
    async def test_sweep_completes_declined_checkout_that_later_succeeded(
        self, service, db_session, processing_order, fake_gateway
    ):
        order_id, reference = processing_order
        await service.handle_charge_failed({"reference": reference, "gateway_response": "Declined"})
        await db_session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(payment_initiated_at=datetime.utcnow() - timedelta(hours=1))
        )
        await db_session.commit()
        fake_gateway.set_charge(reference, amount=Decimal("5000"))

        stats = await service.reconcile_stale_payments(older_than_minutes=20)

        assert stats["paid"] == 1
        assert (await reload(db_session, Order, order_id)).payment_status == PaymentStatus.PAID


# ============================================================================
# Wallet payment
# ============================================================================


class TestPayFromWallet:

    @pytest.mark.unit
    async def test_pays_order_from_wallet(self, service, db_session, sample_client, order_factory, wallet_factory):
        order = await order_factory(sample_client.id, processing_fee=Decimal("175"))
        await wallet_factory(sample_client.id, Decimal("6000"))

        result = await service.pay_order_from_wallet(sample_client, order.id)

        assert result["payment_status"] == "paid"
        assert result["order_status"] == "submitted"
        assert result["amount"] == "5175.00"
        assert Decimal(result["wallet_balance"]) == Decimal("825.00")

        fresh = await reload(db_session, Order, order.id)
        assert fresh.payment_method == PaymentMethod.WALLET
        assert fresh.payment_status == PaymentStatus.PAID
        platform = await reload(db_session, FinancialTransaction, fresh.platform_revenue_transaction_id)
        # no card fee was incurred, so the fee the client paid is platform revenue
        assert Decimal(str(platform.amount_gross)) == Decimal("1675.00")
        payment = await reload(db_session, FinancialTransaction, fresh.payment_transaction_id)
        assert payment.transaction_type == TransactionType.WALLET_DEDUCTION
        assert payment.status == TransactionStatus.COMPLETED

    @pytest.mark.unit
    async def test_insufficient_balance(self, service, db_session, sample_client, order_factory, wallet_factory):
        order = await order_factory(sample_client.id)
        await wallet_factory(sample_client.id, Decimal("4999.99"))

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await service.pay_order_from_wallet(sample_client, order.id)

        assert exc_info.value.details["available"] == "4999.99"
        fresh = await reload(db_session, Order, order.id)
        assert fresh.payment_status == PaymentStatus.PENDING

    @pytest.mark.unit
    async def test_no_wallet_is_insufficient(self, service, sample_client, order_factory):
        order = await order_factory(sample_client.id)

        with pytest.raises(InsufficientBalanceError):
            await service.pay_order_from_wallet(sample_client, order.id)

    @pytest.mark.unit
    async def test_paid_order_rejected(self, service, db_session, sample_client, order_factory, wallet_factory):
        client_id = sample_client.id
        order = await order_factory(client_id)
        order_id = order.id
        await wallet_factory(client_id, Decimal("20000"))
        await service.pay_order_from_wallet(sample_client, order_id)

        with pytest.raises(ConflictError):
            await service.pay_order_from_wallet(sample_client, order_id)

        wallet = await service.ledger.get_wallet(client_id)
        assert Decimal(str(wallet.balance)) == Decimal("15000.00")

    @pytest.mark.unit
    async def test_wallet_payment_cancels_open_card_checkout(
        self, service, db_session, sample_client, processing_order, wallet_factory
    ):
        order_id, reference = processing_order
        await wallet_factory(sample_client.id, Decimal("5000"))
        card_txn = await service.ledger.get_by_reference(reference, fresh=True)
        card_txn_id = card_txn.id

        await service.pay_order_from_wallet(sample_client, order_id)

        old = await reload(db_session, FinancialTransaction, card_txn_id)
        assert old.status == TransactionStatus.CANCELLED
