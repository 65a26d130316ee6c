"""
Payment Service - order payment capture and verification

Settlement of a charge can arrive through three independent paths that run
concurrently: the browser callback, the client poll and the gateway
webhook (plus the stale-payment sweep). All of them end in
``complete_order_payment``, whose first step is the conditional flip of the
payment transaction from pending to completed. Only the caller that wins the
flip writes anything else; every other caller gets a no-op.

Gateway calls always happen before the database writes of a step, so no row
lock is ever held across a gateway round-trip.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AmountMismatchError,
    ConflictError,
    ErrorCode,
    ForbiddenError,
    GatewayError,
    GatewayReferenceNotFoundError,
    InsufficientBalanceError,
    NotFoundException,
    ValidationException,
)
from app.core.logging import get_logger, log_async_operation
from app.db.models.financial_transaction import (
    FinancialTransaction,
    TransactionStatus,
    TransactionType,
)
from app.db.models.notification import NotificationType
from app.db.models.order import (
    HistoryKind,
    Order,
    OrderHistory,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from app.db.models.user import User
from app.domain.services.event_publisher import EventName, EventPublisher, publish_safely
from app.domain.services.gateway.base import BasePaymentGateway, ChargeVerification
from app.domain.services.ledger_service import LedgerService
from app.domain.services.money import (
    amounts_match,
    format_naira,
    from_minor_units,
    to_decimal,
    to_minor_units,
)
from app.domain.services.notification_service import NotificationService
from app.domain.services.references import (
    generate_payment_reference,
    generate_transaction_reference,
)

logger = get_logger(__name__)

WALLET_TOPUP = "wallet_topup"
ORDER_PAYMENT = "order_payment"

# Order payment states a successful charge may still complete
_PAYABLE_STATES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED)
# Gateway charge states that are neither success nor a final failure
_IN_FLIGHT_CHARGE_STATES = frozenset({"pending", "ongoing", "processing", "queued", "send_otp", "send_birthday"})


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of one settlement attempt; ``reason`` doubles as the deep-link code."""

    reason: str
    payment_status: str
    completed_now: bool = False

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID.value


class PaymentService:
    """Order payments, wallet top-ups and wallet payments"""

    def __init__(
        self,
        db: AsyncSession,
        gateway: BasePaymentGateway,
        publisher: EventPublisher,
    ):
        self.db = db
        self.gateway = gateway
        self.publisher = publisher
        self.ledger = LedgerService(db)
        self.notifications = NotificationService(db)

    # ==================== Lookups ====================

    async def _get_order(self, order_id: int) -> Order:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if not order:
            raise NotFoundException("Order", order_id, ErrorCode.ORDER_NOT_FOUND)
        return order

    async def _get_order_by_reference(self, reference: str) -> Optional[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.payment_reference == reference)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def _add_history(
        self,
        order: Order,
        status: str,
        message: str,
        *,
        kind: HistoryKind = HistoryKind.INSTANT,
        actor_id: Optional[int] = None,
        details: Optional[dict] = None,
    ) -> None:
        self.db.add(
            OrderHistory(
                order_id=order.id,
                kind=kind,
                status=status,
                message=message,
                actor_id=actor_id,
                details=details or {},
            )
        )

    # ==================== Initiation ====================

    @log_async_operation("initiate_payment")
    async def initiate_payment(
        self,
        client: User,
        order_id: int,
        amount: Decimal,
        order_ref: Optional[str] = None,
        email: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Open a gateway checkout for a draft order.

        A second call inside the cooldown window returns the existing checkout
        with a ``retry_after`` hint instead of creating another charge.
        """
        order = await self._get_order(order_id)
        if order.client_id != client.id:
            raise ForbiddenError(error_code=ErrorCode.USER_MISMATCH, details={"order_id": order_id})
        if order.status != OrderStatus.DRAFT:
            raise ConflictError(
                "Order is no longer awaiting payment",
                error_code=ErrorCode.ORDER_STATUS_CHANGED,
                details={"order_id": order.id, "status": order.status.value},
            )

        total = to_decimal(order.total_amount or 0)
        if total <= 0:
            raise ValidationException(
                "Order has no valid pricing",
                field="total_amount",
                error_code=ErrorCode.PRICING_MISMATCH,
            )
        if to_minor_units(amount) != to_minor_units(total):
            raise ValidationException(
                "Payment amount does not match the order total",
                field="amount",
                error_code=ErrorCode.AMOUNT_MISMATCH,
                details={"expected": str(total), "received": str(to_decimal(amount))},
            )
        if order_ref and order_ref != order.order_ref:
            raise ValidationException("Order reference does not match", field="order_ref")

        now = datetime.utcnow()
        cooldown = timedelta(seconds=settings.PAYMENT_RETRY_COOLDOWN_SECONDS)
        if (
            order.payment_status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING)
            and order.payment_initiated_at is not None
            and order.authorization_url
            and now - order.payment_initiated_at < cooldown
        ):
            retry_after = cooldown - (now - order.payment_initiated_at)
            logger.info(
                "Payment initiation throttled, reusing checkout",
                extra_data={"order_id": order.id, "reference": order.payment_reference},
            )
            return {
                "authorization_url": order.authorization_url,
                "access_code": order.access_code,
                "reference": order.payment_reference,
                "amount": str(total),
                "currency": order.currency,
                "retry_after": max(int(retry_after.total_seconds()), 1),
                "reused": True,
            }

        reference = generate_payment_reference(order.order_ref)
        metadata = {
            "type": ORDER_PAYMENT,
            "order_id": order.id,
            "order_ref": order.order_ref,
            "client_id": client.id,
        }
        try:
            checkout = await self.gateway.initialize_charge(
                email=email or client.email,
                amount_minor=to_minor_units(total),
                reference=reference,
                callback_url=f"{settings.PAYMENT_CALLBACK_URL}?orderId={order.id}",
                metadata=metadata,
                currency=order.currency,
            )
        except GatewayError as e:
            logger.error(
                "Gateway checkout initialization failed",
                extra_data={
                    "order_id": order.id,
                    "client_id": client.id,
                    "reference": reference,
                    "amount": str(total),
                    "error": e.message,
                },
            )
            raise

        transaction = await self.ledger.create_transaction(
            TransactionType.CLIENT_PAYMENT,
            total,
            reference=reference,
            provider=self.gateway.provider_name,
            client_id=client.id,
            order_id=order.id,
            description=f"Payment for order {order.order_ref}",
            metadata=metadata,
        )
        previous_transaction_id = order.payment_transaction_id

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.DRAFT)
            .values(
                payment_method=PaymentMethod.CARD,
                payment_status=PaymentStatus.PROCESSING,
                payment_reference=reference,
                payment_amount=total,
                payment_initiated_at=now,
                payment_failure_reason=None,
                authorization_url=checkout.authorization_url,
                access_code=checkout.access_code,
                payment_transaction_id=transaction.id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise ConflictError(
                "Order status changed, please refresh",
                error_code=ErrorCode.ORDER_STATUS_CHANGED,
                details={"order_id": order_id},
            )

        if previous_transaction_id:
            await self.ledger.cancel_transaction(previous_transaction_id, "Superseded by a new checkout")

        self._add_history(
            order,
            "payment_initiated",
            "Payment checkout opened",
            actor_id=client.id,
            details={"reference": reference, "amount": str(total)},
        )
        await self.db.commit()

        expires_at = now + timedelta(minutes=settings.PAYMENT_LINK_EXPIRY_MINUTES)
        logger.info(
            "Payment initiated",
            extra_data={"order_id": order.id, "reference": reference, "amount": str(total)},
        )
        return {
            "authorization_url": checkout.authorization_url,
            "access_code": checkout.access_code,
            "reference": reference,
            "amount": str(total),
            "currency": order.currency,
            "expires_at": expires_at.isoformat(),
            "expires_in_minutes": settings.PAYMENT_LINK_EXPIRY_MINUTES,
            "reused": False,
        }

    # ==================== Completion (shared by every path) ====================

    async def _apply_order_payment(
        self,
        order: Order,
        transaction: FinancialTransaction,
        *,
        method: PaymentMethod,
        fees: Decimal = Decimal("0.00"),
        paid_at: Optional[datetime] = None,
        match_reference: bool = True,
    ) -> bool:
        """
        Flip the payment transaction, mark the order paid and submitted, and
        pre-create the driver/platform liability transactions. No commit.
        Returns False when another writer already completed the payment.
        """
        if not await self.ledger.complete_transaction(transaction.id, fees=fees):
            return False

        now = datetime.utcnow()
        paid_at = paid_at or now

        platform_revenue = to_decimal(order.platform_share)
        if method == PaymentMethod.WALLET:
            # No card fee is incurred; the fee the client paid is platform revenue
            platform_revenue += to_decimal(order.processing_fee or 0)

        driver_earning = await self.ledger.create_transaction(
            TransactionType.DRIVER_EARNING,
            order.driver_share,
            client_id=order.client_id,
            driver_id=None,
            order_id=order.id,
            description=f"Driver earning for order {order.order_ref}",
            metadata={"payment_transaction_id": transaction.id},
        )
        platform = await self.ledger.create_transaction(
            TransactionType.PLATFORM_REVENUE,
            platform_revenue,
            client_id=order.client_id,
            order_id=order.id,
            description=f"Platform revenue for order {order.order_ref}",
            metadata={"payment_transaction_id": transaction.id, "method": method.value},
        )

        conditions = [
            Order.id == order.id,
            Order.status == OrderStatus.DRAFT,
            Order.payment_status.in_(_PAYABLE_STATES),
        ]
        if match_reference:
            conditions.append(Order.payment_reference == transaction.gateway_reference)
        result = await self.db.execute(
            update(Order)
            .where(*conditions)
            .values(
                status=OrderStatus.SUBMITTED,
                submitted_at=now,
                payment_method=method,
                payment_status=PaymentStatus.PAID,
                payment_reference=transaction.gateway_reference,
                payment_amount=transaction.amount_gross,
                payment_paid_at=paid_at,
                payment_failure_reason=None,
                payment_transaction_id=transaction.id,
                driver_earning_transaction_id=driver_earning.id,
                platform_revenue_transaction_id=platform.id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                "Order can no longer accept this payment",
                error_code=ErrorCode.ORDER_STATUS_CHANGED,
                details={"order_id": order.id, "reference": transaction.gateway_reference},
            )

        amount_label = format_naira(transaction.amount_gross)
        self._add_history(
            order,
            "order_submitted",
            "Order submitted",
            kind=HistoryKind.TRACKING,
            actor_id=order.client_id,
        )
        self._add_history(
            order,
            "payment_completed",
            f"Payment of {amount_label} received",
            actor_id=order.client_id,
            details={"reference": transaction.gateway_reference, "method": method.value},
        )
        await self.notifications.create_once(
            order.client_id,
            NotificationType.ORDER_CREATED,
            order.id,
            {"order_ref": order.order_ref},
        )
        await self.notifications.create_once(
            order.client_id,
            NotificationType.PAYMENT_SUCCESSFUL,
            order.id,
            {"order_ref": order.order_ref, "amount": amount_label},
            details={"reference": transaction.gateway_reference},
        )
        return True

    async def complete_order_payment(
        self,
        order: Order,
        transaction: FinancialTransaction,
        verification: Optional[ChargeVerification] = None,
        *,
        source: str,
    ) -> bool:
        """Idempotent completion of a card payment; commits. True only for the winner."""
        # rollback expires loaded rows, so keep plain values for logging
        context = {
            "order_id": order.id,
            "client_id": order.client_id,
            "transaction_id": transaction.id,
            "reference": transaction.gateway_reference,
            "amount": str(transaction.amount_gross),
            "source": source,
        }
        fees = from_minor_units(verification.fees_minor) if verification else Decimal("0.00")
        paid_at = verification.paid_at if verification else None
        try:
            completed = await self._apply_order_payment(
                order, transaction, method=PaymentMethod.CARD, fees=fees, paid_at=paid_at
            )
        except ConflictError:
            await self.db.rollback()
            await self._record_orphaned_payment(context, "Order left draft before payment settled")
            return False

        if not completed:
            await self.db.rollback()
            current = await self.ledger.get_transaction(context["transaction_id"], fresh=True)
            if current is not None and current.status != TransactionStatus.COMPLETED:
                logger.critical(
                    "Charge succeeded after the payment intent was closed; manual refund required",
                    extra_data={**context, "transaction_status": current.status.value},
                )
            else:
                logger.info("Payment already completed by another path", extra_data=context)
            return False

        await self.db.commit()
        logger.info("Order payment completed", extra_data=context)
        await publish_safely(
            self.publisher,
            context["client_id"],
            EventName.PAYMENT_STATUS_UPDATED,
            {
                "order_id": context["order_id"],
                "payment_status": PaymentStatus.PAID.value,
                "order_status": OrderStatus.SUBMITTED.value,
            },
        )
        return True

    async def _record_orphaned_payment(self, context: dict[str, Any], note: str) -> None:
        """Money arrived but nothing can receive it: record the receipt, alert loudly."""
        recorded = await self.ledger.complete_transaction(context["transaction_id"], failure_reason=note[:500])
        await self.db.commit()
        logger.critical(
            "Payment received for an intent that can no longer be fulfilled; manual refund required",
            extra_data={**context, "recorded": recorded, "note": note},
        )

    async def _fail_order_payment(
        self,
        order: Order,
        transaction: Optional[FinancialTransaction],
        reason: str,
        *,
        source: str,
        close_transaction: bool = True,
    ) -> bool:
        """
        Conditional failure: only a payment still pending/processing for this reference.

        A declined charge keeps its ledger transaction pending
        (``close_transaction=False``) so a later verified success for the
        same reference can still complete the order.
        """
        order_id, client_id, reference = order.id, order.client_id, order.payment_reference
        transaction_closed = False
        if close_transaction and transaction is not None:
            transaction_closed = await self.ledger.fail_transaction(transaction.id, reason)
        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_reference == reference,
                Order.payment_status.in_((PaymentStatus.PENDING, PaymentStatus.PROCESSING)),
            )
            .values(
                payment_status=PaymentStatus.FAILED,
                payment_failure_reason=reason[:500],
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            if transaction_closed:
                await self.db.commit()
            else:
                await self.db.rollback()
            logger.info(
                "Payment failure ignored, payment no longer in flight",
                extra_data={"order_id": order_id, "reference": reference, "source": source},
            )
            return False

        self._add_history(order, "payment_failed", reason[:500], details={"reference": reference})
        await self.notifications.create_once(
            client_id,
            NotificationType.PAYMENT_FAILED,
            order_id,
            {"order_ref": order.order_ref, "reason": reason},
        )
        await self.db.commit()
        logger.warning(
            "Order payment failed",
            extra_data={
                "order_id": order_id,
                "client_id": client_id,
                "reference": reference,
                "reason": reason,
                "source": source,
            },
        )
        await publish_safely(
            self.publisher,
            client_id,
            EventName.PAYMENT_STATUS_UPDATED,
            {"order_id": order_id, "payment_status": PaymentStatus.FAILED.value, "reason": reason},
        )
        return True

    async def _settle_with_verification(
        self,
        order: Order,
        verification: ChargeVerification,
        *,
        source: str,
        close_declined: bool = False,
    ) -> SettlementResult:
        order_id, reference = order.id, order.payment_reference
        transaction = await self.ledger.get_by_reference(reference, fresh=True)
        if transaction is None:
            logger.critical(
                "Order payment reference has no ledger transaction",
                extra_data={"order_id": order.id, "reference": reference},
            )
            return SettlementResult("error", order.payment_status.value)

        if verification.is_successful:
            expected_minor = to_minor_units(order.payment_amount or order.total_amount)
            if not amounts_match(expected_minor, verification.amount_minor, settings.PAYMENT_AMOUNT_TOLERANCE_MINOR):
                logger.error(
                    "Paid amount does not match order amount",
                    extra_data={
                        "order_id": order.id,
                        "reference": reference,
                        "expected_minor": expected_minor,
                        "paid_minor": verification.amount_minor,
                        "source": source,
                    },
                )
                await self._fail_order_payment(
                    order,
                    transaction,
                    f"Amount mismatch: expected {expected_minor}, paid {verification.amount_minor}",
                    source=source,
                )
                return SettlementResult("amount_mismatch", PaymentStatus.FAILED.value)

            completed_now = await self.complete_order_payment(
                order, transaction, verification, source=source
            )
            refreshed = await self._get_order(order_id)
            if completed_now:
                return SettlementResult("success", refreshed.payment_status.value, completed_now=True)
            if refreshed.payment_status == PaymentStatus.PAID:
                return SettlementResult("already_paid", refreshed.payment_status.value)
            return SettlementResult("error", refreshed.payment_status.value)

        if verification.is_final_failure:
            reason = verification.gateway_response or f"Charge {verification.status}"
            await self._fail_order_payment(
                order, transaction, reason, source=source, close_transaction=close_declined
            )
            refreshed = await self._get_order(order_id)
            if refreshed.payment_status == PaymentStatus.PAID:
                return SettlementResult("already_paid", refreshed.payment_status.value)
            return SettlementResult("failed", refreshed.payment_status.value)

        return SettlementResult("pending", order.payment_status.value)

    # ==================== Callback & poll ====================

    @log_async_operation("payment_callback")
    async def handle_callback(self, order_id: Optional[int], reference: Optional[str]) -> SettlementResult:
        """Browser redirect after checkout. Never raises; the reason goes into the deep link."""
        if not reference:
            return SettlementResult("missing_reference", PaymentStatus.PENDING.value)

        query = select(Order).where(Order.payment_reference == reference)
        if order_id is not None:
            query = query.where(Order.id == order_id)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        order = result.scalar_one_or_none()
        if order is None:
            logger.warning(
                "Payment callback for unknown order/reference",
                extra_data={"order_id": order_id, "reference": reference},
            )
            return SettlementResult("not_found", PaymentStatus.PENDING.value)

        if order.payment_status == PaymentStatus.PAID:
            return SettlementResult("already_paid", order.payment_status.value)

        try:
            verification = await self.gateway.verify_charge(reference)
        except GatewayError as e:
            logger.warning(
                "Charge verification failed during callback",
                extra_data={"order_id": order.id, "reference": reference, "error": e.message},
            )
            return SettlementResult("verification_pending", order.payment_status.value)

        return await self._settle_with_verification(order, verification, source="callback")

    @log_async_operation("check_payment_status")
    async def check_payment_status(
        self,
        client: User,
        order_id: int,
        reference: Optional[str] = None,
    ) -> dict[str, Any]:
        """Client poll. Gateway trouble degrades to the stored status with ``cached: True``."""
        order = await self._get_order(order_id)
        if order.client_id != client.id:
            raise ForbiddenError(error_code=ErrorCode.USER_MISMATCH, details={"order_id": order_id})
        if reference and order.payment_reference and reference != order.payment_reference:
            raise ValidationException("Reference does not belong to this order", field="reference")

        if order.payment_status == PaymentStatus.PAID:
            return self._status_payload(order, cached=False)
        if not order.payment_reference or order.payment_status not in (
            PaymentStatus.PENDING, PaymentStatus.PROCESSING,
        ):
            return self._status_payload(order, cached=False)

        try:
            verification = await self.gateway.verify_charge(order.payment_reference)
        except GatewayError as e:
            logger.warning(
                "Charge verification failed during poll, returning cached status",
                extra_data={"order_id": order.id, "reference": order.payment_reference, "error": e.message},
            )
            return self._status_payload(order, cached=True)

        settlement = await self._settle_with_verification(order, verification, source="poll")
        refreshed = await self._get_order(order_id)
        payload = self._status_payload(refreshed, cached=False)
        payload["reason"] = settlement.reason
        return payload

    @staticmethod
    def _status_payload(order: Order, *, cached: bool) -> dict[str, Any]:
        return {
            "order_id": order.id,
            "order_ref": order.order_ref,
            "order_status": order.status.value,
            "payment_status": order.payment_status.value,
            "reference": order.payment_reference,
            "amount": str(order.payment_amount) if order.payment_amount is not None else None,
            "paid_at": order.payment_paid_at.isoformat() if order.payment_paid_at else None,
            "failure_reason": order.payment_failure_reason,
            "cached": cached,
        }

    # ==================== Webhook ====================

    @log_async_operation("charge_success_webhook")
    async def handle_charge_success(self, data: dict[str, Any]) -> str:
        """charge.success: route to top-up or order settlement. Returns an outcome label."""
        reference = data.get("reference")
        if not reference:
            logger.warning("charge.success without reference")
            return "ignored"

        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        if metadata.get("type") == WALLET_TOPUP:
            return await self._settle_top_up_from_webhook(reference, data)

        order = await self._get_order_by_reference(reference)
        if order is None:
            transaction = await self.ledger.get_by_reference(reference, fresh=True)
            if transaction is not None and transaction.transaction_type == TransactionType.WALLET_DEPOSIT:
                return await self._settle_top_up_from_webhook(reference, data)
            await self._handle_unmatched_success(reference, transaction, data)
            return "unmatched"

        if order.payment_status == PaymentStatus.PAID:
            logger.info("charge.success for an already paid order", extra_data={"order_id": order.id, "reference": reference})
            return "already_paid"

        verification = await self._cross_check(reference, data)
        settlement = await self._settle_with_verification(order, verification, source="webhook")
        return settlement.reason

    async def _cross_check(self, reference: str, data: dict[str, Any]) -> ChargeVerification:
        """Re-verify a webhook charge against the gateway; fall back to the signed payload."""
        try:
            return await self.gateway.verify_charge(reference)
        except GatewayError as e:
            logger.warning(
                "Webhook cross-check unavailable, using signed payload",
                extra_data={"reference": reference, "error": e.message},
            )
            return ChargeVerification(
                reference=reference,
                status=str(data.get("status") or "success"),
                amount_minor=int(data.get("amount") or 0),
                fees_minor=int(data.get("fees") or 0),
                gateway_response=data.get("gateway_response"),
                raw=data,
            )

    async def _handle_unmatched_success(
        self,
        reference: str,
        transaction: Optional[FinancialTransaction],
        data: dict[str, Any],
    ) -> None:
        if transaction is not None and transaction.status == TransactionStatus.CANCELLED:
            logger.critical(
                "Charge succeeded for a cancelled payment intent; manual refund required",
                extra_data={
                    "reference": reference,
                    "transaction_id": transaction.id,
                    "order_id": transaction.order_id,
                    "client_id": transaction.client_id,
                    "amount_minor": data.get("amount"),
                },
            )
            return
        if transaction is not None and transaction.status == TransactionStatus.COMPLETED:
            logger.info("charge.success for a completed transaction", extra_data={"reference": reference})
            return
        logger.critical(
            "Charge succeeded for an unknown reference",
            extra_data={"reference": reference, "amount_minor": data.get("amount")},
        )

    @log_async_operation("charge_failed_webhook")
    async def handle_charge_failed(self, data: dict[str, Any]) -> str:
        reference = data.get("reference")
        if not reference:
            return "ignored"
        reason = data.get("gateway_response") or data.get("message") or "Charge failed"

        order = await self._get_order_by_reference(reference)
        if order is None:
            transaction = await self.ledger.get_by_reference(reference, fresh=True)
            if transaction is not None and transaction.transaction_type == TransactionType.WALLET_DEPOSIT:
                failed = await self.ledger.fail_transaction(transaction.id, reason)
                await self.db.commit()
                return "failed" if failed else "ignored"
            logger.warning("charge.failed for an unknown reference", extra_data={"reference": reference})
            return "unmatched"

        transaction = await self.ledger.get_by_reference(reference, fresh=True)
        failed = await self._fail_order_payment(
            order, transaction, reason, source="webhook", close_transaction=False
        )
        return "failed" if failed else "ignored"

    # ==================== Stale payment sweep ====================

    async def reconcile_stale_payments(self, older_than_minutes: Optional[int] = None, limit: int = 100) -> dict[str, int]:
        """
        Re-verify card payments past the checkout expiry: orders still
        processing, and declined orders whose charge is still open.
        """
        minutes = older_than_minutes or settings.RECONCILE_PAYMENT_STALE_MINUTES
        cutoff = datetime.utcnow() - timedelta(minutes=minutes)
        result = await self.db.execute(
            select(Order.id)
            .join(FinancialTransaction, FinancialTransaction.id == Order.payment_transaction_id)
            .where(
                Order.status == OrderStatus.DRAFT,
                Order.payment_status.in_((PaymentStatus.PROCESSING, PaymentStatus.FAILED)),
                Order.payment_method == PaymentMethod.CARD,
                Order.payment_initiated_at < cutoff,
                FinancialTransaction.status.in_((TransactionStatus.PENDING, TransactionStatus.PROCESSING)),
            )
            .order_by(Order.payment_initiated_at)
            .limit(limit)
        )
        order_ids = list(result.scalars().all())
        stats = {"checked": 0, "paid": 0, "failed": 0, "pending": 0, "errors": 0}

        for order_id in order_ids:
            stats["checked"] += 1
            order = await self._get_order(order_id)
            already_failed = order.payment_status == PaymentStatus.FAILED
            try:
                verification = await self.gateway.verify_charge(order.payment_reference)
            except GatewayReferenceNotFoundError:
                transaction = await self.ledger.get_by_reference(order.payment_reference, fresh=True)
                failed_now = await self._fail_order_payment(order, transaction, "Checkout expired", source="sweep")
                if failed_now or already_failed:
                    stats["failed"] += 1
                continue
            except GatewayError as e:
                stats["errors"] += 1
                logger.warning(
                    "Stale payment verification failed",
                    extra_data={"order_id": order.id, "reference": order.payment_reference, "error": e.message},
                )
                continue

            settlement = await self._settle_with_verification(
                order, verification, source="sweep", close_declined=True
            )
            if settlement.is_paid:
                stats["paid"] += 1
            elif settlement.reason in ("failed", "amount_mismatch"):
                stats["failed"] += 1
            else:
                stats["pending"] += 1

        if order_ids:
            logger.info("Stale payment sweep finished", extra_data=stats)
        return stats

    # ==================== Wallet top-up ====================

    @log_async_operation("initiate_top_up")
    async def initiate_top_up(self, client: User, amount: Decimal) -> dict[str, Any]:
        amount = to_decimal(amount)
        if amount < settings.TOPUP_MIN_AMOUNT or amount > settings.TOPUP_MAX_AMOUNT:
            raise ValidationException(
                f"Top-up amount must be between {format_naira(settings.TOPUP_MIN_AMOUNT)} "
                f"and {format_naira(settings.TOPUP_MAX_AMOUNT)}",
                field="amount",
                error_code=ErrorCode.INVALID_AMOUNT,
            )

        reference = generate_transaction_reference()
        metadata = {"type": WALLET_TOPUP, "client_id": client.id}
        checkout = await self.gateway.initialize_charge(
            email=client.email,
            amount_minor=to_minor_units(amount),
            reference=reference,
            callback_url=settings.TOPUP_CALLBACK_URL,
            metadata=metadata,
            currency=settings.CURRENCY,
        )

        await self.ledger.get_or_create_wallet(client.id)
        transaction = await self.ledger.create_transaction(
            TransactionType.WALLET_DEPOSIT,
            amount,
            reference=reference,
            provider=self.gateway.provider_name,
            client_id=client.id,
            description="Wallet top-up",
            metadata=metadata,
        )
        await self.db.commit()
        logger.info(
            "Wallet top-up initiated",
            extra_data={"client_id": client.id, "reference": reference, "amount": str(amount)},
        )
        return {
            "authorization_url": checkout.authorization_url,
            "access_code": checkout.access_code,
            "reference": reference,
            "amount": str(amount),
            "currency": settings.CURRENCY,
            "transaction_id": transaction.id,
        }

    @log_async_operation("verify_top_up")
    async def verify_top_up(self, client: User, reference: str) -> dict[str, Any]:
        transaction = await self.ledger.get_by_reference(reference, fresh=True)
        if transaction is None or transaction.transaction_type != TransactionType.WALLET_DEPOSIT:
            raise NotFoundException("Transaction", reference, ErrorCode.TRANSACTION_NOT_FOUND)
        if transaction.client_id != client.id:
            raise ForbiddenError(error_code=ErrorCode.USER_MISMATCH, details={"reference": reference})

        if transaction.status in (TransactionStatus.COMPLETED, TransactionStatus.CANCELLED, TransactionStatus.FAILED):
            return await self._top_up_payload(transaction, already_processed=True)

        try:
            verification = await self.gateway.verify_charge(reference)
        except GatewayReferenceNotFoundError:
            await self.ledger.cancel_transaction(transaction.id, "Reference not found at gateway")
            await self.db.commit()
            return await self._top_up_payload(await self.ledger.get_by_reference(reference, fresh=True))

        return await self._settle_top_up(transaction, verification, source="verify")

    async def _settle_top_up_from_webhook(self, reference: str, data: dict[str, Any]) -> str:
        transaction = await self.ledger.get_by_reference(reference, fresh=True)
        if transaction is None:
            logger.critical(
                "Top-up charge succeeded for an unknown reference",
                extra_data={"reference": reference, "amount_minor": data.get("amount")},
            )
            return "unmatched"
        if transaction.status == TransactionStatus.COMPLETED:
            return "already_processed"
        if transaction.status == TransactionStatus.CANCELLED:
            await self._handle_unmatched_success(reference, transaction, data)
            return "unmatched"
        verification = await self._cross_check(reference, data)
        try:
            payload = await self._settle_top_up(transaction, verification, source="webhook")
        except (AmountMismatchError, ForbiddenError):
            return "rejected"
        return payload["status"]

    async def _settle_top_up(
        self,
        transaction: FinancialTransaction,
        verification: ChargeVerification,
        *,
        source: str,
    ) -> dict[str, Any]:
        reference = transaction.gateway_reference

        if not verification.is_successful:
            if verification.status in _IN_FLIGHT_CHARGE_STATES:
                return await self._top_up_payload(transaction)
            await self.ledger.fail_transaction(
                transaction.id, verification.gateway_response or f"Charge {verification.status}"
            )
            await self.db.commit()
            return await self._top_up_payload(await self.ledger.get_by_reference(reference, fresh=True))

        metadata_client = verification.metadata.get("client_id")
        if metadata_client is not None and str(metadata_client) != str(transaction.client_id):
            logger.critical(
                "Top-up metadata client does not match transaction owner",
                extra_data={
                    "reference": reference,
                    "transaction_client_id": transaction.client_id,
                    "metadata_client_id": metadata_client,
                },
            )
            raise ForbiddenError(
                "Payment does not belong to this user",
                error_code=ErrorCode.USER_MISMATCH,
                details={"reference": reference},
            )

        expected_minor = to_minor_units(transaction.amount_gross)
        if not amounts_match(expected_minor, verification.amount_minor, settings.PAYMENT_AMOUNT_TOLERANCE_MINOR):
            await self.ledger.fail_transaction(
                transaction.id,
                f"Amount mismatch: expected {expected_minor}, paid {verification.amount_minor}",
            )
            await self.db.commit()
            logger.error(
                "Top-up amount mismatch",
                extra_data={
                    "reference": reference,
                    "client_id": transaction.client_id,
                    "expected_minor": expected_minor,
                    "paid_minor": verification.amount_minor,
                    "source": source,
                },
            )
            raise AmountMismatchError(reference, expected_minor, verification.amount_minor)

        fees = from_minor_units(verification.fees_minor)
        won = await self.ledger.complete_transaction(
            transaction.id,
            fees=fees,
            processed_at=verification.paid_at or datetime.utcnow(),
        )
        if not won:
            await self.db.rollback()
            logger.info(
                "Top-up already settled by another path",
                extra_data={"reference": reference, "source": source},
            )
            return await self._top_up_payload(
                await self.ledger.get_by_reference(reference, fresh=True), already_processed=True
            )

        completed = await self.ledger.get_by_reference(reference, fresh=True)
        net = to_decimal(completed.amount_net)
        await self.ledger.credit_wallet(transaction.client_id, net, completed)
        await self.notifications.create(
            transaction.client_id,
            NotificationType.WALLET_FUNDED,
            {"amount": format_naira(net)},
            details={"reference": reference},
        )
        await self.db.commit()
        logger.info(
            "Wallet top-up credited",
            extra_data={
                "client_id": transaction.client_id,
                "reference": reference,
                "gross": str(completed.amount_gross),
                "fees": str(fees),
                "net": str(net),
                "source": source,
            },
        )
        return await self._top_up_payload(completed)

    async def _top_up_payload(
        self,
        transaction: FinancialTransaction,
        *,
        already_processed: bool = False,
    ) -> dict[str, Any]:
        wallet = await self.ledger.get_wallet(transaction.client_id)
        return {
            "reference": transaction.gateway_reference,
            "status": transaction.status.value,
            "amount": str(transaction.amount_gross),
            "fees": str(transaction.amount_fees),
            "net": str(transaction.amount_net),
            "failure_reason": transaction.failure_reason,
            "wallet_balance": str(wallet.balance) if wallet else "0.00",
            "already_processed": already_processed,
        }

    # ==================== Wallet payment ====================

    @log_async_operation("pay_order_from_wallet")
    async def pay_order_from_wallet(self, client: User, order_id: int) -> dict[str, Any]:
        """Debit the wallet and complete the order payment in one database transaction."""
        order = await self._get_order(order_id)
        if order.client_id != client.id:
            raise ForbiddenError(error_code=ErrorCode.USER_MISMATCH, details={"order_id": order_id})
        if order.status != OrderStatus.DRAFT or order.payment_status == PaymentStatus.PAID:
            raise ConflictError(
                "Order is no longer awaiting payment",
                error_code=ErrorCode.ORDER_STATUS_CHANGED,
                details={"order_id": order.id},
            )
        total = to_decimal(order.total_amount or 0)
        if total <= 0:
            raise ValidationException("Order has no valid pricing", field="total_amount")

        client_id = client.id
        wallet = await self.ledger.get_wallet(client_id)
        available = to_decimal(wallet.balance) if wallet else Decimal("0.00")
        if available < total:
            raise InsufficientBalanceError(client_id, available, total)

        superseded_transaction_id = order.payment_transaction_id
        transaction = await self.ledger.create_transaction(
            TransactionType.WALLET_DEDUCTION,
            total,
            reference=generate_transaction_reference(),
            client_id=client_id,
            order_id=order.id,
            description=f"Wallet payment for order {order.order_ref}",
        )
        if await self.ledger.debit_wallet(client_id, total, transaction) is None:
            await self.db.rollback()
            raise InsufficientBalanceError(client_id, available, total)

        try:
            await self._apply_order_payment(
                order, transaction, method=PaymentMethod.WALLET, match_reference=False
            )
        except ConflictError:
            await self.db.rollback()
            raise
        if superseded_transaction_id and superseded_transaction_id != transaction.id:
            await self.ledger.cancel_transaction(superseded_transaction_id, "Order paid from wallet")
        await self.db.commit()

        logger.info(
            "Order paid from wallet",
            extra_data={"order_id": order.id, "client_id": client_id, "amount": str(total)},
        )
        await publish_safely(
            self.publisher,
            client_id,
            EventName.PAYMENT_STATUS_UPDATED,
            {"order_id": order.id, "payment_status": PaymentStatus.PAID.value, "order_status": OrderStatus.SUBMITTED.value},
        )
        refreshed_wallet = await self.ledger.get_wallet(client_id)
        return {
            "order_id": order.id,
            "payment_status": PaymentStatus.PAID.value,
            "order_status": OrderStatus.SUBMITTED.value,
            "amount": str(total),
            "reference": transaction.gateway_reference,
            "wallet_balance": str(refreshed_wallet.balance),
        }
