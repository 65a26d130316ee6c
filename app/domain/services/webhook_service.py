"""
Gateway Webhook Intake

Every signed delivery is recorded in ``gateway_webhook_events`` before it is
routed. A row is marked processing only after a successful INSERT; if
routing fails it stays processing and may be retried once stale. Only a
completed row short-circuits a redelivery. The conditional ledger updates
behind each handler still guarantee exactly-once settlement.
"""
import hashlib
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.models.webhook_event import GatewayWebhookEvent
from app.domain.services.event_publisher import EventPublisher
from app.domain.services.gateway.base import BasePaymentGateway
from app.domain.services.payment_service import PaymentService
from app.domain.services.payout_service import PayoutService

logger = get_logger(__name__)

_STATUS_PROCESSING = "processing"
_STATUS_COMPLETED = "completed"

HANDLED_EVENTS = frozenset({
    "charge.success",
    "charge.failed",
    "transfer.success",
    "transfer.failed",
    "transfer.reversed",
})


def webhook_event_key(event: str, reference: Optional[str], status: Optional[str]) -> str:
    """sha512 of event + reference + status"""
    raw = f"{event}{reference or ''}{status or ''}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


class GatewayWebhookService:
    """Dedup and routing of gateway webhook deliveries"""

    def __init__(
        self,
        db: AsyncSession,
        gateway: BasePaymentGateway,
        publisher: EventPublisher,
    ):
        self.db = db
        self.payments = PaymentService(db, gateway, publisher)
        self.payouts = PayoutService(db, gateway, publisher)

    async def _try_acquire(self, event_key: str, event: str, reference: Optional[str], payload: dict) -> bool:
        """
        Optimistic INSERT of the delivery record. False for a completed
        duplicate or one still being processed elsewhere.
        """
        try:
            async with self.db.begin_nested():
                self.db.add(
                    GatewayWebhookEvent(
                        event_key=event_key,
                        event=event,
                        reference=reference,
                        status=_STATUS_PROCESSING,
                        payload=payload,
                        created_at=datetime.utcnow(),
                    )
                )
            # Committed at once so a failed run still blocks an immediate retry
            await self.db.commit()
            return True
        except IntegrityError:
            pass

        result = await self.db.execute(
            select(GatewayWebhookEvent.status, GatewayWebhookEvent.delivery_count)
            .where(GatewayWebhookEvent.event_key == event_key)
        )
        row = result.one_or_none()
        if row is None:
            return False

        if row.status == _STATUS_COMPLETED:
            await self._count_duplicate(event_key, row.delivery_count)
            logger.info(
                "Duplicate webhook delivery skipped",
                extra_data={"event": event, "reference": reference, "deliveries": row.delivery_count + 1},
            )
            return False

        threshold = datetime.utcnow() - timedelta(seconds=settings.WEBHOOK_STALE_PROCESSING_SECONDS)
        update_result = await self.db.execute(
            update(GatewayWebhookEvent)
            .where(
                GatewayWebhookEvent.event_key == event_key,
                GatewayWebhookEvent.status == _STATUS_PROCESSING,
                GatewayWebhookEvent.created_at < threshold,
            )
            .values(created_at=datetime.utcnow(), delivery_count=GatewayWebhookEvent.delivery_count + 1)
            .execution_options(synchronize_session=False)
        )
        if update_result.rowcount > 0:
            await self.db.commit()
            logger.warning(
                "Retrying stale webhook delivery",
                extra_data={"event": event, "reference": reference},
            )
            return True

        logger.info(
            "Webhook delivery already in progress",
            extra_data={"event": event, "reference": reference},
        )
        return False

    async def _count_duplicate(self, event_key: str, delivery_count: int) -> None:
        await self.db.execute(
            update(GatewayWebhookEvent)
            .where(GatewayWebhookEvent.event_key == event_key)
            .values(delivery_count=(delivery_count or 1) + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _mark_completed(self, event_key: str) -> None:
        await self.db.execute(
            update(GatewayWebhookEvent)
            .where(GatewayWebhookEvent.event_key == event_key)
            .values(status=_STATUS_COMPLETED, completed_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def process(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Route an already signature-checked payload. Unknown events are
        acknowledged without touching state.
        """
        event = str(payload.get("event") or "")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        reference = data.get("reference")

        if event not in HANDLED_EVENTS:
            logger.info("Unhandled gateway event acknowledged", extra_data={"event": event, "reference": reference})
            return {"event": event, "outcome": "ignored"}

        event_key = webhook_event_key(event, reference, data.get("status"))
        if not await self._try_acquire(event_key, event, reference, payload):
            return {"event": event, "outcome": "duplicate"}

        outcome = await self._route(event, reference, data)
        await self._mark_completed(event_key)
        logger.info(
            "Gateway webhook processed",
            extra_data={"event": event, "reference": reference, "outcome": outcome},
        )
        return {"event": event, "outcome": outcome}

    async def _route(self, event: str, reference: Optional[str], data: dict[str, Any]) -> str:
        if event == "charge.success":
            return await self.payments.handle_charge_success(data)
        if event == "charge.failed":
            return await self.payments.handle_charge_failed(data)

        if not reference:
            logger.warning("Transfer event without reference", extra_data={"event": event})
            return "ignored"
        if event == "transfer.success":
            settled = await self.payouts.handle_transfer_success(reference, data)
            return "completed" if settled else "no_op"

        reason = data.get("gateway_response") or data.get("message") or data.get("reason")
        settled = await self.payouts.handle_transfer_failed(
            reference,
            reason,
            is_reversal=event == "transfer.reversed",
            data=data,
        )
        return "failed" if settled else "no_op"


async def cleanup_old_webhook_events(db: AsyncSession, retention_days: Optional[int] = None) -> int:
    """Delete completed delivery records older than the retention period."""
    days = retention_days or settings.WEBHOOK_EVENT_RETENTION_DAYS
    cutoff = datetime.utcnow() - timedelta(days=days)
    result = await db.execute(
        delete(GatewayWebhookEvent).where(
            GatewayWebhookEvent.status == _STATUS_COMPLETED,
            GatewayWebhookEvent.created_at < cutoff,
        )
    )
    await db.commit()
    return result.rowcount or 0
