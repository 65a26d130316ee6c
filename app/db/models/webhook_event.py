"""
Gateway Webhook Event Model - record of every signed gateway delivery.

Keyed by a hash of (event, reference, status) so a duplicate delivery is
recognised. Only ``completed`` rows short-circuit a redelivery; ``processing``
rows older than the stale threshold may be retried. The conditional ledger
updates remain the correctness guarantee; this table is the audit trail.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Index, JSON

from app.db.database import Base


class GatewayWebhookEvent(Base):
    """A gateway webhook delivery"""

    __tablename__ = "gateway_webhook_events"

    event_key = Column(String(128), primary_key=True)
    event = Column(String(50), nullable=False)
    reference = Column(String(100), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="processing")
    payload = Column(JSON, nullable=True)
    delivery_count = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_gateway_webhook_events_status_created", "status", "created_at"),
    )
