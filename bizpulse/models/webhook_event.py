"""
Webhook event log

Audit trail of inbound platform events and how they were applied.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey

from bizpulse.models.base import Base
from bizpulse.utils.helpers import utcnow


class WebhookEvent(Base):
    """One inbound webhook delivery"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    integration_id = Column(Integer, ForeignKey("integrations.id", ondelete="CASCADE"), nullable=True, index=True)
    platform = Column(String, nullable=False)
    topic = Column(String, nullable=False, index=True)  # e.g. charge.succeeded, orders/paid
    external_id = Column(String, nullable=True, index=True)  # Platform event/record id
    status = Column(String, default="received", index=True)  # received, processed, ignored, failed
    records_applied = Column(Integer, default=0)
    error = Column(Text, nullable=True)

    received_at = Column(DateTime, default=utcnow, index=True)
    processed_at = Column(DateTime, nullable=True)
