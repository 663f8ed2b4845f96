"""
Insight model

Ranked findings produced by the insights engine. Immutable after creation
apart from is_read.
"""
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, JSON, Text, Index

from bizpulse.models.base import Base
from bizpulse.utils.helpers import utcnow


class Insight(Base):
    """Derived, human-readable finding about an organization's metrics"""
    __tablename__ = "insights"
    __table_args__ = (
        Index("ix_insights_org_created", "organization_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String, nullable=False, index=True)

    type = Column(String, nullable=False, index=True)  # trend, anomaly, recommendation, opportunity, alert
    title = Column(String, nullable=False)
    description = Column(Text)
    impact_score = Column(Float, nullable=False)  # 0-10
    confidence = Column(Integer, nullable=False)  # 0-100
    category = Column(String, index=True)  # revenue, customers, performance, growth, payments
    urgency = Column(String, index=True)  # low, medium, high, critical
    actionable = Column(Boolean, default=True)
    is_read = Column(Boolean, default=False, index=True)

    # Supporting numbers and generation window
    meta = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=utcnow, index=True)
