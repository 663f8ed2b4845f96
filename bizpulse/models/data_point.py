"""
DataPoint model

One normalized metric value per integration, metric type and day.
"""
from sqlalchemy import Column, Integer, String, Date, DateTime, JSON, Numeric, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship

from bizpulse.models.base import Base
from bizpulse.utils.helpers import utcnow


class DataPoint(Base):
    """Daily metric observation (revenue, orders, customers, sessions, mrr, ...)"""
    __tablename__ = "data_points"
    __table_args__ = (
        UniqueConstraint("integration_id", "metric_type", "date_recorded", name="uq_data_point_day"),
        Index("ix_data_points_metric_date", "metric_type", "date_recorded"),
    )

    id = Column(Integer, primary_key=True, index=True)
    integration_id = Column(Integer, ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False, index=True)
    metric_type = Column(String, nullable=False)
    value = Column(Numeric(18, 4), nullable=False, default=0)
    date_recorded = Column(Date, nullable=False, index=True)

    # Tagged-union metadata, see bizpulse.schemas.PointMetadata
    meta = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    integration = relationship("Integration", back_populates="data_points")
