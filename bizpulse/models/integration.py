"""
Integration model

One row per connected external account (Stripe account, Shopify shop,
GA4 property) belonging to an organization.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from bizpulse.models.base import Base
from bizpulse.utils.helpers import utcnow


class Integration(Base):
    """
    Connected platform account

    Status moves pending -> active <-> syncing, and to error on credential
    or primary-sync failure; inactive once disconnected or uninstalled.
    """
    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("organization_id", "platform", "platform_account_id", name="uq_integration_account"),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False, index=True)  # stripe, shopify, google_analytics
    platform_account_id = Column(String, nullable=False)  # acct id, shop domain, GA4 property id

    # Credentials
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    # Sync state
    status = Column(String, default="pending", index=True)  # pending, active, syncing, error, inactive
    last_sync_at = Column(DateTime, nullable=True, index=True)
    roster_synced_at = Column(DateTime, nullable=True)  # Last low-frequency (customer) sync
    last_error = Column(Text, nullable=True)

    meta = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    data_points = relationship(
        "DataPoint",
        back_populates="integration",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<Integration {self.id} {self.platform}:{self.platform_account_id} ({self.status})>"
