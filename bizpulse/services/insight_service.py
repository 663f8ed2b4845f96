"""
Insight consumption service

Read/mark/summarize operations used by the API and notification layers,
plus the on-demand generation trigger.
"""
from datetime import timedelta
from typing import List, Optional, Sequence

from bizpulse.schemas import (
    InsightFilters,
    InsightPage,
    InsightRecord,
    InsightSummary,
    Urgency,
)
from bizpulse.services.insights_engine import InsightRun, InsightsEngine
from bizpulse.stores.insight_store import InsightStore
from bizpulse.utils.helpers import utcnow
from bizpulse.utils.logger import log

HIGH_PRIORITY_URGENCIES = (Urgency.HIGH.value, Urgency.CRITICAL.value)


class InsightService:
    def __init__(self, engine: InsightsEngine, insight_store: InsightStore):
        self.engine = engine
        self.insight_store = insight_store

    def generate(self, organization_id: str, timeframe_days: Optional[int] = None) -> InsightRun:
        log.info(f"On-demand insight generation for organization {organization_id}")
        return self.engine.run(organization_id, timeframe_days)

    def list_insights(
        self,
        organization_id: str,
        filters: Optional[InsightFilters] = None,
        page: int = 1,
        limit: int = 20,
    ) -> InsightPage:
        return self.insight_store.list_page(organization_id, filters, page, limit)

    def recent(self, organization_id: str, limit: int = 10, days: Optional[int] = None) -> List[InsightRecord]:
        since = utcnow() - timedelta(days=days) if days else None
        return self.insight_store.list_recent(organization_id, limit=limit, since=since)

    def actionable(self, organization_id: str, limit: int = 20) -> List[InsightRecord]:
        """Unread actionable insights, newest first"""
        page = self.insight_store.list_page(
            organization_id, InsightFilters(actionable=True, is_read=False), page=1, limit=limit
        )
        return page.items

    def high_priority(self, organization_id: str, limit: int = 10) -> List[InsightRecord]:
        """Unread high and critical insights, highest priority first"""
        page = self.insight_store.list_page(
            organization_id, InsightFilters(is_read=False), page=1, limit=100
        )
        urgent = [i for i in page.items if i.urgency in HIGH_PRIORITY_URGENCIES]
        return sorted(urgent, key=lambda i: i.priority, reverse=True)[:limit]

    def mark_read(self, organization_id: str, insight_ids: Optional[Sequence[int]] = None, read: bool = True) -> int:
        """Mark the given insights (or all of them when ``insight_ids`` is None)"""
        updated = self.insight_store.mark_read(organization_id, insight_ids, read)
        log.info(f"Marked {updated} insights {'read' if read else 'unread'} for organization {organization_id}")
        return updated

    def summary(self, organization_id: str) -> InsightSummary:
        return self.insight_store.summary(organization_id)
