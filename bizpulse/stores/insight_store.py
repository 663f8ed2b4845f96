"""
Insight store

Persistence for generated insights plus the read-side queries the
consumption API needs (filters, pagination, summary).
"""
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from bizpulse.models.base import SessionLocal
from bizpulse.models.insight import Insight
from bizpulse.schemas import InsightData, InsightFilters, InsightPage, InsightRecord, InsightSummary
from bizpulse.utils.helpers import utcnow


class InsightStore(ABC):
    """Storage contract for insights"""

    @abstractmethod
    def create_many(self, organization_id: str, insights: Iterable[InsightData]) -> List[InsightRecord]:
        """Persist a generated batch"""

    @abstractmethod
    def delete_older_than(self, organization_id: Optional[str], cutoff: datetime) -> int:
        """Delete insights created before ``cutoff``; all organizations when None"""

    @abstractmethod
    def prune_to_newest(self, organization_id: str, keep: int) -> int:
        """Keep only the newest ``keep`` insights for an organization"""

    @abstractmethod
    def list_recent(
        self,
        organization_id: str,
        limit: int = 10,
        since: Optional[datetime] = None
    ) -> List[InsightRecord]:
        """Newest first"""

    @abstractmethod
    def list_page(
        self,
        organization_id: str,
        filters: Optional[InsightFilters] = None,
        page: int = 1,
        limit: int = 20
    ) -> InsightPage:
        """Filtered, paginated listing"""

    @abstractmethod
    def mark_read(
        self,
        organization_id: str,
        insight_ids: Optional[Sequence[int]] = None,
        read: bool = True
    ) -> int:
        """Set is_read on the given insights, or on all of them when ids is None"""

    @abstractmethod
    def summary(self, organization_id: str) -> InsightSummary:
        """Counts by type, urgency and read state"""


def to_record(row: Insight) -> InsightRecord:
    return InsightRecord(
        id=row.id,
        organization_id=row.organization_id,
        type=row.type,
        title=row.title,
        description=row.description or "",
        impact_score=row.impact_score,
        confidence=row.confidence,
        category=row.category,
        urgency=row.urgency,
        actionable=bool(row.actionable),
        is_read=bool(row.is_read),
        metadata=row.meta,
        created_at=row.created_at,
    )


class SqlInsightStore(InsightStore):
    """SQLAlchemy implementation"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def create_many(self, organization_id, insights) -> List[InsightRecord]:
        db = self._session_factory()
        try:
            now = utcnow()
            rows = []
            for insight in insights:
                row = Insight(
                    organization_id=organization_id,
                    type=insight.type,
                    title=insight.title,
                    description=insight.description,
                    impact_score=float(insight.impact_score),
                    confidence=int(insight.confidence),
                    category=insight.category,
                    urgency=insight.urgency,
                    actionable=insight.actionable,
                    is_read=False,
                    meta=insight.model_dump(mode="json")["metadata"],
                    created_at=now,
                )
                db.add(row)
                rows.append(row)
            db.commit()
            return [to_record(row) for row in rows]
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete_older_than(self, organization_id, cutoff) -> int:
        db = self._session_factory()
        try:
            query = db.query(Insight).filter(Insight.created_at < cutoff)
            if organization_id is not None:
                query = query.filter(Insight.organization_id == organization_id)
            deleted = query.delete(synchronize_session=False)
            db.commit()
            return deleted
        finally:
            db.close()

    def prune_to_newest(self, organization_id, keep) -> int:
        db = self._session_factory()
        try:
            stale_ids = [
                row_id for (row_id,) in db.query(Insight.id)
                .filter(Insight.organization_id == organization_id)
                .order_by(Insight.created_at.desc(), Insight.id.asc())
                .offset(keep)
                .all()
            ]
            if not stale_ids:
                return 0
            deleted = db.query(Insight).filter(Insight.id.in_(stale_ids)).delete(synchronize_session=False)
            db.commit()
            return deleted
        finally:
            db.close()

    def list_recent(self, organization_id, limit=10, since=None) -> List[InsightRecord]:
        db = self._session_factory()
        try:
            query = db.query(Insight).filter(Insight.organization_id == organization_id)
            if since is not None:
                query = query.filter(Insight.created_at >= since)
            rows = query.order_by(Insight.created_at.desc(), Insight.id.asc()).limit(limit).all()
            return [to_record(row) for row in rows]
        finally:
            db.close()

    def list_page(self, organization_id, filters=None, page=1, limit=20) -> InsightPage:
        filters = filters or InsightFilters()
        page = max(page, 1)
        limit = max(min(limit, 100), 1)

        db = self._session_factory()
        try:
            query = db.query(Insight).filter(Insight.organization_id == organization_id)
            if filters.type is not None:
                query = query.filter(Insight.type == filters.type.value)
            if filters.category is not None:
                query = query.filter(Insight.category == filters.category.value)
            if filters.urgency is not None:
                query = query.filter(Insight.urgency == filters.urgency.value)
            if filters.is_read is not None:
                query = query.filter(Insight.is_read == filters.is_read)
            if filters.actionable is not None:
                query = query.filter(Insight.actionable == filters.actionable)
            if filters.since is not None:
                query = query.filter(Insight.created_at >= filters.since)

            total = query.count()
            rows = (
                query.order_by(Insight.created_at.desc(), Insight.id.asc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            return InsightPage(items=[to_record(row) for row in rows], total=total, page=page, limit=limit)
        finally:
            db.close()

    def mark_read(self, organization_id, insight_ids=None, read=True) -> int:
        db = self._session_factory()
        try:
            query = db.query(Insight).filter(Insight.organization_id == organization_id)
            if insight_ids is not None:
                if not insight_ids:
                    return 0
                query = query.filter(Insight.id.in_(list(insight_ids)))
            updated = query.update({Insight.is_read: read}, synchronize_session=False)
            db.commit()
            return updated
        finally:
            db.close()

    def summary(self, organization_id) -> InsightSummary:
        db = self._session_factory()
        try:
            rows = db.query(
                Insight.type, Insight.urgency, Insight.is_read, Insight.impact_score, Insight.created_at
            ).filter(Insight.organization_id == organization_id).all()
        finally:
            db.close()

        if not rows:
            return InsightSummary()

        unread = sum(1 for row in rows if not row.is_read)
        return InsightSummary(
            total=len(rows),
            unread=unread,
            by_type=dict(Counter(row.type for row in rows)),
            by_urgency=dict(Counter(row.urgency for row in rows)),
            by_read_state={"read": len(rows) - unread, "unread": unread},
            avg_impact_score=round(sum(row.impact_score for row in rows) / len(rows), 2),
            last_generated=max(row.created_at for row in rows),
        )
