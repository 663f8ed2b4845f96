"""
Metric store

Append/query interface over daily data points. All writes are keyed by
(integration, metric type, day), so re-running a sync or replaying a
webhook rewrites the same rows instead of adding new ones.
"""
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bizpulse.models.base import SessionLocal
from bizpulse.models.data_point import DataPoint
from bizpulse.models.webhook_event import WebhookEvent
from bizpulse.schemas import DailyValue, DateRange, MetricAggregate, MetricPoint, parse_point_metadata
from bizpulse.utils.helpers import chunk_list, to_decimal
from bizpulse.utils.logger import log

PointKey = Tuple[int, str, date]

VALUE_SCALE = Decimal("0.0001")  # Matches Numeric(18, 4)


class MetricStore(ABC):
    """Storage contract used by connectors and the insights engine"""

    @abstractmethod
    def upsert_data_points(self, points: Iterable[MetricPoint], merge: bool = False) -> int:
        """
        Insert or update points by their natural key.

        ``merge=False`` replaces the stored value and metadata (bulk sync);
        ``merge=True`` folds per-record contributions into the stored day
        (webhooks). Returns the number of rows inserted or changed.
        """

    @abstractmethod
    def clear_missing(
        self,
        integration_id: int,
        metric_types: Sequence[str],
        date_range: DateRange,
        keep: Iterable[PointKey]
    ) -> int:
        """
        Zero stored days in a fully re-fetched range that got no points.

        Keys in ``keep`` were just written and are left alone. Returns the
        number of rows changed.
        """

    @abstractmethod
    def query_aggregate(
        self,
        integration_ids: Sequence[int],
        metric_type: str,
        date_range: DateRange
    ) -> MetricAggregate:
        """Sum, average and count of daily values"""

    @abstractmethod
    def query_daily(
        self,
        integration_ids: Sequence[int],
        metric_types: Sequence[str],
        date_range: DateRange
    ) -> List[DailyValue]:
        """Per-day totals across the given integrations"""

    @abstractmethod
    def query_points(
        self,
        integration_ids: Sequence[int],
        metric_types: Sequence[str],
        date_range: DateRange
    ) -> List[MetricPoint]:
        """Raw points with metadata, for breakdown analyses"""

    @abstractmethod
    def latest_point(self, integration_id: int, metric_type: str, on_or_before: date) -> Optional[MetricPoint]:
        """Most recent point for a metric, used to seed snapshot metrics"""

    @abstractmethod
    def delete_older_than(self, entity: str, cutoff: Union[date, datetime]) -> int:
        """Retention cleanup for data_points or webhook_events"""


def _emptied_meta(meta: Optional[Dict]) -> Dict:
    """Stored metadata with its per-record breakdowns removed"""
    emptied = dict(meta or {})
    for field in ("contributions", "sources", "failure_codes"):
        if field in emptied:
            emptied[field] = {}
    return emptied


class SqlMetricStore(MetricStore):
    """SQLAlchemy implementation; one transaction per upsert chunk"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, batch_size: int = 1000):
        self._session_factory = session_factory
        self.batch_size = batch_size

    # ── Writes ───────────────────────────────────────────

    def upsert_data_points(self, points: Iterable[MetricPoint], merge: bool = False) -> int:
        points = list(points)
        if not points:
            return 0

        written = 0
        for chunk in chunk_list(points, self.batch_size):
            written += self._upsert_chunk(self._collapse(chunk, merge), merge)
        return written

    def _collapse(self, chunk: List[MetricPoint], merge: bool) -> Dict[PointKey, MetricPoint]:
        """Resolve repeated keys inside one batch before touching the database"""
        by_key: Dict[PointKey, MetricPoint] = {}
        for point in chunk:
            previous = by_key.get(point.key)
            if previous is not None and merge:
                point = self._merge_point(previous, point)
            by_key[point.key] = point
        return by_key

    @staticmethod
    def _merge_point(existing: MetricPoint, incoming: MetricPoint) -> MetricPoint:
        metadata = existing.metadata.merged_with(incoming.metadata)
        value = metadata.contribution_total() if metadata.contributions else incoming.value
        return MetricPoint(
            integration_id=incoming.integration_id,
            metric_type=incoming.metric_type,
            date_recorded=incoming.date_recorded,
            value=value,
            metadata=metadata,
        )

    def _upsert_chunk(self, by_key: Dict[PointKey, MetricPoint], merge: bool) -> int:
        # A concurrent writer can insert the same key between our read and
        # our insert; the second pass sees that row and updates it instead.
        for attempt in (1, 2):
            db = self._session_factory()
            try:
                written = self._apply_chunk(db, by_key, merge)
                db.commit()
                return written
            except IntegrityError as e:
                db.rollback()
                if attempt == 2:
                    raise
                log.warning(f"Upsert conflict on {len(by_key)} points, retrying chunk: {e.orig}")
            finally:
                db.close()
        return 0

    def _apply_chunk(self, db: Session, by_key: Dict[PointKey, MetricPoint], merge: bool) -> int:
        integration_ids = {key[0] for key in by_key}
        metric_types = {key[1] for key in by_key}
        days = [key[2] for key in by_key]

        existing_rows = db.query(DataPoint).filter(
            DataPoint.integration_id.in_(integration_ids),
            DataPoint.metric_type.in_(metric_types),
            DataPoint.date_recorded >= min(days),
            DataPoint.date_recorded <= max(days),
        ).all()
        existing = {(row.integration_id, row.metric_type, row.date_recorded): row for row in existing_rows}

        written = 0
        for key, point in by_key.items():
            row = existing.get(key)
            if row is None:
                db.add(DataPoint(
                    integration_id=point.integration_id,
                    metric_type=point.metric_type,
                    date_recorded=point.date_recorded,
                    value=point.value.quantize(VALUE_SCALE),
                    meta=point.metadata.model_dump(mode="json"),
                ))
                written += 1
                continue

            if merge:
                stored = MetricPoint(
                    integration_id=row.integration_id,
                    metric_type=row.metric_type,
                    date_recorded=row.date_recorded,
                    value=to_decimal(row.value, Decimal("0")),
                    metadata=parse_point_metadata(row.meta, point.metadata.source),
                )
                point = self._merge_point(stored, point)

            new_meta = point.metadata.model_dump(mode="json")
            new_value = point.value.quantize(VALUE_SCALE)
            if to_decimal(row.value) == new_value and row.meta == new_meta:
                continue  # Identical, nothing to write

            row.value = new_value
            row.meta = new_meta
            written += 1

        return written

    def clear_missing(self, integration_id, metric_types, date_range, keep) -> int:
        if not metric_types:
            return 0
        keep = set(keep)

        db = self._session_factory()
        try:
            query = db.query(DataPoint).filter(DataPoint.metric_type.in_(list(metric_types)))
            rows = self._range_filter(query, [integration_id], date_range).all()

            cleared = 0
            for row in rows:
                if (row.integration_id, row.metric_type, row.date_recorded) in keep:
                    continue
                meta = _emptied_meta(row.meta)
                if to_decimal(row.value, Decimal("0")) == 0 and row.meta == meta:
                    continue
                row.value = Decimal("0").quantize(VALUE_SCALE)
                row.meta = meta
                cleared += 1

            db.commit()
            if cleared:
                log.info(f"Zeroed {cleared} days with no remaining records for integration {integration_id}")
            return cleared
        finally:
            db.close()

    def delete_older_than(self, entity: str, cutoff: Union[date, datetime]) -> int:
        db = self._session_factory()
        try:
            if entity == "data_points":
                cutoff_day = cutoff.date() if isinstance(cutoff, datetime) else cutoff
                query = db.query(DataPoint).filter(DataPoint.date_recorded < cutoff_day)
            elif entity == "webhook_events":
                query = db.query(WebhookEvent).filter(WebhookEvent.received_at < cutoff)
            else:
                raise ValueError(f"Unknown entity for cleanup: {entity}")

            deleted = query.delete(synchronize_session=False)
            db.commit()
            return deleted
        finally:
            db.close()

    # ── Reads ────────────────────────────────────────────

    def _range_filter(self, query, integration_ids: Sequence[int], date_range: DateRange):
        return query.filter(
            DataPoint.integration_id.in_(list(integration_ids)),
            DataPoint.date_recorded >= date_range.start,
            DataPoint.date_recorded < date_range.end,
        )

    def query_aggregate(self, integration_ids, metric_type, date_range) -> MetricAggregate:
        if not integration_ids:
            return MetricAggregate()

        db = self._session_factory()
        try:
            query = db.query(
                func.sum(DataPoint.value),
                func.avg(DataPoint.value),
                func.count(DataPoint.id),
            ).filter(DataPoint.metric_type == metric_type)
            total, average, count = self._range_filter(query, integration_ids, date_range).one()
        finally:
            db.close()

        return MetricAggregate(
            sum=to_decimal(total, Decimal("0")),
            avg=to_decimal(average, Decimal("0")),
            count=int(count or 0),
        )

    def query_daily(self, integration_ids, metric_types, date_range) -> List[DailyValue]:
        if not integration_ids or not metric_types:
            return []

        db = self._session_factory()
        try:
            query = db.query(
                DataPoint.date_recorded,
                DataPoint.metric_type,
                func.sum(DataPoint.value),
            ).filter(DataPoint.metric_type.in_(list(metric_types)))
            rows = (
                self._range_filter(query, integration_ids, date_range)
                .group_by(DataPoint.date_recorded, DataPoint.metric_type)
                .order_by(DataPoint.date_recorded, DataPoint.metric_type)
                .all()
            )
        finally:
            db.close()

        return [
            DailyValue(date=day, metric_type=metric, value=to_decimal(total, Decimal("0")))
            for day, metric, total in rows
        ]

    def query_points(self, integration_ids, metric_types, date_range) -> List[MetricPoint]:
        if not integration_ids or not metric_types:
            return []

        db = self._session_factory()
        try:
            query = db.query(DataPoint).filter(DataPoint.metric_type.in_(list(metric_types)))
            rows = self._range_filter(query, integration_ids, date_range).order_by(DataPoint.date_recorded).all()
            return [self._to_point(row) for row in rows]
        finally:
            db.close()

    def latest_point(self, integration_id, metric_type, on_or_before) -> Optional[MetricPoint]:
        db = self._session_factory()
        try:
            row = (
                db.query(DataPoint)
                .filter(
                    DataPoint.integration_id == integration_id,
                    DataPoint.metric_type == metric_type,
                    DataPoint.date_recorded <= on_or_before,
                )
                .order_by(DataPoint.date_recorded.desc())
                .first()
            )
            return self._to_point(row) if row else None
        finally:
            db.close()

    @staticmethod
    def _to_point(row: DataPoint) -> MetricPoint:
        return MetricPoint(
            integration_id=row.integration_id,
            metric_type=row.metric_type,
            date_recorded=row.date_recorded,
            value=to_decimal(row.value, Decimal("0")),
            metadata=parse_point_metadata(row.meta),
        )
