"""
Record normalization helpers

Connectors turn remote records into per-day buckets here, so every
platform produces DataPoints with the same key and metadata rules.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from bizpulse.errors import DataShapeError
from bizpulse.schemas import (
    AmountMetadata,
    CountMetadata,
    MetricPoint,
    RecurringMetadata,
    RiskMetadata,
    TrafficMetadata,
)

ModelT = TypeVar("ModelT", bound=BaseModel)

METADATA_KINDS = {
    "amount": AmountMetadata,
    "count": CountMetadata,
    "recurring": RecurringMetadata,
    "risk": RiskMetadata,
    "traffic": TrafficMetadata,
}


def validate_record(model: Type[ModelT], record: Any, platform: str) -> ModelT:
    """Validate a remote record at the connector boundary"""
    if not isinstance(record, dict):
        raise DataShapeError(f"{platform} record is not an object: {type(record).__name__}", platform)
    try:
        return model.model_validate(record)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise DataShapeError(
            f"{platform} {model.__name__} {record.get('id', '?')} missing/invalid: {fields}",
            platform,
        ) from e


class DailyAccumulator:
    """
    Buckets normalized values by (metric type, day).

    ``add`` records a per-record contribution (the day's value is their
    sum); ``set_total`` records a platform-aggregated value directly, as
    analytics reports already arrive summed per day.
    """

    def __init__(self, integration_id: int, source: str):
        self.integration_id = integration_id
        self.source = source
        self._metadata: Dict[Tuple[str, date], Any] = {}
        self._totals: Dict[Tuple[str, date], Decimal] = {}

    def __len__(self):
        return len(self._metadata)

    def _bucket(self, metric_type: str, day: date, kind: str, currency: Optional[str] = None):
        key = (metric_type, day)
        metadata = self._metadata.get(key)
        if metadata is None:
            fields = {"source": self.source}
            if currency is not None and kind in ("amount", "recurring", "risk"):
                fields["currency"] = currency.lower()
            metadata = METADATA_KINDS[kind](**fields)
            self._metadata[key] = metadata
        return metadata

    def add(
        self,
        metric_type: str,
        occurred_at: datetime,
        record_id: Any,
        value: Decimal,
        kind: str = "amount",
        currency: Optional[str] = None,
        failure_code: Optional[str] = None,
        day: Optional[date] = None,
    ):
        metadata = self._bucket(metric_type, day or occurred_at.date(), kind, currency)
        metadata.contributions[str(record_id)] = value
        if occurred_at is not None:
            if metadata.first_seen_at is None or occurred_at < metadata.first_seen_at:
                metadata.first_seen_at = occurred_at
            if metadata.last_seen_at is None or occurred_at > metadata.last_seen_at:
                metadata.last_seen_at = occurred_at
        if failure_code and isinstance(metadata, RiskMetadata):
            metadata.failure_codes[failure_code] = metadata.failure_codes.get(failure_code, 0) + 1

    def seed(self, metric_type: str, day: date, contributions: Dict[str, Decimal], kind: str, currency: Optional[str] = None):
        """Start a bucket from an earlier snapshot's contributions"""
        metadata = self._bucket(metric_type, day, kind, currency)
        for record_id, value in contributions.items():
            metadata.contributions.setdefault(record_id, value)

    def set_total(self, metric_type: str, day: date, value: Decimal, kind: str = "count", **fields):
        metadata = self._bucket(metric_type, day, kind)
        for name, field_value in fields.items():
            setattr(metadata, name, field_value)
        self._totals[(metric_type, day)] = value

    def points(self) -> List[MetricPoint]:
        points = []
        for (metric_type, day), metadata in sorted(self._metadata.items(), key=lambda item: (item[0][1], item[0][0])):
            value = self._totals.get((metric_type, day))
            if value is None:
                value = metadata.contribution_total()
            points.append(MetricPoint(
                integration_id=self.integration_id,
                metric_type=metric_type,
                date_recorded=day,
                value=value,
                metadata=metadata,
            ))
        return points
