"""
Typed records shared across connectors, stores and services.

Metadata stored on DataPoint and Insight rows is a tagged union keyed by
``kind``; each shape is validated when a connector or analysis builds it,
so readers can rely on the fields being present.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ── Enumerations ─────────────────────────────────────────

class Platform(str, Enum):
    STRIPE = "stripe"
    SHOPIFY = "shopify"
    GOOGLE_ANALYTICS = "google_analytics"


class IntegrationStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SYNCING = "syncing"
    ERROR = "error"
    INACTIVE = "inactive"


class MetricType(str, Enum):
    REVENUE = "revenue"
    ORDERS = "orders"
    CUSTOMERS = "customers"
    REFUNDS = "refunds"
    FAILED_CHARGES = "failed_charges"
    DISPUTES = "disputes"
    MRR = "mrr"
    SESSIONS = "sessions"
    USERS = "users"
    PAGEVIEWS = "pageviews"
    TRAFFIC_SOURCES = "traffic_sources"


class InsightType(str, Enum):
    TREND = "trend"
    ANOMALY = "anomaly"
    RECOMMENDATION = "recommendation"
    OPPORTUNITY = "opportunity"
    ALERT = "alert"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


URGENCY_WEIGHTS = {
    Urgency.LOW.value: 1,
    Urgency.MEDIUM.value: 2,
    Urgency.HIGH.value: 3,
    Urgency.CRITICAL.value: 4,
}


class InsightCategory(str, Enum):
    REVENUE = "revenue"
    CUSTOMERS = "customers"
    PERFORMANCE = "performance"
    GROWTH = "growth"
    PAYMENTS = "payments"


# ── Data point metadata ──────────────────────────────────

class _PointMetadataBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source: str
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    # record id -> value; the day's value is their sum when present
    contributions: Dict[str, Decimal] = Field(default_factory=dict)
    extras: Dict[str, Any] = Field(default_factory=dict)

    def merged_with(self, incoming: "_PointMetadataBase"):
        """Fold a newer observation for the same day into this one"""
        merged = self.model_copy(deep=True)
        merged.contributions.update(incoming.contributions)
        merged.extras.update(incoming.extras)
        seen = [ts for ts in (self.first_seen_at, incoming.first_seen_at) if ts]
        merged.first_seen_at = min(seen) if seen else None
        seen = [ts for ts in (self.last_seen_at, incoming.last_seen_at) if ts]
        merged.last_seen_at = max(seen) if seen else None
        return merged

    def contribution_total(self) -> Decimal:
        return sum(self.contributions.values(), Decimal("0"))


class AmountMetadata(_PointMetadataBase):
    kind: Literal["amount"] = "amount"
    currency: Optional[str] = None


class CountMetadata(_PointMetadataBase):
    kind: Literal["count"] = "count"


class RecurringMetadata(_PointMetadataBase):
    """MRR snapshot; contributions are subscription id -> monthly value"""
    kind: Literal["recurring"] = "recurring"
    currency: Optional[str] = None


class SourceStats(BaseModel):
    sessions: int = 0
    conversions: int = 0


class TrafficMetadata(_PointMetadataBase):
    kind: Literal["traffic"] = "traffic"
    sources: Dict[str, SourceStats] = Field(default_factory=dict)

    def merged_with(self, incoming):
        merged = super().merged_with(incoming)
        if isinstance(incoming, TrafficMetadata):
            merged.sources.update(incoming.sources)
        return merged


class RiskMetadata(_PointMetadataBase):
    """Failed charges and disputes"""
    kind: Literal["risk"] = "risk"
    currency: Optional[str] = None
    failure_codes: Dict[str, int] = Field(default_factory=dict)

    def merged_with(self, incoming):
        merged = super().merged_with(incoming)
        if isinstance(incoming, RiskMetadata):
            for code, count in incoming.failure_codes.items():
                merged.failure_codes[code] = max(merged.failure_codes.get(code, 0), count)
        return merged


PointMetadata = Annotated[
    Union[AmountMetadata, CountMetadata, RecurringMetadata, TrafficMetadata, RiskMetadata],
    Field(discriminator="kind"),
]

_point_metadata_adapter = TypeAdapter(PointMetadata)


def parse_point_metadata(raw: Optional[Dict[str, Any]], source: str = "unknown"):
    """Load stored JSON back into its typed shape"""
    if not raw:
        return CountMetadata(source=source)
    return _point_metadata_adapter.validate_python(raw)


@dataclass
class MetricPoint:
    """A data point on its way into, or out of, the metric store"""
    integration_id: int
    metric_type: str
    date_recorded: date
    value: Decimal
    metadata: Any  # PointMetadata

    @property
    def key(self):
        return (self.integration_id, self.metric_type, self.date_recorded)


@dataclass(frozen=True)
class DateRange:
    """Half-open calendar range [start, end)"""
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end


@dataclass
class MetricAggregate:
    sum: Decimal = Decimal("0")
    avg: Decimal = Decimal("0")
    count: int = 0


@dataclass
class DailyValue:
    date: date
    metric_type: str
    value: Decimal


# ── Sync results ─────────────────────────────────────────

@dataclass
class StepStats:
    """Counters for one sync step (one remote resource)"""
    fetched: int = 0
    skipped: int = 0  # Provisional/failed records left out of revenue
    invalid: int = 0  # Records dropped for missing fields
    points_written: int = 0
    pages: int = 0
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fetched": self.fetched,
            "skipped": self.skipped,
            "invalid": self.invalid,
            "points_written": self.points_written,
            "pages": self.pages,
            "truncated": self.truncated,
        }


@dataclass
class SyncResult:
    """Outcome of one integration sync; partial success keeps its stats"""
    integration_id: Optional[int]
    platform: str
    success: bool = False
    steps: Dict[str, StepStats] = field(default_factory=dict)
    step_errors: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[str] = None  # credential, transient, data, remote, internal
    primary_step: Optional[str] = None
    window_start: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def records_synced(self) -> int:
        return sum(step.points_written for step in self.steps.values())

    @property
    def primary_failed(self) -> bool:
        return self.primary_step is not None and self.primary_step in self.step_errors

    @property
    def duration_seconds(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "integration_id": self.integration_id,
            "platform": self.platform,
            "success": self.success,
            "records_synced": self.records_synced,
            "steps": {name: stats.to_dict() for name, stats in self.steps.items()},
            "step_errors": dict(self.step_errors),
            "error": self.error,
            "error_kind": self.error_kind,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "duration_seconds": round(self.duration_seconds, 2),
        }


@dataclass
class WebhookResult:
    success: bool
    topic: str
    processed: int = 0
    status_directive: Optional[str] = None  # Integration status to apply, e.g. inactive
    detail: Optional[str] = None
    error: Optional[str] = None


# ── Insights ─────────────────────────────────────────────

class InsightWindow(BaseModel):
    current_start: date
    current_end: date
    previous_start: Optional[date] = None
    previous_end: Optional[date] = None


class _InsightMetadataBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    window: Optional[InsightWindow] = None
    extras: Dict[str, Any] = Field(default_factory=dict)


class TrendMetadata(_InsightMetadataBase):
    kind: Literal["trend"] = "trend"
    metric: str
    current_value: Decimal
    previous_value: Decimal
    percent_change: Decimal
    threshold: float


class AnomalyMetadata(_InsightMetadataBase):
    kind: Literal["anomaly"] = "anomaly"
    metric: str
    date: date
    value: Decimal
    mean: Decimal
    std_dev: Decimal
    z_score: Decimal
    deviation_pct: Decimal
    direction: Literal["spike", "drop"]
    sample_size: int


class RuleMetadata(_InsightMetadataBase):
    kind: Literal["rule"] = "rule"
    rule: str
    observed: Dict[str, Decimal] = Field(default_factory=dict)
    thresholds: Dict[str, float] = Field(default_factory=dict)


class OpportunityMetadata(_InsightMetadataBase):
    kind: Literal["opportunity"] = "opportunity"
    dimension: str
    best_source: str
    conversion_rate: Decimal
    traffic_share: Decimal
    overall_conversion_rate: Decimal
    advantage: Decimal
    sources: Dict[str, SourceStats] = Field(default_factory=dict)


class CustomerBehaviorMetadata(_InsightMetadataBase):
    kind: Literal["customer_behavior"] = "customer_behavior"
    band: Literal["strong", "typical", "weak"]
    orders: Decimal
    customers: Decimal
    revenue: Decimal
    orders_per_customer: Decimal
    revenue_per_customer: Decimal


class OnboardingMetadata(_InsightMetadataBase):
    kind: Literal["onboarding"] = "onboarding"
    step: str


InsightMetadata = Annotated[
    Union[
        TrendMetadata,
        AnomalyMetadata,
        RuleMetadata,
        OpportunityMetadata,
        CustomerBehaviorMetadata,
        OnboardingMetadata,
    ],
    Field(discriminator="kind"),
]


class InsightData(BaseModel):
    """An insight before it is persisted"""
    model_config = ConfigDict(use_enum_values=True)

    type: InsightType
    title: str
    description: str
    impact_score: float = Field(ge=0, le=10)
    confidence: int = Field(ge=0, le=100)
    category: InsightCategory
    urgency: Urgency
    actionable: bool = True
    metadata: InsightMetadata

    @property
    def priority(self) -> float:
        return self.impact_score * URGENCY_WEIGHTS[Urgency(self.urgency).value]


class InsightRecord(InsightData):
    """A persisted insight"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: str
    is_read: bool = False
    created_at: datetime


class InsightFilters(BaseModel):
    type: Optional[InsightType] = None
    category: Optional[InsightCategory] = None
    urgency: Optional[Urgency] = None
    is_read: Optional[bool] = None
    actionable: Optional[bool] = None
    since: Optional[datetime] = None


class InsightSummary(BaseModel):
    total: int = 0
    unread: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_urgency: Dict[str, int] = Field(default_factory=dict)
    by_read_state: Dict[str, int] = Field(default_factory=dict)
    avg_impact_score: float = 0.0
    last_generated: Optional[datetime] = None


class InsightPage(BaseModel):
    items: List[InsightRecord]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0
