"""
Insights Engine
Turns an organization's accumulated data points into ranked, persisted insights
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from bizpulse.config import Settings, get_settings
from bizpulse.schemas import (
    DateRange,
    InsightData,
    InsightRecord,
    InsightWindow,
    MetricType,
    SourceStats,
    TrafficMetadata,
)
from bizpulse.services import insight_analyses as analyses
from bizpulse.stores.insight_store import InsightStore
from bizpulse.stores.integration_store import IntegrationStore
from bizpulse.stores.metric_store import MetricStore
from bizpulse.utils.helpers import utcnow
from bizpulse.utils.logger import log

# Metrics summed over each period
SUMMED_METRICS = (
    MetricType.REVENUE.value,
    MetricType.REFUNDS.value,
    MetricType.ORDERS.value,
    MetricType.CUSTOMERS.value,
    MetricType.FAILED_CHARGES.value,
    MetricType.SESSIONS.value,
)

# Metrics scanned day by day for anomalies
ANOMALY_METRICS = (
    MetricType.REVENUE.value,
    MetricType.ORDERS.value,
    MetricType.SESSIONS.value,
)


@dataclass
class InsightRun:
    """Outcome of one generation run for one organization"""
    organization_id: str
    window: InsightWindow
    insights: List[InsightRecord] = field(default_factory=list)
    generated: int = 0  # Before ranking and the top-N cap
    onboarding: bool = False
    analysis_errors: Dict[str, str] = field(default_factory=dict)
    deleted: int = 0


def build_window(timeframe_days: int, today: date) -> InsightWindow:
    """Trailing ``timeframe_days`` ending today, plus the equal-length baseline before it"""
    current_end = today + timedelta(days=1)
    current_start = current_end - timedelta(days=timeframe_days)
    return InsightWindow(
        current_start=current_start,
        current_end=current_end,
        previous_start=current_start - timedelta(days=timeframe_days),
        previous_end=current_start,
    )


class InsightsEngine:
    """
    Runs the analysis battery for one organization.

    Each analysis fails independently; a failing analysis is logged and
    reported in the run, and the remaining analyses still contribute.
    """

    def __init__(
        self,
        metric_store: MetricStore,
        insight_store: InsightStore,
        integration_store: IntegrationStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.metric_store = metric_store
        self.insight_store = insight_store
        self.integration_store = integration_store
        self.settings = settings or get_settings()
        self.clock = clock

    # ── Data gathering ───────────────────────────────────

    def _period_totals(self, integration_ids: List[int], date_range: DateRange) -> Dict[str, Decimal]:
        totals = {}
        for metric in SUMMED_METRICS:
            aggregate = self.metric_store.query_aggregate(integration_ids, metric, date_range)
            if aggregate.count:
                totals[metric] = aggregate.sum
        return totals

    def _mrr_snapshot(self, integration_ids: List[int], date_range: DateRange) -> Optional[Decimal]:
        """Latest MRR snapshot per integration inside the range, summed"""
        total = None
        last_day = date_range.end - timedelta(days=1)
        for integration_id in integration_ids:
            point = self.metric_store.latest_point(integration_id, MetricType.MRR.value, last_day)
            if point is not None and date_range.contains(point.date_recorded):
                total = (total or Decimal("0")) + point.value
        return total

    def build_context(self, integration_ids: List[int], window: InsightWindow) -> analyses.AnalysisContext:
        current_range = DateRange(window.current_start, window.current_end)
        previous_range = DateRange(window.previous_start, window.previous_end)
        context = analyses.AnalysisContext(
            window=window,
            current=self._period_totals(integration_ids, current_range),
            previous=self._period_totals(integration_ids, previous_range),
        )

        for totals, date_range in ((context.current, current_range), (context.previous, previous_range)):
            mrr = self._mrr_snapshot(integration_ids, date_range)
            if mrr is not None:
                totals[MetricType.MRR.value] = mrr

        for row in self.metric_store.query_daily(integration_ids, ANOMALY_METRICS, current_range):
            context.daily.setdefault(row.metric_type, []).append((row.date, row.value))

        for point in self.metric_store.query_points(
            integration_ids, [MetricType.TRAFFIC_SOURCES.value], current_range
        ):
            if not isinstance(point.metadata, TrafficMetadata):
                continue
            for source, stats in point.metadata.sources.items():
                combined = context.traffic_sources.setdefault(source, SourceStats())
                combined.sessions += stats.sessions
                combined.conversions += stats.conversions

        return context

    # ── Analysis ─────────────────────────────────────────

    def analyze(self, context: analyses.AnalysisContext, errors: Optional[Dict[str, str]] = None) -> List[InsightData]:
        """Run every analysis and return all candidate insights, unranked"""
        settings = self.settings
        battery = {
            "trend": lambda: analyses.analyze_trends(context, settings.trend_thresholds),
            "rules": lambda: analyses.evaluate_rules(context),
            "opportunity": lambda: [analyses.find_channel_opportunity(
                context.traffic_sources, context.window, settings.opportunity_min_source_sessions
            )],
            "customer_behavior": lambda: [analyses.classify_customer_behavior(context)],
        }
        for metric in ANOMALY_METRICS:
            battery[f"anomaly:{metric}"] = lambda metric=metric: analyses.detect_anomalies(
                metric,
                context.daily.get(metric, []),
                context.window,
                std_multiplier=settings.anomaly_std_multiplier,
                min_days=settings.anomaly_min_days,
                min_deviation_pct=settings.anomaly_min_deviation_pct,
            )

        insights: List[InsightData] = []
        for name, analysis in battery.items():
            try:
                insights.extend(i for i in analysis() if i is not None)
            except Exception as e:
                log.error(f"Insight analysis '{name}' failed: {e}")
                if errors is not None:
                    errors[name] = f"{type(e).__name__}: {e}"
        return insights

    # ── Generation ───────────────────────────────────────

    def run(self, organization_id: str, timeframe_days: Optional[int] = None) -> InsightRun:
        timeframe_days = timeframe_days or self.settings.insight_timeframe_days
        now = self.clock()
        window = build_window(timeframe_days, now.date())
        run = InsightRun(organization_id=organization_id, window=window)

        integrations = self.integration_store.list_for_organization(organization_id)
        if not integrations:
            log.info(f"Organization {organization_id} has no active integrations, using onboarding insights")
            candidates = analyses.onboarding_insights(window)
            run.onboarding = True
        else:
            context = self.build_context([i.id for i in integrations], window)
            candidates = self.analyze(context, run.analysis_errors)

        run.generated = len(candidates)
        ranked = analyses.rank_insights(candidates, self.settings.insight_top_n)

        cutoff = now - timedelta(days=self.settings.insight_generation_retention_days)
        run.deleted = self.insight_store.delete_older_than(organization_id, cutoff)
        run.insights = self.insight_store.create_many(organization_id, ranked)
        run.deleted += self.insight_store.prune_to_newest(
            organization_id, self.settings.insight_max_per_organization
        )

        log.info(
            f"Generated {len(run.insights)} insights for organization {organization_id} "
            f"({run.generated} candidates, {run.deleted} pruned)"
        )
        return run

    def generate_insights(self, organization_id: str, timeframe_days: Optional[int] = None) -> List[InsightRecord]:
        """Generate, rank and persist insights; returns the persisted top set"""
        return self.run(organization_id, timeframe_days).insights
