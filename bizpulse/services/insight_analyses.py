"""
Insight analyses

Pure functions over already-aggregated metrics. Each analysis returns zero
or more InsightData; insufficient data yields an empty list, never an error.
"""
import statistics
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from bizpulse.schemas import (
    AnomalyMetadata,
    CustomerBehaviorMetadata,
    InsightCategory,
    InsightData,
    InsightType,
    InsightWindow,
    MetricType,
    OnboardingMetadata,
    OpportunityMetadata,
    RuleMetadata,
    SourceStats,
    TrendMetadata,
    Urgency,
)
from bizpulse.utils.helpers import percent_change, quantize_money, safe_divide

ZERO = Decimal("0")
HUNDRED = Decimal("100")

METRIC_LABELS = {
    MetricType.REVENUE.value: "Revenue",
    MetricType.ORDERS.value: "Orders",
    MetricType.CUSTOMERS.value: "New customers",
    MetricType.MRR.value: "Monthly recurring revenue",
    MetricType.SESSIONS.value: "Sessions",
}

METRIC_CATEGORIES = {
    MetricType.REVENUE.value: InsightCategory.REVENUE,
    MetricType.MRR.value: InsightCategory.REVENUE,
    MetricType.ORDERS.value: InsightCategory.PERFORMANCE,
    MetricType.SESSIONS.value: InsightCategory.PERFORMANCE,
    MetricType.CUSTOMERS.value: InsightCategory.CUSTOMERS,
}

# Conversion rule bands (percent of sessions that ordered)
LOW_CONVERSION_PCT = Decimal("1")
HIGH_CONVERSION_PCT = Decimal("5")
MIN_SESSIONS_FOR_CONVERSION = Decimal("100")

# Monetization rule: plenty of traffic, little revenue per session
MONETIZE_MIN_SESSIONS = Decimal("1000")
MONETIZE_MAX_REVENUE_PER_SESSION = Decimal("0.50")

# Refund and payment-failure rates (percent of gross)
REFUND_RATE_WARN_PCT = Decimal("10")
REFUND_RATE_HIGH_PCT = Decimal("20")
FAILURE_RATE_WARN_PCT = Decimal("10")
FAILURE_RATE_CRITICAL_PCT = Decimal("25")

# Channel opportunity
OPPORTUNITY_MIN_CONVERSION_PCT = Decimal("3")
OPPORTUNITY_MAX_SHARE_PCT = Decimal("50")

# Orders-per-customer bands
STRONG_RETENTION_RATIO = Decimal("2")
WEAK_RETENTION_RATIO = Decimal("1.2")


@dataclass
class AnalysisContext:
    """
    Aggregates for one organization and one generation window.

    ``current``/``previous`` hold metric totals only for metrics that had
    data in that period; ``daily`` holds the current period's per-day
    values, ordered by date, for days that have data.
    """
    window: InsightWindow
    current: Dict[str, Decimal] = field(default_factory=dict)
    previous: Dict[str, Decimal] = field(default_factory=dict)
    daily: Dict[str, List[Tuple[date, Decimal]]] = field(default_factory=dict)
    traffic_sources: Dict[str, SourceStats] = field(default_factory=dict)

    def total(self, metric_type: str) -> Decimal:
        return self.current.get(metric_type, ZERO)


def net_revenue(totals: Dict[str, Decimal]) -> Optional[Decimal]:
    """Revenue after refunds (refunds are stored negative)"""
    if MetricType.REVENUE.value not in totals and MetricType.REFUNDS.value not in totals:
        return None
    return totals.get(MetricType.REVENUE.value, ZERO) + totals.get(MetricType.REFUNDS.value, ZERO)


def _pct(value: Decimal) -> str:
    return f"{abs(value):.1f}%"


# ── Trend ────────────────────────────────────────────────

def trend_urgency(change: Decimal) -> Urgency:
    magnitude = abs(change)
    if magnitude > 25:
        return Urgency.HIGH
    if magnitude > 15:
        return Urgency.MEDIUM
    return Urgency.LOW


def analyze_trend(
    metric: str,
    current: Decimal,
    previous: Decimal,
    threshold: float,
    window: InsightWindow,
) -> Optional[InsightData]:
    """
    Period-over-period change for one metric.

    Emits only when the absolute percent change reaches ``threshold``.
    """
    change = percent_change(current, previous)
    if abs(change) < Decimal(str(threshold)):
        return None

    label = METRIC_LABELS.get(metric, metric.replace("_", " ").capitalize())
    rising = change > 0
    days = (window.current_end - window.current_start).days
    return InsightData(
        type=InsightType.TREND,
        title=f"{label} {'growth' if rising else 'decline'} detected",
        description=(
            f"{label} {'increased' if rising else 'decreased'} by {_pct(change)} over the last "
            f"{days} days compared to the previous period."
        ),
        impact_score=float(min(abs(change) / 2, Decimal("10"))),
        confidence=85,
        category=METRIC_CATEGORIES.get(metric, InsightCategory.PERFORMANCE),
        urgency=trend_urgency(change),
        actionable=True,
        metadata=TrendMetadata(
            metric=metric,
            current_value=quantize_money(current),
            previous_value=quantize_money(previous),
            percent_change=change.quantize(Decimal("0.1")),
            threshold=threshold,
            window=window,
        ),
    )


def analyze_trends(context: AnalysisContext, thresholds: Dict[str, float]) -> List[InsightData]:
    """
    Trend insight per configured metric.

    A metric with no data at all in the baseline period is skipped: a new
    integration would otherwise always report 100% growth.
    """
    current = dict(context.current)
    previous = dict(context.previous)
    for totals in (current, previous):
        net = net_revenue(totals)
        if net is not None:
            totals[MetricType.REVENUE.value] = net

    insights = []
    for metric, threshold in thresholds.items():
        if metric not in current or metric not in previous:
            continue
        insight = analyze_trend(metric, current[metric], previous[metric], threshold, context.window)
        if insight:
            insights.append(insight)
    return insights


# ── Anomaly ──────────────────────────────────────────────

def detect_anomalies(
    metric: str,
    series: Sequence[Tuple[date, Decimal]],
    window: InsightWindow,
    std_multiplier: float = 2.0,
    min_days: int = 7,
    min_deviation_pct: float = 10.0,
) -> List[InsightData]:
    """
    Flag days whose value is more than ``std_multiplier`` population
    standard deviations from the mean and also more than
    ``min_deviation_pct`` percent away from it. The percent floor only
    filters noise on near-flat series; raise it to 50 for the coarse
    "more than half off the average" rule.

    Fewer than ``min_days`` observations, or a flat series, yields nothing.
    """
    if len(series) < min_days:
        return []

    values = [Decimal(value) for _, value in series]
    mean = statistics.mean(values)
    std_dev = statistics.pstdev(values, mean)
    if std_dev == 0:
        return []

    limit = Decimal(str(std_multiplier)) * std_dev
    floor = Decimal(str(min_deviation_pct))
    label = METRIC_LABELS.get(metric, metric.replace("_", " ").capitalize())
    insights = []

    for day, value in series:
        deviation = Decimal(value) - mean
        if abs(deviation) <= limit:
            continue
        deviation_pct = deviation / abs(mean) * HUNDRED if mean else None
        if deviation_pct is not None and abs(deviation_pct) <= floor:
            continue

        spike = deviation > 0
        shown_pct = deviation_pct if deviation_pct is not None else HUNDRED
        insights.append(InsightData(
            type=InsightType.ANOMALY,
            title=f"Unusual {label.lower()} {'spike' if spike else 'drop'} detected",
            description=(
                f"{label} on {day.isoformat()} was {_pct(shown_pct)} "
                f"{'above' if spike else 'below'} your recent average. "
                + ("Identify what drove this success to replicate it." if spike
                   else "Investigate potential issues that may have caused this decline.")
            ),
            impact_score=float(min(abs(shown_pct) / 10, Decimal("10"))),
            confidence=min(95, 60 + len(series)),
            category=METRIC_CATEGORIES.get(metric, InsightCategory.PERFORMANCE),
            urgency=Urgency.MEDIUM if spike else Urgency.HIGH,
            actionable=True,
            metadata=AnomalyMetadata(
                metric=metric,
                date=day,
                value=quantize_money(value),
                mean=quantize_money(mean),
                std_dev=quantize_money(std_dev),
                z_score=(deviation / std_dev).quantize(Decimal("0.01")),
                deviation_pct=shown_pct.quantize(Decimal("0.1")),
                direction="spike" if spike else "drop",
                sample_size=len(series),
                window=window,
            ),
        ))
    return insights


# ── Recommendation rules ─────────────────────────────────

def conversion_rule(context: AnalysisContext) -> Optional[InsightData]:
    sessions = context.total(MetricType.SESSIONS.value)
    orders = context.total(MetricType.ORDERS.value)
    if sessions < MIN_SESSIONS_FOR_CONVERSION:
        return None

    rate = orders / sessions * HUNDRED
    metadata = RuleMetadata(
        rule="conversion_rate",
        observed={"conversion_rate": rate.quantize(Decimal("0.01")), "sessions": sessions, "orders": orders},
        thresholds={"low": float(LOW_CONVERSION_PCT), "high": float(HIGH_CONVERSION_PCT)},
        window=context.window,
    )
    if rate < LOW_CONVERSION_PCT:
        return InsightData(
            type=InsightType.RECOMMENDATION,
            title="Low conversion rate detected",
            description=(
                f"Your conversion rate is {rate:.2f}%, which is below industry average. Consider "
                f"optimizing your checkout process, product pages, or pricing strategy."
            ),
            impact_score=9,
            confidence=80,
            category=InsightCategory.PERFORMANCE,
            urgency=Urgency.HIGH,
            metadata=metadata,
        )
    if rate > HIGH_CONVERSION_PCT:
        return InsightData(
            type=InsightType.OPPORTUNITY,
            title="Excellent conversion rate",
            description=(
                f"Your conversion rate of {rate:.2f}% is above industry average. Consider increasing "
                f"traffic to capitalize on this high-converting experience."
            ),
            impact_score=8,
            confidence=80,
            category=InsightCategory.PERFORMANCE,
            urgency=Urgency.MEDIUM,
            metadata=metadata,
        )
    return None


def monetization_rule(context: AnalysisContext) -> Optional[InsightData]:
    sessions = context.total(MetricType.SESSIONS.value)
    revenue = net_revenue(context.current)
    if sessions < MONETIZE_MIN_SESSIONS or revenue is None:
        return None

    per_session = revenue / sessions
    if per_session >= MONETIZE_MAX_REVENUE_PER_SESSION:
        return None
    return InsightData(
        type=InsightType.RECOMMENDATION,
        title="Monetize your traffic",
        description=(
            f"You had {int(sessions):,} sessions but only {per_session:.2f} revenue per session. "
            f"Review pricing, offers and calls to action on your highest-traffic pages."
        ),
        impact_score=7,
        confidence=70,
        category=InsightCategory.REVENUE,
        urgency=Urgency.MEDIUM,
        metadata=RuleMetadata(
            rule="revenue_per_session",
            observed={"sessions": sessions, "revenue": quantize_money(revenue),
                      "revenue_per_session": quantize_money(per_session)},
            thresholds={"min_sessions": float(MONETIZE_MIN_SESSIONS),
                        "max_revenue_per_session": float(MONETIZE_MAX_REVENUE_PER_SESSION)},
            window=context.window,
        ),
    )


def refund_rate_rule(context: AnalysisContext) -> Optional[InsightData]:
    gross = context.total(MetricType.REVENUE.value)
    refunded = abs(context.total(MetricType.REFUNDS.value))
    if gross <= 0 or refunded == 0:
        return None

    rate = refunded / gross * HUNDRED
    if rate < REFUND_RATE_WARN_PCT:
        return None
    return InsightData(
        type=InsightType.RECOMMENDATION,
        title="High refund rate",
        description=(
            f"Refunds amount to {rate:.1f}% of revenue this period. Check product descriptions, "
            f"quality issues and fulfilment delays behind the returns."
        ),
        impact_score=7,
        confidence=85,
        category=InsightCategory.REVENUE,
        urgency=Urgency.HIGH if rate >= REFUND_RATE_HIGH_PCT else Urgency.MEDIUM,
        metadata=RuleMetadata(
            rule="refund_rate",
            observed={"refund_rate": rate.quantize(Decimal("0.01")), "refunded": quantize_money(refunded),
                      "gross_revenue": quantize_money(gross)},
            thresholds={"warn": float(REFUND_RATE_WARN_PCT), "high": float(REFUND_RATE_HIGH_PCT)},
            window=context.window,
        ),
    )


def payment_failure_rule(context: AnalysisContext) -> Optional[InsightData]:
    failed = context.total(MetricType.FAILED_CHARGES.value)
    captured = context.total(MetricType.REVENUE.value)
    attempted = failed + captured
    if failed <= 0 or attempted <= 0:
        return None

    rate = failed / attempted * HUNDRED
    if rate < FAILURE_RATE_WARN_PCT:
        return None
    return InsightData(
        type=InsightType.ALERT,
        title="Payment failures are costing revenue",
        description=(
            f"{rate:.1f}% of attempted payment volume failed this period. Review card decline "
            f"reasons and consider retry logic or alternative payment methods."
        ),
        impact_score=8,
        confidence=90,
        category=InsightCategory.PAYMENTS,
        urgency=Urgency.CRITICAL if rate >= FAILURE_RATE_CRITICAL_PCT else Urgency.HIGH,
        metadata=RuleMetadata(
            rule="payment_failure_rate",
            observed={"failure_rate": rate.quantize(Decimal("0.01")), "failed": quantize_money(failed),
                      "captured": quantize_money(captured)},
            thresholds={"warn": float(FAILURE_RATE_WARN_PCT), "critical": float(FAILURE_RATE_CRITICAL_PCT)},
            window=context.window,
        ),
    )


RULES = (conversion_rule, monetization_rule, refund_rate_rule, payment_failure_rule)


def evaluate_rules(context: AnalysisContext) -> List[InsightData]:
    return [insight for insight in (rule(context) for rule in RULES) if insight is not None]


# ── Opportunity ──────────────────────────────────────────

def find_channel_opportunity(
    sources: Dict[str, SourceStats],
    window: InsightWindow,
    min_sessions: int = 50,
) -> Optional[InsightData]:
    """
    Underinvested but high-converting traffic source.

    Sources below ``min_sessions`` are ignored. The best converter is
    surfaced when it converts above 3%, beats the overall rate, and still
    brings less than half of the qualifying traffic.
    """
    qualifying = {name: s for name, s in sources.items() if s.sessions >= min_sessions}
    if len(qualifying) < 2:
        return None

    rates = {
        name: Decimal(s.conversions) / Decimal(s.sessions) * HUNDRED
        for name, s in qualifying.items()
    }
    best = max(sorted(rates), key=lambda name: rates[name])
    total_sessions = sum(s.sessions for s in qualifying.values())
    total_conversions = sum(s.conversions for s in qualifying.values())
    share = Decimal(qualifying[best].sessions) / Decimal(total_sessions) * HUNDRED
    overall = Decimal(total_conversions) / Decimal(total_sessions) * HUNDRED
    rate = rates[best]

    if rate <= OPPORTUNITY_MIN_CONVERSION_PCT or share >= OPPORTUNITY_MAX_SHARE_PCT or rate <= overall:
        return None

    advantage = safe_divide(rate, overall, default=None)
    return InsightData(
        type=InsightType.OPPORTUNITY,
        title=f"{best} shows high conversion potential",
        description=(
            f"{best} has a {rate:.1f}% conversion rate but only accounts for {share:.1f}% of your "
            f"traffic. Consider increasing investment in this channel."
        ),
        impact_score=8,
        confidence=75,
        category=InsightCategory.GROWTH,
        urgency=Urgency.MEDIUM,
        metadata=OpportunityMetadata(
            dimension="traffic_source",
            best_source=best,
            conversion_rate=rate.quantize(Decimal("0.01")),
            traffic_share=share.quantize(Decimal("0.1")),
            overall_conversion_rate=overall.quantize(Decimal("0.01")),
            advantage=advantage.quantize(Decimal("0.01")) if advantage is not None else rate.quantize(Decimal("0.01")),
            sources=qualifying,
            window=window,
        ),
    )


# ── Customer behaviour ───────────────────────────────────

def classify_customer_behavior(context: AnalysisContext) -> Optional[InsightData]:
    orders = context.total(MetricType.ORDERS.value)
    customers = context.total(MetricType.CUSTOMERS.value)
    if orders <= 0 or customers <= 0:
        return None

    revenue = net_revenue(context.current) or ZERO
    orders_per_customer = orders / customers
    revenue_per_customer = revenue / customers

    if orders_per_customer > STRONG_RETENTION_RATIO:
        band = "strong"
    elif orders_per_customer < WEAK_RETENTION_RATIO:
        band = "weak"
    else:
        return None

    metadata = CustomerBehaviorMetadata(
        band=band,
        orders=orders,
        customers=customers,
        revenue=quantize_money(revenue),
        orders_per_customer=orders_per_customer.quantize(Decimal("0.01")),
        revenue_per_customer=quantize_money(revenue_per_customer),
        window=context.window,
    )
    if band == "strong":
        return InsightData(
            type=InsightType.OPPORTUNITY,
            title="Strong customer retention detected",
            description=(
                f"Your customers are placing an average of {orders_per_customer:.1f} orders, indicating "
                f"good retention. Consider implementing a loyalty program to further increase repeat purchases."
            ),
            impact_score=7,
            confidence=70,
            category=InsightCategory.CUSTOMERS,
            urgency=Urgency.MEDIUM,
            metadata=metadata,
        )
    return InsightData(
        type=InsightType.RECOMMENDATION,
        title="Low customer retention rate",
        description=(
            "Most customers are only making one purchase. Focus on improving customer retention "
            "through email marketing, product recommendations, or loyalty programs."
        ),
        impact_score=8,
        confidence=70,
        category=InsightCategory.CUSTOMERS,
        urgency=Urgency.HIGH,
        metadata=metadata,
    )


# ── Ranking and onboarding ───────────────────────────────

def rank_insights(insights: Iterable[InsightData], top_n: int = 10) -> List[InsightData]:
    """Sort by impact x urgency weight, highest first, and keep ``top_n``"""
    return sorted(insights, key=lambda insight: insight.priority, reverse=True)[:top_n]


def onboarding_insights(window: Optional[InsightWindow] = None) -> List[InsightData]:
    """Fixed set shown to organizations with no connected integrations"""
    return [
        InsightData(
            type=InsightType.RECOMMENDATION,
            title="Connect your first data source",
            description=(
                "Start by connecting Shopify, Stripe, or Google Analytics to begin receiving "
                "insights about your business performance."
            ),
            impact_score=10,
            confidence=100,
            category=InsightCategory.GROWTH,
            urgency=Urgency.HIGH,
            metadata=OnboardingMetadata(step="connect_integration", window=window),
        ),
        InsightData(
            type=InsightType.OPPORTUNITY,
            title="Unlock business intelligence",
            description=(
                "Once connected, you'll receive insights about revenue trends, customer behavior, "
                "conversion optimization, and growth opportunities."
            ),
            impact_score=9,
            confidence=100,
            category=InsightCategory.GROWTH,
            urgency=Urgency.MEDIUM,
            metadata=OnboardingMetadata(step="explore_insights", window=window),
        ),
    ]
