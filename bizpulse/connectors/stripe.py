"""
Stripe Connector

Syncs payments data from the Stripe REST API.
Source of truth for revenue, refunds, failed payments and MRR.
"""
import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict

from bizpulse.config import Settings, get_settings
from bizpulse.connectors.http import Page, PlatformHttpClient, collect_pages
from bizpulse.connectors.normalize import DailyAccumulator, validate_record
from bizpulse.connectors.sync_steps import resolve_window_start, run_sync_steps, write_window
from bizpulse.errors import DataShapeError
from bizpulse.schemas import MetricType, Platform, StepStats, SyncResult, WebhookResult
from bizpulse.stores.metric_store import MetricStore
from bizpulse.utils.helpers import floor_to_day, minor_to_major, normalize_mrr, parse_timestamp, utcnow
from bizpulse.utils.logger import log
from bizpulse.utils.rate_limiter import RequestPacer
from bizpulse.utils.retry import RetryPolicy


# ── Remote record shapes ─────────────────────────────────

class _StripeRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")


class StripeCharge(_StripeRecord):
    id: str
    amount: int
    currency: str
    status: str
    created: int
    captured: bool = True
    customer: Optional[str] = None
    failure_code: Optional[str] = None
    amount_refunded: int = 0
    refunds: Optional[Dict[str, Any]] = None


class StripeRefund(_StripeRecord):
    id: str
    amount: int
    currency: str
    status: str
    created: int
    charge: Optional[str] = None


class StripeCustomer(_StripeRecord):
    id: str
    created: int


class StripeDispute(_StripeRecord):
    id: str
    amount: int
    currency: str
    created: int
    reason: Optional[str] = None


class StripeSubscription(_StripeRecord):
    id: str
    status: str
    currency: Optional[str] = None
    items: Dict[str, Any] = {}
    plan: Optional[Dict[str, Any]] = None


ACTIVE_SUBSCRIPTION_STATUSES = {"active", "past_due"}

CHARGE_METRICS = (MetricType.REVENUE.value, MetricType.ORDERS.value, MetricType.FAILED_CHARGES.value)

# Events already represented by the charge.* stream
ACKNOWLEDGED_EVENTS = {
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "invoice.paid",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
    "checkout.session.completed",
}


def subscription_mrr(subscription: StripeSubscription) -> Decimal:
    """Monthly-equivalent value of a subscription across its items"""
    items = (subscription.items or {}).get("data") or []
    total = Decimal("0")

    for item in items:
        price = item.get("price") or item.get("plan") or {}
        recurring = price.get("recurring") or {}
        interval = recurring.get("interval") or price.get("interval")
        interval_count = recurring.get("interval_count") or price.get("interval_count") or 1
        unit_amount = price.get("unit_amount", price.get("amount"))
        if unit_amount is None or not interval:
            continue
        currency = price.get("currency") or subscription.currency
        total += normalize_mrr(
            minor_to_major(unit_amount, currency),
            interval,
            interval_count=interval_count,
            quantity=item.get("quantity") or 1,
        )

    if not items and subscription.plan:
        plan = subscription.plan
        total += normalize_mrr(
            minor_to_major(plan.get("amount", 0), plan.get("currency") or subscription.currency),
            plan.get("interval", "month"),
            interval_count=plan.get("interval_count") or 1,
        )

    return total


class StripeConnector:
    """
    Connector for the Stripe API

    Syncs charges, refunds and subscriptions every run; customers are a
    low-frequency resource.
    """

    platform = Platform.STRIPE.value
    primary_resources = ("charges", "refunds", "subscriptions")
    low_frequency_resources = ("customers",)

    def __init__(
        self,
        metric_store: MetricStore,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        """
        Initialize Stripe connector

        Args:
            metric_store: Where normalized data points are written
            settings: Runtime settings (page size, caps, retry policy)
            transport: Optional httpx transport override
            sleep: Awaitable sleep used between pages
        """
        self.settings = settings or get_settings()
        self.metric_store = metric_store
        self.base_url = self.settings.stripe_api_base.rstrip("/")
        self._sleep = sleep

        rate = self.settings.platform_requests_per_second.get(self.platform, 25.0)
        self.pacer = RequestPacer(rate)
        self.http = PlatformHttpClient(
            self.platform,
            auth_headers=self._get_headers,
            retry_policy=RetryPolicy.from_settings(self.settings),
            pacer=self.pacer,
            timeout=self.settings.http_timeout_seconds,
            transport=transport,
            sleep=sleep,
        )

    def _get_headers(self, integration) -> Dict[str, str]:
        return {"Authorization": f"Bearer {integration.access_token}"}

    async def test_connection(self, integration) -> Dict[str, Any]:
        data = await self.http.get_json(integration, f"{self.base_url}/balance")
        available = data.get("available") or []
        return {
            "success": True,
            "platform": self.platform,
            "currencies": sorted({entry.get("currency") for entry in available if entry.get("currency")}),
        }

    # ── Bulk sync ────────────────────────────────────────

    async def sync(
        self,
        integration,
        since: Optional[datetime] = None,
        resources: Optional[Sequence[str]] = None,
    ) -> SyncResult:
        """
        Sync Stripe data for one integration

        Args:
            integration: Integration to sync
            since: Resume point; None syncs the configured initial window
            resources: Subset of resources to sync (default: primary resources)

        Returns:
            SyncResult with per-resource stats and errors
        """
        window_start = resolve_window_start(since, self.settings.sync_initial_window_days)
        resources = tuple(resources or self.primary_resources)

        step_builders = {
            "charges": lambda stats: self.sync_charges(integration, window_start, stats),
            "refunds": lambda stats: self.sync_refunds(integration, window_start, stats),
            "subscriptions": lambda stats: self.sync_subscriptions(integration, stats),
            "customers": lambda stats: self.sync_customers(integration, window_start, stats),
        }
        steps = [(name, step_builders[name]) for name in resources if name in step_builders]

        log.info(f"Starting Stripe sync for integration {integration.id} from {window_start.isoformat()}")
        return await run_sync_steps(
            self.platform,
            integration,
            steps,
            primary_step="charges" if "charges" in resources else None,
            window_start=window_start,
        )

    async def _list(self, integration, path: str, params: Dict[str, Any], stats: StepStats) -> List[Dict[str, Any]]:
        """Page through a Stripe list endpoint using starting_after/has_more"""
        async def fetch_page(cursor: Optional[str]) -> Page:
            page_params = dict(params, limit=min(self.settings.sync_page_size, 100))
            if cursor:
                page_params["starting_after"] = cursor
            data = await self.http.get_json(integration, f"{self.base_url}/{path}", page_params)
            records = data.get("data") or []
            next_cursor = records[-1].get("id") if data.get("has_more") and records else None
            return Page(records=records, next_cursor=next_cursor)

        return await collect_pages(
            fetch_page,
            stats,
            max_records=self.settings.sync_max_records,
            page_delay=self.settings.sync_page_delay_seconds,
            sleep=self._sleep,
            label=f"stripe {path}",
        )

    async def sync_charges(self, integration, window_start: datetime, stats: StepStats):
        records = await self._list(
            integration, "charges", {"created[gte]": int(_epoch(window_start))}, stats
        )
        accumulator = DailyAccumulator(integration.id, self.platform)
        for record in records:
            try:
                charge = validate_record(StripeCharge, record, self.platform)
            except DataShapeError as e:
                stats.invalid += 1
                log.warning(str(e))
                continue
            if not self._apply_charge(accumulator, charge):
                stats.skipped += 1
        write_window(self.metric_store, accumulator, stats, window_start, CHARGE_METRICS)

    def _apply_charge(self, accumulator: DailyAccumulator, charge: StripeCharge) -> bool:
        """Map one charge; returns False for provisional charges left out"""
        created = parse_timestamp(charge.created)
        amount = minor_to_major(charge.amount, charge.currency)

        if charge.status == "succeeded" and charge.captured:
            accumulator.add(MetricType.REVENUE.value, created, charge.id, amount, currency=charge.currency)
            accumulator.add(MetricType.ORDERS.value, created, charge.id, Decimal("1"), kind="count")
            return True
        if charge.status == "failed":
            accumulator.add(
                MetricType.FAILED_CHARGES.value, created, charge.id, amount,
                kind="risk", currency=charge.currency, failure_code=charge.failure_code or "unknown",
            )
            return True
        return False

    async def sync_refunds(self, integration, window_start: datetime, stats: StepStats):
        records = await self._list(
            integration, "refunds", {"created[gte]": int(_epoch(window_start))}, stats
        )
        accumulator = DailyAccumulator(integration.id, self.platform)
        for record in records:
            try:
                refund = validate_record(StripeRefund, record, self.platform)
            except DataShapeError as e:
                stats.invalid += 1
                log.warning(str(e))
                continue
            if refund.status != "succeeded":
                stats.skipped += 1
                continue
            accumulator.add(
                MetricType.REFUNDS.value,
                parse_timestamp(refund.created),
                refund.id,
                -minor_to_major(refund.amount, refund.currency),
                currency=refund.currency,
            )
        write_window(self.metric_store, accumulator, stats, window_start, (MetricType.REFUNDS.value,))

    async def sync_subscriptions(self, integration, stats: StepStats):
        """Snapshot of current MRR, recorded against today"""
        records = await self._list(integration, "subscriptions", {}, stats)  # Non-canceled by default
        today = utcnow()
        accumulator = DailyAccumulator(integration.id, self.platform)
        currency = None

        for record in records:
            try:
                subscription = validate_record(StripeSubscription, record, self.platform)
            except DataShapeError as e:
                stats.invalid += 1
                log.warning(str(e))
                continue
            if subscription.status not in ACTIVE_SUBSCRIPTION_STATUSES:
                stats.skipped += 1
                continue
            try:
                mrr = subscription_mrr(subscription)
            except ValueError as e:
                stats.invalid += 1
                log.warning(f"Stripe subscription {subscription.id}: {e}")
                continue
            currency = currency or subscription.currency
            accumulator.add(
                MetricType.MRR.value, today, subscription.id, mrr, kind="recurring", currency=currency
            )

        if not len(accumulator):
            # No active subscriptions left: today's snapshot is zero
            accumulator.seed(MetricType.MRR.value, today.date(), {}, kind="recurring")
        write_window(self.metric_store, accumulator, stats, floor_to_day(today), (MetricType.MRR.value,))

    async def sync_customers(self, integration, window_start: datetime, stats: StepStats):
        records = await self._list(
            integration, "customers", {"created[gte]": int(_epoch(window_start))}, stats
        )
        accumulator = DailyAccumulator(integration.id, self.platform)
        for record in records:
            try:
                customer = validate_record(StripeCustomer, record, self.platform)
            except DataShapeError as e:
                stats.invalid += 1
                log.warning(str(e))
                continue
            accumulator.add(
                MetricType.CUSTOMERS.value, parse_timestamp(customer.created), customer.id, Decimal("1"), kind="count"
            )
        write_window(self.metric_store, accumulator, stats, window_start, (MetricType.CUSTOMERS.value,))

    # ── Webhooks ─────────────────────────────────────────

    async def handle_webhook_event(self, integration, event_type: str, payload: Dict[str, Any]) -> WebhookResult:
        """
        Apply one Stripe event.

        ``payload`` may be the full event envelope or just ``data.object``.
        Points are merged per record, so redelivered events are no-ops.
        """
        data = payload.get("data") if isinstance(payload, dict) else None
        obj = data.get("object") if isinstance(data, dict) and "object" in data else payload

        handlers = {
            "charge.succeeded": self._webhook_charge,
            "charge.captured": self._webhook_charge,
            "charge.failed": self._webhook_charge,
            "charge.refunded": self._webhook_refund,
            "charge.dispute.created": self._webhook_dispute,
            "customer.created": self._webhook_customer,
            "customer.subscription.created": self._webhook_subscription,
            "customer.subscription.updated": self._webhook_subscription,
            "customer.subscription.deleted": self._webhook_subscription,
        }

        if event_type in ACKNOWLEDGED_EVENTS:
            return WebhookResult(success=True, topic=event_type, detail="covered by charge events")

        handler = handlers.get(event_type)
        if handler is None:
            log.info(f"Ignoring unhandled Stripe event {event_type}")
            return WebhookResult(success=True, topic=event_type, detail="ignored")

        try:
            accumulator = DailyAccumulator(integration.id, self.platform)
            handler(integration, event_type, obj, accumulator)
        except DataShapeError as e:
            log.warning(f"Stripe {event_type} skipped: {e}")
            return WebhookResult(success=False, topic=event_type, error=str(e))

        processed = self.metric_store.upsert_data_points(accumulator.points(), merge=True)
        return WebhookResult(success=True, topic=event_type, processed=processed)

    def _webhook_charge(self, integration, event_type, obj, accumulator):
        charge = validate_record(StripeCharge, obj, self.platform)
        self._apply_charge(accumulator, charge)

    def _webhook_refund(self, integration, event_type, obj, accumulator):
        charge = validate_record(StripeCharge, obj, self.platform)
        refunds = (charge.refunds or {}).get("data") or []
        if refunds:
            for record in refunds:
                refund = validate_record(StripeRefund, record, self.platform)
                if refund.status == "succeeded":
                    accumulator.add(
                        MetricType.REFUNDS.value, parse_timestamp(refund.created), refund.id,
                        -minor_to_major(refund.amount, refund.currency), currency=refund.currency,
                    )
            return
        # Older API versions omit the refund list; key the total by charge
        accumulator.add(
            MetricType.REFUNDS.value, utcnow(), charge.id,
            -minor_to_major(charge.amount_refunded, charge.currency), currency=charge.currency,
        )

    def _webhook_dispute(self, integration, event_type, obj, accumulator):
        dispute = validate_record(StripeDispute, obj, self.platform)
        accumulator.add(
            MetricType.DISPUTES.value, parse_timestamp(dispute.created), dispute.id,
            minor_to_major(dispute.amount, dispute.currency),
            kind="risk", currency=dispute.currency, failure_code=dispute.reason or "unknown",
        )

    def _webhook_customer(self, integration, event_type, obj, accumulator):
        customer = validate_record(StripeCustomer, obj, self.platform)
        accumulator.add(
            MetricType.CUSTOMERS.value, parse_timestamp(customer.created), customer.id, Decimal("1"), kind="count"
        )

    def _webhook_subscription(self, integration, event_type, obj, accumulator):
        subscription = validate_record(StripeSubscription, obj, self.platform)
        now = utcnow()
        today = now.date()

        # First change of the day starts from the latest snapshot
        latest = self.metric_store.latest_point(integration.id, MetricType.MRR.value, today)
        if latest is not None and latest.date_recorded < today:
            accumulator.seed(
                MetricType.MRR.value, today, latest.metadata.contributions,
                kind="recurring", currency=getattr(latest.metadata, "currency", None),
            )

        active = event_type != "customer.subscription.deleted" and subscription.status in ACTIVE_SUBSCRIPTION_STATUSES
        try:
            mrr = subscription_mrr(subscription) if active else Decimal("0")
        except ValueError as e:
            raise DataShapeError(f"Stripe subscription {subscription.id}: {e}", self.platform) from e
        accumulator.add(
            MetricType.MRR.value, now, subscription.id, mrr, kind="recurring", currency=subscription.currency
        )


def _epoch(value: datetime) -> float:
    """Naive-UTC datetime to unix seconds"""
    return (value - datetime(1970, 1, 1)).total_seconds()
