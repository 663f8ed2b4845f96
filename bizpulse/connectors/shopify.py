"""
Shopify Connector

Syncs e-commerce data from the Shopify Admin API.
Source of truth for orders, refunds and new customers.
"""
import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import parse_qs, urlparse

import httpx
from pydantic import BaseModel, ConfigDict

from bizpulse.config import Settings, get_settings
from bizpulse.connectors.http import Page, PlatformHttpClient, collect_pages
from bizpulse.connectors.normalize import DailyAccumulator, validate_record
from bizpulse.connectors.sync_steps import resolve_window_start, run_sync_steps, write_window
from bizpulse.errors import DataShapeError
from bizpulse.schemas import IntegrationStatus, MetricType, Platform, StepStats, SyncResult, WebhookResult
from bizpulse.stores.metric_store import MetricStore
from bizpulse.utils.helpers import parse_timestamp, to_decimal
from bizpulse.utils.logger import log
from bizpulse.utils.rate_limiter import RequestPacer
from bizpulse.utils.retry import RetryPolicy

# Orders that represent captured money
SETTLED_FINANCIAL_STATUSES = {"paid", "partially_refunded", "refunded"}
ORDER_METRICS = (MetricType.REVENUE.value, MetricType.ORDERS.value)


class ShopifyOrder(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    created_at: str
    total_price: Decimal
    currency: Optional[str] = None
    financial_status: Optional[str] = None
    processed_at: Optional[str] = None
    cancelled_at: Optional[str] = None


class ShopifyRefund(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    created_at: str
    order_id: Optional[int] = None
    transactions: List[Dict[str, Any]] = []
    refund_line_items: List[Dict[str, Any]] = []


class ShopifyCustomer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    created_at: str


def refund_amount(refund: ShopifyRefund) -> Decimal:
    """Money returned by a refund: successful refund transactions, else line subtotals"""
    total = Decimal("0")
    transactions = [
        t for t in refund.transactions
        if t.get("kind") == "refund" and t.get("status", "success") == "success"
    ]
    if transactions:
        for transaction in transactions:
            total += to_decimal(transaction.get("amount"), Decimal("0"))
        return total
    for line in refund.refund_line_items:
        total += to_decimal(line.get("subtotal"), Decimal("0"))
    return total


def next_page_info(response: httpx.Response) -> Optional[str]:
    """Extract the page_info cursor from Shopify's Link header"""
    next_link = response.links.get("next", {}).get("url")
    if not next_link:
        return None
    values = parse_qs(urlparse(next_link).query).get("page_info")
    return values[0] if values else None


class ShopifyConnector:
    """
    Connector for Shopify Admin API

    Syncs orders and refunds every run; customers are a low-frequency
    resource. The shop domain is the integration's platform account id.
    """

    platform = Platform.SHOPIFY.value
    primary_resources = ("orders", "refunds")
    low_frequency_resources = ("customers",)

    def __init__(
        self,
        metric_store: MetricStore,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.metric_store = metric_store
        self.api_version = self.settings.shopify_api_version
        self._sleep = sleep

        # Shopify REST: leaky bucket of 2 req/sec per shop
        rate = self.settings.platform_requests_per_second.get(self.platform, 2.0)
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
        return {
            "X-Shopify-Access-Token": integration.access_token or "",
            "Content-Type": "application/json",
        }

    def base_url(self, integration) -> str:
        store_url = integration.platform_account_id.replace("https://", "").replace("http://", "").rstrip("/")
        return f"https://{store_url}/admin/api/{self.api_version}"

    async def test_connection(self, integration) -> Dict[str, Any]:
        data = await self.http.get_json(integration, f"{self.base_url(integration)}/shop.json")
        shop = data.get("shop") or {}
        log.info(f"Authenticated with Shopify store: {shop.get('name')}")
        return {
            "success": True,
            "platform": self.platform,
            "shop_name": shop.get("name"),
            "currency": shop.get("currency"),
        }

    # ── Bulk sync ────────────────────────────────────────

    async def sync(
        self,
        integration,
        since: Optional[datetime] = None,
        resources: Optional[Sequence[str]] = None,
    ) -> SyncResult:
        window_start = resolve_window_start(since, self.settings.sync_initial_window_days)
        resources = tuple(resources or self.primary_resources)

        step_builders = {
            "orders": lambda stats: self.sync_orders(integration, window_start, stats),
            "refunds": lambda stats: self.sync_refunds(integration, window_start, stats),
            "customers": lambda stats: self.sync_customers(integration, window_start, stats),
        }
        steps = [(name, step_builders[name]) for name in resources if name in step_builders]

        log.info(f"Starting Shopify sync for {integration.platform_account_id} from {window_start.isoformat()}")
        return await run_sync_steps(
            self.platform,
            integration,
            steps,
            primary_step="orders" if "orders" in resources else None,
            window_start=window_start,
        )

    async def _list(
        self,
        integration,
        resource: str,
        params: Dict[str, Any],
        stats: StepStats,
    ) -> List[Dict[str, Any]]:
        """Page through a Shopify REST collection using Link-header page_info"""
        url = f"{self.base_url(integration)}/{resource}.json"
        limit = min(self.settings.sync_page_size, 250)

        async def fetch_page(page_info: Optional[str]) -> Page:
            # Follow-up pages accept only limit and page_info
            page_params = {"limit": limit, "page_info": page_info} if page_info else dict(params, limit=limit)
            response = await self.http.request(integration, "GET", url, params=page_params)
            return Page(records=response.json().get(resource) or [], next_cursor=next_page_info(response))

        return await collect_pages(
            fetch_page,
            stats,
            max_records=self.settings.sync_max_records,
            page_delay=self.settings.sync_page_delay_seconds,
            sleep=self._sleep,
            label=f"shopify {resource}",
        )

    async def sync_orders(self, integration, window_start: datetime, stats: StepStats):
        records = await self._list(
            integration,
            "orders",
            {"status": "any", "created_at_min": window_start.isoformat() + "Z"},
            stats,
        )
        accumulator = DailyAccumulator(integration.id, self.platform)
        for record in records:
            try:
                order = validate_record(ShopifyOrder, record, self.platform)
            except DataShapeError as e:
                stats.invalid += 1
                log.warning(str(e))
                continue
            if not self._apply_order(accumulator, order):
                stats.skipped += 1
        write_window(self.metric_store, accumulator, stats, window_start, ORDER_METRICS)

    def _apply_order(self, accumulator: DailyAccumulator, order: ShopifyOrder, zero_unsettled: bool = False) -> bool:
        """
        Map one order to revenue and order-count contributions.

        Unsettled orders contribute nothing; with ``zero_unsettled`` they
        overwrite an earlier contribution with zero (webhook updates).
        """
        occurred_at = parse_timestamp(order.processed_at) or parse_timestamp(order.created_at)
        if occurred_at is None:
            raise DataShapeError(f"shopify order {order.id} has unparseable created_at", self.platform)
        day = (parse_timestamp(order.created_at) or occurred_at).date()

        settled = (order.financial_status or "").lower() in SETTLED_FINANCIAL_STATUSES
        if not settled and not zero_unsettled:
            return False

        revenue = order.total_price if settled else Decimal("0")
        count = Decimal("1") if settled else Decimal("0")
        accumulator.add(MetricType.REVENUE.value, occurred_at, order.id, revenue, currency=order.currency, day=day)
        accumulator.add(MetricType.ORDERS.value, occurred_at, order.id, count, kind="count", day=day)
        return settled

    async def sync_refunds(self, integration, window_start: datetime, stats: StepStats):
        """Refunds issued in the window, found via orders updated since then"""
        records = await self._list(
            integration,
            "orders",
            {"status": "any", "updated_at_min": window_start.isoformat() + "Z", "fields": "id,refunds"},
            stats,
        )
        accumulator = DailyAccumulator(integration.id, self.platform)
        for order in records:
            for record in order.get("refunds") or []:
                try:
                    refund = validate_record(ShopifyRefund, record, self.platform)
                except DataShapeError as e:
                    stats.invalid += 1
                    log.warning(str(e))
                    continue
                if not self._apply_refund(accumulator, refund, window_start):
                    stats.skipped += 1
        write_window(self.metric_store, accumulator, stats, window_start, (MetricType.REFUNDS.value,))

    def _apply_refund(self, accumulator: DailyAccumulator, refund: ShopifyRefund, window_start: Optional[datetime] = None) -> bool:
        created = parse_timestamp(refund.created_at)
        if created is None:
            raise DataShapeError(f"shopify refund {refund.id} has unparseable created_at", self.platform)
        if window_start is not None and created < window_start:
            return False
        accumulator.add(MetricType.REFUNDS.value, created, refund.id, -refund_amount(refund))
        return True

    async def sync_customers(self, integration, window_start: datetime, stats: StepStats):
        records = await self._list(
            integration,
            "customers",
            {"created_at_min": window_start.isoformat() + "Z"},
            stats,
        )
        accumulator = DailyAccumulator(integration.id, self.platform)
        for record in records:
            try:
                customer = validate_record(ShopifyCustomer, record, self.platform)
            except DataShapeError as e:
                stats.invalid += 1
                log.warning(str(e))
                continue
            self._apply_customer(accumulator, customer)
        write_window(self.metric_store, accumulator, stats, window_start, (MetricType.CUSTOMERS.value,))

    def _apply_customer(self, accumulator: DailyAccumulator, customer: ShopifyCustomer):
        created = parse_timestamp(customer.created_at)
        if created is None:
            raise DataShapeError(f"shopify customer {customer.id} has unparseable created_at", self.platform)
        accumulator.add(MetricType.CUSTOMERS.value, created, customer.id, Decimal("1"), kind="count")

    # ── Webhooks ─────────────────────────────────────────

    async def handle_webhook_event(self, integration, event_type: str, payload: Dict[str, Any]) -> WebhookResult:
        """Apply one Shopify webhook topic; the payload is the resource itself"""
        if event_type == "app/uninstalled":
            log.warning(f"Shopify app uninstalled from {integration.platform_account_id}")
            return WebhookResult(
                success=True,
                topic=event_type,
                status_directive=IntegrationStatus.INACTIVE.value,
                detail="app uninstalled",
            )

        accumulator = DailyAccumulator(integration.id, self.platform)
        try:
            if event_type in ("orders/create", "orders/paid", "orders/updated", "orders/cancelled"):
                order = validate_record(ShopifyOrder, payload, self.platform)
                self._apply_order(accumulator, order, zero_unsettled=True)
            elif event_type == "refunds/create":
                self._apply_refund(accumulator, validate_record(ShopifyRefund, payload, self.platform))
            elif event_type == "customers/create":
                self._apply_customer(accumulator, validate_record(ShopifyCustomer, payload, self.platform))
            else:
                log.info(f"Ignoring unhandled Shopify topic {event_type}")
                return WebhookResult(success=True, topic=event_type, detail="ignored")
        except DataShapeError as e:
            log.warning(f"Shopify {event_type} skipped: {e}")
            return WebhookResult(success=False, topic=event_type, error=str(e))

        processed = self.metric_store.upsert_data_points(accumulator.points(), merge=True)
        return WebhookResult(success=True, topic=event_type, processed=processed)
