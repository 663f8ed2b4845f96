"""
Google Analytics 4 Connector

Syncs daily traffic from the GA4 Data API (runReport).
Provides sessions, users, pageviews and a per-source breakdown used for
channel opportunity analysis.
"""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import httpx

from bizpulse.config import Settings, get_settings
from bizpulse.connectors.http import Page, PlatformHttpClient, collect_pages
from bizpulse.connectors.normalize import DailyAccumulator
from bizpulse.connectors.sync_steps import resolve_window_start, run_sync_steps, write_window
from bizpulse.errors import CredentialError, DataShapeError
from bizpulse.schemas import MetricType, Platform, SourceStats, StepStats, SyncResult, WebhookResult
from bizpulse.stores.integration_store import IntegrationStore
from bizpulse.stores.metric_store import MetricStore
from bizpulse.utils.helpers import parse_timestamp, to_decimal, utcnow
from bizpulse.utils.logger import log
from bizpulse.utils.rate_limiter import RequestPacer
from bizpulse.utils.retry import RetryPolicy, call_with_retry

# GA4 metric name -> stored metric type
TRAFFIC_METRICS = {
    "sessions": MetricType.SESSIONS.value,
    "totalUsers": MetricType.USERS.value,
    "screenPageViews": MetricType.PAGEVIEWS.value,
}

# Refresh this long before the stored expiry
TOKEN_REFRESH_MARGIN = timedelta(minutes=2)


def _metric_int(row: Dict[str, Any], index: int) -> int:
    values = row.get("metricValues") or []
    if index >= len(values):
        raise DataShapeError(f"GA4 row missing metric #{index}", Platform.GOOGLE_ANALYTICS.value)
    return int(to_decimal(values[index].get("value"), Decimal("0")))


def _dimension(row: Dict[str, Any], index: int) -> str:
    values = row.get("dimensionValues") or []
    if index >= len(values):
        raise DataShapeError(f"GA4 row missing dimension #{index}", Platform.GOOGLE_ANALYTICS.value)
    return values[index].get("value") or ""


class GoogleAnalyticsConnector:
    """
    Connector for the GA4 Data API

    The integration's platform account id is the GA4 property id. Access
    tokens are short-lived and refreshed with the stored refresh token.
    """

    platform = Platform.GOOGLE_ANALYTICS.value
    primary_resources = ("traffic", "sources")
    low_frequency_resources = ()

    def __init__(
        self,
        metric_store: MetricStore,
        integration_store: Optional[IntegrationStore] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.metric_store = metric_store
        self.integration_store = integration_store
        self.base_url = self.settings.ga4_data_api_base.rstrip("/")
        self._sleep = sleep
        self._retry_policy = RetryPolicy.from_settings(self.settings)

        rate = self.settings.platform_requests_per_second.get(self.platform, 10.0)
        self.pacer = RequestPacer(rate)
        self.http = PlatformHttpClient(
            self.platform,
            auth_headers=self._get_headers,
            retry_policy=self._retry_policy,
            pacer=self.pacer,
            timeout=self.settings.http_timeout_seconds,
            token_refresher=self.refresh_access_token,
            transport=transport,
            sleep=sleep,
        )

    def _get_headers(self, integration) -> Dict[str, str]:
        return {"Authorization": f"Bearer {integration.access_token}"}

    # ── Credentials ──────────────────────────────────────

    async def refresh_access_token(self, integration):
        """
        Exchange the refresh token for a new access token and persist it.

        Raises:
            CredentialError: no refresh token, or Google rejected the grant
        """
        if not integration.refresh_token:
            raise CredentialError("No refresh token available for Google Analytics", self.platform)

        form = {
            "client_id": self.settings.google_client_id or "",
            "client_secret": self.settings.google_client_secret or "",
            "refresh_token": integration.refresh_token,
            "grant_type": "refresh_token",
        }

        async def exchange() -> httpx.Response:
            await self.pacer.acquire()
            async with self.http.client() as client:
                response = await client.post(self.settings.google_token_url, data=form)
            if response.status_code in (400, 401):
                raise CredentialError(f"Google token refresh rejected ({response.status_code})", self.platform)
            self.http.raise_for_status(response)
            return response

        response = await call_with_retry(
            self._retry_policy, exchange, description="google token refresh", sleep=self._sleep
        )
        data = response.json()
        access_token = data.get("access_token")
        if not access_token:
            raise CredentialError("Google token refresh returned no access token", self.platform)

        expires_at = utcnow() + timedelta(seconds=int(data.get("expires_in", 3600)))
        integration.access_token = access_token
        integration.token_expires_at = expires_at
        if data.get("refresh_token"):
            integration.refresh_token = data["refresh_token"]

        if self.integration_store is not None:
            self.integration_store.update_credentials(
                integration.id,
                access_token=access_token,
                refresh_token=data.get("refresh_token"),
                token_expires_at=expires_at,
            )
        log.info(f"Refreshed Google Analytics token for integration {integration.id}")

    async def _ensure_fresh_token(self, integration):
        expires_at = integration.token_expires_at
        if expires_at and integration.refresh_token and expires_at - TOKEN_REFRESH_MARGIN <= utcnow():
            await self.refresh_access_token(integration)

    async def test_connection(self, integration) -> Dict[str, Any]:
        await self._ensure_fresh_token(integration)
        data = await self.http.get_json(
            integration, f"{self.base_url}/properties/{integration.platform_account_id}/metadata"
        )
        return {
            "success": True,
            "platform": self.platform,
            "property_id": integration.platform_account_id,
            "metrics_available": len(data.get("metrics") or []),
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

        async def credentials(stats: StepStats):
            await self._ensure_fresh_token(integration)

        step_builders = {
            "traffic": lambda stats: self.sync_traffic(integration, window_start, stats),
            "sources": lambda stats: self.sync_sources(integration, window_start, stats),
        }
        steps = [("credentials", credentials)]
        steps += [(name, step_builders[name]) for name in resources if name in step_builders]

        log.info(f"Starting GA4 sync for property {integration.platform_account_id} from {window_start.date()}")
        result = await run_sync_steps(
            self.platform,
            integration,
            steps,
            primary_step="traffic" if "traffic" in resources else None,
            window_start=window_start,
        )
        result.steps.pop("credentials", None)
        return result

    async def _run_report(
        self,
        integration,
        window_start: datetime,
        dimensions: List[str],
        metrics: List[str],
        stats: StepStats,
    ) -> List[Dict[str, Any]]:
        """runReport with limit/offset pagination"""
        url = f"{self.base_url}/properties/{integration.platform_account_id}:runReport"
        limit = self.settings.sync_page_size

        async def fetch_page(offset: Optional[int]) -> Page:
            offset = offset or 0
            body = {
                "dateRanges": [{"startDate": window_start.date().isoformat(), "endDate": "today"}],
                "dimensions": [{"name": name} for name in dimensions],
                "metrics": [{"name": name} for name in metrics],
                "limit": limit,
                "offset": offset,
            }
            data = await self.http.post_json(integration, url, body)
            rows = data.get("rows") or []
            row_count = int(data.get("rowCount") or 0)
            next_offset = offset + len(rows)
            return Page(records=rows, next_cursor=next_offset if rows and next_offset < row_count else None)

        return await collect_pages(
            fetch_page,
            stats,
            max_records=self.settings.sync_max_records,
            page_delay=self.settings.sync_page_delay_seconds,
            sleep=self._sleep,
            label=f"ga4 {'/'.join(dimensions)}",
        )

    async def sync_traffic(self, integration, window_start: datetime, stats: StepStats):
        rows = await self._run_report(integration, window_start, ["date"], list(TRAFFIC_METRICS), stats)
        accumulator = DailyAccumulator(integration.id, self.platform)

        for row in rows:
            try:
                day = parse_timestamp(_dimension(row, 0))
                if day is None:
                    raise DataShapeError(f"GA4 row has unparseable date {_dimension(row, 0)!r}", self.platform)
                for index, metric_type in enumerate(TRAFFIC_METRICS.values()):
                    accumulator.set_total(metric_type, day.date(), Decimal(_metric_int(row, index)))
            except DataShapeError as e:
                stats.invalid += 1
                log.warning(str(e))

        write_window(self.metric_store, accumulator, stats, window_start, tuple(TRAFFIC_METRICS.values()))

    async def sync_sources(self, integration, window_start: datetime, stats: StepStats):
        """Sessions and purchases per session source per day"""
        rows = await self._run_report(
            integration, window_start, ["date", "sessionSource"], ["sessions", "ecommercePurchases"], stats
        )
        by_day: Dict[Any, Dict[str, SourceStats]] = {}

        for row in rows:
            try:
                day = parse_timestamp(_dimension(row, 0))
                if day is None:
                    raise DataShapeError(f"GA4 row has unparseable date {_dimension(row, 0)!r}", self.platform)
                source = _dimension(row, 1) or "(not set)"
                sources = by_day.setdefault(day.date(), {})
                current = sources.setdefault(source, SourceStats())
                current.sessions += _metric_int(row, 0)
                current.conversions += _metric_int(row, 1)
            except DataShapeError as e:
                stats.invalid += 1
                log.warning(str(e))

        accumulator = DailyAccumulator(integration.id, self.platform)
        for day, sources in by_day.items():
            total_sessions = sum(s.sessions for s in sources.values())
            accumulator.set_total(
                MetricType.TRAFFIC_SOURCES.value, day, Decimal(total_sessions), kind="traffic", sources=sources
            )

        write_window(self.metric_store, accumulator, stats, window_start, (MetricType.TRAFFIC_SOURCES.value,))

    # ── Webhooks ─────────────────────────────────────────

    async def handle_webhook_event(self, integration, event_type: str, payload: Dict[str, Any]) -> WebhookResult:
        """GA4 has no webhooks; events are acknowledged and ignored"""
        return WebhookResult(success=True, topic=event_type, detail="google analytics does not send webhooks")
