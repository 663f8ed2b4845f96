"""
Connector registry

Builds one connector instance per platform. Each instance owns its own
request pacer, so rate-limit state never leaks across platforms or tests.
"""
import asyncio
from typing import Dict, Optional

import httpx

from bizpulse.config import Settings, get_settings
from bizpulse.connectors.contract import PlatformConnector
from bizpulse.connectors.google_analytics import GoogleAnalyticsConnector
from bizpulse.connectors.shopify import ShopifyConnector
from bizpulse.connectors.stripe import StripeConnector
from bizpulse.errors import UnknownPlatformError
from bizpulse.schemas import Platform
from bizpulse.stores.integration_store import IntegrationStore
from bizpulse.stores.metric_store import MetricStore


class ConnectorRegistry:
    """Lazily constructed connectors keyed by platform"""

    def __init__(
        self,
        metric_store: MetricStore,
        integration_store: Optional[IntegrationStore] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        self.metric_store = metric_store
        self.integration_store = integration_store
        self.settings = settings or get_settings()
        self.transport = transport
        self.sleep = sleep
        self._connectors: Dict[str, PlatformConnector] = {}

    def register(self, connector: PlatformConnector):
        """Install a prebuilt connector, replacing any existing one"""
        self._connectors[connector.platform] = connector

    def get(self, platform: str) -> PlatformConnector:
        if platform not in self._connectors:
            self._connectors[platform] = self._build(platform)
        return self._connectors[platform]

    def _build(self, platform: str) -> PlatformConnector:
        common = {"settings": self.settings, "transport": self.transport, "sleep": self.sleep}
        if platform == Platform.STRIPE.value:
            return StripeConnector(self.metric_store, **common)
        if platform == Platform.SHOPIFY.value:
            return ShopifyConnector(self.metric_store, **common)
        if platform == Platform.GOOGLE_ANALYTICS.value:
            return GoogleAnalyticsConnector(self.metric_store, integration_store=self.integration_store, **common)
        raise UnknownPlatformError(f"No connector for platform '{platform}'", platform)

    @property
    def platforms(self):
        return [p.value for p in Platform]
