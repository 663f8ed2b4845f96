"""Platform connectors for BizPulse"""

from bizpulse.connectors.contract import PlatformConnector
from bizpulse.connectors.stripe import StripeConnector
from bizpulse.connectors.shopify import ShopifyConnector
from bizpulse.connectors.google_analytics import GoogleAnalyticsConnector
from bizpulse.connectors.registry import ConnectorRegistry

__all__ = [
    "PlatformConnector",
    "StripeConnector",
    "ShopifyConnector",
    "GoogleAnalyticsConnector",
    "ConnectorRegistry",
]
