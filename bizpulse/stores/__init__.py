"""Persistence layer: abstract store contracts and their SQLAlchemy implementations"""

from bizpulse.stores.metric_store import MetricStore, SqlMetricStore
from bizpulse.stores.insight_store import InsightStore, SqlInsightStore
from bizpulse.stores.integration_store import IntegrationStore
from bizpulse.stores.webhook_event_store import WebhookEventStore

__all__ = [
    "MetricStore",
    "SqlMetricStore",
    "InsightStore",
    "SqlInsightStore",
    "IntegrationStore",
    "WebhookEventStore",
]
