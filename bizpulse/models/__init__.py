"""Database models for the BizPulse platform"""

from bizpulse.models.integration import Integration
from bizpulse.models.data_point import DataPoint
from bizpulse.models.insight import Insight
from bizpulse.models.webhook_event import WebhookEvent

__all__ = [
    "Integration",
    "DataPoint",
    "Insight",
    "WebhookEvent",
]
