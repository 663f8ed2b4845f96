"""
Service wiring

Builds the object graph once for the API and the scheduler. Tests build
their own graph with an in-memory session factory.
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from bizpulse.config import Settings, get_settings
from bizpulse.connectors.registry import ConnectorRegistry
from bizpulse.models.base import SessionLocal
from bizpulse.services.insight_service import InsightService
from bizpulse.services.insights_engine import InsightsEngine
from bizpulse.services.job_runner import JobRunner
from bizpulse.services.notification_service import AdminDirectory, NotificationService
from bizpulse.services.sync_orchestrator import SyncOrchestrator
from bizpulse.services.webhook_service import WebhookService
from bizpulse.stores import (
    IntegrationStore,
    SqlInsightStore,
    SqlMetricStore,
    WebhookEventStore,
)


@dataclass
class Services:
    settings: Settings
    metric_store: SqlMetricStore
    insight_store: SqlInsightStore
    integration_store: IntegrationStore
    event_store: WebhookEventStore
    registry: ConnectorRegistry
    orchestrator: SyncOrchestrator
    engine: InsightsEngine
    insights: InsightService
    webhooks: WebhookService
    notifications: NotificationService
    jobs: JobRunner


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Callable[[], Session] = SessionLocal,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    directory: Optional[AdminDirectory] = None,
) -> Services:
    settings = settings or get_settings()
    metric_store = SqlMetricStore(session_factory, batch_size=settings.upsert_batch_size)
    insight_store = SqlInsightStore(session_factory)
    integration_store = IntegrationStore(session_factory)
    event_store = WebhookEventStore(session_factory)

    registry = ConnectorRegistry(metric_store, integration_store, settings=settings, transport=transport)
    orchestrator = SyncOrchestrator(registry, integration_store, settings=settings)
    engine = InsightsEngine(metric_store, insight_store, integration_store, settings=settings)
    notifications = NotificationService(settings=settings, directory=directory)

    return Services(
        settings=settings,
        metric_store=metric_store,
        insight_store=insight_store,
        integration_store=integration_store,
        event_store=event_store,
        registry=registry,
        orchestrator=orchestrator,
        engine=engine,
        insights=InsightService(engine, insight_store),
        webhooks=WebhookService(registry, integration_store, event_store, settings=settings),
        notifications=notifications,
        jobs=JobRunner(
            orchestrator,
            engine,
            metric_store,
            insight_store,
            integration_store,
            notifications,
            settings=settings,
        ),
    )


@lru_cache()
def get_services() -> Services:
    """Process-wide services bound to the configured database"""
    return build_services()
