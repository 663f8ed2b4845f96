"""
Shared fixtures: an isolated in-memory database, fast settings and stores.

Environment overrides are applied before any bizpulse import so the
module-level engine and logger never touch the working directory.
"""
import asyncio
import os
from datetime import datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_DIR", "")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bizpulse.config import Settings
from bizpulse.models.base import init_db
from bizpulse.stores import IntegrationStore, SqlInsightStore, SqlMetricStore, WebhookEventStore


def run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


def epoch(value: datetime) -> int:
    """Naive-UTC datetime to unix seconds"""
    return int(value.replace(tzinfo=timezone.utc).timestamp())


async def no_sleep(seconds):
    return None


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        log_dir=None,
        sync_page_delay_seconds=0,
        retry_base_delay=0,
        retry_max_delay=0,
        platform_requests_per_second={"stripe": 0, "shopify": 0, "google_analytics": 0},
        google_client_id="client-id",
        google_client_secret="client-secret",
        smtp_host=None,
        slack_webhook_url=None,
        alert_email_to="owner@example.com",
    )


@pytest.fixture
def metric_store(session_factory):
    return SqlMetricStore(session_factory, batch_size=50)


@pytest.fixture
def insight_store(session_factory):
    return SqlInsightStore(session_factory)


@pytest.fixture
def integration_store(session_factory):
    return IntegrationStore(session_factory)


@pytest.fixture
def event_store(session_factory):
    return WebhookEventStore(session_factory)


@pytest.fixture
def link(integration_store):
    """Create an integration: link(platform, account_id, organization_id='org_1', **kwargs)"""
    def _link(platform, account_id, organization_id="org_1", access_token="token", **kwargs):
        return integration_store.link_integration(
            organization_id=organization_id,
            platform=platform,
            platform_account_id=account_id,
            access_token=access_token,
            **kwargs,
        )
    return _link
