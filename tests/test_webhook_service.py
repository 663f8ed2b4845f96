"""
Webhook service tests

Events go through the real Stripe and Shopify connectors; no HTTP is made.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from bizpulse.connectors.registry import ConnectorRegistry
from bizpulse.errors import UnknownPlatformError
from bizpulse.schemas import DateRange
from bizpulse.services.webhook_service import WebhookService
from bizpulse.utils.helpers import utcnow
from bizpulse.utils.rate_limiter import SlidingWindowLimiter

from tests.conftest import epoch, run


@pytest.fixture
def service(metric_store, integration_store, event_store, settings):
    registry = ConnectorRegistry(metric_store, integration_store, settings)
    return WebhookService(registry, integration_store, event_store, settings)


def _charge_event(charge_id="ch_1", amount=2500):
    return {
        "id": f"evt_{charge_id}",
        "type": "charge.succeeded",
        "data": {"object": {
            "id": charge_id,
            "amount": amount,
            "currency": "usd",
            "status": "succeeded",
            "captured": True,
            "created": epoch(utcnow()),
        }},
    }


def _revenue(metric_store, integration):
    today = utcnow().date()
    window = DateRange(today - timedelta(days=1), today + timedelta(days=1))
    return metric_store.query_aggregate([integration.id], "revenue", window).sum


class TestWebhookService:

    def test_processed_event_is_logged(self, service, metric_store, event_store, link):
        integration = link("stripe", "acct_1")

        results = run(service.handle("stripe", "acct_1", "charge.succeeded", _charge_event(), external_id="evt_ch_1"))

        assert len(results) == 1
        assert results[0].success
        assert _revenue(metric_store, integration) == Decimal("25.00")
        events = event_store.list_for_integration(integration.id)
        assert [(e.status, e.external_id, e.records_applied) for e in events] == [("processed", "evt_ch_1", 2)]

    def test_redelivery_is_ignored(self, service, metric_store, event_store, link):
        integration = link("stripe", "acct_1")

        run(service.handle("stripe", "acct_1", "charge.succeeded", _charge_event()))
        run(service.handle("stripe", "acct_1", "charge.succeeded", _charge_event()))

        assert _revenue(metric_store, integration) == Decimal("25.00")
        statuses = [e.status for e in event_store.list_for_integration(integration.id)]
        assert sorted(statuses) == ["ignored", "processed"]

    def test_same_event_id_is_applied_once(self, service, metric_store, event_store, link):
        integration = link("stripe", "acct_1")

        run(service.handle("stripe", "acct_1", "charge.succeeded", _charge_event(), external_id="evt_ch_1"))
        results = run(service.handle("stripe", "acct_1", "charge.succeeded", _charge_event(amount=9900),
                                     external_id="evt_ch_1"))

        assert results[0].success
        assert results[0].detail == "duplicate"
        assert _revenue(metric_store, integration) == Decimal("25.00")
        latest = event_store.list_for_integration(integration.id)[0]
        assert (latest.status, latest.error) == ("ignored", "duplicate delivery")

    def test_failed_delivery_can_be_retried(self, service, metric_store, link):
        integration = link("stripe", "acct_1")
        broken = {"type": "charge.succeeded", "data": {"object": {"id": "ch_1"}}}

        run(service.handle("stripe", "acct_1", "charge.succeeded", broken, external_id="evt_ch_1"))
        results = run(service.handle("stripe", "acct_1", "charge.succeeded", _charge_event(), external_id="evt_ch_1"))

        assert results[0].success
        assert _revenue(metric_store, integration) == Decimal("25.00")

    def test_fans_out_to_every_linked_organization(self, service, metric_store, link):
        first = link("stripe", "acct_shared", organization_id="org_1")
        second = link("stripe", "acct_shared", organization_id="org_2")

        results = run(service.handle("stripe", "acct_shared", "charge.succeeded", _charge_event()))

        assert len(results) == 2
        assert _revenue(metric_store, first) == Decimal("25.00")
        assert _revenue(metric_store, second) == Decimal("25.00")

    def test_unknown_account(self, service):
        assert run(service.handle("stripe", "acct_missing", "charge.succeeded", _charge_event())) == []

    def test_unknown_platform(self, service):
        with pytest.raises(UnknownPlatformError):
            run(service.handle("paypal", "acct_1", "payment.created", {}))

    def test_malformed_payload_is_failed(self, service, event_store, link):
        integration = link("stripe", "acct_1")
        event = {"type": "charge.succeeded", "data": {"object": {"id": "ch_1"}}}

        results = run(service.handle("stripe", "acct_1", "charge.succeeded", event))

        assert not results[0].success
        events = event_store.list_for_integration(integration.id)
        assert events[0].status == "failed"
        assert events[0].error

    def test_rate_limit(self, metric_store, integration_store, event_store, settings, link):
        registry = ConnectorRegistry(metric_store, integration_store, settings)
        service = WebhookService(
            registry, integration_store, event_store, settings, limiter=SlidingWindowLimiter(2, 60)
        )
        integration = link("stripe", "acct_1")

        outcomes = [
            run(service.handle("stripe", "acct_1", "charge.succeeded", _charge_event(f"ch_{n}")))[0]
            for n in range(3)
        ]

        assert [o.success for o in outcomes] == [True, True, False]
        assert outcomes[2].error == "rate limited"
        assert _revenue(metric_store, integration) == Decimal("50.00")

    def test_shopify_uninstall_disconnects(self, service, integration_store, event_store, link):
        integration = link("shopify", "demo.myshopify.com")

        results = run(service.handle("shopify", "demo.myshopify.com", "app/uninstalled", {"id": 1}))

        assert results[0].status_directive == "inactive"
        stored = integration_store.get(integration.id)
        assert stored.status == "inactive"
        assert stored.access_token is None
        assert stored.meta["disconnect_reason"] == "app uninstalled"
        assert event_store.list_for_integration(integration.id)[0].status == "processed"
