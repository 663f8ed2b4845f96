"""
Stripe connector tests

HTTP is faked with httpx.MockTransport; data lands in the in-memory store.
"""
from datetime import timedelta
from decimal import Decimal

import httpx

from bizpulse.connectors.stripe import StripeConnector, subscription_mrr, StripeSubscription
from bizpulse.schemas import DateRange
from bizpulse.utils.helpers import utcnow

from tests.conftest import epoch, no_sleep, run


YESTERDAY = utcnow() - timedelta(days=1)


def _charge(charge_id, amount, status="succeeded", captured=True, created=None, **extra):
    return {
        "id": charge_id,
        "object": "charge",
        "amount": amount,
        "currency": "usd",
        "status": status,
        "captured": captured,
        "created": epoch(created or YESTERDAY),
        **extra,
    }


def _weekly_subscription(sub_id, unit_amount=7000, status="active"):
    return {
        "id": sub_id,
        "status": status,
        "currency": "usd",
        "items": {"data": [{
            "quantity": 1,
            "price": {"unit_amount": unit_amount, "currency": "usd", "recurring": {"interval": "week"}},
        }]},
    }


class FakeStripe:
    """Routes requests by path and records what was asked for"""

    def __init__(self, charges_pages=None, refunds=None, subscriptions=None, customers=None, overrides=None):
        self.charges_pages = charges_pages or [[]]
        self.refunds = refunds or []
        self.subscriptions = subscriptions or []
        self.customers = customers or []
        self.overrides = overrides or {}  # path -> list of (status, body) consumed in order
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.replace("/v1/", "")

        queued = self.overrides.get(path)
        if queued:
            status, body, headers = queued.pop(0)
            return httpx.Response(status, json=body, headers=headers)

        if path == "charges":
            cursor = request.url.params.get("starting_after")
            index = 0
            if cursor:
                index = next(
                    i + 1 for i, page in enumerate(self.charges_pages) if page and page[-1]["id"] == cursor
                )
            page = self.charges_pages[index]
            return httpx.Response(200, json={"data": page, "has_more": index < len(self.charges_pages) - 1})
        if path == "refunds":
            return httpx.Response(200, json={"data": self.refunds, "has_more": False})
        if path == "subscriptions":
            return httpx.Response(200, json={"data": self.subscriptions, "has_more": False})
        if path == "customers":
            return httpx.Response(200, json={"data": self.customers, "has_more": False})
        if path == "balance":
            return httpx.Response(200, json={"available": [{"currency": "usd", "amount": 100}]})
        return httpx.Response(404, json={"error": {"message": "unknown"}})

    def calls(self, path):
        return [r for r in self.requests if r.url.path.endswith(path)]


def _connector(fake, metric_store, settings):
    return StripeConnector(metric_store, settings=settings, transport=httpx.MockTransport(fake), sleep=no_sleep)


def _window():
    return DateRange(YESTERDAY.date() - timedelta(days=40), utcnow().date() + timedelta(days=1))


def _total(metric_store, integration, metric):
    return metric_store.query_aggregate([integration.id], metric, _window()).sum


# ────────────────────────────────────────────
# BULK SYNC
# ────────────────────────────────────────────


class TestStripeSync:

    def test_pages_through_charges_and_maps_metrics(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        fake = FakeStripe(
            charges_pages=[
                [_charge("ch_1", 1000), _charge("ch_2", 2500)],
                [_charge("ch_3", 500, status="failed", failure_code="card_declined"),
                 _charge("ch_4", 900, status="pending")],
            ],
            refunds=[{"id": "re_1", "amount": 500, "currency": "usd", "status": "succeeded",
                      "created": epoch(YESTERDAY), "charge": "ch_1"}],
            subscriptions=[_weekly_subscription("sub_1")],
        )

        result = run(_connector(fake, metric_store, settings).sync(integration))

        assert result.success
        assert result.steps["charges"].pages == 2
        assert result.steps["charges"].fetched == 4
        assert result.steps["charges"].skipped == 1  # Pending charge left out
        assert fake.calls("charges")[1].url.params["starting_after"] == "ch_2"

        assert _total(metric_store, integration, "revenue") == Decimal("35.00")
        assert _total(metric_store, integration, "orders") == Decimal("2")
        assert _total(metric_store, integration, "failed_charges") == Decimal("5.00")
        assert _total(metric_store, integration, "refunds") == Decimal("-5.00")
        assert _total(metric_store, integration, "mrr") == Decimal("303.10")

    def test_failed_charge_keeps_its_decline_code(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        fake = FakeStripe(charges_pages=[[_charge("ch_1", 500, status="failed", failure_code="card_declined")]])

        run(_connector(fake, metric_store, settings).sync(integration))

        point = metric_store.latest_point(integration.id, "failed_charges", utcnow().date())
        assert point.metadata.failure_codes == {"card_declined": 1}

    def test_sync_twice_is_idempotent(self, metric_store, settings, link, session_factory):
        from bizpulse.models.data_point import DataPoint

        integration = link("stripe", "acct_1")
        fake = FakeStripe(charges_pages=[[_charge("ch_1", 1000), _charge("ch_2", 2000)]])
        connector = _connector(fake, metric_store, settings)

        first = run(connector.sync(integration))
        second = run(connector.sync(integration, since=YESTERDAY - timedelta(days=3)))

        db = session_factory()
        try:
            rows = db.query(DataPoint).filter(DataPoint.integration_id == integration.id).count()
        finally:
            db.close()
        assert first.records_synced == 3  # revenue, orders and a zero mrr snapshot
        assert second.records_synced == 0
        assert rows == 3
        assert _total(metric_store, integration, "revenue") == Decimal("30.00")

    def test_empty_account_is_success(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        result = run(_connector(FakeStripe(), metric_store, settings).sync(integration))

        assert result.success
        assert result.records_synced == 1
        assert metric_store.latest_point(integration.id, "mrr", utcnow().date()).value == 0

    def test_record_cap_truncates(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        capped = settings.model_copy(update={"sync_max_records": 2})
        fake = FakeStripe(charges_pages=[
            [_charge("ch_1", 100), _charge("ch_2", 100)],
            [_charge("ch_3", 100), _charge("ch_4", 100)],
        ])

        result = run(_connector(fake, metric_store, capped).sync(integration, resources=["charges"]))

        assert result.steps["charges"].truncated
        assert result.steps["charges"].pages == 1
        assert len(fake.calls("charges")) == 1

    def test_rate_limit_is_retried(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        fake = FakeStripe(
            charges_pages=[[_charge("ch_1", 1000)]],
            overrides={"charges": [(429, {"error": "slow down"}, {"Retry-After": "0"})]},
        )

        result = run(_connector(fake, metric_store, settings).sync(integration, resources=["charges"]))

        assert result.success
        assert len(fake.calls("charges")) == 2
        assert _total(metric_store, integration, "revenue") == Decimal("10.00")

    def test_refund_failure_does_not_stop_revenue(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        fake = FakeStripe(
            charges_pages=[[_charge("ch_1", 1000)]],
            overrides={"refunds": [(400, {"error": "bad request"}, {})]},
        )

        result = run(_connector(fake, metric_store, settings).sync(integration))

        assert result.success
        assert "refunds" in result.step_errors
        assert "subscriptions" in result.steps
        assert _total(metric_store, integration, "revenue") == Decimal("10.00")
        assert _total(metric_store, integration, "orders") == Decimal("1")

    def test_rejected_credentials_stop_the_sync(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        fake = FakeStripe(overrides={"charges": [(401, {"error": "invalid key"}, {})]})

        result = run(_connector(fake, metric_store, settings).sync(integration))

        assert not result.success
        assert result.error_kind == "credential"
        assert "refunds" not in result.steps
        assert fake.calls("refunds") == []

    def test_server_errors_exhaust_retries(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        fake = FakeStripe(overrides={"charges": [(503, {}, {})] * settings.retry_max_attempts})

        result = run(_connector(fake, metric_store, settings).sync(integration, resources=["charges"]))

        assert not result.success
        assert result.error_kind == "transient"
        assert len(fake.calls("charges")) == settings.retry_max_attempts

    def test_invalid_records_are_skipped(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        fake = FakeStripe(charges_pages=[[{"id": "ch_bad", "status": "succeeded"}, _charge("ch_1", 1000)]])

        result = run(_connector(fake, metric_store, settings).sync(integration, resources=["charges"]))

        assert result.success
        assert result.steps["charges"].invalid == 1
        assert _total(metric_store, integration, "revenue") == Decimal("10.00")

    def test_cancelling_every_subscription_zeroes_mrr(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        fake = FakeStripe(subscriptions=[_weekly_subscription("sub_1")])
        connector = _connector(fake, metric_store, settings)

        run(connector.sync(integration, resources=["subscriptions"]))
        assert metric_store.latest_point(integration.id, "mrr", utcnow().date()).value == Decimal("303.10")

        fake.subscriptions = [_weekly_subscription("sub_1", status="canceled")]
        result = run(connector.sync(integration, resources=["subscriptions"]))

        point = metric_store.latest_point(integration.id, "mrr", utcnow().date())
        assert result.steps["subscriptions"].skipped == 1
        assert point.value == 0
        assert point.metadata.contributions == {}

    def test_charges_gone_from_a_day_are_zeroed(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        fake = FakeStripe(charges_pages=[[_charge("ch_1", 1000)]])
        connector = _connector(fake, metric_store, settings)

        run(connector.sync(integration, resources=["charges"]))
        fake.charges_pages = [[_charge("ch_1", 1000, status="pending")]]
        result = run(connector.sync(integration, resources=["charges"]))

        assert result.steps["charges"].points_written == 2
        assert _total(metric_store, integration, "revenue") == Decimal("0")
        assert _total(metric_store, integration, "orders") == Decimal("0")


class TestSubscriptionMrr:

    def test_legacy_plan_field(self):
        subscription = StripeSubscription.model_validate({
            "id": "sub_1", "status": "active", "currency": "usd",
            "plan": {"amount": 120000, "interval": "year"},
        })
        assert subscription_mrr(subscription).quantize(Decimal("0.01")) == Decimal("100.00")

    def test_multiple_items(self):
        subscription = StripeSubscription.model_validate({
            "id": "sub_1", "status": "active", "currency": "usd",
            "items": {"data": [
                {"quantity": 2, "price": {"unit_amount": 1000, "recurring": {"interval": "month"}}},
                {"quantity": 1, "price": {"unit_amount": 7000, "recurring": {"interval": "week"}}},
            ]},
        })
        assert subscription_mrr(subscription) == Decimal("323.10")


# ────────────────────────────────────────────
# WEBHOOKS
# ────────────────────────────────────────────


class TestStripeWebhooks:

    def _event(self, event_type, obj):
        return {"id": f"evt_{obj['id']}", "type": event_type, "data": {"object": obj}}

    def test_charge_event_is_idempotent(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        connector = _connector(FakeStripe(), metric_store, settings)
        event = self._event("charge.succeeded", _charge("ch_1", 1500))

        first = run(connector.handle_webhook_event(integration, "charge.succeeded", event))
        replay = run(connector.handle_webhook_event(integration, "charge.succeeded", event))

        assert first.success and first.processed == 2
        assert replay.success and replay.processed == 0
        assert _total(metric_store, integration, "revenue") == Decimal("15.00")

    def test_webhook_merges_with_bulk_synced_day(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        connector = _connector(FakeStripe(charges_pages=[[_charge("ch_1", 1000)]]), metric_store, settings)
        run(connector.sync(integration, resources=["charges"]))

        run(connector.handle_webhook_event(
            integration, "charge.succeeded", self._event("charge.succeeded", _charge("ch_2", 500))
        ))

        assert _total(metric_store, integration, "revenue") == Decimal("15.00")

    def test_refund_event_records_negative_value(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        connector = _connector(FakeStripe(), metric_store, settings)
        charge = _charge("ch_1", 2000, amount_refunded=2000, refunds={"data": [
            {"id": "re_1", "amount": 2000, "currency": "usd", "status": "succeeded", "created": epoch(YESTERDAY)},
        ]})

        result = run(connector.handle_webhook_event(integration, "charge.refunded", self._event("charge.refunded", charge)))

        assert result.success
        assert _total(metric_store, integration, "refunds") == Decimal("-20.00")

    def test_subscription_deleted_zeroes_its_contribution(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        connector = _connector(FakeStripe(subscriptions=[
            _weekly_subscription("sub_1"), _weekly_subscription("sub_2", unit_amount=1000),
        ]), metric_store, settings)
        run(connector.sync(integration, resources=["subscriptions"]))

        run(connector.handle_webhook_event(
            integration, "customer.subscription.deleted",
            self._event("customer.subscription.deleted", _weekly_subscription("sub_1", status="canceled")),
        ))

        point = metric_store.latest_point(integration.id, "mrr", utcnow().date())
        assert point.value == Decimal("43.30")

    def test_invoice_events_are_acknowledged_without_writes(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        connector = _connector(FakeStripe(), metric_store, settings)

        result = run(connector.handle_webhook_event(integration, "invoice.paid", {"id": "in_1", "data": {"object": {"id": "in_1"}}}))

        assert result.success
        assert result.processed == 0

    def test_unknown_event_is_ignored(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        connector = _connector(FakeStripe(), metric_store, settings)

        result = run(connector.handle_webhook_event(integration, "account.updated", {"id": "acct_1"}))

        assert result.success
        assert result.detail == "ignored"

    def test_malformed_event_reports_failure(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        connector = _connector(FakeStripe(), metric_store, settings)

        result = run(connector.handle_webhook_event(
            integration, "charge.succeeded", self._event("charge.succeeded", {"id": "ch_1"})
        ))

        assert not result.success
        assert result.error


class TestStripeConnection:

    def test_connection_check(self, metric_store, settings, link):
        integration = link("stripe", "acct_1")
        result = run(_connector(FakeStripe(), metric_store, settings).test_connection(integration))
        assert result == {"success": True, "platform": "stripe", "currencies": ["usd"]}
