"""
Shopify connector tests
"""
from datetime import timedelta
from decimal import Decimal

import httpx

from bizpulse.connectors.shopify import ShopifyConnector, ShopifyRefund, refund_amount
from bizpulse.schemas import DateRange
from bizpulse.utils.helpers import utcnow

from tests.conftest import no_sleep, run

SHOP = "demo-store.myshopify.com"
YESTERDAY = (utcnow() - timedelta(days=1)).replace(hour=12, minute=0, second=0, microsecond=0)


def _iso(value):
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def _order(order_id, total, status="paid", created=None, refunds=None):
    return {
        "id": order_id,
        "created_at": _iso(created or YESTERDAY),
        "total_price": total,
        "currency": "USD",
        "financial_status": status,
        "refunds": refunds or [],
    }


def _refund(refund_id, amount, created=None):
    return {
        "id": refund_id,
        "created_at": _iso(created or YESTERDAY),
        "transactions": [{"kind": "refund", "status": "success", "amount": amount}],
    }


class FakeShopify:
    """Serves orders/customers with Link-header pagination"""

    def __init__(self, order_pages=None, refund_orders=None, customers=None):
        self.order_pages = order_pages or [[]]
        self.refund_orders = refund_orders or []
        self.customers = customers or []
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params

        if path.endswith("/orders.json") and params.get("fields") == "id,refunds":
            return httpx.Response(200, json={"orders": self.refund_orders})
        if path.endswith("/orders.json"):
            page_info = params.get("page_info")
            index = int(page_info.replace("page", "")) if page_info else 0
            headers = {}
            if index < len(self.order_pages) - 1:
                next_url = f"https://{SHOP}/admin/api/2024-01/orders.json?limit=100&page_info=page{index + 1}"
                headers["Link"] = f'<{next_url}>; rel="next"'
            return httpx.Response(200, json={"orders": self.order_pages[index]}, headers=headers)
        if path.endswith("/customers.json"):
            return httpx.Response(200, json={"customers": self.customers})
        if path.endswith("/shop.json"):
            return httpx.Response(200, json={"shop": {"name": "Demo Store", "currency": "USD"}})
        return httpx.Response(404, json={"errors": "Not Found"})


def _connector(fake, metric_store, settings):
    return ShopifyConnector(metric_store, settings=settings, transport=httpx.MockTransport(fake), sleep=no_sleep)


def _total(metric_store, integration, metric):
    window = DateRange(YESTERDAY.date() - timedelta(days=40), utcnow().date() + timedelta(days=1))
    return metric_store.query_aggregate([integration.id], metric, window).sum


class TestShopifySync:

    def test_follows_link_header_and_filters_unsettled(self, metric_store, settings, link):
        integration = link("shopify", SHOP)
        fake = FakeShopify(order_pages=[
            [_order(1001, "120.50"), _order(1002, "30.00", status="pending")],
            [_order(1003, "49.50", status="partially_refunded"), _order(1004, "10.00", status="voided")],
        ])

        result = run(_connector(fake, metric_store, settings).sync(integration, resources=["orders"]))

        assert result.success
        assert result.steps["orders"].pages == 2
        assert result.steps["orders"].skipped == 2
        second_page = [r for r in fake.requests if r.url.params.get("page_info") == "page1"]
        assert len(second_page) == 1
        assert "status" not in second_page[0].url.params
        assert _total(metric_store, integration, "revenue") == Decimal("170.00")
        assert _total(metric_store, integration, "orders") == Decimal("2")

    def test_access_token_header(self, metric_store, settings, link):
        integration = link("shopify", SHOP, access_token="shpat_abc")
        fake = FakeShopify()

        run(_connector(fake, metric_store, settings).sync(integration, resources=["orders"]))

        assert fake.requests[0].headers["X-Shopify-Access-Token"] == "shpat_abc"
        assert fake.requests[0].url.host == SHOP

    def test_refunds_inside_window_only(self, metric_store, settings, link):
        integration = link("shopify", SHOP)
        old = YESTERDAY - timedelta(days=90)
        fake = FakeShopify(refund_orders=[
            {"id": 1001, "refunds": [_refund(9001, "20.00"), _refund(9002, "5.00", created=old)]},
        ])

        result = run(_connector(fake, metric_store, settings).sync(integration, resources=["refunds"]))

        assert result.success
        assert result.steps["refunds"].skipped == 1
        assert _total(metric_store, integration, "refunds") == Decimal("-20.00")

    def test_customers(self, metric_store, settings, link):
        integration = link("shopify", SHOP)
        fake = FakeShopify(customers=[
            {"id": 1, "created_at": _iso(YESTERDAY)},
            {"id": 2, "created_at": _iso(YESTERDAY)},
            {"id": 3},
        ])

        result = run(_connector(fake, metric_store, settings).sync(integration, resources=["customers"]))

        assert result.steps["customers"].invalid == 1
        assert _total(metric_store, integration, "customers") == Decimal("2")

    def test_voided_order_clears_its_day(self, metric_store, settings, link):
        integration = link("shopify", SHOP)
        earlier = YESTERDAY - timedelta(days=2)
        fake = FakeShopify(order_pages=[[_order(1001, "50.00"), _order(1002, "20.00", created=earlier)]])
        connector = _connector(fake, metric_store, settings)

        run(connector.sync(integration, resources=["orders"]))
        assert _total(metric_store, integration, "revenue") == Decimal("70.00")

        fake.order_pages = [[_order(1001, "50.00", status="voided"), _order(1002, "20.00", created=earlier)]]
        run(connector.sync(integration, resources=["orders"]))

        point = metric_store.latest_point(integration.id, "revenue", YESTERDAY.date())
        assert point.date_recorded == YESTERDAY.date()
        assert point.value == 0
        assert point.metadata.contributions == {}
        assert _total(metric_store, integration, "revenue") == Decimal("20.00")
        assert _total(metric_store, integration, "orders") == Decimal("1")


class TestRefundAmount:

    def test_prefers_successful_transactions(self):
        refund = ShopifyRefund.model_validate({
            "id": 1, "created_at": "2024-03-01T00:00:00Z",
            "transactions": [
                {"kind": "refund", "status": "success", "amount": "15.00"},
                {"kind": "refund", "status": "failure", "amount": "15.00"},
            ],
            "refund_line_items": [{"subtotal": "99.00"}],
        })
        assert refund_amount(refund) == Decimal("15.00")

    def test_falls_back_to_line_items(self):
        refund = ShopifyRefund.model_validate({
            "id": 1, "created_at": "2024-03-01T00:00:00Z",
            "refund_line_items": [{"subtotal": "10.00"}, {"subtotal": "2.50"}],
        })
        assert refund_amount(refund) == Decimal("12.50")


class TestShopifyWebhooks:

    def test_order_paid_then_cancelled(self, metric_store, settings, link):
        """A cancelled order overwrites its earlier contribution with zero"""
        integration = link("shopify", SHOP)
        connector = _connector(FakeShopify(), metric_store, settings)

        run(connector.handle_webhook_event(integration, "orders/paid", _order(1001, "80.00")))
        run(connector.handle_webhook_event(integration, "orders/create", _order(1002, "20.00")))
        assert _total(metric_store, integration, "revenue") == Decimal("100.00")

        run(connector.handle_webhook_event(integration, "orders/cancelled", _order(1001, "80.00", status="voided")))

        assert _total(metric_store, integration, "revenue") == Decimal("20.00")
        assert _total(metric_store, integration, "orders") == Decimal("1")

    def test_refund_created(self, metric_store, settings, link):
        integration = link("shopify", SHOP)
        connector = _connector(FakeShopify(), metric_store, settings)

        result = run(connector.handle_webhook_event(integration, "refunds/create", _refund(9001, "12.00")))

        assert result.success
        assert _total(metric_store, integration, "refunds") == Decimal("-12.00")

    def test_app_uninstalled_requests_inactive(self, metric_store, settings, link):
        integration = link("shopify", SHOP)
        connector = _connector(FakeShopify(), metric_store, settings)

        result = run(connector.handle_webhook_event(integration, "app/uninstalled", {"id": 1}))

        assert result.success
        assert result.status_directive == "inactive"

    def test_unknown_topic_is_ignored(self, metric_store, settings, link):
        integration = link("shopify", SHOP)
        connector = _connector(FakeShopify(), metric_store, settings)

        result = run(connector.handle_webhook_event(integration, "products/update", {"id": 1}))

        assert result.success
        assert result.detail == "ignored"

    def test_malformed_order(self, metric_store, settings, link):
        integration = link("shopify", SHOP)
        connector = _connector(FakeShopify(), metric_store, settings)

        result = run(connector.handle_webhook_event(integration, "orders/create", {"id": 1}))

        assert not result.success


class TestShopifyConnection:

    def test_connection_check(self, metric_store, settings, link):
        integration = link("shopify", f"https://{SHOP}/")
        result = run(_connector(FakeShopify(), metric_store, settings).test_connection(integration))
        assert result["shop_name"] == "Demo Store"
        assert result["currency"] == "USD"
