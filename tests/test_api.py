"""
HTTP API tests

The app runs against services bound to the in-memory database; the
scheduler is not started (no lifespan).
"""
import httpx
import pytest
from fastapi.testclient import TestClient

from bizpulse.main import app
from bizpulse.services.container import build_services, get_services


def _stripe_api(request: httpx.Request) -> httpx.Response:
    if request.headers.get("Authorization") == "Bearer revoked":
        return httpx.Response(401, json={"error": {"message": "Invalid API Key"}})
    if request.url.path.endswith("/balance"):
        return httpx.Response(200, json={"available": [{"currency": "usd", "amount": 0}]})
    return httpx.Response(200, json={"data": [], "has_more": False})


@pytest.fixture
def services(settings, session_factory):
    return build_services(settings, session_factory, transport=httpx.MockTransport(_stripe_api))


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def _link(client, account_id="acct_1", access_token="sk_test", organization_id="org_1"):
    response = client.post("/integrations", json={
        "organization_id": organization_id,
        "platform": "stripe",
        "platform_account_id": account_id,
        "access_token": access_token,
    })
    assert response.status_code == 200
    return response.json()


# ────────────────────────────────────────────
# HEALTH
# ────────────────────────────────────────────


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_status_lists_jobs(self, client):
        data = client.get("/status").json()
        assert data["jobs"] == ["sync", "insights", "digest", "health_check", "cleanup"]
        assert "stripe" in data["platforms"]
        assert data["notifications"]["channels_configured"] == {"email": False, "slack": False}

    def test_root(self, client):
        assert "webhook" in client.get("/").json()["endpoints"]


# ────────────────────────────────────────────
# INTEGRATIONS
# ────────────────────────────────────────────


class TestIntegrations:

    def test_link_and_list(self, client):
        linked = _link(client)

        assert linked["status"] == "pending"
        listed = client.get("/integrations", params={"organization_id": "org_1"}).json()
        assert listed["count"] == 1
        assert listed["integrations"][0]["platform_account_id"] == "acct_1"

    def test_unsupported_platform_is_rejected(self, client):
        response = client.post("/integrations", json={
            "organization_id": "org_1",
            "platform": "paypal",
            "platform_account_id": "x",
            "access_token": "t",
        })
        assert response.status_code == 422

    def test_sync_one(self, client):
        linked = _link(client)

        result = client.post(f"/integrations/{linked['id']}/sync").json()

        assert result["success"]
        assert set(result["steps"]) == {"charges", "refunds", "subscriptions", "customers"}
        assert client.get("/integrations", params={"organization_id": "org_1"}).json()["integrations"][0]["status"] == "active"

    def test_sync_with_revoked_key(self, client):
        linked = _link(client, access_token="revoked")

        result = client.post(f"/integrations/{linked['id']}/sync").json()

        assert not result["success"]
        assert result["error_kind"] == "credential"

    def test_connection_check(self, client):
        good = _link(client)
        bad = _link(client, account_id="acct_2", access_token="revoked")

        assert client.post(f"/integrations/{good['id']}/test").json()["success"]
        failed = client.post(f"/integrations/{bad['id']}/test").json()
        assert failed["success"] is False
        assert failed["error_kind"] == "credential"

    def test_disconnect(self, client):
        linked = _link(client)

        result = client.post(f"/integrations/{linked['id']}/disconnect", params={"reason": "churned"}).json()

        assert result["status"] == "inactive"
        assert client.get("/integrations", params={"organization_id": "org_1"}).json()["count"] == 0
        everything = client.get(
            "/integrations", params={"organization_id": "org_1", "include_disconnected": True}
        ).json()
        assert everything["count"] == 1

    def test_missing_integration(self, client):
        assert client.post("/integrations/999/sync").status_code == 404
        assert client.post("/integrations/999/disconnect").status_code == 404

    def test_background_sync_reports_progress(self, client):
        _link(client)

        response = client.post("/integrations/sync")

        assert response.status_code == 200
        # Background tasks finish before TestClient returns
        progress = client.get("/integrations/sync/progress").json()
        assert progress["all"]["status"] == "completed"
        assert progress["all"]["result"]["processed"] == 1


# ────────────────────────────────────────────
# INSIGHTS
# ────────────────────────────────────────────


class TestInsights:

    def test_generate_list_and_mark_read(self, client):
        generated = client.post("/insights/org_new/generate").json()

        assert generated["onboarding"]
        assert len(generated["insights"]) == 2
        assert generated["insights"][0]["priority"] == 30

        listed = client.get("/insights/org_new").json()
        assert listed["total"] == 2
        assert listed["pages"] == 1

        high = client.get("/insights/org_new", params={"urgency": "high"}).json()
        assert [i["title"] for i in high["items"]] == ["Connect your first data source"]

        first_id = listed["items"][0]["id"]
        marked = client.post("/insights/org_new/read", json={"insight_ids": [first_id]}).json()
        assert marked["updated"] == 1

        summary = client.get("/insights/org_new/summary").json()
        assert summary["total"] == 2
        assert summary["unread"] == 1

        client.post("/insights/org_new/read", json={})
        assert client.get("/insights/org_new/actionable").json()["count"] == 0

    def test_high_priority(self, client):
        client.post("/insights/org_new/generate")

        data = client.get("/insights/org_new/high-priority").json()

        assert data["count"] == 1
        assert data["insights"][0]["urgency"] == "high"

    def test_invalid_filter(self, client):
        assert client.get("/insights/org_new", params={"urgency": "urgent"}).status_code == 422


# ────────────────────────────────────────────
# WEBHOOKS
# ────────────────────────────────────────────


class TestWebhooks:

    def _charge_event(self):
        return {
            "id": "evt_1",
            "type": "charge.succeeded",
            "data": {"object": {
                "id": "ch_1", "amount": 1200, "currency": "usd", "status": "succeeded",
                "captured": True, "created": 1700000000,
            }},
        }

    def test_stripe_event(self, client, services):
        linked = _link(client)

        data = client.post("/webhooks/stripe/acct_1", json=self._charge_event()).json()

        assert data == {
            "received": True,
            "event_type": "charge.succeeded",
            "integrations": 1,
            "processed": 2,
            "errors": [],
        }
        events = services.event_store.list_for_integration(linked["id"])
        assert events[0].external_id == "evt_1"

    def test_shopify_topic_header(self, client, services):
        response = client.post("/integrations", json={
            "organization_id": "org_1",
            "platform": "shopify",
            "platform_account_id": "demo.myshopify.com",
            "access_token": "shpat",
        })
        integration_id = response.json()["id"]

        data = client.post(
            "/webhooks/shopify/demo.myshopify.com",
            json={"id": 1},
            headers={"X-Shopify-Topic": "app/uninstalled", "X-Shopify-Webhook-Id": "wh_1"},
        ).json()

        assert data["integrations"] == 1
        assert services.integration_store.get(integration_id).status == "inactive"

    def test_bad_requests(self, client):
        assert client.post("/webhooks/stripe/acct_1", content=b"not json").status_code == 400
        assert client.post("/webhooks/stripe/acct_1", json=[1, 2]).status_code == 400
        assert client.post("/webhooks/stripe/acct_1", json={"id": "evt_1"}).status_code == 400

    def test_unknown_platform(self, client):
        assert client.post("/webhooks/paypal/acct_1", json={"type": "x"}).status_code == 404

    def test_unknown_account_is_acknowledged(self, client):
        data = client.post("/webhooks/stripe/acct_nobody", json=self._charge_event()).json()
        assert data["received"]
        assert data["integrations"] == 0
